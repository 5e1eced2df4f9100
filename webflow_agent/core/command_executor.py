"""Execute page commands against a resolved target.

The ``CommandExecutor`` runs inside the page-context side of the
messaging layer.  For each page command it snapshots the elements the
command's ``TargetDescriptor`` names, asks the ``TargetResolver`` for the
winner, and applies the primitive action (click, read, set-value, wait,
extract) through the ``PageContext``.

Page-side failures never raise out of ``execute``: they become typed
``ActionResult`` failures.  The single exception is
``PageUnreachableError``, which propagates so that the message channel
can reconnect.

Typical usage::

    from webflow_agent.config.settings import get_default_settings
    from webflow_agent.core.command_executor import CommandExecutor

    executor = CommandExecutor(get_default_settings())
    result = executor.execute(context, command, timestamp=time.time())
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from webflow_agent.bridge.interface import (
    PageContext,
    PageUnreachableError,
    StaleElementError,
)
from webflow_agent.config.settings import Settings
from webflow_agent.core.target_resolver import TargetResolver
from webflow_agent.models.commands import (
    ActionResult,
    Command,
    CommandType,
    ErrorKind,
)
from webflow_agent.models.target import ResolutionResult, TargetDescriptor

logger = logging.getLogger(__name__)


def format_value(value: Any) -> str:
    """Render a command value as the string written into a form field.

    Integral floats lose their trailing ``.0`` so that ``132.0`` is
    written as ``"132"``.
    """
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class CommandExecutor:
    """Applies page commands to targets resolved in a page context.

    Args:
        settings: Global configuration (poll interval and default wait
            timeout).
        resolver: Target resolver.  A default one is built from
            *settings* when omitted.
        clock: Monotonic clock used for wait deadlines.
        sleep: Sleep function used between wait polls.
    """

    def __init__(
        self,
        settings: Settings,
        resolver: TargetResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._resolver = resolver or TargetResolver(settings)
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
    ) -> ActionResult:
        """Execute a page command.

        Args:
            context: The live page context to act in.
            command: A page command (``command.type.is_page_command``).
            timestamp: Unix timestamp to associate with the result.

        Returns:
            An ``ActionResult`` describing the outcome.

        Raises:
            PageUnreachableError: If the page context is torn down while
                the command runs.
        """
        if not command.type.is_page_command:
            return self._fail(
                command,
                ErrorKind.ACTION_FAILED,
                f"not a page command: {command.type.value}",
                retryable=False,
                timestamp=timestamp,
            )
        if command.target is None:
            return self._fail(
                command,
                ErrorKind.ACTION_FAILED,
                "missing target descriptor",
                retryable=False,
                timestamp=timestamp,
            )

        handler = self._DISPATCH[command.type]
        try:
            return handler(self, context, command, timestamp)
        except PageUnreachableError:
            raise
        except StaleElementError as exc:
            return self._fail(
                command, ErrorKind.NOT_FOUND, str(exc),
                retryable=True, timestamp=timestamp,
            )
        except Exception as exc:
            return self._fail(
                command, ErrorKind.ACTION_FAILED, str(exc),
                retryable=False, timestamp=timestamp,
            )

    # ------------------------------------------------------------------
    # Private handlers
    # ------------------------------------------------------------------

    def _execute_click(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
    ) -> ActionResult:
        """Resolve the target and dispatch a genuine click sequence."""
        resolution = self._resolve(context, command.target)
        if resolution.node is None:
            return self._not_found(command, resolution, timestamp)
        context.click(resolution.node.node_id)
        return self._succeed(command, None, timestamp)

    def _execute_read_value(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
    ) -> ActionResult:
        """Resolve the target and read its current value."""
        resolution = self._resolve(context, command.target)
        if resolution.node is None:
            return self._not_found(command, resolution, timestamp)
        value = context.read_value(resolution.node.node_id)
        return self._succeed(command, value, timestamp)

    def _execute_set_value(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
    ) -> ActionResult:
        """Resolve the target and assign ``command.value`` to it.

        The value is assigned through the native property setter and
        followed by ``input``/``change`` events (see
        ``PageContext.set_value``).
        """
        if command.value is None:
            return self._fail(
                command,
                ErrorKind.ACTION_FAILED,
                "missing required value",
                retryable=False,
                timestamp=timestamp,
            )
        resolution = self._resolve(context, command.target)
        if resolution.node is None:
            return self._not_found(command, resolution, timestamp)
        text = format_value(command.value)
        context.set_value(resolution.node.node_id, text)
        return self._succeed(command, text, timestamp)

    def _execute_wait_for_appearance(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
    ) -> ActionResult:
        return self._poll(context, command, timestamp, want_present=True)

    def _execute_wait_for_disappearance(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
    ) -> ActionResult:
        return self._poll(context, command, timestamp, want_present=False)

    def _execute_extract_records(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
    ) -> ActionResult:
        """Read every gated candidate into a record.

        Each record maps the requested fields to strings.  ``"text"``
        and ``"value"`` read the element's text and form value; ``"tag"``
        reads the tag name; any other field reads the attribute of that
        name.
        """
        descriptor = command.target
        snapshot = context.snapshot(descriptor.all_selectors())
        nodes = self._resolver.resolve_all(snapshot, descriptor)
        field_names = command.fields or ("text",)

        records: list[dict[str, str]] = []
        for node in nodes:
            record: dict[str, str] = {}
            for name in field_names:
                if name == "text":
                    record[name] = " ".join(node.text.split())
                elif name == "value":
                    record[name] = node.value or ""
                elif name == "tag":
                    record[name] = node.tag
                else:
                    record[name] = node.attributes.get(name, "")
            records.append(record)

        if not records:
            logger.warning("extraction of %s found no records",
                           descriptor.label())
        return self._succeed(command, records, timestamp)

    # ------------------------------------------------------------------
    # Dispatch table
    # ------------------------------------------------------------------

    _DISPATCH: dict[
        CommandType,
        Callable[[CommandExecutor, PageContext, Command, float], ActionResult],
    ] = {
        CommandType.CLICK: _execute_click,
        CommandType.READ_VALUE: _execute_read_value,
        CommandType.SET_VALUE: _execute_set_value,
        CommandType.WAIT_FOR_APPEARANCE: _execute_wait_for_appearance,
        CommandType.WAIT_FOR_DISAPPEARANCE: _execute_wait_for_disappearance,
        CommandType.EXTRACT_RECORDS: _execute_extract_records,
    }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve(
        self,
        context: PageContext,
        descriptor: TargetDescriptor,
    ) -> ResolutionResult:
        """Snapshot the descriptor's selectors and resolve against it."""
        snapshot = context.snapshot(descriptor.all_selectors())
        return self._resolver.resolve(snapshot, descriptor)

    def _poll(
        self,
        context: PageContext,
        command: Command,
        timestamp: float,
        want_present: bool,
    ) -> ActionResult:
        """Poll the resolver until the target is (or is not) present.

        Transient errors while polling are logged and ignored; only the
        deadline ends the wait with a failure.  A torn-down page context
        still propagates.
        """
        timeout = (
            command.timeout
            if command.timeout is not None
            else self._settings.default_wait_timeout_seconds
        )
        interval = self._settings.wait_poll_interval_seconds
        deadline = self._clock() + timeout
        polls = 0

        while True:
            polls += 1
            try:
                resolution = self._resolve(context, command.target)
                if resolution.found == want_present:
                    value = (
                        resolution.node.node_id
                        if resolution.node is not None else None
                    )
                    logger.debug(
                        "%s satisfied after %d polls",
                        command.describe(), polls,
                    )
                    return self._succeed(command, value, timestamp)
            except PageUnreachableError:
                raise
            except Exception as exc:
                logger.debug("transient polling error: %s", exc)

            if self._clock() >= deadline:
                state = "appear" if want_present else "disappear"
                return self._fail(
                    command,
                    ErrorKind.TIMEOUT,
                    f"{command.target.label()} did not {state} "
                    f"within {timeout:g}s",
                    retryable=True,
                    timestamp=timestamp,
                )
            self._sleep(interval)

    def _not_found(
        self,
        command: Command,
        resolution: ResolutionResult,
        timestamp: float,
    ) -> ActionResult:
        """Build a retryable not-found result with the rejection trail."""
        details = {
            "candidates": list(resolution.candidates),
            "rejections": [
                {"node_id": r.node_id, "reason": r.reason, "detail": r.detail}
                for r in resolution.rejections
            ],
        }
        return self._fail(
            command,
            ErrorKind.NOT_FOUND,
            f"{command.target.label()}: {resolution.summary()}",
            retryable=True,
            timestamp=timestamp,
            details=details,
        )

    def _succeed(
        self,
        command: Command,
        value: Any,
        timestamp: float,
    ) -> ActionResult:
        logger.debug("command %s succeeded", command.type.value)
        return ActionResult.ok(value, timestamp)

    def _fail(
        self,
        command: Command,
        kind: ErrorKind,
        error: str,
        retryable: bool,
        timestamp: float,
        details: dict[str, Any] | None = None,
    ) -> ActionResult:
        """Build a failed ``ActionResult``.

        Args:
            command: The command that failed.
            kind: Failure category.
            error: Human-readable error description.
            retryable: Whether repeating the command may succeed.
            timestamp: Unix timestamp for the result.
            details: Optional structured diagnostics.

        Returns:
            An ``ActionResult`` with ``success=False``.
        """
        logger.error(
            "command %s failed (%s): %s",
            command.type.value, kind.value, error,
        )
        return ActionResult.failure(
            kind, error, retryable, timestamp=timestamp, details=details,
        )
