"""Messaging and reconnection layer between orchestrator and page.

The ``MessageChannel`` delivers a command to the page context currently
registered under a logical id and returns the executor's
``ActionResult``.  It owns the single retry/back-off loop of the system:

1. Deliver the command to the registered context.
2. If the context is unreachable (typically because the previous step
   navigated), re-establish a fresh context at the same location, wait
   for its document to finish loading, and retry against it.
3. Retry retryable failures with linearly growing spacing
   (``base_delay * attempt``) until the step's attempt budget is spent,
   then surface the last error.

Steps whose navigation is an *expected* side effect are sent with
``reconnect=False``: when the context goes away while the action is
being dispatched, the ``UNREACHABLE`` result is returned to the caller
immediately (with ``details["action_dispatched"]`` set) so the click
that caused the navigation is never repeated.  A context that was
already gone before the action was dispatched is re-established and the
command retried as for any other step.

Typical usage::

    channel = MessageChannel(bridge, executor, classifier, settings)
    result = channel.send("main", command, step.retry_policy)
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace

from webflow_agent.bridge.interface import (
    PageBridge,
    PageContext,
    PageUnreachableError,
)
from webflow_agent.config.settings import Settings
from webflow_agent.core.command_executor import CommandExecutor
from webflow_agent.core.error_classifier import ErrorClassifier, RecoveryAction
from webflow_agent.models.commands import ActionResult, Command, ErrorKind
from webflow_agent.models.workflow import RetryPolicy

logger = logging.getLogger(__name__)


class MessageChannel:
    """Delivers commands to page contexts and recovers from teardown.

    Args:
        bridge: Owner of the page contexts.
        executor: Page-side command executor.
        classifier: Decides between retry, reconnect and abort.
        settings: Global configuration (default attempts, back-off base,
            load timeouts).
        cancel_event: Cooperative cancellation flag.  Back-off sleeps
            wake immediately when it is set and no further attempt is
            made.
        clock: Monotonic clock used for load deadlines.
    """

    def __init__(
        self,
        bridge: PageBridge,
        executor: CommandExecutor,
        classifier: ErrorClassifier,
        settings: Settings,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bridge = bridge
        self._executor = executor
        self._classifier = classifier
        self._settings = settings
        self._cancel = cancel_event or threading.Event()
        self._clock = clock
        self._reconnects: int = 0

    @property
    def reconnects(self) -> int:
        """Number of page contexts re-established so far."""
        return self._reconnects

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def default_policy(self) -> RetryPolicy:
        """Retry policy built from the global settings."""
        return RetryPolicy(
            max_attempts=self._settings.send_max_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
        )

    def send(
        self,
        context_id: str,
        command: Command,
        policy: RetryPolicy | None = None,
        reconnect: bool = True,
    ) -> ActionResult:
        """Deliver *command* and return its outcome.

        Args:
            context_id: Logical page context to deliver to.
            command: The page command.
            policy: Attempt budget and back-off shape.  Defaults to
                ``default_policy()``.
            reconnect: When ``False`` a context lost while the action
                was being dispatched is returned to the caller as an
                ``UNREACHABLE`` result without reconnecting or retrying.

        Returns:
            The first successful result, or the last failure once the
            attempt budget is exhausted.  ``attempts`` records how many
            attempts were consumed.
        """
        policy = policy or self.default_policy()
        last: ActionResult | None = None

        for attempt in range(1, policy.max_attempts + 1):
            result = self._deliver(context_id, command)
            result = replace(result, attempts=attempt)
            if result.success:
                if attempt > 1:
                    logger.info(
                        "%s succeeded on attempt %d/%d",
                        command.describe(), attempt, policy.max_attempts,
                    )
                return result
            last = result

            if (
                result.error_kind is ErrorKind.UNREACHABLE
                and not reconnect
                and result.details.get("action_dispatched")
            ):
                logger.info(
                    "%s: page context went away (%s)",
                    command.describe(), result.error,
                )
                return result

            classification = self._classifier.classify(
                result.error_kind,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                retryable=result.retryable,
                step_description=command.describe(),
            )
            if not self._classifier.should_continue(classification):
                logger.warning("%s", classification.description)
                break

            logger.info(
                "%s: attempt %d/%d failed: %s",
                command.describe(),
                attempt,
                policy.max_attempts,
                classification.description,
            )
            if self._pause(policy.delay_for(attempt)):
                return replace(
                    ActionResult.failure(
                        ErrorKind.CANCELLED,
                        "cancelled while retrying",
                        retryable=False,
                        timestamp=time.time(),
                    ),
                    attempts=attempt,
                )

            if classification.recovery_action is RecoveryAction.RECONNECT:
                try:
                    self.reconnect(context_id)
                except PageUnreachableError as exc:
                    logger.warning("reconnect failed: %s", exc)
                    last = replace(
                        ActionResult.failure(
                            ErrorKind.UNREACHABLE, str(exc), retryable=True,
                            timestamp=time.time(),
                        ),
                        attempts=attempt,
                    )

        assert last is not None
        return last

    def reconnect(
        self,
        context_id: str,
        url: str | None = None,
    ) -> PageContext:
        """Re-establish a page context and wait for its document to load.

        Args:
            context_id: Logical page context to re-establish.
            url: Location to open.  ``None`` keeps the current location.

        Returns:
            The fresh, loaded context.

        Raises:
            PageUnreachableError: If the context cannot be created or
                its document does not finish loading in time.
        """
        self._reconnects += 1
        logger.info(
            "re-establishing page context %s%s",
            context_id, f" at {url}" if url else "",
        )
        context = self._bridge.reestablish(context_id, url)
        if not self.wait_for_load(context):
            raise PageUnreachableError(
                context_id,
                "document did not finish loading within "
                f"{self._settings.page_load_timeout_seconds:g}s",
            )
        return context

    def current_url(self, context_id: str) -> str | None:
        """Return the location of the registered context, if reachable."""
        try:
            return self._bridge.get_context(context_id).url()
        except PageUnreachableError as exc:
            logger.debug("no current location: %s", exc)
            return None

    def wait_for_load(self, context: PageContext) -> bool:
        """Poll the document ready state until it is ``"complete"``.

        Errors while the document is still being replaced are ignored.

        Returns:
            ``True`` once loaded, ``False`` on timeout or cancellation.
        """
        deadline = self._clock() + self._settings.page_load_timeout_seconds
        while True:
            try:
                if context.ready_state() == "complete":
                    return True
            except PageUnreachableError as exc:
                logger.debug("still loading: %s", exc)
            if self._clock() >= deadline:
                return False
            if self._pause(self._settings.load_poll_interval_seconds):
                return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _deliver(self, context_id: str, command: Command) -> ActionResult:
        """Run one delivery attempt, mapping teardown to ``UNREACHABLE``."""
        try:
            context = self._bridge.get_context(context_id)
            return self._executor.execute(context, command, time.time())
        except PageUnreachableError as exc:
            return ActionResult.failure(
                ErrorKind.UNREACHABLE,
                str(exc),
                retryable=True,
                timestamp=time.time(),
                details={"action_dispatched": exc.action_dispatched},
            )

    def _pause(self, seconds: float) -> bool:
        """Sleep cooperatively.  Returns ``True`` if cancelled."""
        if seconds > 0:
            self._cancel.wait(seconds)
        return self._cancel.is_set()

    def __repr__(self) -> str:
        """Human-readable summary."""
        return (
            f"MessageChannel(max_attempts={self._settings.send_max_attempts}, "
            f"reconnects={self._reconnects})"
        )
