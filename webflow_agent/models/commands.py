"""Commands and action results exchanged with page contexts.

A ``Command`` describes *what* to do (click a target, read or set a
value, wait for a target to appear or disappear) together with the
``TargetDescriptor`` that says *where*.  Service commands (fetching or
applying values through the pricing service, navigation, extraction and
export) share the same payload type so that a plan is uniform data.

An ``ActionResult`` is the normalized outcome of executing a command:
either success (optionally carrying a value) or a typed failure with a
human-readable cause and a retryable flag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from webflow_agent.models.target import TargetDescriptor


class CommandType(Enum):
    """The kind of primitive a command performs.

    Page commands run inside a page context through the message channel.
    Service commands are run by the orchestrator itself.

    Attributes:
        CLICK: Synthesize a genuine pointer/mouse click on the target.
        READ_VALUE: Read the target's form value (or text).
        SET_VALUE: Assign a value through the native setter and notify.
        WAIT_FOR_APPEARANCE: Poll until the target resolves.
        WAIT_FOR_DISAPPEARANCE: Poll until the target no longer resolves.
        EXTRACT_RECORDS: Read every surviving candidate into records.
        NAVIGATE: Re-materialize the page context at a URL.
        FETCH_VALUES: Read ``{min, current, max}`` from the pricing
            service.
        APPLY_VALUE: Write a value through the pricing service.
        EXPORT: Hand extracted records to the export sink.
    """

    CLICK = "click"
    READ_VALUE = "read_value"
    SET_VALUE = "set_value"
    WAIT_FOR_APPEARANCE = "wait_for_appearance"
    WAIT_FOR_DISAPPEARANCE = "wait_for_disappearance"
    EXTRACT_RECORDS = "extract_records"
    NAVIGATE = "navigate"
    FETCH_VALUES = "fetch_values"
    APPLY_VALUE = "apply_value"
    EXPORT = "export"

    @property
    def is_page_command(self) -> bool:
        """Whether the command executes inside a page context."""
        return self in _PAGE_COMMANDS

    @property
    def needs_target(self) -> bool:
        """Whether the command requires a ``TargetDescriptor``."""
        return self in _TARGETED_COMMANDS


_PAGE_COMMANDS = frozenset({
    CommandType.CLICK,
    CommandType.READ_VALUE,
    CommandType.SET_VALUE,
    CommandType.WAIT_FOR_APPEARANCE,
    CommandType.WAIT_FOR_DISAPPEARANCE,
    CommandType.EXTRACT_RECORDS,
})

_TARGETED_COMMANDS = _PAGE_COMMANDS


class ErrorKind(Enum):
    """Failure taxonomy shared by every layer.

    Attributes:
        NOT_FOUND: Resolution found no qualifying candidate.
        TIMEOUT: A wait exceeded its bound.
        UNREACHABLE: The page context is gone (usually navigation).
        WRONG_PHASE: The current document does not belong to the phase
            the run expects.
        UPSTREAM_ERROR: The external data service reported failure.
        SERVICE_UNAVAILABLE: The external data service failed
            transiently (HTTP 5xx or transport error).
        ACTION_FAILED: The page rejected the action or the command
            payload was invalid.
        CANCELLED: The run was cancelled before the command started.
    """

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    WRONG_PHASE = "wrong_phase"
    UPSTREAM_ERROR = "upstream_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    ACTION_FAILED = "action_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Command:
    """An instruction understood by the command executor or orchestrator.

    Typical fields per command type:

    * ``CLICK``: ``target``.
    * ``READ_VALUE``: ``target``, optional ``store_as``.
    * ``SET_VALUE``: ``target`` and either ``value`` or ``value_from``
      (a working-variable name) plus optional ``offset``.
    * ``WAIT_FOR_*``: ``target``, optional ``timeout``.
    * ``EXTRACT_RECORDS``: ``target``, ``fields`` (attribute names;
      ``"text"`` and ``"value"`` are special), ``store_as``.
    * ``NAVIGATE``: ``url`` or ``url_from``.
    * ``FETCH_VALUES``: ``entity_id`` or ``entity_from``, ``store_as``.
    * ``APPLY_VALUE``: ``entity_id``/``entity_from`` and
      ``value``/``value_from`` plus optional ``offset``.
    * ``EXPORT``: ``records_from``, ``name``.

    Attributes:
        type: The primitive to perform.
        target: Logical target description for page commands.
        value: Literal value for set/apply commands.
        value_from: Working-variable name supplying the value.
        offset: Numeric offset added to a ``value_from`` value.
        timeout: Wait bound in seconds for wait commands.
        store_as: Working-variable name that receives the result.
        url: Navigation target.
        url_from: Working-variable name supplying the URL.
        entity_id: Pricing-service entity identifier.
        entity_from: Working-variable name supplying the entity id.
        fields: Record fields for extraction.
        records_from: Working-variable name holding records to export.
        name: Artifact name for exports.
    """

    type: CommandType
    target: TargetDescriptor | None = None
    value: Any = None
    value_from: str = ""
    offset: float = 0.0
    timeout: float | None = None
    store_as: str = ""
    url: str = ""
    url_from: str = ""
    entity_id: str = ""
    entity_from: str = ""
    fields: tuple[str, ...] = ()
    records_from: str = ""
    name: str = ""

    def describe(self) -> str:
        """Short human-readable description for logs and status text."""
        if self.target is not None:
            return f"{self.type.value} {self.target.label()}"
        if self.type is CommandType.NAVIGATE:
            return f"navigate {self.url or '$' + self.url_from}"
        return self.type.value


@dataclass(frozen=True)
class ActionResult:
    """Normalized outcome of executing a ``Command``.

    Attributes:
        success: Whether the command completed.
        value: Result payload (read value, extracted records, fetched
            values).  ``None`` for commands without output.
        error: Human-readable cause.  Empty on success.
        error_kind: Failure category.  ``None`` on success.
        retryable: Whether repeating the same command may succeed.
        attempts: Delivery attempts consumed (filled by the channel).
        timestamp: Unix timestamp when the result was produced.
        details: Structured diagnostics (candidate ids and the rejection
            trail on not-found).
    """

    success: bool
    value: Any = None
    error: str = ""
    error_kind: ErrorKind | None = None
    retryable: bool = False
    attempts: int = 1
    timestamp: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, value: Any = None, timestamp: float = 0.0) -> ActionResult:
        """Build a success result."""
        return cls(success=True, value=value, timestamp=timestamp)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        error: str,
        retryable: bool,
        timestamp: float = 0.0,
        details: dict[str, Any] | None = None,
    ) -> ActionResult:
        """Build a typed failure result."""
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            retryable=retryable,
            timestamp=timestamp,
            details=dict(details or {}),
        )
