"""Diagnostic log entries and workflow state events.

A ``DiagnosticLogEntry`` records something that happened during a run
(a step starting, a target resolving, a reconnection) with a timestamp
and a structured payload.  Entries are appended to the bounded log in
the persistent state store and read by an external log viewer.

A ``WorkflowStateEvent`` is emitted to status observers each time the
orchestrator commits a new ``WorkflowState``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from webflow_agent.models.workflow import WorkflowState


@dataclass(frozen=True)
class DiagnosticLogEntry:
    """A single diagnostic log entry.

    Attributes:
        timestamp: Unix timestamp when the entry was created.
        message: Human-readable message.
        data: Optional structured payload.  Common keys include:

            * ``step`` (int): Step index the entry refers to.
            * ``url`` (str): Document location at the time.
            * ``candidates`` (list): Candidate ids seen by the resolver.
            * ``rejections`` (list): Rejection trail on not-found.
    """

    timestamp: float
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-friendly dictionary."""
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DiagnosticLogEntry:
        """Rebuild an entry from its serialised form."""
        return cls(
            timestamp=float(raw.get("timestamp", 0.0)),
            message=str(raw.get("message", "")),
            data=dict(raw.get("data") or {}),
        )


@dataclass(frozen=True)
class WorkflowStateEvent:
    """Notification that a new ``WorkflowState`` was committed.

    Attributes:
        state: The committed (already persisted) snapshot.
        previous: The snapshot it replaced.
    """

    state: WorkflowState
    previous: WorkflowState
