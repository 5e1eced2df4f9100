"""Workflow data models: steps, phases, plans, and the run record.

These dataclasses are shared between the plan loader (which builds
plans), the message channel (which reads retry policies), and the
orchestrator (which owns the run record).  Keeping them in the models
layer avoids circular imports between core modules.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from webflow_agent.models.commands import Command


class BackoffShape(Enum):
    """Spacing between delivery attempts.

    Attributes:
        LINEAR: ``base * attempt``.
        EXPONENTIAL: ``base * 2 ** (attempt - 1)``.
        CONSTANT: ``base`` every time.
    """

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    CONSTANT = "constant"


@dataclass(frozen=True)
class RetryPolicy:
    """Per-step delivery/retry contract.

    Attributes:
        max_attempts: Total attempts across delivery and execution
            failures (must be >= 1).
        base_delay: Base delay in seconds fed to ``backoff``.
        backoff: Growth shape of the delay.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff: BackoffShape = BackoffShape.LINEAR

    def __post_init__(self) -> None:
        """Validate the attempt count and delay."""
        if self.max_attempts < 1:
            raise ValueError(
                f"max_attempts must be >= 1, got {self.max_attempts}"
            )
        if self.base_delay < 0:
            raise ValueError(
                f"base_delay must be >= 0, got {self.base_delay}"
            )

    def delay_for(self, attempt: int) -> float:
        """Return the pause before the attempt following *attempt*.

        Args:
            attempt: 1-based index of the attempt that just failed.

        Returns:
            Delay in seconds.
        """
        if self.backoff is BackoffShape.EXPONENTIAL:
            return self.base_delay * (2 ** (attempt - 1))
        if self.backoff is BackoffShape.CONSTANT:
            return self.base_delay
        return self.base_delay * attempt


@dataclass(frozen=True)
class Step:
    """A single unit of the workflow plan.

    Attributes:
        id: Position of the step within the plan (0-based).
        command: Instruction payload.
        post_delay: Minimum pause in seconds after success.
        retry_policy: Delivery/retry contract for this step.
        on_disconnect_expected: ``True`` for steps known to trigger a
            page navigation; a mid-command disconnection then counts
            as success.
        phase: Name of the phase this step belongs to.
        description: Human-readable summary for status messages.
    """

    id: int
    command: Command
    post_delay: float = 0.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    on_disconnect_expected: bool = False
    phase: str = ""
    description: str = ""

    def label(self) -> str:
        """Human-readable label for status messages."""
        return self.description or self.command.describe()


@dataclass(frozen=True)
class Phase:
    """A plan sub-range tied to a specific origin/document.

    Attributes:
        name: Phase identifier referenced by ``Step.phase``.
        start_step: First step index of the phase.
        url_pattern: Regular expression the document URL must match
            (searched, not anchored).  Empty means any document.
    """

    name: str
    start_step: int
    url_pattern: str = ""

    def accepts(self, url: str) -> bool:
        """Check whether a document URL is consistent with this phase."""
        if not self.url_pattern:
            return True
        return re.search(self.url_pattern, url) is not None


@dataclass(frozen=True)
class WorkflowPlan:
    """An ordered, immutable sequence of steps partitioned into phases.

    Attributes:
        name: Plan identifier.
        steps: Ordered steps; ``steps[i].id == i``.
        phases: Phases ordered by ``start_step``.
        start_url: Document the run starts from.
        variables: Initial working variables seeded on a fresh start.
    """

    name: str
    steps: tuple[Step, ...]
    phases: tuple[Phase, ...] = ()
    start_url: str = ""
    variables: dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate step numbering and phase references."""
        for index, step in enumerate(self.steps):
            if step.id != index:
                raise ValueError(
                    f"step at position {index} has id {step.id}"
                )
        names = {p.name for p in self.phases}
        for step in self.steps:
            if step.phase and step.phase not in names:
                raise ValueError(
                    f"step {step.id} references unknown phase {step.phase!r}"
                )

    @property
    def total_steps(self) -> int:
        """Number of steps in the plan."""
        return len(self.steps)

    def phase_for_step(self, index: int) -> Phase | None:
        """Return the phase that step *index* falls into.

        The explicit ``Step.phase`` wins; otherwise the last phase whose
        ``start_step`` is <= *index* is used.
        """
        if 0 <= index < len(self.steps) and self.steps[index].phase:
            for phase in self.phases:
                if phase.name == self.steps[index].phase:
                    return phase
        found: Phase | None = None
        for phase in sorted(self.phases, key=lambda p: p.start_step):
            if phase.start_step <= index:
                found = phase
        return found

    def phase_for_url(self, url: str) -> Phase | None:
        """Return the first phase (by start step) that accepts *url*.

        Phases without a URL pattern are only returned when no
        pattern-bearing phase matches.
        """
        fallback: Phase | None = None
        for phase in sorted(self.phases, key=lambda p: p.start_step):
            if not phase.url_pattern:
                if fallback is None:
                    fallback = phase
                continue
            if phase.accepts(url):
                return phase
        return fallback


class WorkflowStatus(Enum):
    """Lifecycle status of a workflow run.

    Attributes:
        IDLE: No run in progress.
        RUNNING: Steps are being executed.
        SUCCESS: Every step completed.
        ERROR: A step failed; the run halted at ``current_step``.
        CANCELLED: The run was cancelled cooperatively.
    """

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


# Allowed status transitions.  Idle -> Running is start/resume,
# Error/Cancelled -> Idle is an explicit reset.
_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.IDLE: frozenset({WorkflowStatus.RUNNING}),
    WorkflowStatus.RUNNING: frozenset({
        WorkflowStatus.RUNNING,
        WorkflowStatus.SUCCESS,
        WorkflowStatus.ERROR,
        WorkflowStatus.CANCELLED,
    }),
    WorkflowStatus.SUCCESS: frozenset({WorkflowStatus.IDLE}),
    WorkflowStatus.ERROR: frozenset({WorkflowStatus.IDLE}),
    WorkflowStatus.CANCELLED: frozenset({WorkflowStatus.IDLE}),
}


def can_transition(current: WorkflowStatus, new: WorkflowStatus) -> bool:
    """Check whether a status transition is allowed."""
    return new in _TRANSITIONS[current]


@dataclass(frozen=True)
class WorkflowState:
    """The persisted run record.

    Instances are immutable snapshots; the orchestrator replaces its
    record on every mutation, so observers never see partial states.

    Attributes:
        status: Current lifecycle status.
        current_step: Index into the plan of the next step to run.
        message: Human-readable status text.
        total_steps: Number of steps in the plan.
        plan_name: Name of the plan being run.
        updated_at: Unix timestamp of the last mutation.
    """

    status: WorkflowStatus = WorkflowStatus.IDLE
    current_step: int = 0
    message: str = "Ready to start."
    total_steps: int = 0
    plan_name: str = ""
    updated_at: float = 0.0
