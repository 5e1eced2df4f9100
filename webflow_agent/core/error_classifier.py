"""Classifies command failures and determines recovery strategies.

The error classifier receives the ``ErrorKind`` of a failed delivery or
execution together with the attempt counter and recommends what the
message channel should do next.  It is a pure-logic module with no side
effects: given the same inputs it always returns the same
classification.

This module depends only on ``webflow_agent.config.settings`` and
``webflow_agent.models.commands``.

Typical usage::

    from webflow_agent.config.settings import get_default_settings
    from webflow_agent.core.error_classifier import ErrorClassifier

    classifier = ErrorClassifier(get_default_settings())
    result = classifier.classify(ErrorKind.NOT_FOUND, attempt=1, max_attempts=3)
    if classifier.should_continue(result):
        # retry after back-off
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from webflow_agent.config.settings import Settings
from webflow_agent.models.commands import ErrorKind


class RecoveryAction(Enum):
    """Strategy for recovering from a failed attempt."""

    RETRY = "retry"
    RECONNECT = "reconnect"
    ABORT = "abort"


@dataclass
class ErrorClassification:
    """Result of classifying a failed attempt.

    Attributes:
        kind: The failure category.
        recovery_action: Recommended recovery strategy.
        retryable: Whether any further attempt may succeed.
        description: Human-readable explanation of the classification.
    """

    kind: ErrorKind
    recovery_action: RecoveryAction
    retryable: bool
    description: str


# Escalation order used by ``ErrorClassifier.escalate``.
_ESCALATION_ORDER: dict[RecoveryAction, RecoveryAction] = {
    RecoveryAction.RETRY: RecoveryAction.ABORT,
    RecoveryAction.RECONNECT: RecoveryAction.ABORT,
    RecoveryAction.ABORT: RecoveryAction.ABORT,
}

# Kinds that are never worth another attempt.
_FATAL_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.WRONG_PHASE,
    ErrorKind.UPSTREAM_ERROR,
    ErrorKind.CANCELLED,
})


class ErrorClassifier:
    """Classifies failures and determines recovery strategies.

    The classifier is stateless: every call to ``classify`` is
    independent.  The ``attempt`` and ``max_attempts`` arguments carry
    the retry history so the classifier can escalate once a step's
    budget is spent.

    Args:
        settings: Application-wide settings.  Kept for a constructor
            signature consistent with other core components.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    # -- public API -----------------------------------------------------------

    def classify(
        self,
        kind: ErrorKind | None,
        attempt: int,
        max_attempts: int,
        retryable: bool = True,
        step_description: str = "",
    ) -> ErrorClassification:
        """Classify a failed attempt and recommend a recovery strategy.

        Args:
            kind: Failure category from the ``ActionResult``.  ``None``
                is treated as ``ACTION_FAILED``.
            attempt: 1-based index of the attempt that just failed.
            max_attempts: Attempt budget for the step.
            retryable: The executor's own verdict on the failure.
            step_description: Optional label included in the
                description for logging.

        Returns:
            An ``ErrorClassification`` with the recommended action.
        """
        kind = kind or ErrorKind.ACTION_FAILED
        ctx = f" during '{step_description}'" if step_description else ""
        exhausted = attempt >= max_attempts

        if kind in _FATAL_KINDS:
            return ErrorClassification(
                kind=kind,
                recovery_action=RecoveryAction.ABORT,
                retryable=False,
                description=f"{kind.value}{ctx}; not retryable",
            )

        if kind is ErrorKind.UNREACHABLE:
            classification = ErrorClassification(
                kind=kind,
                recovery_action=RecoveryAction.RECONNECT,
                retryable=True,
                description=(
                    f"Page context unreachable{ctx}; re-establishing"
                ),
            )
        elif retryable:
            classification = ErrorClassification(
                kind=kind,
                recovery_action=RecoveryAction.RETRY,
                retryable=True,
                description=(
                    f"{kind.value}{ctx}; retrying "
                    f"(attempt {attempt}/{max_attempts})"
                ),
            )
        else:
            return ErrorClassification(
                kind=kind,
                recovery_action=RecoveryAction.ABORT,
                retryable=False,
                description=f"{kind.value}{ctx}; page rejected the action",
            )

        if exhausted:
            return self.escalate(classification)
        return classification

    def should_continue(self, classification: ErrorClassification) -> bool:
        """Return ``True`` unless the recommended action is ``ABORT``."""
        return classification.recovery_action is not RecoveryAction.ABORT

    def escalate(
        self,
        classification: ErrorClassification,
    ) -> ErrorClassification:
        """Escalate a classification to the next severity level.

        ``RETRY`` and ``RECONNECT`` escalate to ``ABORT``; ``ABORT``
        stays ``ABORT``.

        Args:
            classification: The classification to escalate.

        Returns:
            A *new* ``ErrorClassification``.  The original is not
            modified.
        """
        new_action = _ESCALATION_ORDER[classification.recovery_action]
        return ErrorClassification(
            kind=classification.kind,
            recovery_action=new_action,
            retryable=False,
            description=(
                f"Escalated from {classification.recovery_action.value}"
                f" to {new_action.value}: {classification.description}"
            ),
        )
