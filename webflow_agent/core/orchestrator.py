"""Orchestrator: persisted, resumable step sequencer for a workflow plan.

The Orchestrator owns the single ``WorkflowState`` record of a run and
drives the plan one step at a time:

1. At the top of every step, check the cooperative cancellation flag
   (in-process event and the persisted ``workflow_cancelled`` key).
2. Bind working variables into the step's command (``value_from``,
   ``url_from``, ``entity_from``).
3. Execute the command: page commands through the ``MessageChannel``,
   service commands (navigate, fetch/apply values, export) directly,
   retrying transient failures under the step's retry policy.
4. On success apply the step's ``post_delay``, persist
   ``current_step += 1`` and continue.  On failure persist ``ERROR``
   with ``"Error at step N: <cause>"`` and halt.  Failed steps are never
   skipped.

A step flagged ``on_disconnect_expected`` treats a disconnection raised
while its action was being dispatched as success: the navigation was the
step's side effect.  The orchestrator then re-establishes the page
context, waits for the new document, and checks it belongs to the phase
of the next step.  A context that was already gone before dispatch is
recovered and the action delivered like any other step.

Every mutation of the run record is persisted to the ``StateStore``
before observers are notified, so observers only ever see committed
snapshots.

Typical usage::

    orchestrator = Orchestrator(
        plan=plan,
        channel=channel,
        store=store,
        settings=settings,
        pricing=pricing_client,
        export_sink=CsvExportSink(settings),
        cancel_event=cancel_event,
    )
    orchestrator.subscribe(lambda event: print(event.state.message))
    final = orchestrator.start()

Dependencies:
    * ``message_channel`` - delivers page commands, reconnects
    * ``state_store`` - run record, variables, cancel flag, diagnostic log
    * ``error_classifier`` - retry decisions for service commands
    * ``pricing_client`` - fetch/apply values on the external service
    * ``export_sink`` - artifacts from extracted records
    * ``config.settings`` - configuration
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from webflow_agent.bridge.interface import PageUnreachableError
from webflow_agent.config.settings import Settings
from webflow_agent.core.error_classifier import ErrorClassifier
from webflow_agent.core.export_sink import ExportSink
from webflow_agent.core.message_channel import MessageChannel
from webflow_agent.core.pricing_client import PricingClient, UpstreamError
from webflow_agent.core.state_store import (
    CANCELLED_KEY,
    LOCATION_KEY,
    STATE_KEY,
    VARIABLES_KEY,
    DiagnosticLog,
    StateStore,
)
from webflow_agent.core.target_resolver import parse_numeric
from webflow_agent.models.commands import (
    ActionResult,
    Command,
    CommandType,
    ErrorKind,
)
from webflow_agent.models.events import WorkflowStateEvent
from webflow_agent.models.workflow import (
    Step,
    WorkflowPlan,
    WorkflowState,
    WorkflowStatus,
    can_transition,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[WorkflowStateEvent], None]


class WrongPhaseError(Exception):
    """The current document does not belong to the expected phase."""


def _describe(exc: Exception) -> str:
    # KeyError repr-quotes its message.
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    return str(exc)


class Orchestrator:
    """Drives a ``WorkflowPlan`` and owns its persisted run record.

    All collaborators are injected via the constructor.  The
    orchestrator contains no browser or HTTP code of its own.

    Args:
        plan: The immutable plan to run.
        channel: Messaging layer used for page commands.
        store: Persistent state store.
        settings: Global configuration.
        pricing: Pricing service client for ``FETCH_VALUES`` and
            ``APPLY_VALUE``.  May be ``None`` if the plan uses neither.
        export_sink: Sink for ``EXPORT``.  May be ``None`` if unused.
        context_id: Logical page context the plan runs in.
        classifier: Decides whether a failed service command is retried.
            Built from *settings* when omitted.
        cancel_event: Cooperative cancellation flag, shared with the
            channel so back-off sleeps wake on cancel.
        clock: Wall clock for ``updated_at`` timestamps.
    """

    def __init__(
        self,
        plan: WorkflowPlan,
        channel: MessageChannel,
        store: StateStore,
        settings: Settings,
        pricing: PricingClient | None = None,
        export_sink: ExportSink | None = None,
        context_id: str = "main",
        classifier: ErrorClassifier | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._plan = plan
        self._channel = channel
        self._store = store
        self._settings = settings
        self._pricing = pricing
        self._export_sink = export_sink
        self._context_id = context_id
        self._classifier = classifier or ErrorClassifier(settings)
        self._cancel = cancel_event or threading.Event()
        self._clock = clock
        self._log = DiagnosticLog(store, clock)

        self._lock = threading.Lock()
        self._listeners: list[StateListener] = []
        self._active = False
        self._thread: threading.Thread | None = None
        self._variables: dict[str, Any] = {}
        self._state = self._restore_state()

    # ------------------------------------------------------------------
    # Status observer interface
    # ------------------------------------------------------------------

    @property
    def state(self) -> WorkflowState:
        """The last committed run record."""
        with self._lock:
            return self._state

    @property
    def plan(self) -> WorkflowPlan:
        return self._plan

    @property
    def context_id(self) -> str:
        return self._context_id

    @property
    def variables(self) -> dict[str, Any]:
        """A copy of the current working variables."""
        return dict(self._variables)

    @property
    def is_active(self) -> bool:
        """Whether a run is executing in this process."""
        with self._lock:
            return self._active

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register *listener* for committed state changes.

        Returns:
            A callable that unregisters the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Control API
    # ------------------------------------------------------------------

    def start(self) -> WorkflowState:
        """Run the plan from step 0 with fresh working variables.

        A finished, failed or cancelled run is reset first.

        Returns:
            The final committed state.

        Raises:
            RuntimeError: If a run is already executing.
        """
        self._claim()
        try:
            self._prepare(0, fresh=True, message="Workflow started.")
            self._log.log(
                "Workflow started",
                plan=self._plan.name,
                total_steps=self._plan.total_steps,
            )
            if self._plan.start_url:
                try:
                    self._channel.reconnect(
                        self._context_id, self._plan.start_url,
                    )
                    self._store.set(LOCATION_KEY, self._plan.start_url)
                except PageUnreachableError as exc:
                    self._halt(0, f"[{ErrorKind.UNREACHABLE.value}] {exc}")
                    return self.state
            self._run()
        finally:
            self._release()
        return self.state

    def resume(
        self,
        from_step: int | None = None,
        current_url: str | None = None,
    ) -> WorkflowState:
        """Resume the plan at *from_step*.

        When *from_step* is omitted it is derived from the current
        document: the phase whose URL pattern matches it gives the
        start step (or the stored failed step when that lies inside the
        same phase).  The document must belong to the phase of the
        resume step; otherwise the run fails with ``WRONG_PHASE``.
        Steps before *from_step* are never executed.

        Args:
            from_step: Step index to resume at.
            current_url: Location of the current document.  Queried
                from the page context when omitted.

        Returns:
            The final committed state.

        Raises:
            RuntimeError: If a run is already executing.
            ValueError: If *from_step* is outside the plan.
        """
        self._claim()
        try:
            url = (
                current_url if current_url is not None
                else self._channel.current_url(self._context_id)
            )
            if from_step is None:
                from_step = self.derive_resume_step(url)
            if not 0 <= from_step < self._plan.total_steps:
                raise ValueError(
                    f"from_step {from_step} outside plan of "
                    f"{self._plan.total_steps} steps"
                )

            self._prepare(
                from_step, fresh=False, message=f"Resuming at step {from_step}.",
            )
            self._log.log("Workflow resumed", step=from_step, url=url)
            try:
                self._validate_phase(from_step, url)
            except WrongPhaseError as exc:
                self._halt(from_step, f"[{ErrorKind.WRONG_PHASE.value}] {exc}")
                return self.state
            self._run()
        finally:
            self._release()
        return self.state

    def cancel(self) -> None:
        """Request cooperative cancellation.

        The running loop observes the flag before the next step begins;
        an in-flight primitive action is not aborted.  Without an active
        run in this process, a persisted ``RUNNING`` record is marked
        ``CANCELLED`` directly.
        """
        self._cancel.set()
        self._store.set(CANCELLED_KEY, True)
        self._log.log("Cancellation requested", step=self.state.current_step)
        if not self.is_active and self.state.status is WorkflowStatus.RUNNING:
            self._commit(
                status=WorkflowStatus.CANCELLED,
                message=f"Cancelled at step {self.state.current_step}.",
            )

    def reset(self) -> WorkflowState:
        """Return to ``IDLE`` and clear the persisted run.

        The diagnostic log is kept.

        Raises:
            RuntimeError: If a run is executing.
        """
        if self.is_active:
            raise RuntimeError("cannot reset while a run is executing")
        if self._state.status is not WorkflowStatus.IDLE:
            self._commit(
                status=WorkflowStatus.IDLE,
                current_step=0,
                message="Ready to start.",
            )
        self._store.remove(STATE_KEY)
        self._store.remove(VARIABLES_KEY)
        self._store.remove(LOCATION_KEY)
        self._store.remove(CANCELLED_KEY)
        self._variables = {}
        self._cancel.clear()
        self._log.log("Workflow reset")
        return self.state

    def start_in_background(
        self,
        resume: bool = False,
        from_step: int | None = None,
        current_url: str | None = None,
    ) -> threading.Thread:
        """Run ``start`` (or ``resume``) in a daemon thread.

        Status queries and ``cancel`` stay responsive while the run
        executes.  Use ``join`` to wait for completion.  The bridge
        behind the channel must accept calls from the run thread.
        """
        target: Callable[[], WorkflowState] = (
            functools.partial(self.resume, from_step, current_url)
            if resume else self.start
        )
        thread = threading.Thread(
            target=target, name="webflow-orchestrator", daemon=True,
        )
        self._thread = thread
        thread.start()
        return thread

    def join(self, timeout: float | None = None) -> WorkflowState:
        """Wait for a background run and return the committed state."""
        if self._thread is not None:
            self._thread.join(timeout)
        return self.state

    def derive_resume_step(self, url: str | None) -> int:
        """Pick the step to resume at for a document at *url*."""
        stored = self._state.current_step
        stored_valid = (
            self._state.status in (
                WorkflowStatus.ERROR, WorkflowStatus.CANCELLED,
            )
            and 0 <= stored < self._plan.total_steps
        )
        phase = self._plan.phase_for_url(url) if url else None
        if phase is None:
            return stored if stored_valid else 0
        if stored_valid and self._plan.phase_for_step(stored) == phase:
            return stored
        return phase.start_step

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        total = self._plan.total_steps
        while self._state.current_step < total:
            index = self._state.current_step
            step = self._plan.steps[index]

            if self._cancel_requested():
                self._commit(
                    status=WorkflowStatus.CANCELLED,
                    message=f"Cancelled at step {index}.",
                )
                self._log.log("Workflow cancelled", step=index)
                return

            self._commit(message=f"Step {index}/{total}: {step.label()}")
            self._log.log(
                "Step started",
                step=index,
                command=step.command.type.value,
                description=step.label(),
            )

            result = self._execute_step(step)
            if not result.success:
                if result.error_kind is ErrorKind.CANCELLED:
                    self._commit(
                        status=WorkflowStatus.CANCELLED,
                        message=f"Cancelled at step {index}.",
                    )
                    self._log.log("Workflow cancelled", step=index)
                    return
                kind = result.error_kind or ErrorKind.ACTION_FAILED
                self._halt(
                    index, f"[{kind.value}] {result.error}", result.details,
                )
                return

            post_delay = step.post_delay
            if post_delay > 0:
                self._cancel.wait(post_delay)
            self._commit(
                current_step=index + 1,
                message=f"Completed step {index}: {step.label()}",
            )
            self._log.log(
                "Step completed", step=index, attempts=result.attempts,
            )

        self._commit(
            status=WorkflowStatus.SUCCESS,
            message="Workflow completed successfully.",
        )
        self._log.log("Workflow completed", total_steps=total)
        self._store.remove(STATE_KEY)
        self._store.remove(VARIABLES_KEY)
        self._store.remove(LOCATION_KEY)

    def _execute_step(self, step: Step) -> ActionResult:
        """Execute one step and normalize every failure to a result."""
        try:
            command = self._bind_variables(step.command)
        except (KeyError, ValueError) as exc:
            return ActionResult.failure(
                ErrorKind.ACTION_FAILED, _describe(exc), retryable=False,
                timestamp=self._clock(),
            )

        try:
            if command.type.is_page_command:
                result = self._send_page_command(step, command)
            else:
                result = self._run_service_command(step, command)
        except UpstreamError as exc:
            return ActionResult.failure(
                ErrorKind.UPSTREAM_ERROR, str(exc), retryable=False,
                timestamp=self._clock(),
            )
        except WrongPhaseError as exc:
            return ActionResult.failure(
                ErrorKind.WRONG_PHASE, str(exc), retryable=False,
                timestamp=self._clock(),
            )
        except PageUnreachableError as exc:
            return ActionResult.failure(
                ErrorKind.UNREACHABLE, str(exc), retryable=False,
                timestamp=self._clock(),
            )
        except (KeyError, ValueError) as exc:
            return ActionResult.failure(
                ErrorKind.ACTION_FAILED, _describe(exc), retryable=False,
                timestamp=self._clock(),
            )

        if result.success and command.store_as:
            self._set_variable(command.store_as, result.value)
        return result

    def _send_page_command(self, step: Step, command: Command) -> ActionResult:
        result = self._channel.send(
            self._context_id,
            command,
            step.retry_policy,
            reconnect=not step.on_disconnect_expected,
        )
        if (
            not result.success
            and result.error_kind is ErrorKind.UNREACHABLE
            and step.on_disconnect_expected
            and result.details.get("action_dispatched")
        ):
            self._log.log(
                "Expected navigation after step",
                step=step.id,
                cause=result.error,
            )
            url = self._reconnect_and_validate(step.id + 1)
            return replace(ActionResult.ok(url, self._clock()),
                           attempts=result.attempts)
        return result

    # -- service commands -----------------------------------------------------

    def _run_service_command(self, step: Step, command: Command) -> ActionResult:
        """Execute a service command under the step's retry policy.

        Transient failures (a retryable ``UpstreamError`` or a page context
        that cannot be re-established) are classified and retried with the
        policy's back-off.  Everything else propagates to the caller.
        """
        handler = self._SERVICE_DISPATCH[command.type]
        policy = step.retry_policy
        failure: ActionResult | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                return replace(handler(self, step, command), attempts=attempt)
            except UpstreamError as exc:
                if not exc.retryable:
                    raise
                kind = ErrorKind.SERVICE_UNAVAILABLE
                cause = str(exc)
            except PageUnreachableError as exc:
                kind = ErrorKind.UNREACHABLE
                cause = str(exc)

            failure = replace(
                ActionResult.failure(
                    kind, cause, retryable=True, timestamp=self._clock(),
                ),
                attempts=attempt,
            )
            classification = self._classifier.classify(
                kind,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                step_description=command.describe(),
            )
            if not self._classifier.should_continue(classification):
                logger.warning("%s", classification.description)
                break
            logger.info(
                "%s: attempt %d/%d failed: %s",
                command.describe(), attempt, policy.max_attempts, cause,
            )
            self._cancel.wait(policy.delay_for(attempt))
            if self._cancel.is_set():
                return replace(
                    ActionResult.failure(
                        ErrorKind.CANCELLED, "cancelled while retrying",
                        retryable=False, timestamp=self._clock(),
                    ),
                    attempts=attempt,
                )

        assert failure is not None
        return failure

    def _execute_navigate(self, step: Step, command: Command) -> ActionResult:
        if not command.url:
            raise ValueError("navigate requires a url")
        url = self._reconnect_and_validate(step.id + 1, command.url)
        return ActionResult.ok(url, self._clock())

    def _execute_fetch_values(
        self,
        step: Step,
        command: Command,
    ) -> ActionResult:
        pricing = self._require_pricing()
        values = pricing.fetch_current_values(self._entity(command))
        return ActionResult.ok(values.to_dict(), self._clock())

    def _execute_apply_value(
        self,
        step: Step,
        command: Command,
    ) -> ActionResult:
        pricing = self._require_pricing()
        if command.value is None:
            raise ValueError("apply_value requires a value")
        value = parse_numeric(str(command.value))
        if value is None:
            raise ValueError(f"apply_value: {command.value!r} is not numeric")
        pricing.apply_value(self._entity(command), value)
        return ActionResult.ok(value, self._clock())

    def _execute_export(self, step: Step, command: Command) -> ActionResult:
        if self._export_sink is None:
            raise ValueError("no export sink configured")
        records = self._lookup(command.records_from)
        if not isinstance(records, list):
            raise ValueError(
                f"variable {command.records_from!r} does not hold records"
            )
        location = self._export_sink.export(records, command.name or step.label())
        self._log.log("Exported records", step=step.id, count=len(records),
                      location=location)
        return ActionResult.ok(location, self._clock())

    _SERVICE_DISPATCH: dict[
        CommandType,
        Callable[[Orchestrator, Step, Command], ActionResult],
    ] = {
        CommandType.NAVIGATE: _execute_navigate,
        CommandType.FETCH_VALUES: _execute_fetch_values,
        CommandType.APPLY_VALUE: _execute_apply_value,
        CommandType.EXPORT: _execute_export,
    }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reconnect_and_validate(
        self,
        next_index: int,
        url: str | None = None,
    ) -> str:
        """Re-establish the page context and check the next step's phase.

        Returns:
            The location of the new document.

        Raises:
            PageUnreachableError: If the context cannot be re-established.
            WrongPhaseError: If the document does not belong to the phase
                of step *next_index*.
        """
        context = self._channel.reconnect(self._context_id, url)
        location = context.url()
        if next_index < self._plan.total_steps:
            self._validate_phase(next_index, location)
        self._store.set(LOCATION_KEY, location)
        self._log.log("Page context re-established", url=location)
        return location

    def _validate_phase(self, index: int, url: str | None) -> None:
        phase = self._plan.phase_for_step(index)
        if phase is None or not phase.url_pattern:
            return
        if url is None:
            raise WrongPhaseError(
                f"cannot determine the current document for phase "
                f"{phase.name!r}"
            )
        if not phase.accepts(url):
            raise WrongPhaseError(
                f"document {url} does not belong to phase {phase.name!r} "
                f"(expected /{phase.url_pattern}/)"
            )

    def _bind_variables(self, command: Command) -> Command:
        """Substitute working variables into *command*.

        Raises:
            KeyError: If a referenced variable is not set.
            ValueError: If an offset is applied to a non-numeric value.
        """
        changes: dict[str, Any] = {}
        if command.value_from:
            base = self._lookup(command.value_from)
            if command.offset:
                number = (
                    float(base) if isinstance(base, (int, float))
                    else parse_numeric(str(base))
                )
                if number is None:
                    raise ValueError(
                        f"variable {command.value_from!r} is not numeric"
                    )
                changes["value"] = number + command.offset
            else:
                changes["value"] = base
        if command.url_from:
            changes["url"] = str(self._lookup(command.url_from))
        if command.entity_from:
            changes["entity_id"] = str(self._lookup(command.entity_from))
        return replace(command, **changes) if changes else command

    def _lookup(self, name: str) -> Any:
        """Resolve a dotted variable path such as ``prices.current``."""
        head, *rest = name.split(".")
        if head not in self._variables:
            raise KeyError(f"unknown variable {head!r}")
        value = self._variables[head]
        for part in rest:
            if not isinstance(value, dict) or part not in value:
                raise KeyError(f"unknown variable {name!r}")
            value = value[part]
        return value

    def _set_variable(self, name: str, value: Any) -> None:
        self._variables[name] = value
        self._store.set(VARIABLES_KEY, self._variables)

    def _entity(self, command: Command) -> str:
        if not command.entity_id:
            raise ValueError(f"{command.type.value} requires an entity id")
        return command.entity_id

    def _require_pricing(self) -> PricingClient:
        if self._pricing is None:
            raise ValueError("no pricing client configured")
        return self._pricing

    def _cancel_requested(self) -> bool:
        if self._cancel.is_set():
            return True
        self._store.refresh()
        return bool(self._store.get(CANCELLED_KEY, False))

    # -- state record ---------------------------------------------------------

    def _restore_state(self) -> WorkflowState:
        """Load the run record, closing out a run from a dead process.

        Working variables are restored only with a record of this plan.
        """
        stored = self._store.load_state()
        if stored is None or stored.plan_name not in ("", self._plan.name):
            return WorkflowState(
                total_steps=self._plan.total_steps,
                plan_name=self._plan.name,
            )
        self._variables = dict(self._store.get(VARIABLES_KEY) or {})
        if stored.status is WorkflowStatus.RUNNING:
            logger.warning(
                "found interrupted run at step %d", stored.current_step,
            )
            stored = replace(
                stored,
                status=WorkflowStatus.ERROR,
                message=(
                    f"Error at step {stored.current_step}: "
                    "run interrupted before completion"
                ),
                updated_at=self._clock(),
            )
            self._store.save_state(stored)
        return stored

    def _prepare(self, step: int, fresh: bool, message: str) -> None:
        """Move to ``RUNNING`` at *step*, resetting a terminal run first."""
        if self._state.status is not WorkflowStatus.IDLE:
            self._commit(status=WorkflowStatus.IDLE, message="Ready to start.")
        self._cancel.clear()
        self._store.set(CANCELLED_KEY, False)
        if fresh:
            self._variables = dict(self._plan.variables)
        else:
            self._variables = {**self._plan.variables, **self._variables}
        self._store.set(VARIABLES_KEY, self._variables)
        self._commit(
            status=WorkflowStatus.RUNNING,
            current_step=step,
            total_steps=self._plan.total_steps,
            plan_name=self._plan.name,
            message=message,
        )

    def _halt(
        self,
        index: int,
        cause: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        message = f"Error at step {index}: {cause}"
        self._commit(status=WorkflowStatus.ERROR, message=message)
        self._log.log("Step failed", step=index, cause=cause, **(details or {}))
        logger.error("%s", message)

    def _commit(self, **changes: Any) -> WorkflowState:
        """Persist a new run record, then notify observers.

        Raises:
            RuntimeError: On an illegal status transition or a backwards
                step while running.
        """
        with self._lock:
            previous = self._state
            new = replace(previous, updated_at=self._clock(), **changes)
            if new.status is not previous.status and not can_transition(
                previous.status, new.status,
            ):
                raise RuntimeError(
                    f"illegal transition {previous.status.name} -> "
                    f"{new.status.name}"
                )
            if (
                previous.status is WorkflowStatus.RUNNING
                and new.status is WorkflowStatus.RUNNING
                and new.current_step < previous.current_step
            ):
                raise RuntimeError(
                    f"current_step moved backwards: "
                    f"{previous.current_step} -> {new.current_step}"
                )
            self._store.save_state(new)
            self._state = new

        event = WorkflowStateEvent(state=new, previous=previous)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("state listener failed")
        return new

    def _claim(self) -> None:
        with self._lock:
            if self._active:
                raise RuntimeError("a run is already executing")
            self._active = True

    def _release(self) -> None:
        with self._lock:
            self._active = False

    def __repr__(self) -> str:
        """Human-readable summary."""
        state = self.state
        return (
            f"Orchestrator(plan={self._plan.name!r}, "
            f"status={state.status.name}, "
            f"step={state.current_step}/{state.total_steps})"
        )
