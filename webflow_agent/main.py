"""Webflow Agent main entry point.

Wires the page bridge, command executor, message channel, state store,
pricing client, export sink and orchestrator together and exposes a CLI
to run, resume, inspect and reset a workflow.

Typical usage::

    python -m webflow_agent.main run --plan plans/reprice.json
    python -m webflow_agent.main resume --plan plans/reprice.json --from-step 14
    python -m webflow_agent.main status
    python -m webflow_agent.main logs --tail 20

Programmatic usage::

    from webflow_agent.core.plan_loader import load_plan
    from webflow_agent.main import build_agent

    agent = build_agent(load_plan("plans/reprice.json"), pricing_token="...")
    try:
        state = agent.run()
    finally:
        agent.shutdown()
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from dataclasses import dataclass
from datetime import datetime

from webflow_agent.bridge.interface import (
    PageBridge,
    PageUnreachableError,
    create_bridge,
)
from webflow_agent.config.settings import Settings, load_settings
from webflow_agent.core.command_executor import CommandExecutor
from webflow_agent.core.error_classifier import ErrorClassifier
from webflow_agent.core.export_sink import CsvExportSink, ExportSink
from webflow_agent.core.message_channel import MessageChannel
from webflow_agent.core.orchestrator import Orchestrator
from webflow_agent.core.plan_loader import PlanError, load_plan
from webflow_agent.core.pricing_client import PricingClient
from webflow_agent.core.state_store import (
    CANCELLED_KEY,
    LOCATION_KEY,
    STATE_KEY,
    VARIABLES_KEY,
    StateStore,
)
from webflow_agent.core.target_resolver import TargetResolver
from webflow_agent.models.workflow import (
    WorkflowPlan,
    WorkflowState,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

TOKEN_ENV = "WEBFLOW_PRICING_TOKEN"


# ---------------------------------------------------------------------------
# Webflow Agent
# ---------------------------------------------------------------------------


@dataclass
class WorkflowAgent:
    """Top-level agent that holds all component references.

    Constructed via the ``build_agent`` factory function.

    Attributes:
        bridge: Owner of the browser page contexts.
        resolver: Target resolution engine.
        executor: Page-side command executor.
        classifier: Failure classification and recovery.
        channel: Messaging and reconnection layer.
        store: Persistent state store.
        pricing: External pricing service client.
        export_sink: Artifact writer for extracted records.
        orchestrator: The workflow state machine.
        cancel_event: Shared cooperative cancellation flag.
        settings: Immutable application configuration.
    """

    bridge: PageBridge
    resolver: TargetResolver
    executor: CommandExecutor
    classifier: ErrorClassifier
    channel: MessageChannel
    store: StateStore
    pricing: PricingClient
    export_sink: ExportSink
    orchestrator: Orchestrator
    cancel_event: threading.Event
    settings: Settings

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> WorkflowState:
        """Run the plan from its first step."""
        logger.info("Running plan %s", self.orchestrator.plan.name)
        return self.orchestrator.start()

    def resume(
        self,
        from_step: int | None = None,
        url: str | None = None,
    ) -> WorkflowState:
        """Reopen the last known document and resume the plan.

        Args:
            from_step: Step to resume at.  Derived from the document
                when omitted.
            url: Document to open first.  Defaults to the last
                persisted location, then the plan's start URL.
        """
        location = (
            url
            or self.store.get(LOCATION_KEY)
            or self.orchestrator.plan.start_url
        )
        if location:
            try:
                self.channel.reconnect(self.orchestrator.context_id, location)
            except PageUnreachableError as exc:
                logger.warning("Cannot reopen %s: %s", location, exc)
        return self.orchestrator.resume(from_step)

    def cancel(self) -> None:
        """Request cooperative cancellation of the running plan."""
        self.orchestrator.cancel()

    def shutdown(self) -> None:
        """Close the browser.  Safe to call more than once."""
        try:
            self.bridge.close()
        except Exception as exc:
            logger.warning("Bridge shutdown failed: %s", exc)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_agent(
    plan: WorkflowPlan,
    pricing_token: str = "",
    settings: Settings | None = None,
    bridge: PageBridge | None = None,
    context_id: str = "main",
) -> WorkflowAgent:
    """Create all components and return a fully wired ``WorkflowAgent``.

    Args:
        plan: The plan the orchestrator drives.
        pricing_token: API token for the pricing service.
        settings: Optional settings override.  When ``None`` the
            default settings are used.
        bridge: Optional page bridge.  When ``None`` a Playwright
            browser is launched.
        context_id: Logical page context the plan runs in.

    Returns:
        A fully constructed ``WorkflowAgent``.
    """
    if settings is None:
        settings = Settings()

    # 1. Page bridge
    if bridge is None:
        bridge = create_bridge(settings)
    logger.info("Bridge: %r", bridge)

    # 2. Resolution and execution
    resolver = TargetResolver(settings)
    executor = CommandExecutor(settings, resolver)

    # 3. Messaging
    cancel_event = threading.Event()
    classifier = ErrorClassifier(settings)
    channel = MessageChannel(
        bridge, executor, classifier, settings, cancel_event=cancel_event,
    )

    # 4. Persistence and collaborators
    store = StateStore(settings)
    pricing = PricingClient(settings, api_token=pricing_token)
    export_sink = CsvExportSink(settings)

    # 5. Orchestrator
    orchestrator = Orchestrator(
        plan=plan,
        channel=channel,
        store=store,
        settings=settings,
        pricing=pricing,
        export_sink=export_sink,
        context_id=context_id,
        classifier=classifier,
        cancel_event=cancel_event,
    )

    return WorkflowAgent(
        bridge=bridge,
        resolver=resolver,
        executor=executor,
        classifier=classifier,
        channel=channel,
        store=store,
        pricing=pricing,
        export_sink=export_sink,
        orchestrator=orchestrator,
        cancel_event=cancel_event,
        settings=settings,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="webflow_agent",
        description=(
            "Webflow Agent -- resumable automation of a multi-page "
            "web workflow."
        ),
    )
    parser.add_argument(
        "--settings",
        "-s",
        default="",
        help="JSON settings file overlaid on the defaults.",
    )
    parser.add_argument(
        "--pricing-token",
        default="",
        help=(
            "Pricing service API token. Falls back to the "
            f"{TOKEN_ENV} environment variable if not provided."
        ),
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a plan from its first step.")
    run.add_argument("--plan", "-p", required=True, help="Plan JSON file.")

    resume = sub.add_parser("resume", help="Resume a failed or cancelled run.")
    resume.add_argument("--plan", "-p", required=True, help="Plan JSON file.")
    resume.add_argument(
        "--from-step",
        type=int,
        default=None,
        help="Step to resume at (derived from the page when omitted).",
    )
    resume.add_argument(
        "--url",
        default=None,
        help="Document to open before resuming.",
    )

    sub.add_parser("status", help="Print the persisted run record.")
    sub.add_parser("cancel", help="Ask a running workflow to stop.")

    reset = sub.add_parser("reset", help="Clear the persisted run.")
    reset.add_argument(
        "--logs", action="store_true", help="Also clear the diagnostic log.",
    )

    logs = sub.add_parser("logs", help="Print the diagnostic log.")
    logs.add_argument(
        "--tail", type=int, default=50, help="Number of entries to show.",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch the chosen subcommand."""
    args = _build_parser().parse_args(argv)

    # -- Logging setup ---------------------------------------------------
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    settings = load_settings(args.settings) if args.settings else Settings()

    if args.command in ("status", "cancel", "reset", "logs"):
        sys.exit(_run_store_command(args, settings))

    # -- Resolve pricing token -------------------------------------------
    token: str = args.pricing_token or os.environ.get(TOKEN_ENV, "")
    if not token:
        logger.warning(
            "No pricing token provided; pricing steps will be rejected. "
            "Use --pricing-token or set %s.", TOKEN_ENV,
        )

    try:
        plan = load_plan(args.plan, settings)
    except (OSError, PlanError) as exc:
        logger.error("Cannot load plan: %s", exc)
        sys.exit(2)

    # -- Build and run ---------------------------------------------------
    logger.info("Building Webflow Agent")
    agent = build_agent(plan, pricing_token=token, settings=settings)
    try:
        if args.command == "run":
            state = agent.run()
        else:
            state = agent.resume(args.from_step, args.url)
    except KeyboardInterrupt:
        agent.cancel()
        state = agent.orchestrator.state
    finally:
        agent.shutdown()

    _print_result_summary(state)
    sys.exit(0 if state.status is WorkflowStatus.SUCCESS else 1)


def _run_store_command(args: argparse.Namespace, settings: Settings) -> int:
    """Handle the subcommands that only touch the state store."""
    store = StateStore(settings)

    if args.command == "status":
        state = store.load_state()
        if state is None:
            print("No workflow in progress.")
        else:
            _print_result_summary(state)
        return 0

    if args.command == "cancel":
        store.set(CANCELLED_KEY, True)
        print("Cancellation requested.")
        return 0

    if args.command == "reset":
        for key in (STATE_KEY, VARIABLES_KEY, CANCELLED_KEY, LOCATION_KEY):
            store.remove(key)
        if args.logs:
            store.clear_logs()
        print("Workflow state cleared.")
        return 0

    entries = store.logs()
    shown = entries[-args.tail:] if args.tail > 0 else []
    for entry in shown:
        stamp = datetime.fromtimestamp(entry.timestamp).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        suffix = f" {entry.data}" if entry.data else ""
        print(f"{stamp} {entry.message}{suffix}")
    return 0


def _print_result_summary(state: WorkflowState) -> None:
    """Print a human-readable summary of a run record.

    Args:
        state: The ``WorkflowState`` to summarise.
    """
    separator = "-" * 60
    print(separator)
    print(f"Plan:       {state.plan_name or '-'}")
    print(f"Status:     {state.status.name}")
    print(f"Step:       {state.current_step}/{state.total_steps}")
    print(f"Message:    {state.message}")
    print(separator)


if __name__ == "__main__":
    main()
