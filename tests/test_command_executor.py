"""Unit tests for webflow_agent.core.command_executor.

Tests cover the click, read, set-value, wait and extract handlers, the
typed failures they produce, and the propagation of page teardown.
Uses FakePageContext (no browser) with a real TargetResolver and a
fake clock for the wait loops.
"""

from __future__ import annotations

import pytest
from page_fakes import FakePageContext, make_node

from webflow_agent.bridge.interface import PageUnreachableError, StaleElementError
from webflow_agent.config.settings import Settings
from webflow_agent.core.command_executor import CommandExecutor, format_value
from webflow_agent.models.commands import Command, CommandType, ErrorKind
from webflow_agent.models.target import TargetDescriptor, TextMatch

# ------------------------------------------------------------------
# Test doubles
# ------------------------------------------------------------------


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self) -> None:
        self.now: float = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class DetachingContext(FakePageContext):
    """Context whose nodes detach between snapshot and action."""

    def click(self, node_id: int) -> None:
        raise StaleElementError(node_id)


class BrokenContext(FakePageContext):
    """Context whose value setter throws an unexpected error."""

    def set_value(self, node_id: int, value: str) -> None:
        raise RuntimeError("setter exploded")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _target(text: str | None = None, selector: str = "button") -> TargetDescriptor:
    """Create a descriptor over a single selector."""
    return TargetDescriptor(
        candidate_selectors=(selector,),
        text_match=TextMatch(text) if text is not None else None,
    )


def _command(
    command_type: CommandType,
    target: TargetDescriptor | None = None,
    **kwargs: object,
) -> Command:
    return Command(type=command_type, target=target, **kwargs)


def _build_executor() -> tuple[CommandExecutor, FakeClock]:
    """Build an executor with default settings and a fake clock."""
    clock = FakeClock()
    executor = CommandExecutor(Settings(), clock=clock, sleep=clock.sleep)
    return executor, clock


@pytest.fixture()
def page() -> FakePageContext:
    """A document with two buttons and a price input."""
    return FakePageContext([
        make_node(1, "Cancel"),
        make_node(2, "Save"),
        make_node(3, tag="input", selectors=("input",), value="132"),
    ])


# ===================================================================
# 1. Click / read / set
# ===================================================================


class TestPrimitiveActions:
    """Tests for the single-target handlers."""

    def test_click_resolves_and_clicks(self, page: FakePageContext) -> None:
        """The resolved node receives the click."""
        executor, _clock = _build_executor()
        result = executor.execute(
            page, _command(CommandType.CLICK, _target("save")), 10.0,
        )
        assert result.success is True
        assert result.timestamp == 10.0
        assert page.clicks == [2]

    def test_read_value_returns_field_value(
        self, page: FakePageContext,
    ) -> None:
        """READ_VALUE returns the form value."""
        executor, _clock = _build_executor()
        result = executor.execute(
            page, _command(CommandType.READ_VALUE, _target(selector="input")),
            0.0,
        )
        assert result.success is True
        assert result.value == "132"

    def test_set_value_formats_integral_floats(
        self, page: FakePageContext,
    ) -> None:
        """132.0 is written as '132'."""
        executor, _clock = _build_executor()
        result = executor.execute(
            page,
            _command(CommandType.SET_VALUE, _target(selector="input"),
                     value=140.0),
            0.0,
        )
        assert result.success is True
        assert result.value == "140"
        assert page.values_set == [(3, "140")]
        assert page.nodes[3].value == "140"

    def test_set_value_without_value_fails_early(
        self, page: FakePageContext,
    ) -> None:
        """A missing value is rejected before anything is resolved."""
        executor, _clock = _build_executor()
        result = executor.execute(
            page, _command(CommandType.SET_VALUE, _target(selector="input")),
            0.0,
        )
        assert result.success is False
        assert result.error_kind is ErrorKind.ACTION_FAILED
        assert result.retryable is False
        assert page.snapshots == 0


class TestFormatValue:
    """Tests for the value formatting helper."""

    def test_integral_float(self) -> None:
        """Trailing .0 is dropped."""
        assert format_value(132.0) == "132"

    def test_fractional_float(self) -> None:
        """Fractions are kept."""
        assert format_value(132.5) == "132.5"

    def test_string_passthrough(self) -> None:
        """Strings are written unchanged."""
        assert format_value("abc") == "abc"


# ===================================================================
# 2. Failures
# ===================================================================


class TestFailures:
    """Tests for typed failures and teardown propagation."""

    def test_not_found_is_retryable_with_trail(
        self, page: FakePageContext,
    ) -> None:
        """An unresolved target gives NOT_FOUND with candidates."""
        executor, _clock = _build_executor()
        result = executor.execute(
            page, _command(CommandType.CLICK, _target("Publish")), 0.0,
        )
        assert result.success is False
        assert result.error_kind is ErrorKind.NOT_FOUND
        assert result.retryable is True
        assert result.details["candidates"] == [1, 2]
        assert {r["reason"] for r in result.details["rejections"]} == {
            "text_mismatch",
        }
        assert page.clicks == []

    def test_service_command_is_rejected(self, page: FakePageContext) -> None:
        """Service commands never run on the page side."""
        executor, _clock = _build_executor()
        result = executor.execute(
            page, _command(CommandType.NAVIGATE, url="https://x"), 0.0,
        )
        assert result.error_kind is ErrorKind.ACTION_FAILED
        assert "not a page command" in result.error

    def test_missing_target_is_rejected(self, page: FakePageContext) -> None:
        """A page command without a descriptor fails."""
        executor, _clock = _build_executor()
        result = executor.execute(page, _command(CommandType.CLICK), 0.0)
        assert result.error_kind is ErrorKind.ACTION_FAILED
        assert result.retryable is False

    def test_unreachable_context_propagates(
        self, page: FakePageContext,
    ) -> None:
        """PageUnreachableError is raised for the channel to handle."""
        executor, _clock = _build_executor()
        page.alive = False
        with pytest.raises(PageUnreachableError):
            executor.execute(
                page, _command(CommandType.CLICK, _target("save")), 0.0,
            )

    def test_stale_element_is_retryable_not_found(self) -> None:
        """A node detached before the click maps to NOT_FOUND."""
        executor, _clock = _build_executor()
        page = DetachingContext([make_node(1, "Save")])
        result = executor.execute(
            page, _command(CommandType.CLICK, _target("save")), 0.0,
        )
        assert result.error_kind is ErrorKind.NOT_FOUND
        assert result.retryable is True

    def test_unexpected_error_is_action_failed(self) -> None:
        """Any other page-side exception maps to ACTION_FAILED."""
        executor, _clock = _build_executor()
        page = BrokenContext(
            [make_node(1, tag="input", selectors=("input",), value="1")]
        )
        result = executor.execute(
            page,
            _command(CommandType.SET_VALUE, _target(selector="input"),
                     value=5),
            0.0,
        )
        assert result.error_kind is ErrorKind.ACTION_FAILED
        assert result.retryable is False
        assert "setter exploded" in result.error


# ===================================================================
# 3. Waits
# ===================================================================


class TestWaits:
    """Tests for the polling handlers."""

    def test_wait_for_appearance_polls_until_present(self) -> None:
        """The node appears on the third snapshot."""
        executor, clock = _build_executor()
        page = FakePageContext([])

        def appear(count: int) -> None:
            if count == 3:
                page.nodes[5] = make_node(5, "Done")

        page.snapshot_hook = appear
        result = executor.execute(
            page,
            _command(CommandType.WAIT_FOR_APPEARANCE, _target("done"),
                     timeout=5.0),
            0.0,
        )
        assert result.success is True
        assert result.value == 5
        assert page.snapshots == 3
        assert clock.sleeps == [0.25, 0.25]

    def test_wait_for_appearance_times_out(self) -> None:
        """The deadline ends the wait with a retryable TIMEOUT."""
        executor, clock = _build_executor()
        page = FakePageContext([make_node(1, "Cancel")])
        result = executor.execute(
            page,
            _command(CommandType.WAIT_FOR_APPEARANCE, _target("done"),
                     timeout=1.0),
            0.0,
        )
        assert result.success is False
        assert result.error_kind is ErrorKind.TIMEOUT
        assert result.retryable is True
        assert "did not appear within 1s" in result.error
        assert clock.now == pytest.approx(1.0)

    def test_wait_uses_default_timeout(self) -> None:
        """Without a command timeout the configured default applies."""
        executor, clock = _build_executor()
        page = FakePageContext([])
        executor.execute(
            page, _command(CommandType.WAIT_FOR_APPEARANCE, _target("x")), 0.0,
        )
        assert clock.now == pytest.approx(10.0)

    def test_wait_for_disappearance(self) -> None:
        """Succeeds once the node is gone, with no value."""
        executor, _clock = _build_executor()
        page = FakePageContext([make_node(1, "Loading")])

        def vanish(count: int) -> None:
            if count == 2:
                page.nodes.clear()

        page.snapshot_hook = vanish
        result = executor.execute(
            page,
            _command(CommandType.WAIT_FOR_DISAPPEARANCE, _target("loading")),
            0.0,
        )
        assert result.success is True
        assert result.value is None
        assert page.snapshots == 2

    def test_transient_errors_are_ignored_while_polling(self) -> None:
        """A flaky snapshot does not end the wait."""
        executor, _clock = _build_executor()
        page = FakePageContext([make_node(1, "Ready")])

        def flaky(count: int) -> None:
            if count == 1:
                raise RuntimeError("layout in progress")

        page.snapshot_hook = flaky
        result = executor.execute(
            page, _command(CommandType.WAIT_FOR_APPEARANCE, _target("ready")),
            0.0,
        )
        assert result.success is True
        assert page.snapshots == 2

    def test_teardown_while_polling_propagates(self) -> None:
        """Navigation during a wait still raises PageUnreachableError."""
        executor, _clock = _build_executor()
        page = FakePageContext([])

        def navigate(count: int) -> None:
            raise PageUnreachableError("main", "navigated")

        page.snapshot_hook = navigate
        with pytest.raises(PageUnreachableError):
            executor.execute(
                page,
                _command(CommandType.WAIT_FOR_APPEARANCE, _target("x")),
                0.0,
            )


# ===================================================================
# 4. Record extraction
# ===================================================================


class TestExtractRecords:
    """Tests for EXTRACT_RECORDS."""

    def test_extracts_requested_fields(self) -> None:
        """Text is whitespace-collapsed; other fields read attributes."""
        page = FakePageContext([
            make_node(1, "  Unit\n 12 ", tag="tr", selectors=("tr.row",),
                      attributes={"data-id": "12"}),
            make_node(2, "Unit 14", tag="tr", selectors=("tr.row",),
                      attributes={"data-id": "14"}),
            make_node(3, "Header", tag="tr", selectors=("tr.head",)),
        ])
        executor, _clock = _build_executor()
        result = executor.execute(
            page,
            _command(CommandType.EXTRACT_RECORDS, _target(selector="tr.row"),
                     fields=("text", "data-id", "tag", "missing")),
            0.0,
        )
        assert result.success is True
        assert result.value == [
            {"text": "Unit 12", "data-id": "12", "tag": "tr", "missing": ""},
            {"text": "Unit 14", "data-id": "14", "tag": "tr", "missing": ""},
        ]

    def test_default_field_is_text(self) -> None:
        """Without fields each record holds only the text."""
        page = FakePageContext([make_node(1, "Row", selectors=("li",))])
        executor, _clock = _build_executor()
        result = executor.execute(
            page,
            _command(CommandType.EXTRACT_RECORDS, _target(selector="li")),
            0.0,
        )
        assert result.value == [{"text": "Row"}]

    def test_empty_extraction_succeeds(self) -> None:
        """No matching rows is an empty record list, not a failure."""
        page = FakePageContext([])
        executor, _clock = _build_executor()
        result = executor.execute(
            page,
            _command(CommandType.EXTRACT_RECORDS, _target(selector="li")),
            0.0,
        )
        assert result.success is True
        assert result.value == []
