"""Tests for webflow_agent.core.state_store.

Covers the key/value API, durability across instances, atomic rewrites,
tolerance of corrupt files, run-record serialisation, the bounded
diagnostic log, and DiagnosticLog payload sanitising.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from webflow_agent.config.settings import Settings
from webflow_agent.core.state_store import (
    CANCELLED_KEY,
    LOGS_KEY,
    STATE_KEY,
    DiagnosticLog,
    StateStore,
    state_from_dict,
    state_to_dict,
)
from webflow_agent.models.commands import ErrorKind
from webflow_agent.models.events import DiagnosticLogEntry
from webflow_agent.models.workflow import WorkflowState, WorkflowStatus

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _make_store(tmp_path: Path, log_capacity: int = 300) -> StateStore:
    """Create a store backed by a file under *tmp_path*."""
    settings = Settings(
        state_path=str(tmp_path / "state.json"), log_capacity=log_capacity,
    )
    return StateStore(settings)


def _entry(i: int) -> DiagnosticLogEntry:
    return DiagnosticLogEntry(timestamp=float(i), message=f"entry {i}")


# ===================================================================
# 1. Key/value API
# ===================================================================


class TestKeyValue:
    """Tests for get/set/remove."""

    def test_get_missing_returns_default(self, tmp_path: Path) -> None:
        """Unknown keys yield the default."""
        store = _make_store(tmp_path)
        assert store.get("nope") is None
        assert store.get("nope", 5) == 5

    def test_set_then_get(self, tmp_path: Path) -> None:
        """A stored value is read back."""
        store = _make_store(tmp_path)
        store.set("prices", {"current": 132.0})
        assert store.get("prices") == {"current": 132.0}
        assert "prices" in store.keys()

    def test_remove(self, tmp_path: Path) -> None:
        """Removed keys disappear; removing twice is harmless."""
        store = _make_store(tmp_path)
        store.set(CANCELLED_KEY, False)
        store.remove(CANCELLED_KEY)
        store.remove(CANCELLED_KEY)
        assert store.get(CANCELLED_KEY) is None
        reopened = _make_store(tmp_path)
        assert CANCELLED_KEY not in reopened.keys()

    def test_rejects_unserialisable_value(self, tmp_path: Path) -> None:
        """Values that cannot be written as JSON are refused."""
        store = _make_store(tmp_path)
        with pytest.raises(TypeError):
            store.set("bad", object())
        assert store.get("bad") is None

    def test_volatile_store_writes_nothing(self, tmp_path: Path) -> None:
        """persist=False keeps everything in memory."""
        path = tmp_path / "volatile.json"
        store = StateStore(Settings(), path=path, persist=False)
        store.set("k", 1)
        assert store.get("k") == 1
        assert not path.exists()


# ===================================================================
# 2. Durability
# ===================================================================


class TestDurability:
    """Tests for persistence across instances and processes."""

    def test_survives_reopen(self, tmp_path: Path) -> None:
        """A new instance sees what the previous one wrote."""
        _make_store(tmp_path).set("step", 4)
        assert _make_store(tmp_path).get("step") == 4

    def test_file_is_valid_json_after_every_write(self, tmp_path: Path) -> None:
        """The backing file always holds a complete document."""
        store = _make_store(tmp_path)
        for i in range(5):
            store.set(f"k{i}", i)
            data = json.loads(store.path.read_text(encoding="utf-8"))
            assert data[f"k{i}"] == i

    def test_no_temporary_files_left_behind(self, tmp_path: Path) -> None:
        """Atomic rewrites clean up their temporary files."""
        store = _make_store(tmp_path)
        store.set("a", 1)
        store.set("b", 2)
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_refresh_picks_up_external_writes(self, tmp_path: Path) -> None:
        """A write from another instance is visible after refresh."""
        reader = _make_store(tmp_path)
        writer = _make_store(tmp_path)
        writer.set(CANCELLED_KEY, True)
        assert reader.get(CANCELLED_KEY) is None
        reader.refresh()
        assert reader.get(CANCELLED_KEY) is True

    def test_writes_merge_with_other_instances(self, tmp_path: Path) -> None:
        """A write never drops a key another instance wrote meanwhile."""
        runner = _make_store(tmp_path)
        runner.set(CANCELLED_KEY, False)
        _make_store(tmp_path).set(CANCELLED_KEY, True)
        runner.set("step", 3)
        reopened = _make_store(tmp_path)
        assert reopened.get(CANCELLED_KEY) is True
        assert reopened.get("step") == 3

    def test_corrupt_file_loads_empty(self, tmp_path: Path) -> None:
        """Unparseable content is treated as an empty store."""
        (tmp_path / "state.json").write_text("{not json", encoding="utf-8")
        store = _make_store(tmp_path)
        assert store.keys() == []
        store.set("k", 1)
        assert _make_store(tmp_path).get("k") == 1

    def test_non_object_file_loads_empty(self, tmp_path: Path) -> None:
        """A JSON array at the top level is ignored."""
        (tmp_path / "state.json").write_text("[1, 2]", encoding="utf-8")
        assert _make_store(tmp_path).keys() == []

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """The state directory is created on first write."""
        settings = Settings(state_path=str(tmp_path / "a" / "b" / "s.json"))
        StateStore(settings).set("k", 1)
        assert (tmp_path / "a" / "b" / "s.json").exists()


# ===================================================================
# 3. Run record
# ===================================================================


class TestRunRecord:
    """Tests for WorkflowState serialisation."""

    def test_status_stored_by_name(self) -> None:
        """Enum values are written as their names."""
        data = state_to_dict(
            WorkflowState(status=WorkflowStatus.ERROR, current_step=3),
        )
        assert data["status"] == "ERROR"
        assert data["current_step"] == 3

    def test_round_trip_through_store(self, tmp_path: Path) -> None:
        """save_state/load_state preserve every field."""
        state = WorkflowState(
            status=WorkflowStatus.CANCELLED,
            current_step=7,
            message="Cancelled at step 7.",
            total_steps=21,
            plan_name="reprice",
            updated_at=123.5,
        )
        _make_store(tmp_path).save_state(state)
        assert _make_store(tmp_path).load_state() == state

    def test_missing_record(self, tmp_path: Path) -> None:
        """No record loads as None."""
        assert _make_store(tmp_path).load_state() is None

    def test_malformed_record_is_ignored(self, tmp_path: Path) -> None:
        """An unknown status loads as None instead of raising."""
        store = _make_store(tmp_path)
        store.set(STATE_KEY, {"status": "EXPLODED"})
        assert store.load_state() is None

    def test_state_from_dict_rejects_unknown_status(self) -> None:
        """state_from_dict raises ValueError on a bad status."""
        with pytest.raises(ValueError, match="unknown workflow status"):
            state_from_dict({"status": "nope"})


# ===================================================================
# 4. Diagnostic log
# ===================================================================


class TestDiagnosticLog:
    """Tests for the bounded log and the DiagnosticLog writer."""

    def test_entries_are_kept_in_order(self, tmp_path: Path) -> None:
        """Entries come back oldest first."""
        store = _make_store(tmp_path)
        for i in range(3):
            store.append_log(_entry(i))
        assert [e.message for e in store.logs()] == [
            "entry 0", "entry 1", "entry 2",
        ]

    def test_oldest_entries_dropped_beyond_capacity(
        self, tmp_path: Path,
    ) -> None:
        """The log never holds more than log_capacity entries."""
        store = _make_store(tmp_path, log_capacity=5)
        for i in range(12):
            store.append_log(_entry(i))
        entries = store.logs()
        assert len(entries) == 5
        assert entries[0].message == "entry 7"
        assert entries[-1].message == "entry 11"

    def test_clear_logs(self, tmp_path: Path) -> None:
        """clear_logs empties the log but keeps other keys."""
        store = _make_store(tmp_path)
        store.set("k", 1)
        store.append_log(_entry(0))
        store.clear_logs()
        assert store.logs() == []
        assert LOGS_KEY not in store.keys()
        assert store.get("k") == 1

    def test_log_writes_timestamped_entry(self, tmp_path: Path) -> None:
        """DiagnosticLog stamps entries with its clock."""
        store = _make_store(tmp_path)
        log = DiagnosticLog(store, clock=lambda: 42.0)
        entry = log.log("Step started", step=3)
        assert entry.timestamp == 42.0
        assert store.logs() == [entry]
        assert store.logs()[0].data == {"step": 3}

    def test_log_sanitises_payload(self, tmp_path: Path) -> None:
        """Enums become names and unknown objects become strings."""
        store = _make_store(tmp_path)
        log = DiagnosticLog(store, clock=lambda: 0.0)
        entry = log.log(
            "Step failed", kind=ErrorKind.TIMEOUT, where=Path("x"),
            ids=(1, 2),
        )
        assert entry.data == {"kind": "TIMEOUT", "where": "x", "ids": [1, 2]}
