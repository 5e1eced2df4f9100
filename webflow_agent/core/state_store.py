"""Persistent key/value state store and bounded diagnostic log.

The ``StateStore`` keeps a small JSON document on disk holding the
workflow run record, the cross-navigation working variables, the
cancellation flag and the diagnostic log.  Every mutation rewrites the
file atomically (temporary file + ``os.replace``) under a lock, so a
reader never observes a half-written document and the store survives
restarts of the orchestrating process.  Every mutation re-reads the file
first, so keys written by another process (the cancellation flag set by
the CLI) are merged rather than overwritten.

File layout::

    {
      "workflow_state":     {"status": "RUNNING", "current_step": 4, ...},
      "workflow_variables": {"base_price": 132.0, ...},
      "workflow_cancelled": false,
      "workflow_location":  "https://app.example.com/reports",
      "workflow_logs":      [{"timestamp": ..., "message": ..., "data": {...}}, ...]
    }

Typical usage::

    from webflow_agent.config.settings import get_default_settings
    from webflow_agent.core.state_store import DiagnosticLog, StateStore

    store = StateStore(get_default_settings())
    log = DiagnosticLog(store)
    log.log("Workflow started", step=0)
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any

from webflow_agent.config.settings import Settings
from webflow_agent.models.events import DiagnosticLogEntry
from webflow_agent.models.workflow import WorkflowState, WorkflowStatus

logger = logging.getLogger(__name__)

STATE_KEY = "workflow_state"
LOGS_KEY = "workflow_logs"
CANCELLED_KEY = "workflow_cancelled"
VARIABLES_KEY = "workflow_variables"
LOCATION_KEY = "workflow_location"

# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------


def _enum_safe_dict(obj: Any) -> dict[str, Any]:
    """Convert a dataclass to a dict, replacing Enum values with names.

    Args:
        obj: A dataclass instance to serialise.

    Returns:
        A plain dictionary with all Enum values replaced by their
        ``.name`` strings.
    """
    return _walk_enums(asdict(obj))


def _walk_enums(data: Any) -> Any:
    """Recursively replace Enum members with their name strings."""
    if isinstance(data, dict):
        return {k: _walk_enums(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_walk_enums(item) for item in data]
    if isinstance(data, Enum):
        return data.name
    return data


def state_to_dict(state: WorkflowState) -> dict[str, Any]:
    """Serialise a ``WorkflowState`` for the store."""
    return _enum_safe_dict(state)


def state_from_dict(raw: dict[str, Any]) -> WorkflowState:
    """Rebuild a ``WorkflowState`` from its stored form.

    Raises:
        ValueError: If the status name is unknown.
    """
    name = str(raw.get("status", "IDLE"))
    try:
        status = WorkflowStatus[name]
    except KeyError:
        raise ValueError(f"unknown workflow status {name!r}") from None
    return WorkflowState(
        status=status,
        current_step=int(raw.get("current_step", 0)),
        message=str(raw.get("message", "")),
        total_steps=int(raw.get("total_steps", 0)),
        plan_name=str(raw.get("plan_name", "")),
        updated_at=float(raw.get("updated_at", 0.0)),
    )


# ---------------------------------------------------------------------------
# StateStore
# ---------------------------------------------------------------------------


class StateStore:
    """Durable JSON-backed key/value store.

    Args:
        settings: Supplies ``state_path`` and ``log_capacity``.
        path: Overrides ``settings.state_path``.  Pass ``None`` together
            with ``persist=False`` for a volatile in-memory store.
        persist: Whether mutations are written to disk.
    """

    def __init__(
        self,
        settings: Settings,
        path: str | Path | None = None,
        persist: bool = True,
    ) -> None:
        self._settings = settings
        self._path = Path(path if path is not None else settings.state_path)
        self._persist = persist
        self._lock = threading.Lock()
        self._data: dict[str, Any] = self._load() if persist else {}

    @property
    def path(self) -> Path:
        """Location of the backing file."""
        return self._path

    # -- key/value API --------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value stored under *key*, or *default*."""
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Store *value* under *key* and flush to disk.

        Raises:
            TypeError: If *value* is not JSON-serialisable.
        """
        json.dumps(value)
        with self._lock:
            self._sync()
            self._data[key] = value
            self._flush()

    def remove(self, key: str) -> None:
        """Delete *key*.  Missing keys are ignored."""
        with self._lock:
            self._sync()
            if self._data.pop(key, None) is not None:
                self._flush()

    def keys(self) -> list[str]:
        """Return the stored keys."""
        with self._lock:
            return list(self._data)

    # -- workflow record ------------------------------------------------------

    def save_state(self, state: WorkflowState) -> None:
        """Persist the workflow run record."""
        self.set(STATE_KEY, state_to_dict(state))

    def load_state(self) -> WorkflowState | None:
        """Return the persisted run record, or ``None`` if absent.

        A malformed record is logged and treated as absent.
        """
        raw = self.get(STATE_KEY)
        if not isinstance(raw, dict):
            return None
        try:
            return state_from_dict(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("ignoring malformed workflow state: %s", exc)
            return None

    # -- diagnostic log -------------------------------------------------------

    def append_log(self, entry: DiagnosticLogEntry) -> None:
        """Append *entry*, dropping the oldest entries beyond capacity."""
        capacity = max(self._settings.log_capacity, 0)
        with self._lock:
            self._sync()
            entries = list(self._data.get(LOGS_KEY) or [])
            entries.append(entry.to_dict())
            if len(entries) > capacity:
                entries = entries[len(entries) - capacity:]
            self._data[LOGS_KEY] = entries
            self._flush()

    def logs(self) -> list[DiagnosticLogEntry]:
        """Return the stored log entries, oldest first."""
        with self._lock:
            raw = list(self._data.get(LOGS_KEY) or [])
        return [DiagnosticLogEntry.from_dict(item) for item in raw]

    def clear_logs(self) -> None:
        """Remove every log entry."""
        self.remove(LOGS_KEY)

    # -- persistence ----------------------------------------------------------

    def refresh(self) -> None:
        """Re-read the backing file to pick up writes by other processes."""
        with self._lock:
            self._sync()

    def _sync(self) -> None:
        """Reload the document before a mutation.  Caller holds the lock."""
        if self._persist:
            self._data = self._load()

    def _load(self) -> dict[str, Any]:
        """Read the backing file.  Missing or corrupt files load empty."""
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "state file %s unreadable, starting empty: %s",
                self._path, exc,
            )
            return {}
        if not isinstance(data, dict):
            logger.warning(
                "state file %s does not hold an object, starting empty",
                self._path,
            )
            return {}
        return data

    def _flush(self) -> None:
        """Atomically write the document.  Caller holds the lock."""
        if not self._persist:
            return
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=directory,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def __repr__(self) -> str:
        """Human-readable summary."""
        return f"StateStore(path={str(self._path)!r}, keys={self.keys()})"


class DiagnosticLog:
    """Appends diagnostic entries to the store and mirrors them to logging.

    Args:
        store: Destination store.
        clock: Wall clock for entry timestamps.
    """

    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._clock = clock

    def log(self, message: str, **data: Any) -> DiagnosticLogEntry:
        """Record *message* with structured *data* and return the entry."""
        entry = DiagnosticLogEntry(
            timestamp=self._clock(),
            message=message,
            data=json.loads(json.dumps(_walk_enums(data), default=str)),
        )
        self._store.append_log(entry)
        if data:
            logger.info("%s %s", message, json.dumps(entry.data, default=str))
        else:
            logger.info("%s", message)
        return entry
