"""Configuration defaults for the Webflow Agent system.

Provides the ``Settings`` dataclass that holds every tunable parameter
for target resolution, command waiting, the messaging layer, the
workflow orchestrator, the persistent state store, the pricing service
client, and the browser bridge.

Typical usage::

    from webflow_agent.config.settings import get_default_settings

    settings = get_default_settings()
    print(settings.send_max_attempts)
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class Settings:
    """Immutable configuration for the entire Webflow Agent system.

    Each attribute group maps to one architectural component.  Timing
    values are conservative because the target web application renders
    asynchronously and is slow to settle after navigation.

    Attributes:
        numeric_min_plausible: Inclusive lower bound for values accepted
            by numeric disambiguation.  Values outside the range are
            treated as incidental numeric text and discarded.
        numeric_max_plausible: Inclusive upper bound for numeric
            disambiguation.
        numeric_excluded_class_markers: Class-attribute substrings that
            mark an element as a non-target input kind (e.g. a checkbox
            that happens to carry a number).
        wait_poll_interval_seconds: Polling period used by the
            wait-for-appearance / wait-for-disappearance commands.
        default_wait_timeout_seconds: Timeout applied to wait commands
            that do not specify one.
        send_max_attempts: Default delivery attempts per command when a
            step does not carry its own retry policy.
        retry_base_delay_seconds: Base delay for linear back-off between
            delivery attempts (``base * attempt``).
        page_load_timeout_seconds: Upper bound on waiting for a freshly
            re-established page context to finish loading.
        load_poll_interval_seconds: Polling period while waiting for
            the document ready state.
        default_post_delay_seconds: Pause applied after a successful
            step when the plan does not specify ``post_delay``.
        state_path: JSON file backing the persistent state store.
        log_capacity: Maximum number of diagnostic log entries kept in
            the store; older entries are dropped first.
        pricing_base_url: Base URL of the external pricing service.
        pricing_timeout_seconds: HTTP timeout for pricing requests.
        browser_headless: Launch the browser without a window.
        browser_channel: Optional Playwright browser channel
            (``"chrome"``, ``"msedge"``).  Empty for bundled Chromium.
        user_data_dir: Persistent browser profile directory.  When
            empty an ephemeral profile is used.
        export_dir: Directory where exported artifacts are written.
    """

    # -- Target resolution ----------------------------------------------------
    numeric_min_plausible: float = 50.0
    numeric_max_plausible: float = 1000.0
    numeric_excluded_class_markers: tuple[str, ...] = ("checkbox",)

    # -- Command executor waits -----------------------------------------------
    wait_poll_interval_seconds: float = 0.25
    default_wait_timeout_seconds: float = 10.0

    # -- Messaging & reconnection ---------------------------------------------
    send_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    page_load_timeout_seconds: float = 30.0
    load_poll_interval_seconds: float = 0.1

    # -- Orchestrator ---------------------------------------------------------
    default_post_delay_seconds: float = 3.0

    # -- State store ----------------------------------------------------------
    state_path: str = "webflow_state.json"
    log_capacity: int = 300

    # -- Pricing service ------------------------------------------------------
    pricing_base_url: str = "https://api.pricelabs.co/v1"
    pricing_timeout_seconds: float = 15.0

    # -- Browser bridge -------------------------------------------------------
    browser_headless: bool = False
    browser_channel: str = ""
    user_data_dir: str = ""

    # -- Export sink ----------------------------------------------------------
    export_dir: str = "exports"

    # -- Factory & serialisation ----------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """Create a ``Settings`` instance from a plain dictionary.

        Unknown keys are silently ignored so that forward-compatible
        config files do not break older agent versions.  List values
        given for tuple fields are converted to tuples.

        Args:
            data: Dictionary whose keys correspond to ``Settings``
                field names.

        Returns:
            A new ``Settings`` instance populated from *data*, with
            defaults filling any missing keys.
        """
        known_names = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in known_names}
        if isinstance(filtered.get("numeric_excluded_class_markers"), list):
            filtered["numeric_excluded_class_markers"] = tuple(
                filtered["numeric_excluded_class_markers"]
            )
        return cls(**filtered)

    def to_dict(self) -> dict[str, Any]:
        """Serialise the settings to a plain dictionary.

        Returns:
            A shallow dictionary mapping every field name to its
            current value.
        """
        return asdict(self)


def get_default_settings() -> Settings:
    """Return a ``Settings`` instance with all default values.

    Returns:
        A freshly constructed ``Settings`` with default values.
    """
    return Settings()


def load_settings(path: str | Path) -> Settings:
    """Load settings from a JSON file, overlaying them on the defaults.

    Args:
        path: Path to a JSON object whose keys are ``Settings`` field
            names.

    Returns:
        A ``Settings`` instance.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the file does not contain a JSON object.
    """
    with Path(path).open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(
            f"Settings file {path} must contain a JSON object"
        )
    return Settings.from_dict(data)
