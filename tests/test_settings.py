"""Tests for Webflow Agent configuration and settings.

Covers default construction, serialisation round-trip, immutability,
field types, forward-compatible dict loading, and JSON settings files.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from webflow_agent.config.settings import (
    Settings,
    get_default_settings,
    load_settings,
)


class TestGetDefaultSettings:
    """Tests for the get_default_settings factory function."""

    def test_returns_settings_instance(self) -> None:
        """get_default_settings must return a Settings object."""
        s = get_default_settings()
        assert isinstance(s, Settings)

    def test_numeric_range_default(self) -> None:
        """The plausible numeric range is [50, 1000]."""
        s = get_default_settings()
        assert s.numeric_min_plausible == 50.0
        assert s.numeric_max_plausible == 1000.0

    def test_excluded_class_markers_default(self) -> None:
        """Checkbox-like inputs are excluded by default."""
        assert get_default_settings().numeric_excluded_class_markers == (
            "checkbox",
        )

    def test_wait_defaults(self) -> None:
        """Waits poll every 0.25s for up to 10s."""
        s = get_default_settings()
        assert s.wait_poll_interval_seconds == 0.25
        assert s.default_wait_timeout_seconds == 10.0

    def test_send_defaults(self) -> None:
        """Three attempts with a 1s linear back-off base."""
        s = get_default_settings()
        assert s.send_max_attempts == 3
        assert s.retry_base_delay_seconds == 1.0

    def test_page_load_timeout_default(self) -> None:
        """Default page_load_timeout_seconds is 30.0."""
        assert get_default_settings().page_load_timeout_seconds == 30.0

    def test_post_delay_default(self) -> None:
        """Default default_post_delay_seconds is 3.0."""
        assert get_default_settings().default_post_delay_seconds == 3.0

    def test_log_capacity_default(self) -> None:
        """Default log_capacity is 300."""
        assert get_default_settings().log_capacity == 300

    def test_pricing_timeout_default(self) -> None:
        """Pricing requests time out after 15s."""
        assert get_default_settings().pricing_timeout_seconds == 15.0

    def test_export_dir_default(self) -> None:
        """Default export_dir is 'exports'."""
        assert get_default_settings().export_dir == "exports"


class TestSettingsToDict:
    """Tests for Settings.to_dict serialisation."""

    def test_contains_all_fields(self) -> None:
        """The dict must have one key per Settings field."""
        from dataclasses import fields as dc_fields

        d = get_default_settings().to_dict()
        assert set(d.keys()) == {f.name for f in dc_fields(Settings)}

    def test_values_match_attributes(self) -> None:
        """Dict values must equal the corresponding attributes."""
        s = get_default_settings()
        d = s.to_dict()
        assert d["send_max_attempts"] == s.send_max_attempts
        assert d["state_path"] == s.state_path
        assert d["browser_headless"] == s.browser_headless


class TestSettingsFromDict:
    """Tests for Settings.from_dict deserialisation."""

    def test_round_trip(self) -> None:
        """from_dict(to_dict()) produces an identical Settings."""
        original = get_default_settings()
        assert Settings.from_dict(original.to_dict()) == original

    def test_partial_dict_fills_defaults(self) -> None:
        """A dict with only some keys produces defaults for the rest."""
        s = Settings.from_dict({"send_max_attempts": 5})
        assert s.send_max_attempts == 5
        assert s.retry_base_delay_seconds == 1.0  # default

    def test_ignores_unknown_keys(self) -> None:
        """Unknown keys in the dict are silently discarded."""
        s = Settings.from_dict({"log_capacity": 10, "nonexistent_option": 1})
        assert s.log_capacity == 10
        assert not hasattr(s, "nonexistent_option")

    def test_list_becomes_tuple(self) -> None:
        """JSON lists for tuple fields are converted."""
        s = Settings.from_dict(
            {"numeric_excluded_class_markers": ["checkbox", "toggle"]},
        )
        assert s.numeric_excluded_class_markers == ("checkbox", "toggle")


class TestLoadSettings:
    """Tests for load_settings."""

    def test_overlays_defaults(self, tmp_path: Path) -> None:
        """Keys in the file override defaults; the rest stay."""
        path = tmp_path / "settings.json"
        path.write_text(
            json.dumps({"state_path": "/tmp/x.json", "browser_headless": True}),
            encoding="utf-8",
        )
        s = load_settings(path)
        assert s.state_path == "/tmp/x.json"
        assert s.browser_headless is True
        assert s.log_capacity == 300

    def test_rejects_non_object(self, tmp_path: Path) -> None:
        """A JSON array is not a settings file."""
        path = tmp_path / "settings.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError, match="JSON object"):
            load_settings(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.json")


class TestSettingsFrozen:
    """Tests for the immutability guarantee of Settings."""

    def test_cannot_set_attribute(self) -> None:
        """Assigning to any field must raise an error."""
        s = get_default_settings()
        with pytest.raises(AttributeError):
            s.send_max_attempts = 9  # type: ignore[misc]

    def test_cannot_delete_attribute(self) -> None:
        """Deleting a field must raise an error."""
        s = get_default_settings()
        with pytest.raises(AttributeError):
            del s.state_path  # type: ignore[misc]


class TestSettingsFieldTypes:
    """Tests that every Settings field has the correct Python type."""

    def test_int_fields(self) -> None:
        """Integer fields must be int, not float or str."""
        s = get_default_settings()
        for name in ("send_max_attempts", "log_capacity"):
            value = getattr(s, name)
            assert isinstance(value, int), f"{name} should be int, got {type(value).__name__}"

    def test_float_fields(self) -> None:
        """Float fields must be float."""
        s = get_default_settings()
        float_fields = [
            "numeric_min_plausible",
            "numeric_max_plausible",
            "wait_poll_interval_seconds",
            "default_wait_timeout_seconds",
            "retry_base_delay_seconds",
            "page_load_timeout_seconds",
            "load_poll_interval_seconds",
            "default_post_delay_seconds",
            "pricing_timeout_seconds",
        ]
        for name in float_fields:
            value = getattr(s, name)
            assert isinstance(value, float), f"{name} should be float, got {type(value).__name__}"

    def test_str_fields(self) -> None:
        """String fields must be str."""
        s = get_default_settings()
        str_fields = [
            "state_path",
            "pricing_base_url",
            "browser_channel",
            "user_data_dir",
            "export_dir",
        ]
        for name in str_fields:
            value = getattr(s, name)
            assert isinstance(value, str), f"{name} should be str, got {type(value).__name__}"
