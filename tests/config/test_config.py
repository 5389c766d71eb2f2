"""Tests for weekgrid.toml loading, env var resolution and validation."""

from __future__ import annotations

from datetime import time
from pathlib import Path

import pytest

from weekgrid.calendar.remote import DEFAULT_PLAN_CALENDAR_NAME
from weekgrid.config import (
    ConfigError,
    WeekgridConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(tmp_path: Path, content: str) -> Path:
    """Write *content* to weekgrid.toml inside *tmp_path* and return the file."""
    path = tmp_path / "weekgrid.toml"
    path.write_text(content)
    return path


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_simple_string(self, monkeypatch):
        monkeypatch.setenv("WG_SECRET", "hunter2")
        assert resolve_env_vars("${WG_SECRET}") == "hunter2"

    def test_partial_string(self, monkeypatch):
        monkeypatch.setenv("WG_USER", "student")
        assert resolve_env_vars("${WG_USER}@example.com") == "student@example.com"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("WG_TAG", "v1")
        data = {"outer": {"tags": ["${WG_TAG}", "static"], "port": 8400}}
        assert resolve_env_vars(data) == {"outer": {"tags": ["v1", "static"], "port": 8400}}

    def test_non_string_passthrough(self):
        assert resolve_env_vars(42) == 42
        assert resolve_env_vars(True) is True
        assert resolve_env_vars(None) is None

    def test_missing_variables_are_reported_together(self, monkeypatch):
        monkeypatch.delenv("WG_MISSING_A", raising=False)
        monkeypatch.delenv("WG_MISSING_B", raising=False)
        with pytest.raises(ConfigError, match="WG_MISSING_A, WG_MISSING_B"):
            resolve_env_vars("${WG_MISSING_A}:${WG_MISSING_B}")


# ---------------------------------------------------------------------------
# parse_config
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_empty_document_uses_defaults(self):
        config = parse_config({})

        assert config == WeekgridConfig()
        assert config.server.port == 8400
        assert config.database.name == "weekgrid"
        assert config.google.enabled is False
        assert config.google.plan_calendar_name == DEFAULT_PLAN_CALENDAR_NAME

    def test_default_planning_window(self):
        window = parse_config({}).planning.window()
        assert window.start == time(8, 0)
        assert window.end == time(20, 0)
        assert window.step_minutes == 15
        assert window.block_minutes == 90

    def test_default_sync_policy(self):
        config = parse_config({})
        assert config.sync.interval_minutes == 10
        policy = config.sync.backoff_policy()
        assert policy.base_ms == 30_000
        assert policy.cap_ms == 600_000


class TestSections:
    def test_planning_section(self):
        config = parse_config(
            {
                "planning": {
                    "day_start": "07:30",
                    "day_end": "18:00",
                    "block_minutes": 60,
                    "block_title": "Deep work",
                }
            }
        )
        assert config.planning.day_start == time(7, 30)
        assert config.planning.day_end == time(18, 0)
        assert config.planning.block_minutes == 60
        assert config.planning.block_title == "Deep work"

    def test_toml_time_values_are_accepted(self):
        config = parse_config({"planning": {"day_start": time(6, 0)}})
        assert config.planning.day_start == time(6, 0)

    def test_grid_geometry(self):
        geometry = parse_config({"grid": {"hour_height": 48, "snap_minutes": 30}}).grid.geometry()
        assert geometry.hour_height == 48.0
        assert geometry.snap_minutes == 30

    def test_logging_is_normalised(self):
        config = parse_config({"logging": {"level": "debug", "format": "JSON"}})
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root is None

    @pytest.mark.parametrize(
        ("document", "message"),
        [
            ({"logging": {"format": "xml"}}, "logging.format"),
            ({"planning": {"day_start": "8am"}}, "planning.day_start"),
            ({"planning": {"day_end": "24:00"}}, "planning.day_end"),
            ({"planning": {"day_start": "20:00", "day_end": "08:00"}}, "before"),
            ({"planning": {"block_minutes": 0}}, "planning.block_minutes"),
            ({"grid": {"hour_height": -1}}, "grid.hour_height"),
            ({"sync": {"interval_minutes": "often"}}, "sync.interval_minutes"),
            ({"sync": {"backoff_base_ms": 5000, "backoff_cap_ms": 1000}}, "backoff_cap_ms"),
            ({"server": {"port": True}}, "server.port"),
            ({"database": {"name": "  "}}, "database.name"),
            ({"google": "yes"}, r"\[google\]"),
        ],
    )
    def test_invalid_values(self, document, message):
        with pytest.raises(ConfigError, match=message):
            parse_config(document)


class TestGoogleSection:
    def test_enabled_requires_credentials(self):
        with pytest.raises(ConfigError, match="client_secret, refresh_token"):
            parse_config({"google": {"enabled": True, "client_id": "abc"}})

    def test_blank_credentials_are_missing(self):
        with pytest.raises(ConfigError, match="client_id"):
            parse_config(
                {
                    "google": {
                        "enabled": True,
                        "client_id": " ",
                        "client_secret": "s",
                        "refresh_token": "r",
                    }
                }
            )

    def test_credentials_from_environment(self, monkeypatch):
        monkeypatch.setenv("WG_GOOGLE_SECRET", "s3cret")
        config = parse_config(
            {
                "google": {
                    "enabled": True,
                    "client_id": "client",
                    "client_secret": "${WG_GOOGLE_SECRET}",
                    "refresh_token": "refresh",
                    "email": "student@example.com",
                    "window_future_days": 30,
                }
            }
        )
        credentials = config.google.credentials()
        assert credentials.client_secret == "s3cret"
        assert config.google.email == "student@example.com"
        assert config.google.window_future_days == 30

    def test_disabled_section_needs_no_credentials(self):
        assert parse_config({"google": {"enabled": False}}).google.enabled is False


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_loads_file(self, tmp_path):
        path = _write_toml(
            tmp_path,
            '[server]\nhost = "0.0.0.0"\nport = 9100\n\n[sync]\ninterval_minutes = 5\n',
        )
        config = load_config(path)
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 9100
        assert config.sync.interval_minutes == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        path = _write_toml(tmp_path, "[server\nport = ")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)

    def test_unresolved_env_var_in_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("WG_UNSET_TOKEN", raising=False)
        path = _write_toml(tmp_path, '[google]\nrefresh_token = "${WG_UNSET_TOKEN}"\n')
        with pytest.raises(ConfigError, match="WG_UNSET_TOKEN"):
            load_config(path)
