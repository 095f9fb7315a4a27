from __future__ import annotations

from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from happenings import config
from happenings.config import load_settings, update_config_file


def test_settings_layering(monkeypatch, tmp_path):
    config_path = tmp_path / "happenings.toml"
    config_path.write_text('timezone = "America/Chicago"\nmax_scan_days = 365\n')
    monkeypatch.setenv("HAPPENINGS_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("HAPPENINGS_MAX_SCAN_DAYS", "100")
    monkeypatch.setenv("HAPPENINGS_ENABLE_SCHEDULER", "off")

    loaded = load_settings(config_path)

    assert loaded.timezone == "America/Chicago"
    assert loaded.max_scan_days == 100
    assert loaded.enable_scheduler is False
    assert loaded.max_occurrences_per_event == 40
    assert loaded.database_path == tmp_path / "data" / "happenings.db"


def test_unknown_timezone_fails_at_load(monkeypatch, tmp_path):
    monkeypatch.setenv("HAPPENINGS_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("HAPPENINGS_TIMEZONE", "Mars/Olympus_Mons")

    with pytest.raises(ValueError):
        load_settings(tmp_path / "missing.toml")


def test_update_config_file_round_trip(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "settings", config.settings)
    monkeypatch.setenv("HAPPENINGS_BASE_DIR", str(tmp_path))
    config_path = tmp_path / "happenings.toml"

    updated = update_config_file(
        {"timezone": "UTC", "digest_window_days": "14", "not_a_key": 1},
        path=config_path,
    )

    assert updated.timezone == "UTC"
    assert updated.digest_window_days == 14
    assert "not_a_key" not in config_path.read_text()


def test_settings_expose_zone_and_audit_interval(monkeypatch, tmp_path):
    monkeypatch.setenv("HAPPENINGS_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("HAPPENINGS_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("HAPPENINGS_HEALTH_AUDIT_INTERVAL_HOURS", "12")

    loaded = load_settings(tmp_path / "missing.toml")

    assert loaded.tzinfo == ZoneInfo("Europe/Berlin")
    assert loaded.health_audit_interval == timedelta(hours=12)
