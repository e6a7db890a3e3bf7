"""
Tests for configuration management in `doseguard/config.py`.

Covers:
- Environment parsing and debug defaults
- Logging level coercion to the expected Literal
- Sweep and dose-action overrides from the environment
- AppConfig validation (debug only allowed in development)
"""

from __future__ import annotations

import pytest

from doseguard.config import (
    AppConfig,
    DoseActionConfig,
    SweepConfig,
    load_config_from_env,
    print_config_summary,
)

ENV_VARS = (
    "ENVIRONMENT",
    "LOG_LEVEL",
    "SWEEP_INTERVAL_MINUTES",
    "SWEEP_LOOKBACK_HOURS",
    "SWEEP_BATCH_SIZE",
    "SWEEP_MAX_CONCURRENT_BATCHES",
    "SWEEP_TIME_BUDGET_SECONDS",
    "UNDO_WINDOW_SECONDS",
    "DUPLICATE_TAKE_WINDOW_SECONDS",
    "DUPLICATE_TAKE_MATCH_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_load_config_dev_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "development")

    config = load_config_from_env()

    assert config.environment == "development"
    assert config.debug is True
    assert config.logging.level == "INFO"
    assert config.logging.format == "console"
    assert config.sweep.interval_minutes == 15
    assert config.sweep.lookback_hours == 24
    assert config.sweep.batch_size == 50
    assert config.actions.undo_window_seconds == 30
    assert config.actions.duplicate_window_seconds == 300
    assert config.actions.duplicate_match_seconds == 3600


def test_load_config_production_uses_json_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "prod")
    monkeypatch.setenv("LOG_LEVEL", "warning")

    config = load_config_from_env()

    assert config.environment == "production"
    assert config.debug is False
    assert config.logging.level == "WARNING"
    assert config.logging.format == "json"


def test_load_config_staging_alias(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "stage")

    assert load_config_from_env().environment == "staging"


def test_unknown_log_level_falls_back_to_info(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "verbose")

    assert load_config_from_env().logging.level == "INFO"


def test_sweep_and_action_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SWEEP_INTERVAL_MINUTES", "5")
    monkeypatch.setenv("SWEEP_BATCH_SIZE", "20")
    monkeypatch.setenv("SWEEP_LOOKBACK_HOURS", "12")
    monkeypatch.setenv("SWEEP_TIME_BUDGET_SECONDS", "60")
    monkeypatch.setenv("UNDO_WINDOW_SECONDS", "45")
    monkeypatch.setenv("DUPLICATE_TAKE_WINDOW_SECONDS", "120")

    config = load_config_from_env()

    assert config.sweep.interval_minutes == 5
    assert config.sweep.batch_size == 20
    assert config.sweep.lookback_hours == 12
    assert config.sweep.time_budget_seconds == 60
    assert config.actions.undo_window_seconds == 45
    assert config.actions.duplicate_window_seconds == 120


def test_invalid_batch_size_from_env_fails_fast(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SWEEP_BATCH_SIZE", "0")

    with pytest.raises(ValueError):
        load_config_from_env()


def test_debug_only_allowed_in_development() -> None:
    AppConfig(environment="development", debug=True)

    with pytest.raises(ValueError, match="debug mode is only allowed"):
        AppConfig(environment="production", debug=True)


def test_sweep_config_bounds() -> None:
    with pytest.raises(ValueError):
        SweepConfig(batch_size=501)
    with pytest.raises(ValueError):
        SweepConfig(max_concurrent_batches=0)
    with pytest.raises(ValueError):
        SweepConfig(time_budget_seconds=0)


def test_snooze_bounds_must_be_ordered() -> None:
    with pytest.raises(ValueError, match="snooze_min_minutes"):
        DoseActionConfig(snooze_min_minutes=60, snooze_max_minutes=30)


def test_print_config_summary(capsys: pytest.CaptureFixture[str]) -> None:
    print_config_summary(AppConfig())

    out = capsys.readouterr().out
    assert "CONFIGURATION SUMMARY" in out
    assert "Undo Window: 30s" in out
    assert "Batch Size: 50" in out
