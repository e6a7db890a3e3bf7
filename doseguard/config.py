"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Passed explicitly to the services that need it
"""

import os
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()


class SweepConfig(BaseModel):
    """Missed-dose sweep scheduling and batching."""

    interval_minutes: float = Field(default=15.0, gt=0.0, description="Interval between sweeps")
    lookback_hours: float = Field(
        default=24.0, gt=0.0, description="How far back the sweep looks for scheduled doses"
    )
    batch_size: int = Field(default=50, gt=0, le=500, description="Doses per atomic batch write")
    max_concurrent_batches: int = Field(
        default=4, gt=0, description="Maximum number of batches processed at once"
    )
    time_budget_seconds: float = Field(
        default=540.0, gt=0.0, description="Soft execution budget for one sweep"
    )
    history_depth: int = Field(
        default=10, gt=0, description="Doses walked when counting consecutive misses"
    )


class DoseActionConfig(BaseModel):
    """Windows and heuristics for take/undo/correct."""

    duplicate_window_seconds: int = Field(
        default=300, ge=0, description="Recent take events considered for duplicate detection"
    )
    duplicate_match_seconds: int = Field(
        default=3600,
        ge=0,
        description="Scheduled times closer than this are treated as the same dose",
    )
    undo_window_seconds: int = Field(
        default=30, ge=0, description="Time after a take during which it can be undone"
    )
    undo_adherence_penalty: float = Field(
        default=5.0, ge=0.0, le=100.0, description="Estimated score drop reported by undo"
    )
    snooze_min_minutes: int = Field(default=1, ge=1, le=480)
    snooze_max_minutes: int = Field(default=480, ge=1, le=480)

    @model_validator(mode="after")
    def snooze_bounds_ordered(self) -> "DoseActionConfig":
        if self.snooze_min_minutes > self.snooze_max_minutes:
            raise ValueError("snooze_min_minutes must not exceed snooze_max_minutes")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    actions: DoseActionConfig = Field(default_factory=DoseActionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    sweep_config = SweepConfig(
        interval_minutes=float(os.getenv("SWEEP_INTERVAL_MINUTES", "15")),
        lookback_hours=float(os.getenv("SWEEP_LOOKBACK_HOURS", "24")),
        batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "50")),
        max_concurrent_batches=int(os.getenv("SWEEP_MAX_CONCURRENT_BATCHES", "4")),
        time_budget_seconds=float(os.getenv("SWEEP_TIME_BUDGET_SECONDS", "540")),
    )

    actions_config = DoseActionConfig(
        duplicate_window_seconds=int(os.getenv("DUPLICATE_TAKE_WINDOW_SECONDS", "300")),
        duplicate_match_seconds=int(os.getenv("DUPLICATE_TAKE_MATCH_SECONDS", "3600")),
        undo_window_seconds=int(os.getenv("UNDO_WINDOW_SECONDS", "30")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        sweep=sweep_config,
        actions=actions_config,
        logging=logging_config,
    )


def print_config_summary(config: AppConfig) -> None:
    """Print configuration summary for debugging."""
    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nSWEEP")
    print(f"Interval: {config.sweep.interval_minutes}m")
    print(f"Lookback: {config.sweep.lookback_hours}h")
    print(f"Batch Size: {config.sweep.batch_size}")
    print(f"Time Budget: {config.sweep.time_budget_seconds}s")

    print("\nDOSE ACTIONS")
    print(f"Undo Window: {config.actions.undo_window_seconds}s")
    print(f"Duplicate Window: {config.actions.duplicate_window_seconds}s")


if __name__ == "__main__":
    print_config_summary(load_config_from_env())
