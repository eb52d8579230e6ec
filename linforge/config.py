"""Environment-driven settings for the graph runtime."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class LinforgeSettings(BaseSettings):
    """Runtime defaults. Every field can be overridden via LINFORGE_* env vars."""

    # RunManager
    run_timeout_ms: int = 300_000

    # StepRecorder
    run_id_key: str = "agent_run_id"
    step_debug: bool = False
    max_snapshot_string_length: int = 5000

    # Storage adapters
    database_url: str = ""

    model_config = {"env_prefix": "LINFORGE_", "env_file": ".env", "extra": "ignore"}


_settings: LinforgeSettings | None = None


def get_settings() -> LinforgeSettings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = LinforgeSettings()
        logger.debug(
            "Linforge settings loaded: run_timeout_ms=%d, run_id_key=%s, step_debug=%s",
            _settings.run_timeout_ms,
            _settings.run_id_key,
            _settings.step_debug,
        )
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the env."""
    global _settings
    _settings = None
