"""Executor configuration.

Defaults live on the dataclass. A ``storycli.yaml`` file (``executor:``
section) overrides them, and ``STORYCLI_*`` environment variables
override both.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


# Optional async callback for engine notifications.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Callback errors are logged, never raised."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.exception("Event callback failed for %s", event.get("event"))


def default_state_path() -> Path:
    return Path.home() / ".storycli" / "sessions.json"


_ENV_VARS: dict[str, str] = {
    "base_url": "STORYCLI_BASE_URL",
    "api_prefix": "STORYCLI_API_PREFIX",
    "state_path": "STORYCLI_STATE_PATH",
    "poll_interval_seconds": "STORYCLI_POLL_INTERVAL",
    "max_poll_errors": "STORYCLI_MAX_POLL_ERRORS",
    "advance_delay_seconds": "STORYCLI_ADVANCE_DELAY",
    "completed_removal_delay_seconds": "STORYCLI_REMOVAL_DELAY",
    "recovery_window_seconds": "STORYCLI_RECOVERY_WINDOW",
    "recovery_removal_delay_seconds": "STORYCLI_RECOVERY_REMOVAL_DELAY",
    "recovery_advance_delay_seconds": "STORYCLI_RECOVERY_ADVANCE_DELAY",
    "flush_interval_seconds": "STORYCLI_FLUSH_INTERVAL",
    "request_timeout_seconds": "STORYCLI_REQUEST_TIMEOUT",
    "log_level": "STORYCLI_LOG_LEVEL",
}


@dataclass
class ExecutorConfig:
    """Task-execution configuration."""

    # Worker endpoints
    base_url: str = "http://127.0.0.1:3000"
    api_prefix: str = "/api/claude-terminal"
    request_timeout_seconds: float = 30.0

    # Persisted session store
    state_path: Path | None = None

    # Poll fallback: coarse interval, consecutive request failures
    # tolerated before the task is failed.
    poll_interval_seconds: float = 10.0
    max_poll_errors: int = 6

    # Queue pacing. Completed tasks stay visible longer than the
    # pause before the next task starts.
    advance_delay_seconds: float = 3.0
    completed_removal_delay_seconds: float = 5.0

    # Recovery
    recovery_window_seconds: float = 10.0
    recovery_removal_delay_seconds: float = 1.0
    recovery_advance_delay_seconds: float = 1.0

    # Log coalescing (one flush per display tick)
    flush_interval_seconds: float = 1 / 60

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.state_path is None:
            self.state_path = default_state_path()
        else:
            self.state_path = Path(self.state_path).expanduser()

    @property
    def api_base(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.api_prefix.strip("/")

    @classmethod
    def from_yaml(cls, path: str | Path) -> ExecutorConfig:
        """Load the ``executor:`` section of a YAML config file."""
        path = Path(path)
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Cannot read config {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        section = raw.get("executor", {}) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"'executor' in {path} must be a mapping")
        return cls()._with_overrides(section, source=str(path))

    @classmethod
    def from_env(cls, base: ExecutorConfig | None = None) -> ExecutorConfig:
        """Apply ``STORYCLI_*`` environment overrides on top of *base*."""
        config = base or cls()
        overrides = {
            name: os.environ[var]
            for name, var in _ENV_VARS.items()
            if os.environ.get(var)
        }
        if overrides:
            logger.info(
                "ExecutorConfig.from_env: overrides: %s",
                ", ".join(f"{_ENV_VARS[k]}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("ExecutorConfig.from_env: no STORYCLI_* env vars set")
        return config._with_overrides(overrides, source="environment")

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> ExecutorConfig:
        """Defaults, then YAML (if given), then environment."""
        base = cls.from_yaml(config_path) if config_path else cls()
        config = cls.from_env(base)
        logger.info(
            "ExecutorConfig.load: api=%s state=%s poll=%.1fs",
            config.api_base, config.state_path, config.poll_interval_seconds,
        )
        return config

    def _with_overrides(self, values: dict[str, Any], *, source: str) -> ExecutorConfig:
        known = {f.name: f for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in values.items():
            if key not in known:
                logger.warning("Ignoring unknown executor setting %r from %s", key, source)
                continue
            current = getattr(self, key)
            try:
                if key == "state_path":
                    changes[key] = Path(str(value)).expanduser()
                elif isinstance(current, bool):
                    changes[key] = str(value).lower() in {"1", "true", "yes"}
                elif isinstance(current, int):
                    changes[key] = int(value)
                elif isinstance(current, float):
                    changes[key] = float(value)
                else:
                    changes[key] = str(value)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid value for {key} from {source}: {value!r}") from exc
        return replace(self, **changes)
