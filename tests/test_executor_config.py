from __future__ import annotations

from pathlib import Path

import pytest

from storycli.engine.config import _ENV_VARS, ExecutorConfig, fire_event
from storycli.engine.errors import ConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in _ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)


def test_defaults() -> None:
    config = ExecutorConfig()

    assert config.api_base == "http://127.0.0.1:3000/api/claude-terminal"
    assert config.poll_interval_seconds == 10.0
    assert config.completed_removal_delay_seconds > config.advance_delay_seconds
    assert config.recovery_window_seconds == 10.0
    assert config.state_path == Path.home() / ".storycli" / "sessions.json"


def test_yaml_executor_section(tmp_path) -> None:
    path = tmp_path / "storycli.yaml"
    path.write_text(
        "executor:\n"
        "  base_url: http://worker:8080/\n"
        "  poll_interval_seconds: 2\n"
        "  max_poll_errors: 3\n"
        f"  state_path: {tmp_path / 'state.json'}\n"
        "  bogus: 1\n",
        encoding="utf-8",
    )

    config = ExecutorConfig.from_yaml(path)

    assert config.api_base == "http://worker:8080/api/claude-terminal"
    assert config.poll_interval_seconds == 2.0
    assert config.max_poll_errors == 3
    assert config.state_path == tmp_path / "state.json"


def test_env_overrides_yaml(tmp_path, monkeypatch) -> None:
    path = tmp_path / "storycli.yaml"
    path.write_text("executor:\n  poll_interval_seconds: 2\n  advance_delay_seconds: 1\n", encoding="utf-8")
    monkeypatch.setenv("STORYCLI_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("STORYCLI_LOG_LEVEL", "DEBUG")

    config = ExecutorConfig.load(path)

    assert config.poll_interval_seconds == 0.5
    assert config.advance_delay_seconds == 1.0
    assert config.log_level == "DEBUG"


def test_invalid_values_raise_config_error(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("STORYCLI_MAX_POLL_ERRORS", "many")
    with pytest.raises(ConfigError):
        ExecutorConfig.from_env()

    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        ExecutorConfig.from_yaml(bad)

    with pytest.raises(ConfigError):
        ExecutorConfig.from_yaml(tmp_path / "missing.yaml")


@pytest.mark.asyncio
async def test_fire_event_swallows_callback_errors() -> None:
    seen = []

    async def ok(event):
        seen.append(event["event"])

    async def broken(event):
        raise RuntimeError("listener down")

    await fire_event(ok, {"event": "queue_empty"})
    await fire_event(broken, {"event": "queue_empty"})
    await fire_event(None, {"event": "queue_empty"})

    assert seen == ["queue_empty"]
