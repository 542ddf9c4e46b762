from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from storycli.app import _parse_params, build_parser, main, render_log
from storycli.engine.config import _ENV_VARS
from storycli.shared.models.log import LogEntry, LogType
from storycli.shared.models.task import TaskStatus, create_prompt_task
from storycli.shared.services.session_store import SessionStore

TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    for var in _ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    state = tmp_path / "sessions.json"
    monkeypatch.setenv("STORYCLI_STATE_PATH", str(state))
    monkeypatch.delenv("STORYCLI_CONFIG", raising=False)
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    yield state
    for handler in root.handlers:
        if handler not in saved[1]:
            handler.close()
    root.setLevel(saved[0])
    root.handlers[:] = saved[1]


def test_parser_requires_skill_or_prompt() -> None:
    parser = build_parser()

    args = parser.parse_args([
        "run", "characters", "--project-id", "p1", "--skill", "character-traits",
        "--param", "characterId=c1",
    ])
    assert args.command == "run"
    assert args.skill == "character-traits"
    assert args.param == ["characterId=c1"]

    with pytest.raises(SystemExit):
        parser.parse_args(["run", "characters", "--project-id", "p1"])
    with pytest.raises(SystemExit):
        parser.parse_args(["run", "characters", "--project-id", "p1", "--skill", "a", "--prompt", "b"])


def test_parse_params() -> None:
    assert _parse_params(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}
    assert _parse_params(None) == {}
    with pytest.raises(ValueError):
        _parse_params(["novalue"])


def test_render_log_variants() -> None:
    tool = LogEntry(
        id="t1", type=LogType.TOOL_USE, content="Edit", timestamp=TS,
        tool_name="edit_file", tool_input={"file_path": "scenes/1.md"},
    )
    long_result = LogEntry(id="r1", type=LogType.TOOL_RESULT, content="z" * 500, timestamp=TS)
    user = LogEntry(id="u1", type=LogType.USER, content="hello", timestamp=TS)

    assert render_log(tool).plain.endswith("▶ Edit scenes/1.md")
    assert render_log(long_result).plain.endswith("z" * 200 + "…")
    assert render_log(user).plain.endswith("> hello")


def test_status_command_lists_sessions(cli_env, capsys) -> None:
    store = SessionStore(cli_env)
    task = create_prompt_task("p1", "/story", "draft", label="Draft chapter")
    store.add_tasks_to_session("chars-p1", [task])
    store.update_task_status("chars-p1", task.id, TaskStatus.FAILED)

    with pytest.raises(SystemExit) as info:
        main(["status"])

    assert info.value.code == 0
    out = capsys.readouterr().out
    assert "chars-p1" in out
    assert "failed" in out
    assert task.id[:8] in out


def test_dismiss_command_removes_failed_task(cli_env, capsys) -> None:
    store = SessionStore(cli_env)
    task = create_prompt_task("p1", "/story", "draft")
    store.add_tasks_to_session("chars-p1", [task])
    store.update_task_status("chars-p1", task.id, TaskStatus.FAILED)

    with pytest.raises(SystemExit) as info:
        main(["dismiss", "chars-p1", task.id[:8]])

    assert info.value.code == 0
    assert SessionStore(cli_env).get_session("chars-p1").queue == []


def test_bad_config_exits_with_usage_error(cli_env, tmp_path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("executor: [1, 2]\n", encoding="utf-8")

    with pytest.raises(SystemExit) as info:
        main(["--config", str(bad), "status"])

    assert info.value.code == 2
