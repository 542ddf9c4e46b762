from __future__ import annotations

import pytest

from storycli.engine.invalidation import is_mutating, resolve_regions
from storycli.shared.models.log import ExecutionResult
from storycli.shared.models.task import QueuedTask, TaskStatus, create_prompt_task, create_skill_task


def test_task_requires_exactly_one_source() -> None:
    with pytest.raises(ValueError):
        QueuedTask()
    with pytest.raises(ValueError):
        QueuedTask(skill_id="scene-compose", direct_prompt="also this")


def test_factories() -> None:
    skill = create_skill_task("p1", "/story", "scene-compose")
    prompt = create_prompt_task("p1", "/story", "Summarize act one")

    assert skill.label == "Run scene-compose"
    assert skill.status == TaskStatus.PENDING
    assert prompt.label == "Custom prompt"
    assert skill.id != prompt.id


def test_prompt_building() -> None:
    prompt = create_prompt_task("p1", "/story", "Summarize act one")
    bare = create_skill_task("p1", "/story", "story-architect")
    with_context = create_skill_task(
        "p1", "/story", "character-backstory", None, {"characterId": "c7", "tone": "grim"},
    )

    assert prompt.build_prompt() == "Summarize act one"
    assert bare.build_prompt() == "Execute skill: story-architect"
    assert with_context.build_prompt() == (
        "Execute skill: character-backstory\n\nContext:\n- characterId: c7\n- tone: grim"
    )


def test_token_summary() -> None:
    assert ExecutionResult(input_tokens=1200, output_tokens=350).token_summary() == "1.2k/350"
    assert ExecutionResult().token_summary() == "0/0"


def test_invalidation_resolves_tokens_and_skips_unresolved() -> None:
    regions = resolve_regions("character-backstory", {"projectId": "p1", "characterId": "c7"})
    partial = resolve_regions("character-backstory", {"projectId": "p1"})

    assert regions == [("characters", "c7"), ("characters", "project", "p1")]
    assert partial == [("characters", "project", "p1")]
    assert resolve_regions("story-next-steps", {"projectId": "p1"}) == []
    assert resolve_regions(None, {"projectId": "p1"}) == []
    assert is_mutating("scene-compose")
    assert not is_mutating("story-evaluator")
