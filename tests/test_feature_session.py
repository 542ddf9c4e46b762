from __future__ import annotations

from fake_worker import Script, frame, wait_until
from storycli.engine.feature import FeatureSession, feature_session_id
from storycli.engine.lifecycle import StreamState
from storycli.shared.models.task import TaskStatus
from worker_case import WorkerCase


def _done():
    return Script(frames=[frame("text", content="ok"), frame("result", isError=False)])


class TestFeatureSession(WorkerCase):
    def _feature(self, **kwargs) -> FeatureSession:
        return FeatureSession(self.manager, "characters", "p1", "/story", **kwargs)

    async def test_session_key_and_defaults(self):
        feature = self._feature(default_skills=["character-backstory", "character-traits"])

        assert feature.session_id == feature_session_id("characters", "p1") == "characters-p1"
        session = feature.ensure_session()
        assert session.project_path == "/story"
        assert session.project_id == "p1"
        assert feature.enabled_skills == ["character-backstory", "character-traits"]

        feature.toggle_skill("character-traits")
        assert feature.enabled_skills == ["character-backstory"]
        # Defaults apply only when the session is first created.
        assert self._feature(default_skills=["scene-compose"]).enabled_skills == ["character-backstory"]

    async def test_execute_queues_and_runs(self):
        self.worker.scripts = [_done()]
        feature = self._feature()

        task = feature.execute("character-traits", {"characterId": "c1"})
        assert feature.session.auto_start is True
        await self.idle()

        assert self.worker.submissions[0]["projectPath"] == "/story"
        assert self.worker.submissions[0]["projectId"] == "p1"
        assert self.worker.submissions[0]["prompt"].startswith("Execute skill: character-traits")
        assert feature.session.get_task(task.id) is None
        assert [e.content for e in feature.logs] == ["ok"]

    async def test_execute_prompt_and_enabled_skills(self):
        self.worker.scripts = [_done(), _done(), _done()]
        feature = self._feature()
        feature.set_skills(["scene-description", "scene-compose"])

        queued = feature.execute_enabled({"sceneId": "s4"})
        feature.execute_prompt("Tighten the dialogue", label="Polish")
        await self.idle()

        assert [t.skill_id for t in queued] == ["scene-description", "scene-compose"]
        assert [s["prompt"].splitlines()[0] for s in self.worker.submissions] == [
            "Execute skill: scene-description",
            "Execute skill: scene-compose",
            "Tighten the dialogue",
        ]
        assert feature.session.completed_count == 3

    async def test_execute_enabled_without_skills_is_noop(self):
        feature = self._feature()
        assert feature.execute_enabled() == []
        assert feature.queue == []

    async def test_clear_aborts_and_resets(self):
        self.worker.scripts = [Script(frames=[frame("text", content="working")], hold=True)]
        feature = self._feature(default_skills=["character-backstory"])
        feature.execute_prompt("long job")
        await wait_until(lambda: self.manager.controller(feature.session_id).state == StreamState.STREAMING)

        await feature.clear()
        await wait_until(lambda: self.worker.cancelled == ["exec-1"])

        session = feature.session
        assert session.queue == []
        assert session.is_running is False
        assert session.project_path == "/story"
        assert session.enabled_skills == []
        assert feature.logs == []
        assert feature.execution_status()["execution_id"] is None

    async def test_abort_marks_running_task_failed(self):
        self.worker.scripts = [Script(frames=[frame("text", content="working")], hold=True)]
        feature = self._feature()
        task = feature.execute_prompt("long job")
        await wait_until(lambda: self.manager.controller(feature.session_id).is_streaming)

        assert await feature.abort() is True
        assert feature.session.get_task(task.id).status == TaskStatus.FAILED
