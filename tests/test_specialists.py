import asyncio
import json
from pathlib import Path

import pytest

from maestro.backends.base import TextBackend
from maestro.errors import CollaboratorProcessError, CollaboratorTimeout
from maestro.models import Orchestration, Phase, PlanTask, Question, QuestionKind
from maestro.specialists import Advisor, Planner, RequirementsAnalyst


class ScriptedBackend(TextBackend):
    def __init__(self, response: str = "", *, delay: float = 0.0, fail: bool = False) -> None:
        self.response = response
        self.delay = delay
        self.fail = fail
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise CollaboratorProcessError("exit 1", backend="fake")
        return self.response


def test_questions_parsed_from_collaborator_output() -> None:
    payload = [
        {"id": "q1", "text": "Which framework?", "kind": "choice", "options": ["Vue", "React"]},
        {"question": "Anything else?", "type": "text"},
    ]
    backend = ScriptedBackend("Sure!\n" + json.dumps(payload))
    analyst = RequirementsAnalyst(backend)

    result = asyncio.run(analyst.questions("Build a dashboard"))

    assert not result.used_fallback
    assert [question.id for question in result.items] == ["q1", "q2"]
    assert result.items[0].kind == QuestionKind.CHOICE
    assert result.items[1].text == "Anything else?"
    assert "Build a dashboard" in backend.prompts[0]


def test_question_timeout_uses_fallback_with_detected_stack(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"dependencies": {"vue": "^3", "pinia": "^2"}}), encoding="utf-8"
    )
    analyst = RequirementsAnalyst(
        ScriptedBackend("[]", delay=1.0), timeout_seconds=0.05, project_root=tmp_path
    )

    result = asyncio.run(analyst.questions("Add dark mode"))

    assert result.used_fallback
    assert "timed out" in result.fallback_reason
    assert len(result.items) == 5
    assert result.items[0].text == "Detected tech stack: Vue, Pinia. Is this correct?"
    assert result.items[3].kind == QuestionKind.TEXT
    assert result.items[4].kind == QuestionKind.MULTISELECT


def test_malformed_questions_use_fallback() -> None:
    analyst = RequirementsAnalyst(ScriptedBackend("I have no questions, sorry."))

    result = asyncio.run(analyst.questions("Add dark mode"))

    assert result.used_fallback
    assert result.items[0].text == "Detected tech stack: unknown. Is this correct?"


def test_follow_up_reports_sufficiency() -> None:
    backend = ScriptedBackend('{"sufficient": true, "reason": "All clear"}')
    orchestration = Orchestration.create("goal")

    result = asyncio.run(RequirementsAnalyst(backend).follow_up(orchestration))

    assert result.sufficient
    assert result.reason == "All clear"
    assert result.questions == []


def test_follow_up_renames_colliding_question_ids() -> None:
    backend = ScriptedBackend(
        json.dumps(
            [
                {"id": "q1", "text": "Which browsers?", "kind": "multiselect", "options": ["a"]},
                {"id": "deep-1", "text": "Offline support?", "kind": "text"},
            ]
        )
    )
    orchestration = Orchestration.create("goal")
    orchestration.questions = [Question(id="q1", text="Old question")]

    result = asyncio.run(RequirementsAnalyst(backend).follow_up(orchestration))

    assert not result.sufficient
    ids = [question.id for question in result.questions]
    assert ids[0] != "q1"
    assert ids[0].startswith("deep-")
    assert ids[1] == "deep-1"


def test_follow_up_failure_is_reported_as_sufficient() -> None:
    result = asyncio.run(
        RequirementsAnalyst(ScriptedBackend(fail=True)).follow_up(Orchestration.create("goal"))
    )

    assert result.sufficient
    assert "unavailable" in result.reason


def test_plan_parsed_from_collaborator_output() -> None:
    payload = [
        {"id": "task-1", "title": "Schema", "agentType": "backend", "priority": "P1"},
        {"id": "task-2", "title": "API", "dependencies": ["task-1", "task-1"]},
    ]
    planner = Planner(ScriptedBackend(json.dumps(payload)))

    result = asyncio.run(planner.plan(Orchestration.create("Build an API")))

    assert not result.used_fallback
    assert result.items[0].agent_type == "backend"
    assert result.items[1].dependencies == ["task-1"]


def test_plan_with_cycle_falls_back_to_generic_chain() -> None:
    payload = [
        {"id": "a", "title": "A", "dependencies": ["b"]},
        {"id": "b", "title": "B", "dependencies": ["a"]},
    ]
    planner = Planner(ScriptedBackend(json.dumps(payload)))

    result = asyncio.run(planner.plan(Orchestration.create("Build an API")))

    assert result.used_fallback
    assert [task.title for task in result.items] == [
        "Research & Design",
        "Implement core feature",
        "Add UI components",
        "Integration & Testing",
        "Documentation",
    ]
    assert result.items[4].dependencies == ["task-4"]
    assert result.items[4].priority == "P3"


def test_pwa_goal_uses_pwa_fallback_plan() -> None:
    planner = Planner(ScriptedBackend(fail=True))

    result = asyncio.run(planner.plan(Orchestration.create("Make the app a PWA")))

    by_id = {task.id: task for task in result.items}
    assert by_id["task-1"].title == "Configure PWA manifest"
    assert by_id["task-4"].dependencies == ["task-2"]
    assert by_id["task-5"].dependencies == ["task-3", "task-4"]
    assert by_id["task-5"].agent_type == "qa"


def test_refine_renames_ids_that_collide_with_plan() -> None:
    orchestration = Orchestration.create("goal")
    orchestration.plan = [PlanTask(id="task-1", title="One"), PlanTask(id="refine-1", title="Old")]
    payload = [
        {"id": "task-1", "title": "Fix colours"},
        {"id": "x", "title": "Retest", "dependencies": ["task-1"]},
    ]
    planner = Planner(ScriptedBackend(json.dumps(payload)))

    result = asyncio.run(planner.refine(orchestration, "colours are off"))

    first, second = result.items
    assert first.id == "refine-2"
    assert second.id == "x"
    assert second.dependencies == ["refine-2"]


def test_refine_failure_creates_task_from_feedback() -> None:
    orchestration = Orchestration.create("goal")
    orchestration.plan = [PlanTask(id="task-1", title="One")]

    result = asyncio.run(
        Planner(ScriptedBackend(fail=True)).refine(orchestration, "Add a settings page\nwith toggles")
    )

    assert result.used_fallback
    assert len(result.items) == 1
    assert result.items[0].title == "Add a settings page"
    assert result.items[0].id == "refine-1"


def test_advisor_chat_prompt_reflects_execution_phase() -> None:
    orchestration = Orchestration.create("Add offline mode")
    orchestration.phase = Phase.EXECUTION
    orchestration.answers = {"q1": "Vue"}
    orchestration.plan = [PlanTask(id="task-1", title="Service worker")]
    backend = ScriptedBackend("  Two tasks are running.  ")

    reply = asyncio.run(Advisor(backend).chat(orchestration, "How far along?"))

    assert reply == "Two tasks are running."
    prompt = backend.prompts[0]
    assert "Current phase: execution" in prompt
    assert "1. [task-1] Service worker" in prompt
    assert "Execution is in progress" in prompt
    assert '"How far along?"' in prompt


def test_advisor_times_out() -> None:
    advisor = Advisor(ScriptedBackend("late", delay=1.0), timeout_seconds=0.05)

    with pytest.raises(CollaboratorTimeout):
        asyncio.run(advisor.explain(Orchestration.create("goal")))
