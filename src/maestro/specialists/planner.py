from __future__ import annotations

from maestro.errors import CollaboratorError, CollaboratorParseFailure, PlanValidationError
from maestro.graph import merge_new_tasks, validate_plan
from maestro.models import Orchestration, PlanTask
from maestro.prompts import (
    build_plan_prompt,
    build_refine_prompt,
    fallback_plan,
    fallback_refinement,
)
from maestro.specialists.base import Generated, SpecialistAgent


def _parse_tasks(payload: object, id_prefix: str) -> list[PlanTask]:
    if not isinstance(payload, list) or not payload:
        raise CollaboratorParseFailure("Plan payload is not a non-empty list.")
    tasks: list[PlanTask] = []
    for index, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            raise CollaboratorParseFailure(f"Task #{index} is not an object.")
        data = dict(item)
        data.setdefault("id", f"{id_prefix}-{index}")
        if not str(data.get("title") or "").strip():
            raise CollaboratorParseFailure(f"Task {data['id']} has no title.")
        tasks.append(PlanTask.from_dict(data))
    return tasks


class Planner(SpecialistAgent):
    role = "planner"

    async def plan(self, orchestration: Orchestration) -> Generated[PlanTask]:
        try:
            payload = await self.ask_json(build_plan_prompt(orchestration), "array")
            tasks = _parse_tasks(payload, "task")
            validate_plan(tasks)
        except (CollaboratorError, PlanValidationError) as exc:
            self.log_fallback(str(exc))
            return Generated(items=fallback_plan(orchestration.goal), fallback_reason=str(exc))
        return Generated(items=tasks)

    async def refine(self, orchestration: Orchestration, feedback: str) -> Generated[PlanTask]:
        reason: str | None = None
        try:
            payload = await self.ask_json(build_refine_prompt(orchestration, feedback), "array")
            tasks = merge_new_tasks(orchestration.plan, _parse_tasks(payload, "refine"))
            validate_plan([*orchestration.plan, *tasks])
        except (CollaboratorError, PlanValidationError) as exc:
            self.log_fallback(str(exc))
            reason = str(exc)
            tasks = merge_new_tasks(orchestration.plan, fallback_refinement(feedback))
        return Generated(items=tasks, fallback_reason=reason)
