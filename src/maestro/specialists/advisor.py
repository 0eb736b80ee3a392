from __future__ import annotations

from maestro.errors import CollaboratorProcessError
from maestro.models import Orchestration, PlanTask
from maestro.prompts import build_chat_prompt, build_explain_prompt, build_task_chat_prompt
from maestro.specialists.base import SpecialistAgent


class Advisor(SpecialistAgent):
    """Free-text answers about an orchestration; there is no deterministic fallback."""

    role = "advisor"

    async def _reply(self, prompt: str) -> str:
        text = (await self.generate(prompt)).strip()
        if not text:
            raise CollaboratorProcessError(
                f"{self.role} returned an empty response",
                backend=getattr(self.backend, "name", None),
            )
        return text

    async def chat(self, orchestration: Orchestration, message: str) -> str:
        return await self._reply(build_chat_prompt(orchestration, message))

    async def chat_task(self, orchestration: Orchestration, task: PlanTask, message: str) -> str:
        return await self._reply(build_task_chat_prompt(orchestration, task, message))

    async def explain(self, orchestration: Orchestration) -> str:
        return await self._reply(build_explain_prompt(orchestration))
