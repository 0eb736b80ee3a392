from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path

from maestro.backends.base import TextBackend
from maestro.errors import CollaboratorError, CollaboratorParseFailure
from maestro.models import Orchestration, Question
from maestro.parsing import extract_json
from maestro.prompts import (
    build_follow_up_prompt,
    build_questions_prompt,
    detect_tech_stack,
    fallback_questions,
)
from maestro.specialists.base import Generated, SpecialistAgent


@dataclass(slots=True)
class FollowUpResult:
    sufficient: bool
    reason: str = ""
    questions: list[Question] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sufficient": self.sufficient,
            "reason": self.reason,
            "questions": [question.to_dict() for question in self.questions],
        }


def _parse_questions(payload: object) -> list[Question]:
    if not isinstance(payload, list):
        raise CollaboratorParseFailure("Questions payload is not a list.")
    questions: list[Question] = []
    for index, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            raise CollaboratorParseFailure(f"Question #{index} is not an object.")
        data = dict(item)
        data.setdefault("id", f"q{index}")
        question = Question.from_dict(data)
        if not question.text.strip():
            raise CollaboratorParseFailure(f"Question {question.id} has no text.")
        questions.append(question)
    return questions


def dedupe_question_ids(existing: list[Question], new_questions: list[Question]) -> list[Question]:
    taken = {question.id for question in existing}
    stamp = int(time.time() * 1000)
    for index, question in enumerate(new_questions):
        if question.id in taken:
            question.id = f"deep-{stamp}-{index}"
        taken.add(question.id)
    return new_questions


class RequirementsAnalyst(SpecialistAgent):
    role = "requirements"

    def __init__(
        self,
        backend: TextBackend,
        *,
        timeout_seconds: float = 30.0,
        project_root: Path | None = None,
    ) -> None:
        super().__init__(backend, timeout_seconds=timeout_seconds)
        self.project_root = project_root

    def _fallback(self, reason: str) -> Generated[Question]:
        self.log_fallback(reason)
        stack = detect_tech_stack(self.project_root) if self.project_root else []
        return Generated(items=fallback_questions(stack), fallback_reason=reason)

    async def questions(self, goal: str) -> Generated[Question]:
        try:
            payload = await self.ask_json(build_questions_prompt(goal), "array")
            questions = _parse_questions(payload)
        except CollaboratorError as exc:
            return self._fallback(str(exc))
        if not questions:
            return self._fallback("collaborator returned no questions")
        return Generated(items=questions)

    async def follow_up(self, orchestration: Orchestration) -> FollowUpResult:
        try:
            text = await self.generate(build_follow_up_prompt(orchestration))
        except CollaboratorError as exc:
            self.log_fallback(str(exc))
            return FollowUpResult(
                sufficient=True,
                reason=f"Question generation unavailable ({exc}); proceed with current answers.",
            )

        try:
            questions = _parse_questions(extract_json(text, "array"))
        except CollaboratorParseFailure:
            questions = []
        if questions:
            return FollowUpResult(
                sufficient=False,
                questions=dedupe_question_ids(orchestration.questions, questions),
            )

        try:
            verdict = extract_json(text, "object")
        except CollaboratorParseFailure:
            verdict = {}
        reason = str(verdict.get("reason") or "No further questions needed.")
        return FollowUpResult(sufficient=True, reason=reason)
