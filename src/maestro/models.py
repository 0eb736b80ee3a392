from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

SUMMARY_LOG_LIMIT = 200


class Phase(str, Enum):
    REQUIREMENTS = "requirements"
    PLANNING = "planning"
    EXECUTION = "execution"
    REVIEW = "review"
    FAILED = "failed"


class OrchestrationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    ERRORED = "errored"
    STOPPED = "stopped"
    ORPHANED = "orphaned"


class QuestionKind(str, Enum):
    CHOICE = "choice"
    MULTISELECT = "multiselect"
    TEXT = "text"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_orchestration_id() -> str:
    return f"orch-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class Question:
    id: str
    text: str
    kind: QuestionKind = QuestionKind.TEXT
    options: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "kind": self.kind.value,
            "options": list(self.options),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Question:
        kind_value = str(data.get("kind") or data.get("type") or QuestionKind.TEXT.value)
        try:
            kind = QuestionKind(kind_value)
        except ValueError:
            kind = QuestionKind.TEXT
        options = data.get("options") or []
        return cls(
            id=str(data["id"]),
            text=str(data.get("text") or data.get("question") or ""),
            kind=kind,
            options=[str(option) for option in options] if isinstance(options, list) else [],
        )


@dataclass(slots=True)
class PlanTask:
    id: str
    title: str
    description: str = ""
    agent_type: str = "general"
    dependencies: list[str] = field(default_factory=list)
    priority: str = "P2"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "agent_type": self.agent_type,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanTask:
        raw_dependencies = data.get("dependencies") or []
        dependencies: list[str] = []
        if isinstance(raw_dependencies, list):
            for dependency in raw_dependencies:
                value = str(dependency)
                if value not in dependencies:
                    dependencies.append(value)
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or data["id"]),
            description=str(data.get("description") or ""),
            agent_type=str(data.get("agent_type") or data.get("agentType") or "general"),
            dependencies=dependencies,
            priority=str(data.get("priority") or "P2"),
        )


@dataclass(slots=True)
class OutputEntry:
    kind: str
    text: str
    tool: str | None = None
    time: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "text": self.text, "time": self.time}
        if self.tool is not None:
            payload["tool"] = self.tool
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutputEntry:
        return cls(
            kind=str(data.get("kind") or "system"),
            text=str(data.get("text") or ""),
            tool=data.get("tool"),
            time=str(data.get("time") or utcnow_iso()),
        )


@dataclass(slots=True)
class SubAgentRun:
    task_id: str
    retries: int = 0
    status: RunStatus = RunStatus.RUNNING
    workspace_path: str | None = None
    branch_ref: str | None = None
    isolated: bool = False
    output_buffer: list[OutputEntry] = field(default_factory=list)
    start_time: str = field(default_factory=utcnow_iso)
    end_time: str | None = None
    exit_code: int | None = None
    error: str | None = None
    process: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "retries": self.retries,
            "status": self.status.value,
            "workspace_path": self.workspace_path,
            "branch_ref": self.branch_ref,
            "isolated": self.isolated,
            "output_buffer": [entry.to_dict() for entry in self.output_buffer],
            "start_time": self.start_time,
            "end_time": self.end_time,
            "exit_code": self.exit_code,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubAgentRun:
        status = RunStatus(str(data.get("status") or RunStatus.RUNNING.value))
        if status == RunStatus.RUNNING:
            status = RunStatus.ORPHANED
        return cls(
            task_id=str(data["task_id"]),
            retries=int(data.get("retries") or 0),
            status=status,
            workspace_path=data.get("workspace_path"),
            branch_ref=data.get("branch_ref"),
            isolated=bool(data.get("isolated", False)),
            output_buffer=[
                OutputEntry.from_dict(entry)
                for entry in data.get("output_buffer") or []
                if isinstance(entry, dict)
            ],
            start_time=str(data.get("start_time") or utcnow_iso()),
            end_time=data.get("end_time"),
            exit_code=data.get("exit_code"),
            error=data.get("error"),
        )


@dataclass(slots=True)
class Orchestration:
    id: str
    goal: str
    phase: Phase = Phase.REQUIREMENTS
    status: OrchestrationStatus = OrchestrationStatus.ACTIVE
    questions: list[Question] = field(default_factory=list)
    answers: dict[str, str | list[str]] = field(default_factory=dict)
    plan: list[PlanTask] = field(default_factory=list)
    sub_agents: list[SubAgentRun] = field(default_factory=list)
    summary_log: list[dict[str, Any]] = field(default_factory=list)
    chat_history: list[dict[str, Any]] = field(default_factory=list)
    task_chat_history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    max_retries: int = 3
    start_time: str = field(default_factory=utcnow_iso)

    @classmethod
    def create(cls, goal: str, *, max_retries: int = 3) -> Orchestration:
        return cls(id=new_orchestration_id(), goal=goal, max_retries=max_retries)

    def task(self, task_id: str) -> PlanTask | None:
        for task in self.plan:
            if task.id == task_id:
                return task
        return None

    def run_for(self, task_id: str) -> SubAgentRun | None:
        """Return the most recent run recorded for a task."""
        for run in reversed(self.sub_agents):
            if run.task_id == task_id:
                return run
        return None

    def completed_task_ids(self) -> set[str]:
        return {run.task_id for run in self.sub_agents if run.status == RunStatus.COMPLETED}

    def record(self, event: dict[str, Any], *, limit: int = SUMMARY_LOG_LIMIT) -> None:
        self.summary_log.append(event)
        if len(self.summary_log) > limit:
            del self.summary_log[: len(self.summary_log) - limit]

    def stats(self) -> dict[str, int]:
        completed = 0
        running = 0
        failed = 0
        for task in self.plan:
            run = self.run_for(task.id)
            if run is None:
                continue
            if run.status == RunStatus.COMPLETED:
                completed += 1
            elif run.status == RunStatus.RUNNING:
                running += 1
            elif run.status == RunStatus.FAILED:
                failed += 1
        total = len(self.plan)
        return {
            "completed": completed,
            "running": running,
            "failed": failed,
            "pending": total - completed - running - failed,
            "total": total,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "phase": self.phase.value,
            "status": self.status.value,
            "questions": [question.to_dict() for question in self.questions],
            "answers": {
                key: list(value) if isinstance(value, list) else value
                for key, value in self.answers.items()
            },
            "plan": [task.to_dict() for task in self.plan],
            "sub_agents": [run.to_dict() for run in self.sub_agents],
            "summary_log": list(self.summary_log),
            "chat_history": list(self.chat_history),
            "task_chat_history": {
                task_id: list(messages) for task_id, messages in self.task_chat_history.items()
            },
            "max_retries": self.max_retries,
            "start_time": self.start_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Orchestration:
        answers = data.get("answers") or {}
        task_chats = data.get("task_chat_history") or {}
        return cls(
            id=str(data["id"]),
            goal=str(data.get("goal") or ""),
            phase=Phase(str(data.get("phase") or Phase.REQUIREMENTS.value)),
            status=OrchestrationStatus(str(data.get("status") or OrchestrationStatus.ACTIVE.value)),
            questions=[Question.from_dict(item) for item in data.get("questions") or []],
            answers=dict(answers) if isinstance(answers, dict) else {},
            plan=[PlanTask.from_dict(item) for item in data.get("plan") or []],
            sub_agents=[SubAgentRun.from_dict(item) for item in data.get("sub_agents") or []],
            summary_log=[
                item for item in data.get("summary_log") or [] if isinstance(item, dict)
            ],
            chat_history=[
                item for item in data.get("chat_history") or [] if isinstance(item, dict)
            ],
            task_chat_history={
                str(task_id): [item for item in messages if isinstance(item, dict)]
                for task_id, messages in (task_chats.items() if isinstance(task_chats, dict) else [])
                if isinstance(messages, list)
            },
            max_retries=int(data.get("max_retries", 3)),
            start_time=str(data.get("start_time") or utcnow_iso()),
        )
