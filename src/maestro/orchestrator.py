from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from maestro.backends.claude import ClaudeWorker
from maestro.errors import (
    InvalidPhaseError,
    InvalidRequestError,
    OrchestrationNotFound,
    TaskNotFound,
    WorkspaceError,
)
from maestro.events import EventHub, Subscription, record_event, task_scope
from maestro.graph import merge_new_tasks, validate_plan
from maestro.models import (
    Orchestration,
    OrchestrationStatus,
    Phase,
    PlanTask,
    RunStatus,
    SubAgentRun,
    utcnow_iso,
)
from maestro.prompts import build_task_prompt
from maestro.scheduler import Supervisor, SupervisorFactory, TaskScheduler
from maestro.specialists import Advisor, FollowUpResult, Planner, RequirementsAnalyst
from maestro.specialists.requirements import dedupe_question_ids
from maestro.state.store import OrchestrationStore
from maestro.state.workspaces import Workspace, WorkspaceManager
from maestro.workers.supervisor import EntryCallback, ProcessSupervisor

logger = logging.getLogger(__name__)

GOAL_EXCERPT_CHARS = 100
DETAIL_LOG_ENTRIES = 20


@dataclass(slots=True)
class _Entry:
    orchestration: Orchestration
    lock: asyncio.Lock
    scheduler: TaskScheduler | None = None
    generation: asyncio.Task[None] | None = None

    @property
    def generating(self) -> bool:
        return self.generation is not None and not self.generation.done()


def _runtime_seconds(start_time: str) -> int:
    try:
        started = datetime.fromisoformat(start_time)
    except ValueError:
        return 0
    if started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    return max(0, int((datetime.now(UTC) - started).total_seconds()))


def _validate_answers(answers: Any) -> dict[str, str | list[str]]:
    if not isinstance(answers, dict):
        raise InvalidRequestError("Answers must be a mapping of question id to answer.")
    cleaned: dict[str, str | list[str]] = {}
    for key, value in answers.items():
        if isinstance(value, str):
            cleaned[str(key)] = value
        elif isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
            cleaned[str(key)] = list(value)
        else:
            raise InvalidRequestError(f"Answer for {key!r} must be a string or list of strings.")
    return cleaned


class Orchestrator:
    """Owns every orchestration in memory and drives its phase transitions."""

    def __init__(
        self,
        *,
        store: OrchestrationStore,
        hub: EventHub,
        workspaces: WorkspaceManager,
        requirements: RequirementsAnalyst,
        planner: Planner,
        advisor: Advisor | None = None,
        worker: ClaudeWorker | None = None,
        supervisor_factory: SupervisorFactory | None = None,
        concurrency_limit: int = 3,
        max_retries: int = 3,
        retry_backoff_seconds: float = 2.0,
        progress_every: int = 10,
    ) -> None:
        self.store = store
        self.hub = hub
        self.workspaces = workspaces
        self.requirements = requirements
        self.planner = planner
        self.advisor = advisor or Advisor(planner.backend, timeout_seconds=planner.timeout_seconds)
        self.worker = worker or ClaudeWorker()
        self.supervisor_factory = supervisor_factory or self._build_supervisor
        self.concurrency_limit = concurrency_limit
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.progress_every = progress_every
        self._entries: dict[str, _Entry] = {}

    def _build_supervisor(
        self,
        orchestration: Orchestration,
        task: PlanTask,
        run: SubAgentRun,
        workspace: Workspace,
        on_entry: EntryCallback,
    ) -> Supervisor:
        command = self.worker.build_command(build_task_prompt(orchestration, task))
        return ProcessSupervisor(run, command, workspace.path, on_entry)

    def _get(self, orchestration_id: str) -> _Entry:
        entry = self._entries.get(orchestration_id)
        if entry is None:
            raise OrchestrationNotFound(orchestration_id)
        return entry

    def _alive(self, entry: _Entry) -> bool:
        return self._entries.get(entry.orchestration.id) is entry

    def get(self, orchestration_id: str) -> Orchestration:
        return self._get(orchestration_id).orchestration

    def _task(self, entry: _Entry, task_id: str) -> PlanTask:
        task = entry.orchestration.task(task_id)
        if task is None:
            raise TaskNotFound(entry.orchestration.id, task_id)
        return task

    def _scheduler(self, entry: _Entry) -> TaskScheduler:
        if entry.scheduler is None:
            entry.scheduler = TaskScheduler(
                entry.orchestration,
                entry.lock,
                hub=self.hub,
                store=self.store,
                workspaces=self.workspaces,
                supervisor_factory=self.supervisor_factory,
                concurrency_limit=self.concurrency_limit,
                retry_backoff_seconds=self.retry_backoff_seconds,
                progress_every=self.progress_every,
            )
        return entry.scheduler

    def _set_phase(self, entry: _Entry, phase: Phase) -> None:
        orchestration = entry.orchestration
        orchestration.phase = phase
        record_event(self.hub, orchestration, "phase", phase=phase.value)
        self.store.mark_dirty(orchestration)

    def _fail(self, entry: _Entry, stage: str, exc: BaseException) -> None:
        logger.error("%s crashed for %s: %s", stage, entry.orchestration.id, exc)
        record_event(
            self.hub,
            entry.orchestration,
            "error",
            stage=stage,
            message=f"{stage} failed: {exc}",
        )
        self._set_phase(entry, Phase.FAILED)

    def load(self) -> int:
        """Register every persisted orchestration not already in memory."""
        loaded = 0
        for orchestration in self.store.load_all():
            if orchestration.id in self._entries:
                continue
            self._entries[orchestration.id] = _Entry(orchestration, asyncio.Lock())
            self.hub.seed(orchestration.id, orchestration.summary_log)
            loaded += 1
        return loaded

    async def start(self, goal: str) -> str:
        goal = goal.strip()
        if not goal:
            raise InvalidRequestError("Goal must not be empty.")
        orchestration = Orchestration.create(goal, max_retries=self.max_retries)
        entry = _Entry(orchestration, asyncio.Lock())
        self._entries[orchestration.id] = entry
        record_event(self.hub, orchestration, "phase", phase=orchestration.phase.value)
        entry.generation = asyncio.get_running_loop().create_task(self._generate_questions(entry))
        logger.info("started orchestration %s", orchestration.id)
        # generation keeps running even if this first write fails
        await self.store.save_now(orchestration)
        return orchestration.id

    async def _generate_questions(self, entry: _Entry) -> None:
        orchestration = entry.orchestration
        try:
            result = await self.requirements.questions(orchestration.goal)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            async with entry.lock:
                if self._alive(entry):
                    self._fail(entry, "question generation", exc)
            return
        async with entry.lock:
            if not self._alive(entry) or orchestration.phase != Phase.REQUIREMENTS:
                return
            orchestration.questions = result.items
            record_event(
                self.hub,
                orchestration,
                "questions",
                questions=[question.to_dict() for question in result.items],
                fallback=result.used_fallback,
                fallback_reason=result.fallback_reason,
            )
            self.store.mark_dirty(orchestration)

    async def submit_answers(self, orchestration_id: str, answers: dict[str, Any]) -> None:
        entry = self._get(orchestration_id)
        cleaned = _validate_answers(answers)
        async with entry.lock:
            orchestration = entry.orchestration
            if orchestration.phase not in (Phase.REQUIREMENTS, Phase.PLANNING):
                raise InvalidPhaseError(
                    f"Cannot submit answers in phase {orchestration.phase.value}."
                )
            if entry.generating:
                raise InvalidPhaseError("Generation is still in progress; try again shortly.")
            orchestration.answers.update(cleaned)
            orchestration.plan = []
            self._set_phase(entry, Phase.PLANNING)
            entry.generation = asyncio.get_running_loop().create_task(self._generate_plan(entry))

    async def _generate_plan(self, entry: _Entry) -> None:
        orchestration = entry.orchestration
        try:
            result = await self.planner.plan(orchestration)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            async with entry.lock:
                if self._alive(entry):
                    self._fail(entry, "plan generation", exc)
            return
        async with entry.lock:
            if not self._alive(entry) or orchestration.phase != Phase.PLANNING:
                return
            orchestration.plan = result.items
            record_event(
                self.hub,
                orchestration,
                "plan",
                plan=[task.to_dict() for task in result.items],
                fallback=result.used_fallback,
                fallback_reason=result.fallback_reason,
            )
            self.store.mark_dirty(orchestration)

    async def wait_generation(self, orchestration_id: str) -> None:
        entry = self._get(orchestration_id)
        if entry.generation is not None:
            await asyncio.gather(entry.generation, return_exceptions=True)

    async def request_more_questions(self, orchestration_id: str) -> FollowUpResult:
        entry = self._get(orchestration_id)
        orchestration = entry.orchestration
        async with entry.lock:
            if orchestration.phase not in (Phase.REQUIREMENTS, Phase.PLANNING):
                raise InvalidPhaseError(
                    f"Cannot ask for more questions in phase {orchestration.phase.value}."
                )
            if entry.generating:
                raise InvalidPhaseError("Generation is still in progress; try again shortly.")

        result = await self.requirements.follow_up(orchestration)

        async with entry.lock:
            if not self._alive(entry):
                raise OrchestrationNotFound(orchestration_id)
            if orchestration.phase not in (Phase.REQUIREMENTS, Phase.PLANNING):
                raise InvalidPhaseError(
                    f"Phase changed to {orchestration.phase.value} while generating questions."
                )
            if result.sufficient:
                record_event(
                    self.hub,
                    orchestration,
                    "progress",
                    message=f"No more questions needed: {result.reason}",
                )
                self.store.mark_dirty(orchestration)
                return result
            added = dedupe_question_ids(orchestration.questions, result.questions)
            orchestration.questions.extend(added)
            record_event(
                self.hub,
                orchestration,
                "questions",
                questions=[question.to_dict() for question in orchestration.questions],
                added=[question.id for question in added],
            )
            self._set_phase(entry, Phase.REQUIREMENTS)
        return result

    async def execute(self, orchestration_id: str) -> None:
        entry = self._get(orchestration_id)
        async with entry.lock:
            orchestration = entry.orchestration
            if orchestration.phase != Phase.PLANNING:
                raise InvalidPhaseError(f"Cannot execute in phase {orchestration.phase.value}.")
            if entry.generating:
                raise InvalidPhaseError("Plan generation is still in progress.")
            if not orchestration.plan:
                raise InvalidRequestError("Plan is empty; nothing to execute.")
            validate_plan(orchestration.plan)
            self._set_phase(entry, Phase.EXECUTION)
            self._scheduler(entry).start()

    async def refine(self, orchestration_id: str, feedback: str) -> list[PlanTask]:
        entry = self._get(orchestration_id)
        orchestration = entry.orchestration
        if not feedback.strip():
            raise InvalidRequestError("Feedback must not be empty.")
        async with entry.lock:
            if orchestration.phase != Phase.REVIEW:
                raise InvalidPhaseError(f"Cannot refine in phase {orchestration.phase.value}.")

        result = await self.planner.refine(orchestration, feedback)

        async with entry.lock:
            if not self._alive(entry):
                raise OrchestrationNotFound(orchestration_id)
            if orchestration.phase != Phase.REVIEW:
                raise InvalidPhaseError(
                    f"Phase changed to {orchestration.phase.value} while refining."
                )
            added = merge_new_tasks(orchestration.plan, result.items)
            orchestration.plan.extend(added)
            record_event(
                self.hub,
                orchestration,
                "plan",
                plan=[task.to_dict() for task in orchestration.plan],
                added=[task.id for task in added],
                feedback=feedback,
                fallback=result.used_fallback,
            )
            self._set_phase(entry, Phase.EXECUTION)
            self._scheduler(entry).start()
        return added

    async def approve(self, orchestration_id: str) -> None:
        entry = self._get(orchestration_id)
        async with entry.lock:
            orchestration = entry.orchestration
            if orchestration.phase != Phase.REVIEW:
                raise InvalidPhaseError(f"Cannot approve in phase {orchestration.phase.value}.")
            orchestration.status = OrchestrationStatus.COMPLETED
            record_event(self.hub, orchestration, "complete", stats=orchestration.stats())
            self.store.mark_dirty(orchestration)

    def _exchange(self, message: str, reply: str) -> list[dict[str, Any]]:
        now = utcnow_iso()
        return [
            {"role": "user", "message": message, "time": now},
            {"role": "assistant", "message": reply, "time": now},
        ]

    async def chat(self, orchestration_id: str, message: str) -> str:
        """Answer a free-form question about the orchestration in its current phase."""
        entry = self._get(orchestration_id)
        message = message.strip()
        if not message:
            raise InvalidRequestError("Message must not be empty.")
        reply = await self.advisor.chat(entry.orchestration, message)
        async with entry.lock:
            if not self._alive(entry):
                raise OrchestrationNotFound(orchestration_id)
            entry.orchestration.chat_history.extend(self._exchange(message, reply))
            self.store.mark_dirty(entry.orchestration)
        return reply

    async def chat_task(self, orchestration_id: str, task_id: str, message: str) -> str:
        entry = self._get(orchestration_id)
        task = self._task(entry, task_id)
        message = message.strip()
        if not message:
            raise InvalidRequestError("Message must not be empty.")
        reply = await self.advisor.chat_task(entry.orchestration, task, message)
        async with entry.lock:
            if not self._alive(entry):
                raise OrchestrationNotFound(orchestration_id)
            history = entry.orchestration.task_chat_history.setdefault(task_id, [])
            history.extend(self._exchange(message, reply))
            self.store.mark_dirty(entry.orchestration)
        return reply

    async def explain(self, orchestration_id: str) -> str:
        entry = self._get(orchestration_id)
        return await self.advisor.explain(entry.orchestration)

    async def delete(self, orchestration_id: str) -> None:
        entry = self._get(orchestration_id)
        if entry.generation is not None and not entry.generation.done():
            entry.generation.cancel()
            await asyncio.gather(entry.generation, return_exceptions=True)
        if entry.scheduler is not None:
            await entry.scheduler.close()
        self._entries.pop(orchestration_id, None)
        await self.store.delete(orchestration_id)
        for task in entry.orchestration.plan:
            self.hub.close_scope(task_scope(orchestration_id, task.id))
        self.hub.close_scope(orchestration_id)
        logger.info("deleted orchestration %s", orchestration_id)

    async def stop_task(self, orchestration_id: str, task_id: str) -> bool:
        entry = self._get(orchestration_id)
        self._task(entry, task_id)
        if entry.scheduler is None:
            return False
        return await entry.scheduler.stop_task(task_id)

    async def resume(self, orchestration_id: str) -> None:
        """Restart work that was interrupted, typically after a reload."""
        entry = self._get(orchestration_id)
        async with entry.lock:
            orchestration = entry.orchestration
            if entry.generating:
                return
            if orchestration.phase == Phase.REQUIREMENTS and not orchestration.questions:
                entry.generation = asyncio.get_running_loop().create_task(
                    self._generate_questions(entry)
                )
                return
            if orchestration.phase == Phase.PLANNING and not orchestration.plan:
                entry.generation = asyncio.get_running_loop().create_task(
                    self._generate_plan(entry)
                )
                return
            if orchestration.phase != Phase.EXECUTION:
                raise InvalidPhaseError(f"Nothing to resume in phase {orchestration.phase.value}.")

            scheduler = self._scheduler(entry)
            if not scheduler.running:
                interrupted = [
                    run
                    for run in orchestration.sub_agents
                    if run.status in (RunStatus.ORPHANED, RunStatus.RETRYING, RunStatus.RUNNING)
                ]
                for run in interrupted:
                    orchestration.sub_agents.remove(run)
                    retries = run.retries + (1 if run.status == RunStatus.RETRYING else 0)
                    scheduler.carry_retries(run.task_id, min(retries, orchestration.max_retries))
                    if run.isolated:
                        key = self.workspaces.key_for(orchestration.id, run.task_id)
                        await asyncio.to_thread(self.workspaces.release, key)
                if interrupted:
                    record_event(
                        self.hub,
                        orchestration,
                        "progress",
                        message="Resumed interrupted tasks",
                        resumed=[run.task_id for run in interrupted],
                        stats=orchestration.stats(),
                    )
                    self.store.mark_dirty(orchestration)
            scheduler.start()

    async def wait_idle(self, orchestration_id: str) -> None:
        entry = self._get(orchestration_id)
        if entry.scheduler is not None:
            await entry.scheduler.wait_settled()

    def list_orchestrations(self) -> list[dict[str, Any]]:
        summaries: list[dict[str, Any]] = []
        for entry in self._entries.values():
            orchestration = entry.orchestration
            stats = orchestration.stats()
            summaries.append(
                {
                    "id": orchestration.id,
                    "goal": orchestration.goal[:GOAL_EXCERPT_CHARS],
                    "phase": orchestration.phase.value,
                    "status": orchestration.status.value,
                    "task_count": stats["total"],
                    "completed_tasks": stats["completed"],
                    "start_time": orchestration.start_time,
                    "runtime_seconds": _runtime_seconds(orchestration.start_time),
                }
            )
        summaries.sort(key=lambda item: item["start_time"], reverse=True)
        return summaries

    def detail(self, orchestration_id: str) -> dict[str, Any]:
        entry = self._get(orchestration_id)
        orchestration = entry.orchestration
        titles = {task.id: task.title for task in orchestration.plan}
        return {
            "id": orchestration.id,
            "goal": orchestration.goal,
            "phase": orchestration.phase.value,
            "status": orchestration.status.value,
            "generating": entry.generating,
            "questions": [question.to_dict() for question in orchestration.questions],
            "answers": dict(orchestration.answers),
            "plan": [task.to_dict() for task in orchestration.plan],
            "runs": [
                {
                    "task_id": run.task_id,
                    "title": titles.get(run.task_id, run.task_id),
                    "status": run.status.value,
                    "retries": run.retries,
                    "output_lines": len(run.output_buffer),
                    "branch": run.branch_ref,
                    "workspace": run.workspace_path,
                    "isolated": run.isolated,
                    "exit_code": run.exit_code,
                    "error": run.error,
                }
                for run in orchestration.sub_agents
            ],
            "stats": orchestration.stats(),
            "chat_history": list(orchestration.chat_history),
            "recent_events": orchestration.summary_log[-DETAIL_LOG_ENTRIES:],
            "start_time": orchestration.start_time,
            "runtime_seconds": _runtime_seconds(orchestration.start_time),
        }

    def subscribe(self, orchestration_id: str) -> Subscription:
        self._get(orchestration_id)
        return self.hub.subscribe(orchestration_id)

    def subscribe_task(self, orchestration_id: str, task_id: str) -> Subscription:
        entry = self._get(orchestration_id)
        self._task(entry, task_id)
        scope = task_scope(orchestration_id, task_id)
        if not self.hub.history(scope):
            run = entry.orchestration.run_for(task_id)
            if run is not None:
                self.hub.seed(
                    scope,
                    [
                        {"type": "output", "scope": scope, "task_id": task_id, "entry": item.to_dict()}
                        for item in run.output_buffer
                    ],
                )
        return self.hub.subscribe(scope)

    def _reviewable_run(self, entry: _Entry, task_id: str) -> SubAgentRun:
        self._task(entry, task_id)
        run = entry.orchestration.run_for(task_id)
        if run is None or run.status != RunStatus.COMPLETED or not run.branch_ref:
            raise InvalidRequestError(f"Task {task_id} has no completed branch to review.")
        return run

    async def task_diff(self, orchestration_id: str, task_id: str) -> str:
        entry = self._get(orchestration_id)
        run = self._reviewable_run(entry, task_id)
        return await asyncio.to_thread(self.workspaces.diff, run.branch_ref)

    async def merge_task(self, orchestration_id: str, task_id: str) -> str:
        entry = self._get(orchestration_id)
        async with entry.lock:
            run = self._reviewable_run(entry, task_id)
            task = self._task(entry, task_id)
            branch = run.branch_ref
            key = self.workspaces.key_for(orchestration_id, task_id)
            target = await asyncio.to_thread(
                self.workspaces.merge, key, branch, f"Merge {task.id}: {task.title}"
            )
            run.branch_ref = None
            run.workspace_path = None
            record_event(
                self.hub,
                entry.orchestration,
                "progress",
                task_id=task_id,
                merged=branch,
                into=target,
                message=f"Merged {branch} into {target}",
            )
            self.store.mark_dirty(entry.orchestration)
            return target

    async def discard_task(self, orchestration_id: str, task_id: str) -> None:
        entry = self._get(orchestration_id)
        async with entry.lock:
            run = self._reviewable_run(entry, task_id)
            branch = run.branch_ref
            key = self.workspaces.key_for(orchestration_id, task_id)
            try:
                await asyncio.to_thread(self.workspaces.discard, key, branch)
            except WorkspaceError as exc:
                logger.warning("discard of %s failed: %s", branch, exc)
                raise
            run.branch_ref = None
            run.workspace_path = None
            record_event(
                self.hub,
                entry.orchestration,
                "progress",
                task_id=task_id,
                discarded=branch,
                message=f"Discarded {branch}",
            )
            self.store.mark_dirty(entry.orchestration)

    async def close(self) -> None:
        for entry in list(self._entries.values()):
            if entry.generation is not None and not entry.generation.done():
                entry.generation.cancel()
                await asyncio.gather(entry.generation, return_exceptions=True)
            if entry.scheduler is not None:
                await entry.scheduler.close()
        await self.store.flush()
