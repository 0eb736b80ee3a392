from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from maestro.errors import ProcessNonZeroExit
from maestro.events import EventHub, record_event, task_scope
from maestro.models import (
    Orchestration,
    OutputEntry,
    Phase,
    PlanTask,
    RunStatus,
    SubAgentRun,
    utcnow_iso,
)
from maestro.state.store import OrchestrationStore
from maestro.state.workspaces import Workspace, WorkspaceManager
from maestro.workers.supervisor import EntryCallback, RunOutcome

logger = logging.getLogger(__name__)

DIAGNOSTIC_ENTRIES = 5


class Supervisor(Protocol):
    async def run(self) -> RunOutcome: ...

    def stop(self) -> None: ...


SupervisorFactory = Callable[
    [Orchestration, PlanTask, SubAgentRun, Workspace, EntryCallback], Supervisor
]


class TaskScheduler:
    """Spawns ready tasks of one orchestration and reacts to their exits.

    Every pass and every exit transition runs under the orchestration lock shared
    with the state machine; passes are triggered through :meth:`notify`.
    """

    def __init__(
        self,
        orchestration: Orchestration,
        lock: asyncio.Lock,
        *,
        hub: EventHub,
        store: OrchestrationStore,
        workspaces: WorkspaceManager,
        supervisor_factory: SupervisorFactory,
        concurrency_limit: int = 3,
        retry_backoff_seconds: float = 2.0,
        progress_every: int = 10,
    ) -> None:
        self.orchestration = orchestration
        self.lock = lock
        self.hub = hub
        self.store = store
        self.workspaces = workspaces
        self.supervisor_factory = supervisor_factory
        self.concurrency_limit = max(1, concurrency_limit)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.progress_every = max(1, progress_every)
        self._wakeup = asyncio.Event()
        self._settled = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._active: dict[str, Supervisor] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._backing_off: set[str] = set()
        self._retry_counts: dict[str, int] = {}
        self._stall_reported = False
        self._closed = False

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def active_task_ids(self) -> list[str]:
        return list(self._active)

    def carry_retries(self, task_id: str, retries: int) -> None:
        self._retry_counts[task_id] = retries

    def start(self) -> None:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        if not self.running:
            self._loop_task = asyncio.get_running_loop().create_task(self._loop())
        self.notify()

    def notify(self) -> None:
        if not self.running:
            return
        self._settled.clear()
        self._wakeup.set()

    async def wait_settled(self) -> None:
        await self._settled.wait()

    async def _loop(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            if self._closed:
                return
            async with self.lock:
                try:
                    await self._schedule_pass()
                except Exception as exc:
                    self._fail(exc)
                    return

    def _fail(self, exc: Exception) -> None:
        orchestration = self.orchestration
        logger.exception("scheduler pass crashed for %s", orchestration.id)
        orchestration.phase = Phase.FAILED
        record_event(
            self.hub,
            orchestration,
            "error",
            stage="scheduling",
            message=f"scheduling failed: {exc}",
        )
        record_event(self.hub, orchestration, "phase", phase=Phase.FAILED.value)
        self.store.mark_dirty(orchestration)
        self._settled.set()

    async def _schedule_pass(self) -> None:
        orchestration = self.orchestration
        if orchestration.phase != Phase.EXECUTION:
            self._settled.set()
            return

        completed = orchestration.completed_task_ids()
        ready = [
            task
            for task in orchestration.plan
            if orchestration.run_for(task.id) is None
            and task.id not in self._backing_off
            and set(task.dependencies) <= completed
        ]
        available = self.concurrency_limit - len(self._active)
        spawned = 0
        for task in ready[: max(0, available)]:
            await self._spawn(task)
            spawned += 1
        if spawned:
            self._stall_reported = False
            self.store.mark_dirty(orchestration)
            return

        if self._active or ready or self._backing_off:
            return

        if orchestration.plan and all(task.id in completed for task in orchestration.plan):
            orchestration.phase = Phase.REVIEW
            record_event(
                self.hub,
                orchestration,
                "phase",
                phase=Phase.REVIEW.value,
                stats=orchestration.stats(),
            )
            self.store.mark_dirty(orchestration)
            logger.info("orchestration %s ready for review", orchestration.id)
        elif not self._stall_reported:
            self._stall_reported = True
            failed = [
                run.task_id for run in orchestration.sub_agents if run.status == RunStatus.FAILED
            ]
            record_event(
                self.hub,
                orchestration,
                "progress",
                stalled=True,
                failed_tasks=failed,
                stats=orchestration.stats(),
                message="No runnable tasks remain; failed tasks block their dependents.",
            )
            self.store.mark_dirty(orchestration)
        self._settled.set()

    def _on_entry(self, run: SubAgentRun) -> EntryCallback:
        orchestration = self.orchestration
        scope = task_scope(orchestration.id, run.task_id)

        def _publish(entry: OutputEntry) -> None:
            self.hub.publish(scope, "output", task_id=run.task_id, entry=entry.to_dict())
            if len(run.output_buffer) % self.progress_every == 0:
                record_event(
                    self.hub,
                    orchestration,
                    "progress",
                    task_id=run.task_id,
                    lines=len(run.output_buffer),
                    message=entry.text[:120],
                    stats=orchestration.stats(),
                )
            self.store.mark_dirty(orchestration)

        return _publish

    async def _spawn(self, task: PlanTask) -> None:
        orchestration = self.orchestration
        key = self.workspaces.key_for(orchestration.id, task.id)
        workspace = await asyncio.to_thread(self.workspaces.acquire_or_shared, key)
        run = SubAgentRun(
            task_id=task.id,
            retries=self._retry_counts.pop(task.id, 0),
            workspace_path=str(workspace.path),
            branch_ref=workspace.branch,
            isolated=workspace.isolated,
        )
        orchestration.sub_agents.append(run)
        supervisor = self.supervisor_factory(
            orchestration, task, run, workspace, self._on_entry(run)
        )
        self._active[task.id] = supervisor
        self._watchers[task.id] = asyncio.get_running_loop().create_task(
            self._watch(task, run, workspace, supervisor)
        )
        record_event(
            self.hub,
            orchestration,
            "task_started",
            task_id=task.id,
            title=task.title,
            agent_type=task.agent_type,
            attempt=run.retries + 1,
            workspace=run.workspace_path,
            branch=run.branch_ref,
            isolated=run.isolated,
            stats=orchestration.stats(),
        )
        logger.info("started %s/%s in %s", orchestration.id, task.id, workspace.path)

    async def _release(self, workspace: Workspace) -> None:
        if workspace.isolated:
            await asyncio.to_thread(self.workspaces.release, workspace.key)

    async def _watch(
        self,
        task: PlanTask,
        run: SubAgentRun,
        workspace: Workspace,
        supervisor: Supervisor,
    ) -> None:
        try:
            outcome = await supervisor.run()
        except Exception as exc:
            logger.exception("supervisor for %s crashed", task.id)
            outcome = RunOutcome(exit_code=None, error=f"supervisor crashed: {exc}")

        retry = False
        async with self.lock:
            self._active.pop(task.id, None)
            await self._finish(task, run, workspace, outcome)
            retry = run.status == RunStatus.RETRYING
            if retry:
                self._backing_off.add(task.id)
            else:
                self._watchers.pop(task.id, None)

        if retry:
            try:
                await asyncio.sleep(self.retry_backoff_seconds)
            except asyncio.CancelledError:
                # the run stays recorded as retrying so a later resume can pick it up
                self._watchers.pop(task.id, None)
                raise
            async with self.lock:
                if run in self.orchestration.sub_agents:
                    self.orchestration.sub_agents.remove(run)
                self._retry_counts[task.id] = run.retries + 1
                self._backing_off.discard(task.id)
                self._watchers.pop(task.id, None)
                self.store.mark_dirty(self.orchestration)
        if not self._closed:
            self.notify()

    async def _finish(
        self,
        task: PlanTask,
        run: SubAgentRun,
        workspace: Workspace,
        outcome: RunOutcome,
    ) -> None:
        orchestration = self.orchestration
        run.end_time = utcnow_iso()
        run.exit_code = outcome.exit_code
        run.error = outcome.error

        if outcome.stopped and self._closed:
            # interrupted by shutdown rather than by the user; resume reruns it
            run.status = RunStatus.ORPHANED
            await self._release(workspace)
        elif outcome.stopped:
            run.status = RunStatus.STOPPED
            await self._release(workspace)
            record_event(
                self.hub,
                orchestration,
                "progress",
                task_id=task.id,
                stopped=True,
                message=f"Stopped: {task.title}",
                stats=orchestration.stats(),
            )
        elif outcome.succeeded:
            run.status = RunStatus.COMPLETED
            summary, files_changed = "", 0
            if run.branch_ref:
                summary, files_changed = await asyncio.to_thread(
                    self.workspaces.diff_stat, run.branch_ref
                )
            review: dict[str, str] = {}
            if run.branch_ref:
                review = {
                    "diff": f"git diff HEAD...{run.branch_ref}",
                    "merge": f"git merge --no-ff {run.branch_ref}",
                    "discard": f"git worktree remove --force {run.workspace_path} "
                    f"&& git branch -D {run.branch_ref}",
                }
            record_event(
                self.hub,
                orchestration,
                "task_completed",
                task_id=task.id,
                title=task.title,
                branch=run.branch_ref,
                workspace=run.workspace_path,
                diff_summary=summary,
                files_changed=files_changed,
                review_commands=review,
                stats=orchestration.stats(),
            )
            logger.info("task %s/%s completed", orchestration.id, task.id)
        else:
            failure = outcome.error or str(ProcessNonZeroExit(task.id, outcome.exit_code))
            if outcome.errored:
                run.status = RunStatus.ERRORED
            await self._release(workspace)
            if run.retries < orchestration.max_retries:
                run.status = RunStatus.RETRYING
                record_event(
                    self.hub,
                    orchestration,
                    "task_retrying",
                    task_id=task.id,
                    attempt=run.retries + 1,
                    max_retries=orchestration.max_retries,
                    error=failure,
                    delay_seconds=self.retry_backoff_seconds,
                )
                logger.warning(
                    "task %s/%s failed (%s), retry %d/%d",
                    orchestration.id,
                    task.id,
                    failure,
                    run.retries + 1,
                    orchestration.max_retries,
                )
            else:
                run.status = RunStatus.FAILED
                diagnostics = [entry.text for entry in run.output_buffer[-DIAGNOSTIC_ENTRIES:]]
                record_event(
                    self.hub,
                    orchestration,
                    "task_failed",
                    task_id=task.id,
                    title=task.title,
                    error=failure,
                    retries=run.retries,
                    output=diagnostics,
                    stderr=outcome.stderr_tail[-DIAGNOSTIC_ENTRIES:],
                    stats=orchestration.stats(),
                )
                logger.error("task %s/%s failed permanently: %s", orchestration.id, task.id, failure)
        self.store.mark_dirty(orchestration)

    async def stop_task(self, task_id: str) -> bool:
        """Signal the task's worker and wait until its exit has been processed."""
        supervisor = self._active.get(task_id)
        watcher = self._watchers.get(task_id)
        if supervisor is not None:
            supervisor.stop()
            if watcher is not None:
                await asyncio.gather(watcher, return_exceptions=True)
            return True

        if task_id not in self._backing_off or watcher is None:
            return False
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        async with self.lock:
            self._backing_off.discard(task_id)
            run = self.orchestration.run_for(task_id)
            if run is not None and run.status == RunStatus.RETRYING:
                run.status = RunStatus.STOPPED
                record_event(
                    self.hub,
                    self.orchestration,
                    "progress",
                    task_id=task_id,
                    stopped=True,
                    message=f"Stopped during retry backoff: {task_id}",
                    stats=self.orchestration.stats(),
                )
                self.store.mark_dirty(self.orchestration)
        self.notify()
        return True

    async def close(self) -> None:
        self._closed = True
        self._wakeup.set()
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
        for supervisor in list(self._active.values()):
            supervisor.stop()
        for task_id, watcher in list(self._watchers.items()):
            if task_id in self._backing_off:
                watcher.cancel()
        if self._watchers:
            await asyncio.gather(*list(self._watchers.values()), return_exceptions=True)
        self._settled.set()
