import asyncio
import subprocess
from pathlib import Path

from maestro.events import EventHub, task_scope
from maestro.models import Orchestration, OutputEntry, Phase, PlanTask, RunStatus
from maestro.scheduler import TaskScheduler
from maestro.state import OrchestrationStore, WorkspaceManager
from maestro.workers import RunOutcome


class FakeSupervisor:
    def __init__(self, factory, run, on_entry, exit_code: int) -> None:
        self.factory = factory
        self.run_record = run
        self.on_entry = on_entry
        self.exit_code = exit_code
        self.stopped = False
        self.gate = asyncio.Event()
        if not factory.hold:
            self.gate.set()

    async def run(self) -> RunOutcome:
        self.factory.active += 1
        self.factory.peak = max(self.factory.peak, self.factory.active)
        try:
            for line in self.factory.lines:
                entry = OutputEntry(kind="assistant", text=line)
                self.run_record.output_buffer.append(entry)
                self.on_entry(entry)
            await self.gate.wait()
        finally:
            self.factory.active -= 1
        if self.stopped:
            return RunOutcome(exit_code=-15, stopped=True)
        return RunOutcome(exit_code=self.exit_code, stderr_tail=["boom"] if self.exit_code else [])

    def stop(self) -> None:
        self.stopped = True
        self.gate.set()


class FakeFactory:
    def __init__(self, *, exit_codes=None, lines=(), hold: bool = False) -> None:
        self.exit_codes: dict[str, list[int]] = exit_codes or {}
        self.lines = list(lines)
        self.hold = hold
        self.calls: list[str] = []
        self.supervisors: dict[str, FakeSupervisor] = {}
        self.active = 0
        self.peak = 0

    def __call__(self, orchestration, task, run, workspace, on_entry) -> FakeSupervisor:
        codes = self.exit_codes.get(task.id, [])
        supervisor = FakeSupervisor(self, run, on_entry, codes.pop(0) if codes else 0)
        self.calls.append(task.id)
        self.supervisors[task.id] = supervisor
        return supervisor

    def release(self) -> None:
        self.hold = False
        for supervisor in self.supervisors.values():
            supervisor.gate.set()


def _orchestration(*tasks: PlanTask, max_retries: int = 3) -> Orchestration:
    orchestration = Orchestration.create("Build it", max_retries=max_retries)
    orchestration.phase = Phase.EXECUTION
    orchestration.plan = list(tasks)
    return orchestration


def _scheduler(
    tmp_path: Path, orchestration: Orchestration, factory: FakeFactory, **kwargs
) -> TaskScheduler:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return TaskScheduler(
        orchestration,
        asyncio.Lock(),
        hub=kwargs.pop("hub", None) or EventHub(),
        store=OrchestrationStore(tmp_path / "store", debounce_seconds=0.01),
        workspaces=kwargs.pop("workspaces", None) or WorkspaceManager(project),
        supervisor_factory=factory,
        retry_backoff_seconds=kwargs.pop("retry_backoff_seconds", 0.0),
        **kwargs,
    )


async def _until(predicate, timeout: float = 5.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def _shutdown(scheduler: TaskScheduler) -> None:
    await scheduler.close()
    await scheduler.store.flush()


def _events(orchestration: Orchestration, event_type: str) -> list[dict]:
    return [event for event in orchestration.summary_log if event["type"] == event_type]


def test_tasks_start_after_dependencies_and_finish_in_review(tmp_path: Path) -> None:
    orchestration = _orchestration(
        PlanTask(id="a", title="A"),
        PlanTask(id="b", title="B", dependencies=["a"]),
        PlanTask(id="c", title="C", dependencies=["a"]),
        PlanTask(id="d", title="D", dependencies=["b", "c"]),
    )
    factory = FakeFactory()

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    assert factory.calls[0] == "a"
    assert set(factory.calls[1:3]) == {"b", "c"}
    assert factory.calls[3] == "d"
    assert orchestration.phase == Phase.REVIEW
    assert all(run.status == RunStatus.COMPLETED for run in orchestration.sub_agents)
    phase_events = _events(orchestration, "phase")
    assert phase_events[-1]["stats"]["completed"] == 4
    completed = _events(orchestration, "task_completed")
    assert len(completed) == 4
    assert completed[0]["branch"] is None
    assert completed[0]["review_commands"] == {}
    assert (tmp_path / "store" / f"{orchestration.id}.json").exists()


def test_concurrency_limit_caps_running_workers(tmp_path: Path) -> None:
    orchestration = _orchestration(*(PlanTask(id=f"t{i}", title=f"T{i}") for i in range(4)))
    factory = FakeFactory(hold=True)

    async def scenario() -> list[str]:
        scheduler = _scheduler(tmp_path, orchestration, factory, concurrency_limit=2)
        scheduler.start()
        await _until(lambda: factory.active == 2)
        await asyncio.sleep(0.05)
        active = scheduler.active_task_ids()
        factory.release()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)
        return active

    active = asyncio.run(scenario())

    assert active == ["t0", "t1"]
    assert factory.peak == 2
    assert orchestration.phase == Phase.REVIEW


def test_failing_task_retries_then_fails_and_blocks_dependents(tmp_path: Path) -> None:
    orchestration = _orchestration(
        PlanTask(id="a", title="A"),
        PlanTask(id="b", title="B", dependencies=["a"]),
        max_retries=2,
    )
    factory = FakeFactory(exit_codes={"a": [1, 1, 1]}, lines=["working"])

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    assert factory.calls == ["a", "a", "a"]
    assert orchestration.phase == Phase.EXECUTION
    assert len(orchestration.sub_agents) == 1
    run = orchestration.sub_agents[0]
    assert run.status == RunStatus.FAILED
    assert run.retries == 2
    assert run.exit_code == 1
    assert [event["attempt"] for event in _events(orchestration, "task_retrying")] == [1, 2]
    failed = _events(orchestration, "task_failed")
    assert len(failed) == 1
    assert failed[0]["error"] == "Worker for a exited with code 1"
    assert failed[0]["output"] == ["working"]
    assert failed[0]["stderr"] == ["boom"]
    stalled = [event for event in _events(orchestration, "progress") if event.get("stalled")]
    assert len(stalled) == 1
    assert stalled[0]["failed_tasks"] == ["a"]


def test_retry_can_succeed(tmp_path: Path) -> None:
    orchestration = _orchestration(PlanTask(id="a", title="A"))
    factory = FakeFactory(exit_codes={"a": [3, 0]})

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    run = orchestration.run_for("a")
    assert run is not None
    assert run.status == RunStatus.COMPLETED
    assert run.retries == 1
    assert orchestration.phase == Phase.REVIEW


def test_output_entries_are_published_with_periodic_progress(tmp_path: Path) -> None:
    orchestration = _orchestration(PlanTask(id="a", title="A"))
    factory = FakeFactory(lines=["one", "two", "three"])
    hub = EventHub(history_limit=50)

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory, hub=hub, progress_every=2)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    outputs = hub.history(task_scope(orchestration.id, "a"))
    assert [event["entry"]["text"] for event in outputs] == ["one", "two", "three"]
    progress = [event for event in _events(orchestration, "progress") if "lines" in event]
    assert len(progress) == 1
    assert progress[0]["lines"] == 2
    assert progress[0]["message"] == "two"


def test_stop_task_marks_run_stopped(tmp_path: Path) -> None:
    orchestration = _orchestration(PlanTask(id="a", title="A"))
    factory = FakeFactory(hold=True)

    async def scenario() -> tuple[bool, bool]:
        scheduler = _scheduler(tmp_path, orchestration, factory)
        scheduler.start()
        await _until(lambda: factory.active == 1)
        stopped = await scheduler.stop_task("a")
        unknown = await scheduler.stop_task("missing")
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)
        return stopped, unknown

    stopped, unknown = asyncio.run(scenario())

    assert stopped is True
    assert unknown is False
    assert orchestration.run_for("a").status == RunStatus.STOPPED
    assert factory.calls == ["a"]
    assert any(event.get("stopped") for event in _events(orchestration, "progress"))


def test_close_orphans_running_workers(tmp_path: Path) -> None:
    orchestration = _orchestration(PlanTask(id="a", title="A"))
    factory = FakeFactory(hold=True)

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory)
        scheduler.start()
        await _until(lambda: factory.active == 1)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    assert orchestration.run_for("a").status == RunStatus.ORPHANED
    assert orchestration.phase == Phase.EXECUTION


def test_carried_retries_apply_to_next_attempt(tmp_path: Path) -> None:
    orchestration = _orchestration(PlanTask(id="a", title="A"), max_retries=1)
    factory = FakeFactory(exit_codes={"a": [1]})

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory)
        scheduler.carry_retries("a", 1)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    assert factory.calls == ["a"]
    assert orchestration.run_for("a").status == RunStatus.FAILED
    assert orchestration.run_for("a").retries == 1


def _init_git_repo(repo_path: Path) -> None:
    for args in (
        ["init"],
        ["config", "user.email", "test@example.com"],
        ["config", "user.name", "Test User"],
    ):
        subprocess.run(["git", *args], cwd=repo_path, check=True, text=True, capture_output=True)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def test_unusable_worktree_root_runs_task_in_shared_root(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    (repo / ".agent-worktrees").write_text("not a directory\n", encoding="utf-8")
    orchestration = _orchestration(PlanTask(id="a", title="A"))
    factory = FakeFactory()

    async def scenario() -> None:
        scheduler = _scheduler(
            tmp_path, orchestration, factory, workspaces=WorkspaceManager(repo)
        )
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    assert orchestration.phase == Phase.REVIEW
    run = orchestration.run_for("a")
    assert run.isolated is False
    assert run.workspace_path == str(repo.resolve())


def test_unexpected_scheduling_error_fails_orchestration(tmp_path: Path) -> None:
    orchestration = _orchestration(PlanTask(id="a", title="A"))

    def broken_factory(orchestration, task, run, workspace, on_entry):
        raise RuntimeError("factory exploded")

    async def scenario() -> bool:
        scheduler = _scheduler(tmp_path, orchestration, broken_factory)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        running = scheduler.running
        await _shutdown(scheduler)
        return running

    running = asyncio.run(scenario())

    assert running is False
    assert orchestration.phase == Phase.FAILED
    errors = _events(orchestration, "error")
    assert errors[0]["stage"] == "scheduling"
    assert "factory exploded" in errors[0]["message"]
    assert _events(orchestration, "phase")[-1]["phase"] == "failed"


def test_task_succeeds_on_third_attempt(tmp_path: Path) -> None:
    orchestration = _orchestration(PlanTask(id="a", title="A"), max_retries=3)
    factory = FakeFactory(exit_codes={"a": [1, 1, 0]})

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=5)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    assert factory.calls == ["a", "a", "a"]
    assert len(_events(orchestration, "task_retrying")) == 2
    assert _events(orchestration, "task_failed") == []
    run = orchestration.run_for("a")
    assert run.status == RunStatus.COMPLETED
    assert run.retries == 2
    assert orchestration.phase == Phase.REVIEW


def test_exhausted_retries_release_worktree_and_trim_diagnostics(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    workspaces = WorkspaceManager(repo)
    orchestration = _orchestration(PlanTask(id="a", title="A"), max_retries=3)
    lines = [f"step {index}" for index in range(7)]
    factory = FakeFactory(exit_codes={"a": [1, 1, 1, 1]}, lines=lines)

    async def scenario() -> None:
        scheduler = _scheduler(tmp_path, orchestration, factory, workspaces=workspaces)
        scheduler.start()
        await asyncio.wait_for(scheduler.wait_settled(), timeout=10)
        await _shutdown(scheduler)

    asyncio.run(scenario())

    assert factory.calls == ["a", "a", "a", "a"]
    assert [event["attempt"] for event in _events(orchestration, "task_retrying")] == [1, 2, 3]
    failed = _events(orchestration, "task_failed")
    assert len(failed) == 1
    assert failed[0]["retries"] == 3
    assert failed[0]["output"] == lines[-5:]
    run = orchestration.run_for("a")
    assert run.status == RunStatus.FAILED
    assert run.isolated is True
    key = workspaces.key_for(orchestration.id, "a")
    assert not workspaces.path_for(key).exists()
