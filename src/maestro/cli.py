from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from maestro import __version__
from maestro.backends import (
    ClaudeTextBackend,
    ClaudeWorker,
    OpenAITextBackend,
    ResilientBackend,
    RetryPolicy,
    TextBackend,
)
from maestro.config import (
    DEFAULT_CONFIG_FILE,
    GenerationBackendName,
    MaestroConfig,
    load_config,
    save_config,
)
from maestro.errors import MaestroError
from maestro.events import EventHub
from maestro.models import Phase, Question, QuestionKind
from maestro.orchestrator import Orchestrator
from maestro.specialists import Advisor, Planner, RequirementsAnalyst
from maestro.state import OrchestrationStore, WorkspaceManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

_config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: MaestroConfig
    orchestrator: Orchestrator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: GenerationBackendName, config: MaestroConfig, repo_root: Path
) -> TextBackend:
    if backend_name == "openai":
        return OpenAITextBackend(
            model=config.generation.model,
            binary=config.generation.binary,
            working_directory=repo_root,
        )
    return ClaudeTextBackend(binary=config.generation.binary, working_directory=repo_root)


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.info("generation backend event: %s", json.dumps(event, ensure_ascii=False))


def _build_backend(config: MaestroConfig, repo_root: Path) -> TextBackend:
    primary_name = config.generation.primary
    fallback_name = config.generation.fallback
    primary_backend = _build_single_backend(primary_name, config, repo_root)
    if fallback_name == primary_name and config.generation.max_retries <= 0:
        return primary_backend
    policy = RetryPolicy(
        max_retries=max(0, int(config.generation.max_retries)),
        backoff_seconds=max(0.0, float(config.generation.retry_backoff_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=primary_backend,
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, config, repo_root),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def build_orchestrator(
    config: MaestroConfig,
    repo_root: Path,
    *,
    backend: TextBackend | None = None,
) -> Orchestrator:
    text_backend = backend or _build_backend(config, repo_root)
    return Orchestrator(
        store=OrchestrationStore(
            repo_root / config.store.path,
            debounce_seconds=config.store.debounce_seconds,
        ),
        hub=EventHub(
            replay_limit=config.events.replay_limit,
            history_limit=config.events.history_limit,
            heartbeat_seconds=config.events.heartbeat_seconds,
        ),
        workspaces=WorkspaceManager(
            repo_root,
            root=config.workspace.root,
            branch_prefix=config.workspace.branch_prefix,
        ),
        requirements=RequirementsAnalyst(
            text_backend,
            timeout_seconds=config.generation.question_timeout_seconds,
            project_root=repo_root,
        ),
        planner=Planner(text_backend, timeout_seconds=config.generation.plan_timeout_seconds),
        advisor=Advisor(text_backend, timeout_seconds=config.generation.question_timeout_seconds),
        worker=ClaudeWorker(
            config.worker.binary,
            max_turns=config.worker.max_turns,
            skip_permissions=config.worker.skip_permissions,
            extra_args=config.worker.extra_args,
        ),
        concurrency_limit=config.scheduler.concurrency_limit,
        max_retries=config.scheduler.max_retries,
        retry_backoff_seconds=config.scheduler.retry_backoff_seconds,
        progress_every=config.events.progress_every,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    orchestrator = build_orchestrator(config, repo_root)
    orchestrator.load()
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _drive(runtime: Runtime, operation: Callable[[Orchestrator], Awaitable[T]]) -> T:
    async def _main() -> T:
        try:
            return await operation(runtime.orchestrator)
        finally:
            await runtime.orchestrator.close()

    try:
        return asyncio.run(_main())
    except MaestroError as exc:
        raise click.ClickException(str(exc)) from exc


def format_event(event: dict[str, Any]) -> str | None:
    event_type = event.get("type")
    if event_type == "phase":
        return f"[phase] {event.get('phase')}"
    if event_type == "questions":
        return f"[questions] {len(event.get('questions') or [])} questions"
    if event_type == "plan":
        return f"[plan] {len(event.get('plan') or [])} tasks"
    if event_type == "task_started":
        return (
            f"[start] {event.get('task_id')} {event.get('title')} "
            f"({event.get('agent_type')}, attempt {event.get('attempt')})"
        )
    if event_type == "task_completed":
        summary = event.get("diff_summary") or "no diff"
        return f"[done] {event.get('task_id')} {summary}"
    if event_type == "task_retrying":
        return (
            f"[retry] {event.get('task_id')} attempt {event.get('attempt')}/"
            f"{event.get('max_retries')}: {event.get('error')}"
        )
    if event_type == "task_failed":
        return f"[failed] {event.get('task_id')}: {event.get('error')}"
    if event_type == "progress":
        return f"[progress] {event.get('message', '')}"
    if event_type == "error":
        return f"[error] {event.get('message')}"
    if event_type == "complete":
        return "[complete]"
    return None


def _is_terminal_event(event: dict[str, Any]) -> bool:
    if event.get("type") == "phase" and event.get("phase") in (
        Phase.REVIEW.value,
        Phase.FAILED.value,
    ):
        return True
    return event.get("type") == "progress" and bool(event.get("stalled"))


async def _follow(
    orchestrator: Orchestrator,
    orchestration_id: str,
    action: Callable[[], Awaitable[Any]],
) -> None:
    """Run ``action`` and echo orchestration events until review, failure or a stall."""
    async with orchestrator.subscribe(orchestration_id) as subscription:
        skip = subscription.replayed
        await action()
        async for event in subscription:
            if skip:
                skip -= 1
                continue
            line = format_event(event)
            if line:
                click.echo(line)
            if _is_terminal_event(event):
                return


def _ask(question: Question, assume_yes: bool) -> str | list[str]:
    options = question.options
    if question.kind == QuestionKind.CHOICE and options:
        if assume_yes:
            return options[0]
        click.echo(question.text)
        for index, option in enumerate(options, start=1):
            click.echo(f"  {index}. {option}")
        choice = click.prompt("Choice", type=click.IntRange(1, len(options)), default=1)
        return options[choice - 1]
    if question.kind == QuestionKind.MULTISELECT and options:
        if assume_yes:
            return [options[0]]
        click.echo(question.text)
        for index, option in enumerate(options, start=1):
            click.echo(f"  {index}. {option}")
        raw = click.prompt("Choices (comma separated)", default="1")
        picked: list[str] = []
        for part in str(raw).split(","):
            part = part.strip()
            if part.isdigit() and 1 <= int(part) <= len(options):
                value = options[int(part) - 1]
                if value not in picked:
                    picked.append(value)
        return picked
    if assume_yes:
        return "No preference"
    return str(click.prompt(question.text, default="", show_default=False))


def _echo_plan(orchestrator: Orchestrator, orchestration_id: str) -> None:
    for task in orchestrator.get(orchestration_id).plan:
        dependencies = ", ".join(task.dependencies) or "-"
        click.echo(
            f"  {task.id:<10} {task.priority} {task.agent_type:<9} {task.title} (after: {dependencies})"
        )


async def _review(orchestrator: Orchestrator, orchestration_id: str, approve: bool) -> None:
    orchestration = orchestrator.get(orchestration_id)
    stats = orchestration.stats()
    click.echo(
        f"Tasks: {stats['completed']}/{stats['total']} completed, {stats['failed']} failed"
    )
    if orchestration.phase != Phase.REVIEW:
        click.echo(f"Phase: {orchestration.phase.value}")
        return
    for run in orchestration.sub_agents:
        if run.branch_ref:
            click.echo(f"  {run.task_id}: maestro diff {orchestration_id} {run.task_id}")
    if approve:
        await orchestrator.approve(orchestration_id)
        click.echo("Approved.")


@click.group()
@click.version_option(__version__, prog_name="maestro")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Plan and supervise autonomous coding agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--worker-binary", default=None)
@click.option("--concurrency", type=int, default=None)
@_config_option
def init_command(worker_binary: str | None, concurrency: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if worker_binary:
        config.worker.binary = worker_binary
    if concurrency is not None:
        config.scheduler.concurrency_limit = max(1, concurrency)
    save_config(config_path, config)
    (repo_root / config.store.path).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized maestro in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Worker: {config.worker.binary}")
    click.echo(f"Concurrency: {config.scheduler.concurrency_limit}")


@cli.command("run")
@click.argument("goal")
@click.option("--yes", "-y", "assume_yes", is_flag=True, default=False)
@click.option("--approve", is_flag=True, default=False)
@_config_option
def run_command(goal: str, assume_yes: bool, approve: bool, config_value: str) -> None:
    runtime = _runtime(config_value)

    async def _run(orchestrator: Orchestrator) -> None:
        orchestration_id = await orchestrator.start(goal)
        click.echo(f"Orchestration: {orchestration_id}")
        await orchestrator.wait_generation(orchestration_id)
        orchestration = orchestrator.get(orchestration_id)
        if orchestration.phase == Phase.FAILED:
            raise click.ClickException("Question generation failed.")

        answers = {question.id: _ask(question, assume_yes) for question in orchestration.questions}
        await orchestrator.submit_answers(orchestration_id, answers)
        await orchestrator.wait_generation(orchestration_id)
        if orchestrator.get(orchestration_id).phase == Phase.FAILED:
            raise click.ClickException("Plan generation failed.")

        click.echo("Plan:")
        _echo_plan(orchestrator, orchestration_id)
        if not assume_yes and not click.confirm("Execute this plan?", default=True):
            click.echo(f"Plan saved. Start it later with: maestro execute {orchestration_id}")
            return
        await _follow(
            orchestrator, orchestration_id, lambda: orchestrator.execute(orchestration_id)
        )
        await _review(orchestrator, orchestration_id, approve)

    _drive(runtime, _run)


@cli.command("execute")
@click.argument("orchestration_id")
@click.option("--approve", is_flag=True, default=False)
@_config_option
def execute_command(orchestration_id: str, approve: bool, config_value: str) -> None:
    runtime = _runtime(config_value)

    async def _run(orchestrator: Orchestrator) -> None:
        await _follow(
            orchestrator, orchestration_id, lambda: orchestrator.execute(orchestration_id)
        )
        await _review(orchestrator, orchestration_id, approve)

    _drive(runtime, _run)


@cli.command("resume")
@click.argument("orchestration_id")
@click.option("--approve", is_flag=True, default=False)
@_config_option
def resume_command(orchestration_id: str, approve: bool, config_value: str) -> None:
    runtime = _runtime(config_value)

    async def _run(orchestrator: Orchestrator) -> None:
        phase = orchestrator.get(orchestration_id).phase
        if phase != Phase.EXECUTION:
            await orchestrator.resume(orchestration_id)
            await orchestrator.wait_generation(orchestration_id)
            click.echo(f"Phase: {orchestrator.get(orchestration_id).phase.value}")
            return
        await _follow(
            orchestrator, orchestration_id, lambda: orchestrator.resume(orchestration_id)
        )
        await _review(orchestrator, orchestration_id, approve)

    _drive(runtime, _run)


@cli.command("refine")
@click.argument("orchestration_id")
@click.argument("feedback")
@click.option("--approve", is_flag=True, default=False)
@_config_option
def refine_command(orchestration_id: str, feedback: str, approve: bool, config_value: str) -> None:
    runtime = _runtime(config_value)

    async def _run(orchestrator: Orchestrator) -> None:
        added: list[Any] = []

        async def _refine() -> None:
            added.extend(await orchestrator.refine(orchestration_id, feedback))

        await _follow(orchestrator, orchestration_id, _refine)
        click.echo(f"Added tasks: {', '.join(task.id for task in added) or '-'}")
        await _review(orchestrator, orchestration_id, approve)

    _drive(runtime, _run)


@cli.command("approve")
@click.argument("orchestration_id")
@_config_option
def approve_command(orchestration_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _drive(runtime, lambda orchestrator: orchestrator.approve(orchestration_id))
    click.echo(f"Approved {orchestration_id}")


@cli.command("list")
@_config_option
def list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    summaries = runtime.orchestrator.list_orchestrations()
    if not summaries:
        click.echo("No orchestrations found.")
        return
    for item in summaries:
        click.echo(
            f"{item['id']} {item['phase']:<12} {item['status']:<9} "
            f"{item['completed_tasks']}/{item['task_count']} {item['goal']}"
        )


@cli.command("show")
@click.argument("orchestration_id")
@_config_option
def show_command(orchestration_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = runtime.orchestrator.detail(orchestration_id)
    except MaestroError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("logs")
@click.argument("orchestration_id")
@click.argument("task_id")
@click.option("--tail", type=int, default=0, help="Only show the last N entries.")
@_config_option
def logs_command(orchestration_id: str, task_id: str, tail: int, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        orchestration = runtime.orchestrator.get(orchestration_id)
    except MaestroError as exc:
        raise click.ClickException(str(exc)) from exc
    run = orchestration.run_for(task_id)
    if run is None:
        raise click.ClickException(f"No run recorded for {task_id}")
    entries = run.output_buffer[-tail:] if tail > 0 else run.output_buffer
    for entry in entries:
        click.echo(f"{entry.time} {entry.kind:<9} {entry.text}")


@cli.command("diff")
@click.argument("orchestration_id")
@click.argument("task_id")
@_config_option
def diff_command(orchestration_id: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    diff = _drive(runtime, lambda orchestrator: orchestrator.task_diff(orchestration_id, task_id))
    click.echo(diff or "No changes.")


@cli.command("merge")
@click.argument("orchestration_id")
@click.argument("task_id")
@_config_option
def merge_command(orchestration_id: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    target = _drive(
        runtime, lambda orchestrator: orchestrator.merge_task(orchestration_id, task_id)
    )
    click.echo(f"Merged {task_id} into {target}")


@cli.command("discard")
@click.argument("orchestration_id")
@click.argument("task_id")
@_config_option
def discard_command(orchestration_id: str, task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _drive(runtime, lambda orchestrator: orchestrator.discard_task(orchestration_id, task_id))
    click.echo(f"Discarded {task_id}")


@cli.command("delete")
@click.argument("orchestration_id")
@_config_option
def delete_command(orchestration_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    _drive(runtime, lambda orchestrator: orchestrator.delete(orchestration_id))
    click.echo(f"Deleted {orchestration_id}")


@cli.command("chat")
@click.argument("orchestration_id")
@click.argument("message")
@_config_option
def chat_command(orchestration_id: str, message: str, config_value: str) -> None:
    """Ask the assistant about an orchestration."""
    runtime = _runtime(config_value)
    reply = _drive(runtime, lambda orchestrator: orchestrator.chat(orchestration_id, message))
    click.echo(reply)


@cli.command("chat-task")
@click.argument("orchestration_id")
@click.argument("task_id")
@click.argument("message")
@_config_option
def chat_task_command(orchestration_id: str, task_id: str, message: str, config_value: str) -> None:
    """Discuss one task of the plan."""
    runtime = _runtime(config_value)
    reply = _drive(
        runtime,
        lambda orchestrator: orchestrator.chat_task(orchestration_id, task_id, message),
    )
    click.echo(reply)


@cli.command("explain")
@click.argument("orchestration_id")
@_config_option
def explain_command(orchestration_id: str, config_value: str) -> None:
    """Explain the reasoning behind the current plan."""
    runtime = _runtime(config_value)
    click.echo(_drive(runtime, lambda orchestrator: orchestrator.explain(orchestration_id)))
