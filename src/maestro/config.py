from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

GenerationBackendName = Literal["claude", "openai"]

DEFAULT_CONFIG_FILE = "maestro.toml"


@dataclass(slots=True)
class WorkerConfig:
    binary: str = "claude"
    max_turns: int = 30
    skip_permissions: bool = True
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GenerationConfig:
    primary: GenerationBackendName = "claude"
    fallback: GenerationBackendName = "claude"
    binary: str = "claude"
    model: str = "gpt-4.1-mini"
    max_retries: int = 0
    retry_backoff_seconds: float = 0.5
    question_timeout_seconds: float = 30.0
    plan_timeout_seconds: float = 60.0


@dataclass(slots=True)
class SchedulerConfig:
    concurrency_limit: int = 3
    max_retries: int = 3
    retry_backoff_seconds: float = 2.0


@dataclass(slots=True)
class WorkspaceConfig:
    root: str = ".agent-worktrees"
    branch_prefix: str = "bd-"


@dataclass(slots=True)
class EventsConfig:
    replay_limit: int = 5
    history_limit: int = 200
    heartbeat_seconds: float = 15.0
    progress_every: int = 10


@dataclass(slots=True)
class StoreConfig:
    path: str = ".maestro/orchestrations"
    debounce_seconds: float = 1.0


@dataclass(slots=True)
class MaestroConfig:
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    @classmethod
    def default(cls) -> MaestroConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> MaestroConfig:
        return cls(
            worker=WorkerConfig(**data.get("worker", {})),
            generation=GenerationConfig(**data.get("generation", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            events=EventsConfig(**data.get("events", {})),
            store=StoreConfig(**data.get("store", {})),
        )

    def to_dict(self) -> dict:
        return {
            "worker": {
                "binary": self.worker.binary,
                "max_turns": self.worker.max_turns,
                "skip_permissions": self.worker.skip_permissions,
                "extra_args": list(self.worker.extra_args),
            },
            "generation": {
                "primary": self.generation.primary,
                "fallback": self.generation.fallback,
                "binary": self.generation.binary,
                "model": self.generation.model,
                "max_retries": self.generation.max_retries,
                "retry_backoff_seconds": self.generation.retry_backoff_seconds,
                "question_timeout_seconds": self.generation.question_timeout_seconds,
                "plan_timeout_seconds": self.generation.plan_timeout_seconds,
            },
            "scheduler": {
                "concurrency_limit": self.scheduler.concurrency_limit,
                "max_retries": self.scheduler.max_retries,
                "retry_backoff_seconds": self.scheduler.retry_backoff_seconds,
            },
            "workspace": {
                "root": self.workspace.root,
                "branch_prefix": self.workspace.branch_prefix,
            },
            "events": {
                "replay_limit": self.events.replay_limit,
                "history_limit": self.events.history_limit,
                "heartbeat_seconds": self.events.heartbeat_seconds,
                "progress_every": self.events.progress_every,
            },
            "store": {
                "path": self.store.path,
                "debounce_seconds": self.store.debounce_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MaestroConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["worker", "generation", "scheduler", "workspace", "events", "store"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> MaestroConfig:
    if not path.exists():
        return MaestroConfig.default()
    return MaestroConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: MaestroConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
