from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from maestro.errors import PersistenceWriteFailure
from maestro.models import Orchestration, utcnow_iso

logger = logging.getLogger(__name__)


class OrchestrationStore:
    """One JSON document per orchestration, written atomically with debounced flushing."""

    SCHEMA_VERSION = 1

    def __init__(self, directory: Path, *, debounce_seconds: float = 1.0) -> None:
        self.directory = directory
        self.debounce_seconds = debounce_seconds
        self._revisions: dict[str, int] = {}
        self._dirty: dict[str, Orchestration] = {}
        self._deleted: set[str] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task[None]] = set()

    def path_for(self, orchestration_id: str) -> Path:
        return self.directory / f"{orchestration_id}.json"

    def _serialize(self, orchestration: Orchestration) -> str:
        revision = self._revisions.get(orchestration.id, 0) + 1
        self._revisions[orchestration.id] = revision
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": orchestration.to_dict(),
        }
        return json.dumps(envelope, ensure_ascii=False, indent=2)

    def _write(self, orchestration_id: str, serialized: str) -> None:
        if orchestration_id in self._deleted:
            return
        target = self.path_for(orchestration_id)
        temp_path: str | None = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.directory,
                prefix=f".{orchestration_id}-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                temp_path = handle.name
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except OSError as exc:
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
            raise PersistenceWriteFailure(
                f"Could not write {target}: {exc}", orchestration_id=orchestration_id
            ) from exc

    def _track(self, task: asyncio.Task[None]) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def save_now(self, orchestration: Orchestration) -> None:
        self._dirty.pop(orchestration.id, None)
        task = asyncio.get_running_loop().create_task(
            asyncio.to_thread(self._write, orchestration.id, self._serialize(orchestration))
        )
        self._track(task)
        await task

    def mark_dirty(self, orchestration: Orchestration) -> None:
        self._dirty[orchestration.id] = orchestration
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.debounce_seconds, self._flush_dirty)

    def _flush_dirty(self) -> None:
        self._timer = None
        if not self._dirty:
            return
        snapshots = {
            orchestration_id: self._serialize(orchestration)
            for orchestration_id, orchestration in self._dirty.items()
        }
        self._dirty.clear()
        self._track(asyncio.get_running_loop().create_task(self._write_batch(snapshots)))

    async def _write_batch(self, snapshots: dict[str, str]) -> None:
        for orchestration_id, serialized in snapshots.items():
            try:
                await asyncio.to_thread(self._write, orchestration_id, serialized)
            except PersistenceWriteFailure as exc:
                logger.error("debounced save failed for %s: %s", orchestration_id, exc)

    async def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._flush_dirty()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("skipping unreadable orchestration file %s: %s", path, exc)
            return None
        if isinstance(payload, dict) and "schema_version" in payload and "data" in payload:
            self._revisions[path.stem] = int(payload.get("revision") or 0)
            data = payload.get("data")
            return data if isinstance(data, dict) else None
        return payload if isinstance(payload, dict) else None

    def load(self, orchestration_id: str) -> Orchestration | None:
        path = self.path_for(orchestration_id)
        if not path.exists():
            return None
        data = self._read_envelope(path)
        if data is None:
            return None
        return Orchestration.from_dict(data)

    def load_all(self) -> list[Orchestration]:
        """Load every stored orchestration; runs that were live at shutdown come back orphaned."""
        if not self.directory.exists():
            return []
        orchestrations: list[Orchestration] = []
        for path in sorted(self.directory.glob("*.json")):
            data = self._read_envelope(path)
            if data is None:
                continue
            try:
                orchestrations.append(Orchestration.from_dict(data))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("skipping malformed orchestration %s: %s", path.name, exc)
        return orchestrations

    async def delete(self, orchestration_id: str) -> None:
        self._deleted.add(orchestration_id)
        self._dirty.pop(orchestration_id, None)
        self._revisions.pop(orchestration_id, None)
        if self._pending:
            # a write already past the deleted check would recreate the file
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await asyncio.to_thread(self.path_for(orchestration_id).unlink, missing_ok=True)
