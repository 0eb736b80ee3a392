from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from maestro.errors import ProcessSpawnFailure
from maestro.models import OutputEntry, SubAgentRun
from maestro.workers.stream import StreamParser

logger = logging.getLogger(__name__)

EntryCallback = Callable[[OutputEntry], None]

READ_CHUNK_BYTES = 64 * 1024


@dataclass(slots=True)
class RunOutcome:
    exit_code: int | None
    error: str | None = None
    stopped: bool = False
    stderr_tail: list[str] = field(default_factory=list)

    @property
    def errored(self) -> bool:
        return self.error is not None

    @property
    def succeeded(self) -> bool:
        return not self.stopped and self.error is None and self.exit_code == 0


class ProcessSupervisor:
    """Runs one worker process for one run and streams its output into the run buffer."""

    def __init__(
        self,
        run: SubAgentRun,
        command: list[str],
        cwd: Path,
        on_entry: EntryCallback | None = None,
        *,
        env: dict[str, str] | None = None,
        stderr_tail_limit: int = 20,
    ) -> None:
        self.run_record = run
        self.command = command
        self.cwd = cwd
        self.on_entry = on_entry
        self.env = env
        self.stop_requested = False
        self._parser = StreamParser()
        self._stderr_tail: deque[str] = deque(maxlen=stderr_tail_limit)
        self._process: asyncio.subprocess.Process | None = None

    def _emit(self, entry: OutputEntry) -> None:
        self.run_record.output_buffer.append(entry)
        if self.on_entry is not None:
            self.on_entry(entry)

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            for entry in self._parser.feed(chunk):
                self._emit(entry)
        self._parser.close()

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            self._stderr_tail.append(line)
            self._emit(OutputEntry(kind="stderr", text=line))

    def _spawn_failed(self, failure: ProcessSpawnFailure) -> RunOutcome:
        logger.warning("worker spawn failed for %s: %s", self.run_record.task_id, failure)
        self._emit(OutputEntry(kind="error", text=str(failure)))
        return RunOutcome(exit_code=None, error=str(failure))

    async def run(self) -> RunOutcome:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.cwd),
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return self._spawn_failed(
                ProcessSpawnFailure(f"Failed to start {self.command[0]}: {exc}")
            )

        if process.stdout is None or process.stderr is None:
            if process.returncode is None:
                process.kill()
            await process.wait()
            return self._spawn_failed(
                ProcessSpawnFailure(f"{self.command[0]} started without output pipes")
            )

        self._process = process
        self.run_record.process = process
        if self.stop_requested:
            process.terminate()
        try:
            await asyncio.gather(
                self._pump_stdout(process.stdout),
                self._pump_stderr(process.stderr),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.terminate()
                await process.wait()
            raise
        finally:
            self.run_record.process = None
            self._process = None

        logger.debug("worker for %s exited with %s", self.run_record.task_id, exit_code)
        return RunOutcome(
            exit_code=exit_code,
            stopped=self.stop_requested,
            stderr_tail=list(self._stderr_tail),
        )

    def stop(self) -> None:
        self.stop_requested = True
        process = self._process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
