from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from maestro.backends.base import TextBackend
from maestro.errors import CollaboratorProcessError

logger = logging.getLogger(__name__)


class ClaudeTextBackend(TextBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "--print", "-p", prompt]

    async def generate(self, prompt: str) -> str:
        command = self.build_command(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CollaboratorProcessError(
                f"Claude binary not runnable: {self.binary} ({exc})",
                backend=self.name,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise CollaboratorProcessError(
                f"Claude exited with code {process.returncode}: {message}",
                backend=self.name,
                exit_code=process.returncode,
            )
        text = stdout.decode("utf-8", errors="replace")
        logger.debug("claude generation returned %d characters", len(text))
        return text


class ClaudeWorker:
    """Builds the Worker Agent command line."""

    def __init__(
        self,
        binary: str = "claude",
        *,
        max_turns: int = 30,
        skip_permissions: bool = True,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.max_turns = max_turns
        self.skip_permissions = skip_permissions
        self.extra_args = list(extra_args or [])

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "--print", "--verbose", "--output-format", "stream-json"]
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        command.extend(["--max-turns", str(self.max_turns)])
        command.extend(self.extra_args)
        command.extend(["-p", prompt])
        return command
