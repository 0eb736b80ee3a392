from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import openai

from maestro.backends.base import TextBackend
from maestro.backends.claude import ClaudeTextBackend
from maestro.errors import CollaboratorProcessError

logger = logging.getLogger(__name__)


class OpenAITextBackend(TextBackend):
    """Responses API backend with automatic fallback to the Claude CLI."""

    name = "openai"

    def __init__(
        self,
        *,
        model: str = "gpt-4.1-mini",
        binary: str = "claude",
        working_directory: Path | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.cli_fallback = ClaudeTextBackend(binary=binary, working_directory=working_directory)
        self._client: Any | None = client
        if self._client is None:
            try:
                self._client = openai.OpenAI()
            except openai.OpenAIError as exc:
                logger.info("OpenAI client unavailable, using claude CLI: %s", exc)
                self._client = None

    @property
    def uses_sdk(self) -> bool:
        return self._client is not None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def generate(self, prompt: str) -> str:
        if self._client is None:
            return await self.cli_fallback.generate(prompt)

        def _request() -> Any:
            return self._client.responses.create(
                model=self.model,
                input=[{"role": "user", "content": prompt}],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except openai.OpenAIError as exc:
            raise CollaboratorProcessError(
                f"OpenAI generation failed: {exc}",
                backend=self.name,
            ) from exc
        return self._extract_text(payload)
