from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from maestro.backends.base import TextBackend
from maestro.errors import CollaboratorTimeout
from maestro.parsing import JsonKind, extract_json

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Generated(Generic[T]):
    """Items produced by a specialist; ``fallback_reason`` is set when the deterministic default was used."""

    items: list[T] = field(default_factory=list)
    fallback_reason: str | None = None

    @property
    def used_fallback(self) -> bool:
        return self.fallback_reason is not None


class SpecialistAgent:
    role: str = "specialist"

    def __init__(self, backend: TextBackend, *, timeout_seconds: float = 30.0) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds

    async def generate(self, prompt: str, *, timeout_seconds: float | None = None) -> str:
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        try:
            return await asyncio.wait_for(self.backend.generate(prompt), timeout=timeout)
        except TimeoutError as exc:
            raise CollaboratorTimeout(
                f"{self.role} generation timed out after {timeout:.1f}s",
                backend=getattr(self.backend, "name", None),
            ) from exc

    async def ask_json(
        self, prompt: str, kind: JsonKind, *, timeout_seconds: float | None = None
    ) -> Any:
        text = await self.generate(prompt, timeout_seconds=timeout_seconds)
        return extract_json(text, kind)

    def log_fallback(self, reason: str) -> None:
        logger.warning("%s using deterministic fallback: %s", self.role, reason)
