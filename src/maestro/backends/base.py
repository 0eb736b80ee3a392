from __future__ import annotations

from abc import ABC, abstractmethod


class TextBackend(ABC):
    """A one-shot text-generation collaborator."""

    name: str = "text"

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Return the complete response text for ``prompt``."""
