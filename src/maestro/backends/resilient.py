from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from maestro.backends.base import TextBackend
from maestro.errors import CollaboratorError, CollaboratorProcessError

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5


class ResilientBackend(TextBackend):
    """Wraps primary/fallback backends with retry and failover."""

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: TextBackend,
        fallback_name: str,
        fallback_backend: TextBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def generate(self, prompt: str) -> str:
        attempts: list[tuple[str, TextBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for backend_name, backend in attempts:
            if backend_name != self.primary_name:
                self._emit({"event": "backend_failover_start", "backend": backend_name})
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    text = await backend.generate(prompt)
                except CollaboratorError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return text

        summary = "; ".join(errors[-6:])
        raise CollaboratorProcessError(
            f"All generation attempts failed. {summary}",
            backend=self.name,
            retriable=False,
        )
