from maestro.backends.base import TextBackend
from maestro.backends.claude import ClaudeTextBackend, ClaudeWorker
from maestro.backends.openai_sdk import OpenAITextBackend
from maestro.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "ClaudeTextBackend",
    "ClaudeWorker",
    "OpenAITextBackend",
    "ResilientBackend",
    "RetryPolicy",
    "TextBackend",
]
