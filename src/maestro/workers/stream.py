from __future__ import annotations

import json
import logging
from typing import Any

from maestro.models import OutputEntry

logger = logging.getLogger(__name__)

SKIPPED_SYSTEM_SUBTYPES = {"init", "hook_response", "config"}


def describe_tool(name: str, tool_input: Any) -> str:
    params = tool_input if isinstance(tool_input, dict) else {}
    if name in ("Read", "Write", "Edit"):
        return f"{name}: {params.get('file_path', '')}"
    if name == "Bash":
        return f"Bash: {str(params.get('command', ''))[:80]}"
    if name in ("Grep", "Glob"):
        return f"{name}: {params.get('pattern', '')}"
    if name == "Task":
        return f"Task: {params.get('description', '')}"
    if name == "WebSearch":
        return f"WebSearch: {params.get('query', '')}"
    if name == "WebFetch":
        return f"WebFetch: {params.get('url', '')}"
    if name == "TodoWrite":
        return "Updating task list"
    return f"Using {name}"


def classify_record(record: dict[str, Any]) -> list[OutputEntry]:
    """Translate one stream-json record into zero or more output entries."""
    record_type = record.get("type")
    if record_type == "assistant":
        message = record.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        entries: list[OutputEntry] = []
        if not isinstance(content, list):
            return entries
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    entries.append(OutputEntry(kind="assistant", text=text))
            elif block.get("type") == "tool_use":
                name = str(block.get("name") or "tool")
                entries.append(
                    OutputEntry(
                        kind="tool",
                        text=describe_tool(name, block.get("input")),
                        tool=name,
                    )
                )
        return entries

    if record_type == "content_block_delta":
        delta = record.get("delta")
        text = delta.get("text") if isinstance(delta, dict) else None
        if isinstance(text, str) and text.strip():
            return [OutputEntry(kind="assistant", text=text)]
        return []

    if record_type == "result":
        subtype = record.get("subtype")
        if subtype == "success":
            return [OutputEntry(kind="result", text="Task completed successfully")]
        return [OutputEntry(kind="result", text=f"Task ended: {subtype}")]

    if record_type == "system":
        if record.get("subtype") in SKIPPED_SYSTEM_SUBTYPES:
            return []
        message = record.get("message")
        if isinstance(message, str) and message.strip():
            return [OutputEntry(kind="system", text=message)]
        return []

    return []


class StreamParser:
    """Incremental newline-delimited JSON parser for worker stdout."""

    def __init__(self) -> None:
        self._buffer = b""
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> list[OutputEntry]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        entries: list[OutputEntry] = []
        for raw_line in lines:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                self.skipped_lines += 1
                logger.debug("skipping malformed worker line: %.120s", line)
                continue
            if isinstance(record, dict):
                entries.extend(classify_record(record))
        return entries

    def close(self) -> None:
        if self._buffer.strip():
            logger.debug("discarding %d bytes of unterminated worker output", len(self._buffer))
        self._buffer = b""
