from __future__ import annotations

import json
from typing import Any, Literal

from maestro.errors import CollaboratorParseFailure

JsonKind = Literal["array", "object"]

_OPENERS = {"array": "[", "object": "{"}
_CLOSERS = {"[": "]", "{": "}"}


def _balanced_end(text: str, start: int) -> int | None:
    """Index just past the bracket group opened at ``start``, or None if it never closes."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("]", "}"):
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return index + 1
    return None


def extract_json(text: str, kind: JsonKind) -> Any:
    """Return the first balanced top-level JSON value of ``kind`` embedded in ``text``.

    Collaborator responses often wrap the payload in prose or code fences, and may
    contain bracket characters inside string literals; both are tolerated.
    """
    opener = _OPENERS[kind]
    position = text.find(opener)
    while position != -1:
        end = _balanced_end(text, position)
        if end is not None:
            try:
                value = json.loads(text[position:end])
            except json.JSONDecodeError:
                value = None
            if isinstance(value, list if kind == "array" else dict):
                return value
        position = text.find(opener, position + 1)
    raise CollaboratorParseFailure(f"No JSON {kind} found in collaborator response.")
