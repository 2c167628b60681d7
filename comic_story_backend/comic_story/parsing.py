"""
Best-effort extraction of a JSON object embedded in free-form model output.
"""
import json
from typing import Any, Dict, NamedTuple, Optional


class Extraction(NamedTuple):
    value: Optional[Dict[str, Any]]
    reason: Optional[str]

    @property
    def ok(self) -> bool:
        return self.value is not None


def _balanced_object(text: str, start: int) -> Optional[str]:
    # Walk from the opening brace, ignoring braces inside string literals
    depth = 0
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
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json_object(text: Optional[str]) -> Extraction:
    """Return the first balanced top-level ``{...}`` in ``text``, parsed.

    Never raises: an absent, unbalanced or unparseable object is reported
    through ``Extraction.reason``.
    """
    if not text:
        return Extraction(None, "empty response")
    start = text.find("{")
    if start == -1:
        return Extraction(None, "no JSON object found in response")
    snippet = _balanced_object(text, start)
    if snippet is None:
        return Extraction(None, "unbalanced JSON object in response")
    try:
        value = json.loads(snippet)
    except json.JSONDecodeError as e:
        return Extraction(None, f"invalid JSON in response: {e.msg}")
    return Extraction(value, None)
