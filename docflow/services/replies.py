# =============================================================================
# Reply Parsing: JSON Objects out of Model Text
# =============================================================================
#
# Model replies are unreliable input. Parsing never raises: it returns a
# ParsedReply that is either ok (with `data`) or failed (with `error` and
# the raw text), and callers branch on `.ok`.
#
# ACCEPTED SHAPES:
#   {"score_value": 0.4, ...}                    bare object
#   ```json\n{"score_value": 0.4}\n```           fenced (with or without "json")
#   Sure! Here it is: {"score_value": 0.4} ...   object embedded in prose
#
# Only a single JSON *object* is accepted. Arrays and scalars are failures.
# =============================================================================

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


@dataclass
class ParsedReply:
    """Outcome of parsing one model reply."""

    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    raw: str = ""

    def as_error_object(self) -> dict[str, Any]:
        """The best-effort error object stored as a failed task's result."""
        return {"error": self.error, "raw": self.raw}


def strip_fences(text: str) -> str:
    """Return the body of the first ``` fence, or the text unchanged."""
    match = _FENCE_RE.search(text)
    return match.group(1) if match else text


def _first_object(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def parse_json_reply(text: str, required: tuple[str, ...] = ()) -> ParsedReply:
    """
    Parse a reply that should contain exactly one JSON object.

    Args:
        text: Raw reply text.
        required: Keys that must be present in the object.

    Returns:
        ParsedReply; `ok` is False when no object could be decoded or a
        required key is missing.
    """
    body = strip_fences(text or "").strip()

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        candidate = _first_object(body)
        if candidate is None:
            return ParsedReply(ok=False, error="Reply contains no JSON object", raw=text)
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as exc:
            return ParsedReply(ok=False, error=f"Malformed JSON in reply: {exc.msg}", raw=text)

    if not isinstance(data, dict):
        return ParsedReply(ok=False, error="Reply JSON is not an object", raw=text)

    missing = [key for key in required if key not in data]
    if missing:
        return ParsedReply(
            ok=False, error=f"Reply is missing keys: {', '.join(missing)}", raw=text,
        )

    return ParsedReply(ok=True, data=data, raw=text)


def parse_score(value: Any) -> float | None:
    """
    Read a score as a decimal in [-1, 1].

    Accepts numbers and numeric strings. Returns None for anything else,
    including out-of-range values (scores are never clamped).
    """
    if isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(score) or not -1.0 <= score <= 1.0:
        return None
    return score
