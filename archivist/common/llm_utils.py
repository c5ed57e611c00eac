"""Helpers for reading structured answers out of free-form LLM replies."""

from __future__ import annotations

import json
import re
from typing import Iterable, Optional

_FENCE = re.compile(r"^\s*```[a-zA-Z]*\s*$")


def parse_llm_json(raw: str) -> dict:
    """Parse a JSON object from an LLM reply.

    Code fences are dropped first; failing that, the outermost ``{...}`` span
    is tried. Anything that does not decode to an object yields ``{}``.
    """
    if not raw:
        return {}

    unfenced = "\n".join(line for line in raw.splitlines() if not _FENCE.match(line))

    for candidate in (unfenced, raw):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return value if isinstance(value, dict) else {}

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            value = json.loads(raw[start:end])
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    return {}


def extract_label(raw: str, allowed: Iterable[str], key: str = "label") -> Optional[str]:
    """Pull a single categorical label from a reply.

    Accepts ``{"<key>": "..."}`` JSON or a bare word; returns None when the
    reply names none of the allowed labels.
    """
    allowed_set = {a.lower() for a in allowed}
    parsed = parse_llm_json(raw)
    value = parsed.get(key) if parsed else None
    if isinstance(value, str) and value.strip().lower() in allowed_set:
        return value.strip().lower()

    if parsed:
        return None
    words = re.findall(r"[a-zA-Z_]+", raw or "")
    for word in words:
        if word.lower() in allowed_set:
            return word.lower()
    return None
