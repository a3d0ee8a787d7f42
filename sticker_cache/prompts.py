"""Prompt rendering and response parsing for page sticker generation."""

from __future__ import annotations

import json
import re
from typing import Any

from sticker_cache.errors import InvalidCompletionError

MAX_STICKERS = 6
MAX_ANCHOR_CHARS = 100
MAX_UNIT_CHARS = 12_000

_SYSTEM_PROMPT = """You are an expert educational tutor. You annotate one page of course material
with short explanatory stickers for a student.

Rules:
1. Pick 2-6 concepts, terms or ideas that are central to the page
2. anchor_text must quote a phrase that appears on the page (at most 100 characters)
3. explanation is Markdown, LaTeX for math ($...$ inline, $$...$$ block)
4. Answer with a single JSON object and nothing else
"""

_USER_TEMPLATE = """Unit: {unit_key}

Page content:
---
{unit_content}
---

Return JSON:
{{
  "stickers": [
    {{"anchor_text": "<exact phrase from the page>", "explanation": "<markdown explanation>"}}
  ]
}}"""

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def build_sticker_messages(*, unit_key: str, unit_content: str) -> list[dict[str, str]]:
    content = unit_content.strip()[:MAX_UNIT_CHARS] or "(empty page)"
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {"role": "user", "content": _USER_TEMPLATE.format(unit_key=unit_key, unit_content=content)},
    ]


def parse_sticker_response(text: str) -> dict[str, Any]:
    """Parse completion text into ``{"stickers": [{anchor_text, explanation}, ...]}``.

    Raises InvalidCompletionError when the text holds no JSON object or no
    usable sticker; the executor treats that as a transient failure.
    """
    if not text or not text.strip():
        raise InvalidCompletionError("empty completion response")
    match = _JSON_OBJECT_RE.search(text)
    if match is None:
        raise InvalidCompletionError("completion response holds no JSON object")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise InvalidCompletionError(f"completion response is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise InvalidCompletionError("completion response must be a JSON object")
    raw_items = payload.get("stickers")
    if not isinstance(raw_items, list):
        raise InvalidCompletionError("completion response must carry a stickers list")

    stickers: list[dict[str, str]] = []
    for item in raw_items[:MAX_STICKERS]:
        if not isinstance(item, dict):
            continue
        anchor = str(item.get("anchor_text") or "").strip()[:MAX_ANCHOR_CHARS]
        explanation = str(item.get("explanation") or "").strip()
        if anchor and explanation:
            stickers.append({"anchor_text": anchor, "explanation": explanation})
    if not stickers:
        raise InvalidCompletionError("completion response holds no usable stickers")
    return {"stickers": stickers}
