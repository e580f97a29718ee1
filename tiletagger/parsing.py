from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .contracts import ImageSummary, TagCaption, TagList, TagObservation
from .errors import ResponseParseError


def extract_first_json(text: str) -> Optional[Dict[str, Any]]:
    """
    Models sometimes wrap JSON in code fences; extract the first JSON object.
    """
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    snippet = text[start : end + 1]
    try:
        obj = json.loads(snippet)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def parse_summary(text: str) -> ImageSummary:
    obj = extract_first_json(text)
    if obj is None:
        raise ResponseParseError("Summary response is not a JSON object", text)
    try:
        return ImageSummary.model_validate(obj)
    except ValidationError as e:
        raise ResponseParseError(f"Summary response does not match schema: {e}", text) from e


def parse_tags(text: str) -> List[TagObservation]:
    obj = extract_first_json(text)
    if obj is None:
        raise ResponseParseError("Tags response is not a JSON object", text)
    try:
        return TagList.model_validate(obj).tags
    except ValidationError as e:
        raise ResponseParseError(f"Tags response does not match schema: {e}", text) from e


def parse_tag_caption(text: str) -> TagCaption:
    """
    Parse a free-text "tags line, then caption" answer.

    The first line holds ", "-separated tags and the LAST line the caption;
    models often put a blank line in between. Fewer than two lines is an error.
    """
    lines = (text or "").strip().splitlines()
    if len(lines) < 2:
        raise ResponseParseError("Expected a tags line and a caption line", text)

    tags = [t.strip().casefold() for t in lines[0].split(", ")]
    return TagCaption(tags=[t for t in tags if t], caption=lines[-1].strip())
