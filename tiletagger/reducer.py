from __future__ import annotations

from typing import Dict, Iterable

from .config import CONFIDENCE_THRESHOLD
from .contracts import TagObservation


def reduce_tags(
    observations: Iterable[TagObservation],
    threshold: int = CONFIDENCE_THRESHOLD,
) -> Dict[str, int]:
    """
    Merge per-tile observations into one tag set.

    Observations below `threshold` (or with an empty name) are dropped; for a tag seen more than once
    the highest confidence wins. Callers that need stable output sort by name.
    """
    reduced: Dict[str, int] = {}
    for obs in observations:
        if not obs.object or obs.confidence < threshold:
            continue
        existing = reduced.get(obs.object)
        if existing is None or obs.confidence > existing:
            reduced[obs.object] = obs.confidence
    return reduced
