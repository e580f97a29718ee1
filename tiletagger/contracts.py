from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import CONFIDENCE_THRESHOLD, MAX_WORKERS, SUMMARY_MODEL, TAG_PASSES, VISION_MODEL

Workflow = Literal["structured", "two-stage"]


class TagObservation(BaseModel):
    """One model's claim about one tile."""

    object: str
    confidence: int

    @field_validator("object")
    @classmethod
    def _strip_object(cls, v: str) -> str:
        return v.strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v) -> int:
        # Models answer with a JSON number; keep it an int in [0, 100].
        try:
            value = float(v)
        except (TypeError, ValueError):
            raise ValueError(f"confidence must be a number, got {v!r}")
        if value != value:
            raise ValueError("confidence must not be NaN")
        return int(round(max(0.0, min(100.0, value))))


class TagList(BaseModel):
    tags: List[TagObservation]


class ImageSummary(BaseModel):
    subject: str
    description: str


class TagCaption(BaseModel):
    tags: List[str]
    caption: str


class TaggerConfig(BaseModel):
    """Model selection and reduction settings, passed explicitly to every call."""

    vision_model: str = VISION_MODEL
    summary_model: str = SUMMARY_MODEL
    confidence_threshold: int = Field(default=CONFIDENCE_THRESHOLD, ge=0, le=100)
    passes: int = Field(default=TAG_PASSES, ge=1)
    max_workers: int = Field(default=MAX_WORKERS, ge=1)


class ImageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str
    processed_at: datetime
    subject: str = ""
    description: str = ""
    tags: Dict[str, int] = Field(default_factory=dict)

    def sorted_tags(self) -> List[TagObservation]:
        return [TagObservation(object=k, confidence=v) for k, v in sorted(self.tags.items())]
