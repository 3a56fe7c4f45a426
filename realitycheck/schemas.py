import math
from types import MappingProxyType
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from typing import Optional, Mapping, Any, List, Union, Literal, Callable, Awaitable, Annotated

from realitycheck.scoring_config import ScoringConfig

ContentType = Literal["image", "video", "text"]
Confidence = Literal["low", "medium", "high"]
DetectionQuality = Literal["low", "medium", "high"]
DecisionStage = Literal["initial", "local_ml", "remote_ml"]
Source = Literal["local", "remote"]


def clamp01(value: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def _coerce_score(v) -> float:
    try:
        return clamp01(float(v))
    except (TypeError, ValueError):
        raise ValueError(f"score must be numeric, got {v!r}")


def confidence_for(score: float) -> Confidence:
    """Band a score: low < 0.4, medium 0.4-0.7, high > 0.7."""
    if score < ScoringConfig.THRESHOLDS["CONFIDENCE_LOW"]:
        return "low"
    if score > ScoringConfig.THRESHOLDS["CONFIDENCE_HIGH"]:
        return "high"
    return "medium"


class DetectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    content_type: ContentType
    score: float
    confidence: Confidence
    is_ai_generated: bool
    source: Source = "local"
    decision_stage: DecisionStage = "initial"
    local_model_score: Optional[float] = None
    heuristic_scores: Mapping[str, float] = Field(default_factory=dict, validate_default=True)
    details: Optional[str] = None
    skipped_by_pre_filter: bool = False

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, v):
        return _coerce_score(v)

    @field_validator("heuristic_scores", mode="after")
    @classmethod
    def _freeze_scores(cls, v):
        # Shared by every caller of a cached result
        return MappingProxyType(dict(v))

    @field_serializer("heuristic_scores")
    def _dump_scores(self, v):
        return dict(v)

    @classmethod
    def from_score(
        cls,
        content_type: ContentType,
        score: float,
        threshold: float,
        is_ai_generated: Optional[bool] = None,
        **fields,
    ) -> "DetectionResult":
        """Build a result whose confidence and verdict are derived from the clamped score."""
        score = clamp01(score)
        if is_ai_generated is None:
            is_ai_generated = score >= threshold
        return cls(
            content_type=content_type,
            score=score,
            confidence=confidence_for(score),
            is_ai_generated=is_ai_generated,
            **fields,
        )


class PhotorealismResult(BaseModel):
    is_photorealistic: bool
    score: float


class ExifSummary(BaseModel):
    has_camera_hardware: bool = False
    make: Optional[str] = None
    model: Optional[str] = None
    software: Optional[str] = None
    exposure_time: Optional[float] = None
    f_number: Optional[float] = None
    iso: Optional[float] = None
    lens_model: Optional[str] = None
    has_gps: bool = False


# ---- Remote escalation payloads ----

class ImagePayload(BaseModel):
    kind: Literal["image"] = "image"
    image_hash: str
    image_data_url: Optional[str] = None
    image_url: Optional[str] = None


class VideoFramesPayload(BaseModel):
    kind: Literal["video"] = "video"
    frame_hashes: List[str] = Field(default_factory=list)
    frames: List[str] = Field(default_factory=list)
    video_url: Optional[str] = None


class TextPayload(BaseModel):
    kind: Literal["text"] = "text"
    text: str


RemotePayload = Annotated[
    Union[ImagePayload, VideoFramesPayload, TextPayload],
    Field(discriminator="kind"),
]


class RemoteClassification(BaseModel):
    score: float
    label: Literal["ai", "human", "uncertain", "error"]

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, v):
        return _coerce_score(v)


class DetectorOptions(BaseModel):
    remote_enabled: bool = False
    detection_quality: DetectionQuality = "medium"
    remote_endpoint: Optional[str] = None
    remote_api_key: Optional[str] = None
    # async (url) -> data URL or None
    fetch_bytes: Optional[Callable[..., Awaitable[Optional[str]]]] = None
    # async (endpoint, api_key, content_type, payload) -> RemoteClassification | dict
    remote_classify: Optional[Callable[..., Awaitable[Any]]] = None


# ---- HTTP surface ----

class TextRequest(BaseModel):
    text: str
    remote_enabled: Optional[bool] = None
    detection_quality: Optional[DetectionQuality] = None
