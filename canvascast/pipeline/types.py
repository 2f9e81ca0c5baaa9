from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from canvascast.domain.states import ErrorCode


# Artifacts

class ScriptSection(BaseModel):
    id: str = ""
    heading: str = ""
    narration_text: str
    visual_keywords: list[str] = Field(default_factory=list)
    pace_hint: str = "normal"
    estimated_duration_ms: int = 0


class Script(BaseModel):
    title: str
    sections: list[ScriptSection]
    total_word_count: int = 0
    estimated_duration_ms: int = 0


class WhisperSegment(BaseModel):
    id: int
    start_ms: int
    end_ms: int
    text: str


class VisualSlot(BaseModel):
    id: str
    start_ms: int
    end_ms: int
    text: str
    prompt: str
    style: str


class VisualPlan(BaseModel):
    cadence_ms: int
    slots: list[VisualSlot]


class TimelineScene(BaseModel):
    id: str
    image_path: str
    start_frame: int
    end_frame: int


class TimelineCaption(BaseModel):
    text: str
    start_frame: int
    end_frame: int


class Timeline(BaseModel):
    fps: int
    width: int
    height: int
    duration_frames: int
    duration_ms: int
    audio_path: str
    scenes: list[TimelineScene]
    captions: list[TimelineCaption] = Field(default_factory=list)


class ArtifactBag(BaseModel):
    """Everything completed stages have produced for one job."""

    merged_input_text: Optional[str] = None
    script: Optional[Script] = None
    narration_path: Optional[str] = None
    narration_duration_ms: Optional[int] = None
    whisper_segments: Optional[list[WhisperSegment]] = None
    captions_srt_path: Optional[str] = None
    visual_plan: Optional[VisualPlan] = None
    image_paths: Optional[list[str]] = None
    timeline: Optional[Timeline] = None
    timeline_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    video_path: Optional[str] = None
    zip_path: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def merge(self, patch: dict[str, Any]) -> "ArtifactBag":
        return ArtifactBag.model_validate({**dict(self), **patch})

    def to_checkpoint(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# Step results

@dataclass(frozen=True)
class UploadEffect:
    """Write `data` to object storage at `path` (overwrite)."""
    path: str
    data: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class AssetEffect:
    """Upsert an asset metadata row for a stored file."""
    kind: str
    path: str
    meta: dict[str, Any] = field(default_factory=dict)


SideEffect = Union[UploadEffect, AssetEffect]


@dataclass(frozen=True)
class StepError:
    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = True


@dataclass
class StepResult:
    ok: bool
    patch: dict[str, Any] = field(default_factory=dict)
    effects: list[SideEffect] = field(default_factory=list)
    error: Optional[StepError] = None

    @classmethod
    def success(cls, patch: Optional[dict[str, Any]] = None, effects: Optional[list[SideEffect]] = None) -> "StepResult":
        return cls(ok=True, patch=patch or {}, effects=list(effects or []))

    @classmethod
    def failure(cls, code: ErrorCode, message: str, retryable: bool = True, **details: Any) -> "StepResult":
        return cls(ok=False, error=StepError(code=code, message=message, details=details, retryable=retryable))
