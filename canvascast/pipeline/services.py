"""
Collaborator interfaces used by the step library.

Implementations live in `pipeline_worker.clients` (HTTP) and in the test
suite (fakes). Calls raise on failure; the steps map exceptions to their
error codes.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from canvascast.pipeline.types import Script, Timeline, WhisperSegment


class ScriptRequest(BaseModel):
    title: str
    source_text: str
    niche_preset: Optional[str] = None
    target_minutes: int = 1
    target_words: int


class SynthesizedAudio(BaseModel):
    data: bytes
    duration_ms: int
    content_type: str = "audio/mpeg"


class ModerationResult(BaseModel):
    flagged: bool = False
    categories: list[str] = Field(default_factory=list)


class ContentFetcher(Protocol):
    async def fetch_text(self, url: str) -> str: ...


class ScriptGenerator(Protocol):
    async def generate_script(self, request: ScriptRequest) -> Script: ...


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str, voice_profile_id: Optional[str] = None) -> SynthesizedAudio: ...


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes) -> list[WhisperSegment]: ...


class ImageGenerator(Protocol):
    async def generate_image(self, prompt: str, style: str) -> bytes: ...


class VideoRenderer(Protocol):
    async def render(self, timeline: Timeline) -> bytes: ...

    async def thumbnail(self, image: bytes, width: int, height: int) -> bytes: ...


class Moderator(Protocol):
    async def moderate(self, texts: list[str]) -> ModerationResult: ...


class ObjectStorage(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None: ...

    async def download(self, path: str) -> bytes: ...


@dataclass
class PipelineServices:
    fetcher: ContentFetcher
    script: ScriptGenerator
    speech: SpeechSynthesizer
    transcriber: Transcriber
    images: ImageGenerator
    renderer: VideoRenderer
    moderator: Moderator
