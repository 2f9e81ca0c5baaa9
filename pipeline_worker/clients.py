import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from canvascast.pipeline.services import ModerationResult, ScriptRequest, SynthesizedAudio
from canvascast.pipeline.types import Script, Timeline, WhisperSegment

logger = logging.getLogger(__name__)

class GenerationClient:
    """
    HTTP client for the generation gateway (LLM, TTS, transcription, images,
    rendering, moderation). One instance serves every service protocol the
    step library needs.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None

    async def open(self):
        if self.client is not None:
            return
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, headers=headers)

    async def close(self):
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        if self.client is None:
            raise RuntimeError("GenerationClient is not open")
        resp = await self.client.post(path, **kwargs)
        resp.raise_for_status()
        return resp

    async def fetch_text(self, url: str) -> str:
        resp = await self._post("/v1/fetch", json={"url": url})
        return resp.json()["text"]

    async def generate_script(self, request: ScriptRequest) -> Script:
        resp = await self._post("/v1/scripts", json=request.model_dump())
        return Script.model_validate(resp.json())

    async def synthesize(self, text: str, voice_profile_id: Optional[str] = None) -> SynthesizedAudio:
        resp = await self._post("/v1/speech", json={"text": text, "voice_profile_id": voice_profile_id})
        return SynthesizedAudio(
            data=resp.content,
            duration_ms=int(resp.headers.get("X-Audio-Duration-Ms", "0")),
            content_type=resp.headers.get("Content-Type", "audio/mpeg")
        )

    async def transcribe(self, audio: bytes) -> list[WhisperSegment]:
        resp = await self._post(
            "/v1/transcriptions",
            files={"file": ("narration.mp3", audio, "audio/mpeg")},
            data={"timestamp_granularity": "segment"}
        )
        return [WhisperSegment.model_validate(s) for s in resp.json()["segments"]]

    async def generate_image(self, prompt: str, style: str) -> bytes:
        resp = await self._post("/v1/images", json={"prompt": prompt, "style": style})
        return resp.content

    async def render(self, timeline: Timeline) -> bytes:
        resp = await self._post("/v1/renders", json=timeline.model_dump(mode="json"))
        return resp.content

    async def thumbnail(self, image: bytes, width: int, height: int) -> bytes:
        resp = await self._post(
            "/v1/thumbnails",
            files={"image": ("source.png", image, "image/png")},
            data={"width": str(width), "height": str(height)}
        )
        return resp.content

    async def moderate(self, texts: list[str]) -> ModerationResult:
        resp = await self._post("/v1/moderations", json={"input": texts})
        data: Dict[str, Any] = resp.json()
        return ModerationResult(flagged=bool(data.get("flagged")), categories=data.get("categories") or [])

class HttpObjectStorage:
    """Object storage over a simple PUT/GET bucket API."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None

    async def open(self):
        if self.client is not None:
            return
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, headers=headers)

    async def close(self):
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def upload(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        if self.client is None:
            raise RuntimeError("HttpObjectStorage is not open")
        # Upsert: re-running a step overwrites the same object
        resp = await self.client.put(
            f"/object/{path.lstrip('/')}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true"}
        )
        resp.raise_for_status()
        logger.debug("Uploaded %s (%d bytes)", path, len(data))

    async def download(self, path: str) -> bytes:
        if self.client is None:
            raise RuntimeError("HttpObjectStorage is not open")
        resp = await self.client.get(f"/object/{path.lstrip('/')}")
        resp.raise_for_status()
        return resp.content

class LocalObjectStorage:
    """Filesystem storage for local development."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    async def open(self):
        await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)

    async def close(self):
        pass

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if not target.is_relative_to(self.root):
            raise ValueError(f"Path escapes storage root: {path}")
        return target

    def _write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def upload(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        await asyncio.to_thread(self._write, path, data)

    async def download(self, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(path).read_bytes)
