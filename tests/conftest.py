"""
Pytest configuration and fixtures for the pipeline engine tests.

Every test gets its own SQLite database file, fake generation services and an
in-memory object store.
"""

from typing import Any, Optional
from uuid import UUID

import pytest
from sqlalchemy import update

from canvascast.commands.claim_job import claim_job
from canvascast.commands.create_job import create_job, create_project
from canvascast.commands.credits import grant_credits
from canvascast.db.models import Job
from canvascast.db.session import Database
from canvascast.pipeline.context import InputRecord, JobRecord, PipelineContext, ProjectRecord
from canvascast.pipeline.runner import PipelineRunner
from canvascast.pipeline.services import ModerationResult, PipelineServices, ScriptRequest, SynthesizedAudio
from canvascast.pipeline.types import ArtifactBag, Script, ScriptSection, Timeline, WhisperSegment
from canvascast.utils.timeutil import utcnow

SOURCE_TEXT = (
    "The deep sea is the largest habitat on Earth. Creatures there produce their own light, "
    "survive crushing pressure and go months without a meal."
)


class FakeGenerationServices:
    """
    Implements every service protocol in memory.

    `fail` maps a method name to an exception raised on every call, `fail_times`
    limits how many calls fail before it starts succeeding again.
    """

    def __init__(self, narration_ms: int = 65000, segment_ms: int = 6500):
        self.narration_ms = narration_ms
        self.segment_ms = segment_ms
        self.flagged = False
        self.fail: dict[str, Exception] = {}
        self.fail_times: dict[str, int] = {}
        self.calls: dict[str, int] = {}

    def _enter(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.fail:
            remaining = self.fail_times.get(name)
            if remaining is None:
                raise self.fail[name]
            if remaining > 0:
                self.fail_times[name] = remaining - 1
                raise self.fail[name]

    async def fetch_text(self, url: str) -> str:
        self._enter("fetch_text")
        return f"Article fetched from {url}"

    async def generate_script(self, request: ScriptRequest) -> Script:
        self._enter("generate_script")
        return Script(
            title=request.title,
            sections=[
                ScriptSection(
                    heading="Into the dark",
                    narration_text="Below two hundred meters sunlight fades and a strange world begins.",
                    visual_keywords=["ocean depths", "darkness"],
                ),
                ScriptSection(
                    heading="Living light",
                    narration_text="Anglerfish and jellyfish glow to hunt, hide and find each other.",
                    visual_keywords=["bioluminescence", "anglerfish"],
                ),
            ],
        )

    async def synthesize(self, text: str, voice_profile_id: Optional[str] = None) -> SynthesizedAudio:
        self._enter("synthesize")
        return SynthesizedAudio(data=b"ID3-narration", duration_ms=self.narration_ms)

    async def transcribe(self, audio: bytes) -> list[WhisperSegment]:
        self._enter("transcribe")
        segments = []
        start = 0
        i = 0
        while start < self.narration_ms:
            end = min(start + self.segment_ms, self.narration_ms)
            segments.append(WhisperSegment(id=i, start_ms=start, end_ms=end, text=f"Segment {i} of the narration."))
            start = end
            i += 1
        return segments

    async def generate_image(self, prompt: str, style: str) -> bytes:
        self._enter("generate_image")
        return b"PNG-" + prompt[:16].encode("utf-8")

    async def render(self, timeline: Timeline) -> bytes:
        self._enter("render")
        return b"MP4-" + str(timeline.duration_frames).encode("utf-8")

    async def thumbnail(self, image: bytes, width: int, height: int) -> bytes:
        self._enter("thumbnail")
        return b"JPG-" + image[:8]

    async def moderate(self, texts: list[str]) -> ModerationResult:
        self._enter("moderate")
        return ModerationResult(flagged=self.flagged, categories=["violence"] if self.flagged else [])


class InMemoryStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}

    async def upload(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.objects[path] = data
        self.content_types[path] = content_type

    async def download(self, path: str) -> bytes:
        if path not in self.objects:
            raise FileNotFoundError(path)
        return self.objects[path]


@pytest.fixture
async def database(tmp_path):
    """A fresh SQLite database with every table created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.open()
    await db.create_all()
    try:
        yield db
    finally:
        await db.close()


@pytest.fixture
def fake_services() -> FakeGenerationServices:
    return FakeGenerationServices()


@pytest.fixture
def services(fake_services) -> PipelineServices:
    return PipelineServices(
        fetcher=fake_services,
        script=fake_services,
        speech=fake_services,
        transcriber=fake_services,
        images=fake_services,
        renderer=fake_services,
        moderator=fake_services,
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def runner(database, services, storage) -> PipelineRunner:
    return PipelineRunner(database, services, storage, step_timeout_seconds=5)


@pytest.fixture
def make_job(database):
    """Factory: grants credits, creates a project with one text input and enqueues a job."""

    async def _make(
        user_id: str = "user-1",
        credits: int = 100,
        reserve: int = 10,
        max_retries: int = 3,
        inputs: Optional[list[dict[str, Any]]] = None,
        **preferences: Any
    ) -> UUID:
        async with database.session() as session, session.begin():
            if credits:
                await grant_credits(session, user_id, credits)
            project = await create_project(
                session, user_id, "Deep sea creatures",
                inputs=inputs if inputs is not None else [{"type": "text", "content_text": SOURCE_TEXT}],
                **preferences
            )
            job = await create_job(session, project.id, user_id, reserve, max_retries=max_retries)
            return job.id

    return _make


@pytest.fixture
def claim(database):
    """Factory: claims the next QUEUED job and returns (job_id, lease_token)."""

    async def _claim(worker_id: str = "worker-1", lease_duration: int = 120):
        async with database.session() as session, session.begin():
            claimed = await claim_job(session, worker_id, lease_duration)
            assert claimed is not None, "expected a claimable job"
            job, lease = claimed
            return job.id, lease.lease_token

    return _claim


@pytest.fixture
def make_available(database):
    """Factory: skips the retry backoff of a requeued job."""

    async def _make_available(job_id: UUID) -> None:
        async with database.session() as session, session.begin():
            await session.execute(update(Job).where(Job.id == job_id).values(available_at=utcnow()))

    return _make_available


@pytest.fixture
def make_context(services, storage):
    """Factory: a PipelineContext for step-level tests without a database."""

    def _make_context(artifacts: Optional[ArtifactBag] = None, inputs=None, **project_fields: Any) -> PipelineContext:
        job_id = UUID("00000000-0000-0000-0000-000000000001")
        project_id = UUID("00000000-0000-0000-0000-0000000000aa")
        project = ProjectRecord(id=project_id, user_id="user-1", title="Deep sea creatures", **project_fields)
        return PipelineContext(
            job=JobRecord(id=job_id, project_id=project_id, user_id="user-1"),
            project=project,
            services=services,
            storage=storage,
            inputs=inputs if inputs is not None else [InputRecord(type="text", content_text=SOURCE_TEXT)],
            artifacts=artifacts or ArtifactBag(),
        )

    return _make_context
