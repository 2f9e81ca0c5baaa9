"""End-to-end runs of the pipeline runner against fake generation services."""

import asyncio

from sqlalchemy import select

from canvascast.commands.cancel_job import cancel_job
from canvascast.commands.credits import get_credit_balance, grant_credits, list_ledger_entries
from canvascast.db.models import Asset, Job, JobCheckpoint, JobEventLog, Project
from canvascast.domain.states import CreditState, ErrorCode, JobEvent, JobStatus, LedgerType, ProjectStatus
from canvascast.pipeline.definitions import PipelineStep
from canvascast.pipeline.runner import PipelineRunner, RunState


async def load_job(database, job_id) -> Job:
    async with database.session() as session:
        return await session.get(Job, job_id)


async def balance(database, user_id="user-1") -> int:
    async with database.session() as session:
        return await get_credit_balance(session, user_id)


async def events(database, job_id) -> list[str]:
    async with database.session() as session:
        stmt = select(JobEventLog.event_type).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id)
        return list((await session.execute(stmt)).scalars().all())


class TestHappyPath:

    async def test_job_reaches_ready(self, database, runner, make_job, claim, storage, fake_services):
        await make_job(credits=100, reserve=10)
        job_id, token = await claim()

        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.COMPLETED
        assert outcome.job_status == JobStatus.READY
        job = await load_job(database, job_id)
        assert job.status == JobStatus.READY
        assert job.progress == 100
        assert job.credit_state == CreditState.SPENT
        # 65 seconds of narration is two started minutes
        assert job.cost_credits_final == 2
        assert await balance(database) == 98

        async with database.session() as session:
            assert await session.get(JobCheckpoint, job_id) is None
            project = await session.get(Project, job.project_id)
            assert project.status == ProjectStatus.READY
            assert project.timeline_path is not None
            kinds = {a.kind for a in (await session.execute(select(Asset).where(Asset.job_id == job_id))).scalars()}
        assert {"audio", "image", "video", "thumbnail"} <= kinds
        assert any(path.endswith("video.mp4") for path in storage.objects)
        assert fake_services.calls["generate_script"] == 1

        recorded = await events(database, job_id)
        assert recorded.count(JobEvent.STEP_COMPLETED) == 8
        assert recorded[-1] == JobEvent.COMPLETED

    async def test_free_job_spends_nothing(self, database, runner, make_job, claim):
        await make_job(credits=0, reserve=0)
        job_id, token = await claim()
        outcome = await runner.run(job_id, token)
        assert outcome.state == RunState.COMPLETED
        assert (await load_job(database, job_id)).credit_state == CreditState.NONE


class TestFailures:

    async def test_voice_failure_refunds_and_requeues(self, database, runner, make_job, claim, fake_services):
        await make_job(credits=100, reserve=10)
        job_id, token = await claim()
        fake_services.fail["synthesize"] = RuntimeError("TTS provider down")

        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.FAILED
        assert outcome.error.code == ErrorCode.TTS
        job = await load_job(database, job_id)
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == 1
        assert job.progress == 15
        assert job.failed_step == JobStatus.VOICE_GEN
        assert job.credit_state == CreditState.REFUNDED
        assert await balance(database) == 100
        async with database.session() as session:
            entries = await list_ledger_entries(session, "user-1")
        assert [(e.type, e.amount, e.job_id) for e in entries[:2]] == [
            (LedgerType.REFUND, 10, job_id),
            (LedgerType.RESERVE, -10, job_id),
        ]

    async def test_step_timeout_fails_with_stage_code(
        self, database, services, storage, make_job, claim, fake_services, monkeypatch
    ):
        async def hang(text, voice_profile_id=None):
            await asyncio.sleep(10)

        monkeypatch.setattr(fake_services, "synthesize", hang)
        runner = PipelineRunner(database, services, storage, step_timeout_seconds=0.2)
        await make_job()
        job_id, token = await claim()

        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.FAILED
        assert outcome.error.code == ErrorCode.TTS
        assert "timed out" in outcome.error.message
        job = await load_job(database, job_id)
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == 1
        assert job.failed_step == JobStatus.VOICE_GEN

    async def test_unexpected_exception_is_unknown_error(
        self, database, runner, make_job, claim, monkeypatch
    ):
        async def broken(self, ctx):
            raise KeyError("artifact")

        monkeypatch.setattr(PipelineStep, "execute", broken)
        await make_job()
        job_id, token = await claim()

        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.FAILED
        assert outcome.error.code == ErrorCode.UNKNOWN
        assert "KeyError" in outcome.error.message
        job = await load_job(database, job_id)
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == 1
        assert job.error_code == ErrorCode.UNKNOWN

    async def test_retry_after_refund_reserves_again(
        self, database, runner, make_job, claim, make_available, fake_services
    ):
        await make_job(credits=100, reserve=10)
        job_id, token = await claim()
        fake_services.fail["synthesize"] = RuntimeError("TTS provider down")
        fake_services.fail_times["synthesize"] = 1
        await runner.run(job_id, token)

        await make_available(job_id)
        _, token = await claim()
        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.COMPLETED
        # Below the resume threshold the job starts over
        assert fake_services.calls["generate_script"] == 2
        assert await balance(database) == 98

    async def test_render_failure_resumes_from_checkpoint(
        self, database, runner, make_job, claim, make_available, fake_services
    ):
        await make_job(credits=100, reserve=10)
        job_id, token = await claim()
        fake_services.fail["render"] = RuntimeError("render farm unavailable")
        fake_services.fail_times["render"] = 1

        first = await runner.run(job_id, token)
        assert first.state == RunState.FAILED
        job = await load_job(database, job_id)
        assert job.progress == 80
        # Paid work already happened, nothing is refunded
        assert job.credit_state == CreditState.SPENT
        images_before = fake_services.calls["generate_image"]

        await make_available(job_id)
        _, token = await claim()
        second = await runner.run(job_id, token)

        assert second.state == RunState.COMPLETED
        assert fake_services.calls["generate_image"] == images_before
        assert fake_services.calls["generate_script"] == 1
        assert fake_services.calls["render"] == 2
        assert JobEvent.RESUMED in await events(database, job_id)
        assert await balance(database) == 90

    async def test_moderation_flag_parks_job(self, database, runner, make_job, claim, fake_services):
        await make_job(credits=100, reserve=10)
        job_id, token = await claim()
        fake_services.flagged = True

        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.FAILED
        assert outcome.job_status == JobStatus.FAILED
        job = await load_job(database, job_id)
        assert job.dlq_at is not None
        assert job.error_code == ErrorCode.MODERATION
        assert job.retry_count == 0
        assert await balance(database) == 100

    async def test_unaffordable_retry_is_parked(
        self, database, runner, make_job, claim, make_available, fake_services
    ):
        await make_job(credits=10, reserve=10)
        job_id, token = await claim()
        fake_services.fail["synthesize"] = RuntimeError("TTS provider down")
        await runner.run(job_id, token)

        async with database.session() as session, session.begin():
            await grant_credits(session, "user-1", -10, type=LedgerType.ADMIN_ADJUST)

        await make_available(job_id)
        _, token = await claim()
        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.FAILED
        assert outcome.error.code == ErrorCode.CREDITS
        job = await load_job(database, job_id)
        assert job.status == JobStatus.FAILED
        assert job.dlq_at is not None
        assert await balance(database) == 0


class TestInterruptions:

    async def test_cancel_request_stops_between_stages(self, database, runner, make_job, claim, fake_services):
        await make_job(credits=100, reserve=10)
        job_id, token = await claim()
        async with database.session() as session, session.begin():
            await cancel_job(session, job_id)

        outcome = await runner.run(job_id, token)

        assert outcome.state == RunState.CANCELED
        job = await load_job(database, job_id)
        assert job.status == JobStatus.CANCELED
        assert "generate_script" not in fake_services.calls
        assert await balance(database) == 100

    async def test_lost_lease_stops_without_writes(self, database, runner, make_job, claim, fake_services):
        await make_job()
        job_id, token = await claim()
        lease_lost = asyncio.Event()
        lease_lost.set()

        outcome = await runner.run(job_id, token, lease_lost=lease_lost)

        assert outcome.state == RunState.LEASE_LOST
        job = await load_job(database, job_id)
        assert job.status == JobStatus.CLAIMED
        assert job.progress == 0
        assert fake_services.calls == {}
