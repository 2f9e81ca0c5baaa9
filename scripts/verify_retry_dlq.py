#!/usr/bin/env python3
"""
Drives one job through a retry, into the dead letter queue and back out,
against a running API and its database.
"""
import asyncio
import uuid
from uuid import UUID

import httpx

from canvascast.commands.claim_job import claim_job
from canvascast.commands.fail_job import fail_job
from canvascast.db.session import Database
from canvascast.domain.states import ErrorCode, JobStatus
from canvascast.settings import settings

API_URL = "http://localhost:8000"

async def claim_and_fail(database: Database, job_id: str, message: str) -> bool:
    async with database.session() as session, session.begin():
        claimed = await claim_job(session, "worker-fail-test", lease_duration=60)
        if claimed is None:
            return False
        job, lease = claimed
        if str(job.id) != job_id:
            print(f"   Claimed unrelated job {job.id}, leaving it to the reaper")
            return False
        await fail_job(
            session, job.id, ErrorCode.TTS, message,
            failed_step=JobStatus.VOICE_GEN, lease_token=lease.lease_token
        )
        return True

async def verify_retry_dlq():
    user_id = f"user-retry-{uuid.uuid4()}"
    headers = {"X-Admin-Key": settings.ADMIN_API_KEY} if settings.ADMIN_API_KEY else {}

    async with httpx.AsyncClient(base_url=API_URL, headers=headers) as client:
        # 0. Setup user and project
        await client.post(f"/api/v1/admin/users/{user_id}/credits", json={"amount": 10})
        resp = await client.post("/api/v1/projects", json={
            "user_id": user_id,
            "title": "Retry test",
            "inputs": [{"type": "text", "content_text": "fail_test"}]
        })
        resp.raise_for_status()
        project_id = resp.json()["id"]

        # 1. Create a job with max_retries=1
        print("1. Creating job with max_retries=1...")
        resp = await client.post("/api/v1/jobs", json={
            "project_id": project_id,
            "user_id": user_id,
            "cost_credits_reserved": 10,
            "max_retries": 1
        })
        resp.raise_for_status()
        job_id = resp.json()["id"]
        print(f"   Job created: {job_id}")

        database = Database(settings.SQLALCHEMY_DATABASE_URI)
        await database.open()
        try:
            # 2. Attempt 1
            print("2. Claiming and failing attempt 1...")
            if not await claim_and_fail(database, job_id, "Simulated failure 1"):
                print("   FAILURE: Could not claim job for attempt 1")
                return

            job = (await client.get(f"/api/v1/jobs/{job_id}")).json()
            print(f"   Status after fail 1: {job['status']} (retry_count={job['retry_count']})")
            if job["status"] != "QUEUED" or job["retry_count"] != 1:
                print("   FAILURE: Expected QUEUED with retry_count 1")
            if job["credit_state"] != "refunded":
                print(f"   FAILURE: Expected credits refunded at 0%, got {job['credit_state']}")

            # 3. Attempt 2 after backoff (base delay 10s + jitter)
            print("3. Waiting 12s for backoff...")
            await asyncio.sleep(12)
            claimed = False
            for _ in range(5):
                claimed = await claim_and_fail(database, job_id, "Simulated failure 2")
                if claimed:
                    break
                await asyncio.sleep(1)
            if not claimed:
                print("   FAILURE: Could not claim job for attempt 2 (after backoff)")
                return
        finally:
            await database.close()

        # 4. Verify DLQ
        job = (await client.get(f"/api/v1/jobs/{job_id}")).json()
        print(f"   Status after fail 2: {job['status']} (dlq_at={job['dlq_at']})")
        dlq = (await client.get("/api/v1/admin/dlq")).json()
        if job["status"] == "FAILED" and any(j["id"] == job_id for j in dlq):
            print("SUCCESS: Job routed to the dead letter queue.")
        else:
            print("FAILURE: Job is not in the dead letter queue")
            return

        # 5. Manual retry
        resp = await client.post(f"/api/v1/admin/dlq/{job_id}/retry")
        job = resp.json()
        if resp.status_code == 200 and job["status"] == "QUEUED" and job["retry_count"] == 0:
            print("SUCCESS: Job requeued from the dead letter queue.")
        else:
            print(f"FAILURE: DLQ retry returned {resp.status_code}: {job}")

        resp = await client.post(f"/api/v1/admin/dlq/{UUID(job_id)}/retry")
        print(f"   Second DLQ retry: {resp.status_code} {resp.json()}")

if __name__ == "__main__":
    asyncio.run(verify_retry_dlq())
