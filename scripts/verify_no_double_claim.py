#!/usr/bin/env python3
"""
Races 20 claimants against a single QUEUED job on a live PostgreSQL database.
Run against the same SQLALCHEMY_DATABASE_URI as a running API.
"""
import asyncio
import uuid

import httpx

from canvascast.commands.claim_job import claim_job
from canvascast.db.session import Database
from canvascast.settings import settings

API_URL = "http://localhost:8000"

async def attempt_claim(database: Database, worker_id: str):
    async with database.session() as session, session.begin():
        claimed = await claim_job(session, worker_id, lease_duration=60)
        if claimed is None:
            return None
        job, lease = claimed
        return {"job_id": str(job.id), "worker_id": worker_id, "lease_token": str(lease.lease_token)}

async def verify_no_double_claim():
    user_id = f"user-concurrency-{uuid.uuid4()}"

    # 1. Create 1 job
    async with httpx.AsyncClient(base_url=API_URL) as client:
        print("1. Creating project and 1 job...")
        resp = await client.post(f"/api/v1/admin/users/{user_id}/credits", json={"amount": 10})
        resp.raise_for_status()
        resp = await client.post("/api/v1/projects", json={
            "user_id": user_id,
            "title": "Concurrency test",
            "inputs": [{"type": "text", "content_text": "concurrency_test"}]
        })
        resp.raise_for_status()
        project_id = resp.json()["id"]
        resp = await client.post("/api/v1/jobs", json={
            "project_id": project_id,
            "user_id": user_id,
            "cost_credits_reserved": 5
        })
        resp.raise_for_status()
        job_id = resp.json()["id"]
        print(f"   Job created: {job_id}")

    database = Database(settings.SQLALCHEMY_DATABASE_URI, pool_size=25)
    await database.open()
    try:
        # 2. Spawn 20 concurrent claimants
        print("2. Spawning 20 concurrent claim attempts...")
        results = await asyncio.gather(*(attempt_claim(database, f"worker-{i}") for i in range(20)))
    finally:
        await database.close()

    # 3. Analyze results (other QUEUED jobs in the database may be claimed too)
    ours = [r for r in results if r is not None and r["job_id"] == job_id]
    print(f"3. Results: {len(ours)} claims for job {job_id}.")

    if len(ours) == 1:
        print("SUCCESS: Exactly one worker claimed the job.")
        print(f"   Winner: {ours[0]['worker_id']} (Token: {ours[0]['lease_token']})")
    elif len(ours) == 0:
        print("FAILURE: No one claimed the job (unexpected).")
    else:
        print(f"FAILURE: {len(ours)} workers claimed the job! Double claim detected.")
        for claim in ours:
            print(f"   - Token: {claim['lease_token']}")

if __name__ == "__main__":
    asyncio.run(verify_no_double_claim())
