"""HTTP tests for the API routers, served in-process over httpx."""

from uuid import uuid4

import httpx
import pytest

from canvascast.commands.fail_job import fail_job
from canvascast.domain.states import ErrorCode
from canvascast.main import app
from canvascast.settings import settings


@pytest.fixture
async def client(database):
    # ASGITransport skips the lifespan, so the test database is attached directly
    app.state.database = database
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def create_project(client, user_id="user-1") -> str:
    response = await client.post("/api/v1/projects", json={
        "user_id": user_id,
        "title": "Deep sea creatures",
        "image_density": "high",
        "inputs": [{"type": "text", "content_text": "Anglerfish glow in the dark."}],
    })
    assert response.status_code == 201
    return response.json()["id"]


async def grant(client, user_id="user-1", amount=50):
    response = await client.post(f"/api/v1/admin/users/{user_id}/credits", json={"amount": amount, "type": "purchase"})
    assert response.status_code == 201
    return response.json()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestProjects:

    async def test_create_and_get(self, client):
        project_id = await create_project(client)
        response = await client.get(f"/api/v1/projects/{project_id}")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "draft"
        assert body["image_density"] == "high"
        assert [i["content_text"] for i in body["inputs"]] == ["Anglerfish glow in the dark."]

    async def test_unknown_project(self, client):
        response = await client.get(f"/api/v1/projects/{uuid4()}")
        assert response.status_code == 404

    async def test_invalid_density(self, client):
        response = await client.post("/api/v1/projects", json={"user_id": "u", "title": "t", "image_density": "max"})
        assert response.status_code == 422


class TestJobs:

    async def test_create_job_reserves_credits(self, client):
        await grant(client, amount=50)
        project_id = await create_project(client)

        response = await client.post("/api/v1/jobs", json={
            "project_id": project_id, "user_id": "user-1", "cost_credits_reserved": 20
        })
        assert response.status_code == 201
        job = response.json()
        assert job["status"] == "QUEUED"
        assert job["progress"] == 0
        assert job["credit_state"] == "reserved"

        credits = (await client.get("/api/v1/users/user-1/credits")).json()
        assert credits["balance"] == 30
        assert credits["ledger"][0]["type"] == "reserve"

        fetched = await client.get(f"/api/v1/jobs/{job['id']}")
        assert fetched.json()["id"] == job["id"]

        events = (await client.get(f"/api/v1/jobs/{job['id']}/events")).json()
        assert [e["event_type"] for e in events] == ["credits_reserved", "created"]

    async def test_insufficient_credits(self, client):
        project_id = await create_project(client)
        response = await client.post("/api/v1/jobs", json={
            "project_id": project_id, "user_id": "user-1", "cost_credits_reserved": 5
        })
        assert response.status_code == 402

    async def test_unknown_project(self, client):
        response = await client.post("/api/v1/jobs", json={
            "project_id": str(uuid4()), "user_id": "user-1", "cost_credits_reserved": 0
        })
        assert response.status_code == 404

    async def test_negative_reservation(self, client):
        project_id = await create_project(client)
        response = await client.post("/api/v1/jobs", json={
            "project_id": project_id, "user_id": "user-1", "cost_credits_reserved": -1
        })
        assert response.status_code == 422

    async def test_cancel_queued_job(self, client):
        await grant(client, amount=10)
        project_id = await create_project(client)
        job = (await client.post("/api/v1/jobs", json={
            "project_id": project_id, "user_id": "user-1", "cost_credits_reserved": 10
        })).json()

        response = await client.post(f"/api/v1/jobs/{job['id']}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELED"
        assert (await client.get("/api/v1/users/user-1/credits")).json()["balance"] == 10

    async def test_retry_options_without_checkpoint(self, client, make_job):
        job_id = await make_job()
        response = await client.get(f"/api/v1/jobs/{job_id}/retry-options")
        assert response.status_code == 200
        body = response.json()
        assert body["can_retry_from_checkpoint"] is False
        assert body["next_step"] is None
        assert "full retry" in body["message"]

    async def test_retry_options_unknown_job(self, client):
        response = await client.get(f"/api/v1/jobs/{uuid4()}/retry-options")
        assert response.status_code == 404

    async def test_assets_of_finished_job(self, client, make_job, claim, runner):
        await make_job()
        job_id, token = await claim()
        await runner.run(job_id, token)
        response = await client.get(f"/api/v1/jobs/{job_id}/assets")
        assert response.status_code == 200
        assert "video" in {a["kind"] for a in response.json()}


class TestAdmin:

    async def test_dlq_flow(self, client, database, make_job, claim):
        await make_job()
        job_id, token = await claim()
        async with database.session() as session, session.begin():
            await fail_job(session, job_id, ErrorCode.MODERATION, "flagged", lease_token=token, retryable=False)

        listed = (await client.get("/api/v1/admin/dlq")).json()
        assert [j["id"] for j in listed] == [str(job_id)]

        detail = await client.get(f"/api/v1/admin/dlq/{job_id}")
        assert detail.json()["error_code"] == ErrorCode.MODERATION

        retried = await client.post(f"/api/v1/admin/dlq/{job_id}/retry")
        assert retried.status_code == 200
        assert retried.json()["status"] == "QUEUED"

        again = await client.post(f"/api/v1/admin/dlq/{job_id}/retry")
        assert again.status_code == 400
        assert again.json()["detail"]["code"] == "JOB_NOT_IN_DLQ"

    async def test_dlq_pagination(self, client, database, make_job, claim):
        for i in range(3):
            await make_job(user_id=f"user-{i}")
            job_id, token = await claim()
            async with database.session() as session, session.begin():
                await fail_job(session, job_id, ErrorCode.RENDER, "down", lease_token=token, retryable=False)

        first = (await client.get("/api/v1/admin/dlq", params={"limit": 2})).json()
        second = (await client.get("/api/v1/admin/dlq", params={"limit": 2, "offset": 2})).json()
        assert len(first) == 2
        assert len(second) == 1
        assert (await client.get("/api/v1/admin/dlq", params={"limit": 0})).status_code == 422

    async def test_unknown_dlq_job(self, client):
        response = await client.get(f"/api/v1/admin/dlq/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "JOB_NOT_FOUND"

    async def test_requeue_expired(self, client):
        response = await client.post("/api/v1/admin/requeue_expired")
        assert response.json() == {"requeued_count": 0}

    async def test_only_grant_types_allowed(self, client):
        response = await client.post("/api/v1/admin/users/u/credits", json={"amount": 5, "type": "spend"})
        assert response.status_code == 400

    async def test_grant_returns_balance(self, client):
        await grant(client, amount=5)
        body = await grant(client, amount=7)
        assert body["balance"] == 12

    async def test_admin_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_KEY", "secret")
        assert (await client.get("/api/v1/admin/dlq")).status_code == 403
        assert (await client.get("/api/v1/admin/dlq", headers={"X-Admin-Key": "wrong"})).status_code == 403
        assert (await client.get("/api/v1/admin/dlq", headers={"X-Admin-Key": "secret"})).status_code == 200
