from __future__ import annotations

from fastapi.testclient import TestClient

from tickq.api.app import create_app
from tickq.jobs.registry import job_registry

if "api.echo" not in job_registry:
    job_registry.register("api.echo", lambda ctx: {"echo": ctx.payload})


def client_for(state, **overrides: str) -> TestClient:
    state(**overrides)
    return TestClient(create_app())


def test_health(state) -> None:
    with client_for(state) as client:
        response = client.get("/api/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert "api.echo" in body["job_types"]


def test_enqueue_dedupe_and_inspect(state) -> None:
    with client_for(state) as client:
        created = client.post("/api/v1/jobs", json={"job_type": "api.echo", "dedupe_key": "once"})
        duplicate = client.post("/api/v1/jobs", json={"job_type": "api.echo", "dedupe_key": "once"})
        job_id = created.json()["id"]
        fetched = client.get(f"/api/v1/jobs/{job_id}")
        missing = client.get("/api/v1/jobs/does-not-exist")
        listed = client.get("/api/v1/jobs", params={"status": "queued"})
        summary = client.get("/api/v1/jobs/summary")
        blank = client.post("/api/v1/jobs", json={"job_type": "  "})

    assert created.status_code == 201
    assert created.json()["created"] is True
    assert duplicate.status_code == 200
    assert duplicate.json() == {"id": job_id, "status": "queued", "created": False}
    assert fetched.json()["status"] == "queued"
    assert missing.status_code == 404
    assert [item["id"] for item in listed.json()["items"]] == [job_id]
    assert summary.json()["by_status"]["queued"] == 1
    assert blank.status_code == 422


def test_trigger_endpoints_require_token_when_configured(state) -> None:
    with client_for(state, trigger_token="s3cret") as client:
        client.post("/api/v1/jobs", json={"job_type": "api.echo", "payload": {"n": 1}})
        denied = client.post("/api/v1/jobs/run")
        wrong = client.post("/api/v1/jobs/run", headers={"Authorization": "Bearer nope"})
        allowed = client.post(
            "/api/v1/jobs/run",
            json={"limit": 5, "runner_id": "api-runner"},
            headers={"Authorization": "Bearer s3cret"},
        )
        tick = client.post("/api/v1/jobs/tick", headers={"Authorization": "Bearer s3cret"})
        recover = client.post("/api/v1/jobs/recover-stale", headers={"Authorization": "Bearer s3cret"})

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["runner_id"] == "api-runner"
    assert allowed.json()["succeeded"] == 1
    assert tick.status_code == 200
    assert set(tick.json()) == {"recovered", "scheduled", "run"}
    assert recover.json() == {"count": 0, "requeued": 0, "dead_lettered": 0}


def test_requeue_cancel_and_logs(state) -> None:
    with client_for(state) as client:
        queued_id = client.post("/api/v1/jobs", json={"job_type": "api.echo"}).json()["id"]
        canceled = client.post(f"/api/v1/jobs/{queued_id}/cancel")
        cancel_again = client.post(f"/api/v1/jobs/{queued_id}/cancel")
        requeued = client.post(f"/api/v1/jobs/{queued_id}/requeue")
        requeue_queued = client.post(f"/api/v1/jobs/{queued_id}/requeue")
        logs = client.get(f"/api/v1/jobs/{queued_id}/logs")

    assert canceled.json()["status"] == "canceled"
    assert cancel_again.status_code == 409
    assert requeued.json()["status"] == "queued"
    assert requeue_queued.status_code == 409
    assert [entry["message"] for entry in logs.json()] == [
        "Job enqueued",
        "Job canceled before execution",
        "Job requeued manually",
    ]


def test_schedule_routes(state) -> None:
    with client_for(state) as client:
        created = client.post(
            "/api/v1/job-schedules",
            json={
                "key": "nightly",
                "title": "Nightly",
                "job_type": "api.echo",
                "cadence_type": "daily",
                "hour": 2,
                "minute": 30,
            },
        )
        duplicate = client.post(
            "/api/v1/job-schedules",
            json={"key": "nightly", "title": "Again", "job_type": "api.echo", "cadence_type": "daily"},
        )
        invalid = client.post(
            "/api/v1/job-schedules",
            json={"key": "bad", "title": "Bad", "job_type": "api.echo", "cadence_type": "daily", "hour": 24},
        )
        schedule_id = created.json()["id"]
        paused = client.patch(f"/api/v1/job-schedules/{schedule_id}", json={"is_enabled": False})
        listed = client.get("/api/v1/job-schedules")
        missing = client.get("/api/v1/job-schedules/missing")
        due = client.post("/api/v1/job-schedules/enqueue-due", json={"limit": 5})

    assert created.status_code == 201
    assert created.json()["cadence_type"] == "daily"
    assert duplicate.status_code == 409
    assert invalid.status_code == 422
    assert paused.json()["is_enabled"] is False
    assert paused.json()["next_run_at"] == created.json()["next_run_at"]
    assert [item["key"] for item in listed.json()["items"]] == ["nightly"]
    assert missing.status_code == 404
    assert due.json() == {"due_schedules": 0, "jobs_enqueued": 0}
