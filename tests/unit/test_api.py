"""Tests for the HTTP API."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from contentflow.config import Settings
from contentflow.main import create_app
from contentflow.models.content import Insight
from contentflow.runtime import Runtime

SCHEDULER = "/api/v1/scheduler"
PIPELINES = "/api/v1/pipelines"
QUEUES = "/api/v1/queues"


@pytest.fixture
def runtime(clock, entities, ai, publisher, credentials):
    rt = Runtime(
        Settings(),
        entities=entities,
        ai=ai,
        publisher=publisher,
        credentials=credentials,
        clock=clock,
        database_path=":memory:",
    )
    rt.connect()
    yield rt
    rt.db.close()


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


class TestHealth:
    def test_degraded_without_workers(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["store_healthy"] is True
        assert body["processors_running"] is False


class TestQueues:
    def test_stats_cover_every_queue(self, client) -> None:
        response = client.get(QUEUES)
        assert response.status_code == 200
        assert set(response.json()) == {"clean_transcript", "extract_insights", "generate_posts", "publish"}

    def test_unknown_queue(self, client) -> None:
        assert client.get(f"{QUEUES}/nope").status_code == 404
        assert client.post(f"{QUEUES}/nope/pause").status_code == 404

    def test_pause_and_resume_queue(self, client) -> None:
        assert client.post(f"{QUEUES}/publish/pause").status_code == 204
        assert client.get(f"{QUEUES}/publish").json()["paused"] is True
        assert client.post(f"{QUEUES}/publish/resume").status_code == 204
        assert client.get(f"{QUEUES}/publish").json()["paused"] is False

    def test_pause_all(self, client) -> None:
        assert client.post(f"{QUEUES}/pause-all").status_code == 204
        assert client.get(f"{QUEUES}/clean_transcript").json()["paused"] is True
        assert client.post(f"{QUEUES}/resume-all").status_code == 204

    def test_job_detail(self, client, entities) -> None:
        entities.add_transcript("raw talk", transcript_id="t1")
        job_id = client.post(PIPELINES, json={"transcript_id": "t1"}).json()["job_id"]

        response = client.get(f"{QUEUES}/jobs/{job_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "waiting"
        assert body["queue_name"] == "clean_transcript"
        assert body["processing"]["status"] == "queued"
        assert client.get(f"{QUEUES}/jobs/missing").status_code == 404

    def test_clear_completed(self, client, entities) -> None:
        entities.add_transcript("raw talk", transcript_id="t1")
        client.post(PIPELINES, json={"transcript_id": "t1"})
        jobs = client.get(f"{QUEUES}/clean_transcript/jobs", params={"state": "waiting"}).json()
        assert len(jobs) == 1

        response = client.delete(f"{QUEUES}/completed")
        assert response.status_code == 200
        assert response.json()["removed"]["clean_transcript"] == 0


class TestPipelines:
    def test_start_and_progress(self, client, entities) -> None:
        entities.add_transcript("raw talk", transcript_id="t1")

        response = client.post(PIPELINES, json={"transcript_id": "t1"})
        assert response.status_code == 201
        assert response.json()["job_id"].startswith("clean_t1_")

        progress = client.get(f"{PIPELINES}/t1").json()
        assert progress["status"] == "processing"
        assert progress["current_stage"] == "clean"

    def test_unknown_transcript(self, client) -> None:
        assert client.post(PIPELINES, json={"transcript_id": "nope"}).status_code == 404
        assert client.get(f"{PIPELINES}/nope").status_code == 404

    def test_pause_resume_cancel(self, client, entities) -> None:
        entities.add_transcript("raw talk", transcript_id="t1")
        client.post(PIPELINES, json={"transcript_id": "t1"})

        assert client.post(f"{PIPELINES}/t1/pause", json={"reason": "legal review"}).status_code == 204
        progress = client.get(f"{PIPELINES}/t1").json()
        assert progress["status"] == "paused"
        assert progress["reason"] == "legal review"

        assert client.post(f"{PIPELINES}/t1/resume").json() == {"job_ids": []}
        assert client.post(f"{PIPELINES}/t1/cancel").json() == {"cancelled": 1}
        assert client.post(f"{PIPELINES}/t1/resume").status_code == 422

    def test_generate_requires_approved_insight(self, client, entities) -> None:
        entities.add_insight(Insight(id="i1", transcript_id="t1", title="a", summary="b"))
        response = client.post(f"{PIPELINES}/insights/i1/generate", json={"platforms": ["x"]})
        assert response.status_code == 422
        assert "approved" in response.json()["detail"]

    def test_retry_publish_stage_rejected(self, client, entities) -> None:
        entities.add_transcript("raw talk", transcript_id="t1")
        response = client.post(f"{PIPELINES}/t1/retry", json={"stage": "publish"})
        assert response.status_code == 422
        assert client.post(f"{PIPELINES}/t1/retry", json={"stage": "bogus"}).status_code == 422


class TestScheduler:
    def _iso(self, clock, **delta) -> str:
        return (clock() + timedelta(**delta)).isoformat()

    def test_schedule_get_and_cancel(self, client, clock) -> None:
        response = client.post(
            f"{SCHEDULER}/posts",
            json={"platform": "x", "content": "Hello", "scheduled_time": self._iso(clock, hours=1)},
        )
        assert response.status_code == 201
        post_id = response.json()["id"]
        assert response.json()["status"] == "pending"

        assert client.get(f"{SCHEDULER}/posts/{post_id}").status_code == 200
        assert len(client.get(f"{SCHEDULER}/upcoming", params={"hours": 2}).json()) == 1

        cancelled = client.post(f"{SCHEDULER}/posts/{post_id}/cancel")
        assert cancelled.json()["status"] == "cancelled"
        assert client.post(f"{SCHEDULER}/posts/{post_id}/cancel").status_code == 422
        assert client.get(f"{SCHEDULER}/posts/missing").status_code == 404

    def test_schedule_in_the_past_is_rejected(self, client, clock) -> None:
        response = client.post(
            f"{SCHEDULER}/posts",
            json={"platform": "x", "content": "Hello", "scheduled_time": self._iso(clock, hours=-1)},
        )
        assert response.status_code == 422

    def test_reschedule(self, client, clock) -> None:
        post_id = client.post(
            f"{SCHEDULER}/posts",
            json={"platform": "x", "content": "Hello", "scheduled_time": self._iso(clock, hours=1)},
        ).json()["id"]

        response = client.post(
            f"{SCHEDULER}/posts/{post_id}/reschedule", json={"scheduled_time": self._iso(clock, hours=3)}
        )
        assert response.status_code == 200
        assert client.post(
            f"{SCHEDULER}/posts/missing/reschedule", json={"scheduled_time": self._iso(clock, hours=3)}
        ).status_code == 404

    def test_run_publishes_due_posts(self, client, clock, publisher) -> None:
        post_id = client.post(
            f"{SCHEDULER}/posts",
            json={"platform": "x", "content": "Hello", "scheduled_time": self._iso(clock, seconds=1)},
        ).json()["id"]
        clock.advance(seconds=2)

        stats = client.post(f"{SCHEDULER}/run").json()

        assert stats["processed"] == 1
        assert stats["succeeded"] == 1
        assert client.get(f"{SCHEDULER}/posts/{post_id}").json()["status"] == "published"
        assert client.get(f"{SCHEDULER}/stats").json()["by_status"] == {"published": 1}
        assert len(publisher.calls) == 1

    def test_publish_now_enqueues_job(self, client, clock) -> None:
        post_id = client.post(
            f"{SCHEDULER}/posts",
            json={"platform": "x", "content": "Hello", "scheduled_time": self._iso(clock, hours=1)},
        ).json()["id"]

        response = client.post(f"{SCHEDULER}/posts/{post_id}/publish")

        assert response.status_code == 202
        assert response.json()["job_id"].startswith("publish_")
        assert client.get(f"{QUEUES}/publish").json()["waiting"] == 1
