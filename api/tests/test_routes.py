from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from setwatch.core.config import get_settings
from setwatch.main import app
from setwatch.schemas.jobs import ExtractedIdEntry, Job, ReconcileExtractedIds, ReconcileMetadata
from setwatch.services.dispatch import StageDispatcher, get_dispatcher
from setwatch.services.job_tracker import JobTracker
from setwatch.services.repository import get_repository
from setwatch.services.stages import StageType


class RecordingHandler:
    def __init__(self) -> None:
        self.jobs: list[Job] = []

    async def __call__(self, job: Job) -> None:
        self.jobs.append(job)


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def client(fake_repo, settings, handler) -> Iterator[TestClient]:
    dispatcher = StageDispatcher(
        JobTracker(fake_repo, settings),
        {stage: handler for stage in StageType},
        poll_interval_seconds=0,
    )
    app.dependency_overrides[get_repository] = lambda: fake_repo
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _complete(repo, dataset_id: str, *stages: str) -> None:
    for stage in stages:
        repo.add_job(stage, "completed", dataset_id=dataset_id, started_minutes_ago=30)


def test_run_next_job_dispatches_next_stage(client: TestClient, fake_repo, handler) -> None:
    dataset_id = fake_repo.add_dataset()
    _complete(fake_repo, dataset_id, "capture", "enrich", "materialize")

    response = client.post(f"/datasets/{dataset_id}/run-next-job")

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "running"
    assert body["stage"] == "sanitize"
    assert fake_repo.jobs[body["job_id"]]["status"] == "running"


def test_run_next_job_conflicts_while_running(client: TestClient, fake_repo) -> None:
    dataset_id = fake_repo.add_dataset()
    running = fake_repo.add_job("reconcile", "running", dataset_id=dataset_id)

    response = client.post(f"/datasets/{dataset_id}/run-next-job")

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["reason"] == "already_running"
    assert detail["running_stage"] == "reconcile"
    assert detail["job_id"] == running


def test_run_next_job_rejections(client: TestClient, fake_repo) -> None:
    fresh = fake_repo.add_dataset()
    done = fake_repo.add_dataset()
    _complete(fake_repo, done, "capture", "enrich", "materialize", "sanitize", "reconcile", "analyze")

    manual = client.post(f"/datasets/{fresh}/run-next-job")
    complete = client.post(f"/datasets/{done}/run-next-job")
    missing = client.post("/datasets/nope/run-next-job")

    assert manual.status_code == 400
    assert manual.json()["detail"]["reason"] == "manual_trigger_required"
    assert complete.status_code == 400
    assert complete.json()["detail"]["reason"] == "pipeline_complete"
    assert missing.status_code == 404


def test_run_to_completion(client: TestClient, fake_repo) -> None:
    no_capture = fake_repo.add_dataset()
    ready = fake_repo.add_dataset()
    _complete(fake_repo, ready, "capture", "enrich", "materialize", "sanitize")

    rejected = client.post(f"/datasets/{no_capture}/run-to-completion")
    started = client.post(f"/datasets/{ready}/run-to-completion")

    assert rejected.status_code == 400
    assert rejected.json()["detail"]["reason"] == "capture_required"
    assert started.status_code == 202
    body = started.json()
    assert body["status"] == "running"
    assert body["remaining_stages"] == ["reconcile", "analyze"]
    assert body["stages_count"] == 2
    assert fake_repo.jobs[body["job_id"]]["stage"] == "reconcile"


def test_run_to_completion_with_nothing_left(client: TestClient, fake_repo) -> None:
    dataset_id = fake_repo.add_dataset()
    _complete(fake_repo, dataset_id, "capture", "enrich", "materialize", "sanitize", "reconcile", "analyze")

    response = client.post(f"/datasets/{dataset_id}/run-to-completion")

    assert response.status_code == 202
    assert response.json()["status"] == "complete"
    assert response.json()["stages_count"] == 0
    assert response.json()["job_id"] is None


def test_capture_and_manual_stage_triggers(client: TestClient, fake_repo, handler) -> None:
    dataset_id = fake_repo.add_dataset()

    invalid = client.post(f"/datasets/{dataset_id}/capture", json={"keywords": []})
    capture = client.post(
        f"/datasets/{dataset_id}/capture",
        json={"keywords": ["lego castle"], "marketplace": "bricklink", "limit": 50},
    )

    assert invalid.status_code == 422
    assert capture.status_code == 202
    job = fake_repo.jobs[capture.json()["job_id"]]
    assert job["marketplace"] == "bricklink"
    assert job["metadata"]["keywords"] == ["lego castle"]

    fake_repo.jobs[capture.json()["job_id"]]["status"] = "completed"
    enrich = client.post(f"/datasets/{dataset_id}/stages/enrich")
    assert enrich.status_code == 202
    assert fake_repo.jobs[enrich.json()["job_id"]]["metadata"]["capture_job_id"] == capture.json()["job_id"]

    unknown_stage = client.post(f"/datasets/{dataset_id}/stages/ship")
    assert unknown_stage.status_code == 422


def test_dataset_cancel_and_progress(client: TestClient, fake_repo) -> None:
    dataset_id = fake_repo.add_dataset()
    _complete(fake_repo, dataset_id, "capture")
    running = fake_repo.add_job("enrich", "running", dataset_id=dataset_id)

    cancelled = client.post(f"/datasets/{dataset_id}/cancel")
    again = client.post(f"/datasets/{dataset_id}/cancel")
    progress = client.get(f"/datasets/{dataset_id}/progress")

    assert cancelled.json() == {"success": True, "message": "Cancelled enrich job", "job_id": running}
    assert again.json()["success"] is False
    assert progress.status_code == 200
    assert progress.json()["completed_stages"] == ["capture"]
    assert progress.json()["next_stage"] == "enrich"
    assert progress.json()["job_statuses"]["enrich"] == "failed"


def test_job_callbacks_move_job_to_terminal_state_once(client: TestClient, fake_repo) -> None:
    job_id = fake_repo.add_job("enrich", "running", metadata={"capture_job_id": "c-1"})

    progress = client.post(f"/jobs/{job_id}/progress", json={"message": "50 of 100", "stats": {"listings_found": 100}})
    complete = client.post(f"/jobs/{job_id}/complete", json={"stats": {"listings_updated": 100}})
    late_fail = client.post(f"/jobs/{job_id}/fail", json={"error_message": "boom"})

    assert progress.json() == {"job_id": job_id, "transitioned": True, "status": "running"}
    assert complete.json()["transitioned"] is True
    assert late_fail.json() == {"job_id": job_id, "transitioned": False, "status": "completed"}
    assert fake_repo.jobs[job_id]["listings_found"] == 100
    assert fake_repo.jobs[job_id]["last_update"] == "Job completed"


def test_job_callbacks_for_unknown_job(client: TestClient) -> None:
    assert client.post("/jobs/missing/complete", json={}).status_code == 404
    assert client.post("/jobs/missing/fail", json={"error_message": "x"}).status_code == 404


def test_job_cancel_endpoint(client: TestClient, fake_repo) -> None:
    running = fake_repo.add_job("sanitize", "running")
    finished = fake_repo.add_job("sanitize", "completed")

    assert client.post(f"/jobs/{running}/cancel").json()["success"] is True
    assert client.post(f"/jobs/{finished}/cancel").status_code == 409
    assert client.post("/jobs/missing/cancel").status_code == 404


def test_list_jobs_filters(client: TestClient, fake_repo) -> None:
    dataset_id = fake_repo.add_dataset()
    fake_repo.add_job("sanitize", "completed", dataset_id=dataset_id)
    wanted = fake_repo.add_job("analyze", "running", dataset_id=dataset_id)
    fake_repo.add_job("analyze", "running")

    response = client.get("/jobs", params={"dataset_id": dataset_id, "stage": "analyze"})

    assert response.status_code == 200
    assert [job["id"] for job in response.json()] == [wanted]


def test_sweep_and_stale_stats(client: TestClient, fake_repo) -> None:
    stale = fake_repo.add_job("capture", "running", started_minutes_ago=45, timeout_minutes=30)
    fake_repo.add_job("sanitize", "running")

    stats = client.get("/jobs/stale-stats").json()
    swept = client.post("/jobs/sweep-stale").json()

    assert stats["running_jobs"] == 2
    assert stats["potentially_stale"] == 1
    assert swept == {"jobs_updated": 1, "job_ids": [stale]}
    assert fake_repo.jobs[stale]["error_message"] == "Job timed out after 45 minutes"


def test_job_detail_expands_reconcile_results(client: TestClient, fake_repo) -> None:
    catalog_id = fake_repo.add_catalog_set("10251-1", "Brick Bank")
    listing_id = fake_repo.add_listing("LEGO 10251", sanitised_title="LEGO 10251 99999")
    asyncio.run(
        fake_repo.insert_join(
            listing_id=listing_id,
            catalog_set_id=catalog_id,
            nature="mentioned",
            reconciliation_version="1.2.0",
            potential_year_match=False,
        )
    )
    metadata = ReconcileMetadata(
        reconciliation_version="1.2.0",
        processed_listing_ids=[listing_id],
        extracted_ids=ReconcileExtractedIds(
            total_extracted=2,
            total_validated=1,
            total_not_validated=1,
            validated_ids=[ExtractedIdEntry(extracted_id="10251", listing_id=listing_id)],
            not_validated_ids=[ExtractedIdEntry(extracted_id="99999", listing_id=listing_id)],
        ),
    )
    job_id = fake_repo.add_job("reconcile", "completed", metadata=metadata.model_dump(mode="json"))

    response = client.get(f"/jobs/{job_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["reconciliation_version"] == "1.2.0"
    listing = body["listings"][0]
    assert listing["extracted_ids"] == [
        {"extracted_id": "10251", "validated": True},
        {"extracted_id": "99999", "validated": False},
    ]
    assert listing["validated_sets"] == [{"catalog_set_id": catalog_id, "set_num": "10251-1", "name": "Brick Bank"}]


def test_reconcile_trigger(client: TestClient, fake_repo) -> None:
    listing_id = fake_repo.add_listing("a", sanitised_title="10251")

    unknown = client.post("/reconcile/trigger", json={"reconciliation_version": "0.1.0"})
    started = client.post("/reconcile/trigger", json={"listing_ids": [listing_id], "cleanup_policy": "delete"})

    assert unknown.status_code == 422
    assert "1.2.0" in unknown.json()["detail"]
    assert started.status_code == 202
    assert started.json()["reconciliation_version"] == get_settings().reconciliation_version
    metadata = fake_repo.jobs[started.json()["job_id"]]["metadata"]
    assert metadata["listing_ids"] == [listing_id]
    assert metadata["cleanup_policy"] == "delete"


def test_reconcile_trigger_for_busy_dataset(client: TestClient, fake_repo) -> None:
    dataset_id = fake_repo.add_dataset()
    fake_repo.add_job("analyze", "running", dataset_id=dataset_id)

    response = client.post("/reconcile/trigger", json={"dataset_id": dataset_id})

    assert response.status_code == 409
    assert response.json()["detail"]["running_stage"] == "analyze"
