from fastapi import APIRouter, Depends, Query

from setwatch.api.deps import get_job_detail_service, get_job_tracker, repository_http_error
from setwatch.schemas.jobs import (
    CancelJobOut,
    Job,
    JobCompleteRequest,
    JobDetailOut,
    JobFailRequest,
    JobProgressRequest,
    JobTransitionOut,
    StaleJobStatsOut,
    StaleSweepOut,
)
from setwatch.services.job_detail import JobDetailService
from setwatch.services.job_tracker import JobTracker
from setwatch.services.repository import RepositoryError
from setwatch.services.stages import JobStatus, StageType

router = APIRouter()


@router.get("", response_model=list[Job])
async def list_jobs(
    tracker: JobTracker = Depends(get_job_tracker),
    dataset_id: str | None = Query(default=None),
    stage: StageType | None = Query(default=None),
    status: JobStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[Job]:
    try:
        return await tracker.list_jobs(
            dataset_id=dataset_id,
            stage=stage,
            status=status.value if status else None,
            limit=limit,
            offset=offset,
        )
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc


@router.post("/sweep-stale", response_model=StaleSweepOut)
async def sweep_stale_jobs(tracker: JobTracker = Depends(get_job_tracker)) -> StaleSweepOut:
    try:
        job_ids = await tracker.sweep_stale_jobs()
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return StaleSweepOut(jobs_updated=len(job_ids), job_ids=job_ids)


@router.get("/stale-stats", response_model=StaleJobStatsOut)
async def get_stale_job_stats(tracker: JobTracker = Depends(get_job_tracker)) -> StaleJobStatsOut:
    try:
        stats = await tracker.stale_job_stats()
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return StaleJobStatsOut(**stats)


@router.get("/{job_id}", response_model=JobDetailOut)
async def get_job(job_id: str, details: JobDetailService = Depends(get_job_detail_service)) -> JobDetailOut:
    try:
        return await details.get_job_detail(job_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc


@router.post("/{job_id}/cancel", response_model=CancelJobOut)
async def cancel_job(job_id: str, tracker: JobTracker = Depends(get_job_tracker)) -> CancelJobOut:
    try:
        job = await tracker.cancel_job(job_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return CancelJobOut(success=True, message=f"Cancelled {job.stage.value} job", job_id=job.id)


@router.post("/{job_id}/progress", response_model=JobTransitionOut)
async def report_job_progress(
    job_id: str,
    payload: JobProgressRequest,
    tracker: JobTracker = Depends(get_job_tracker),
) -> JobTransitionOut:
    try:
        updated = await tracker.update_job_progress(job_id, payload.message, payload.stats)
        job = await tracker.get_job(job_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return JobTransitionOut(job_id=job.id, transitioned=updated, status=job.status)


@router.post("/{job_id}/complete", response_model=JobTransitionOut)
async def complete_job(
    job_id: str,
    payload: JobCompleteRequest,
    tracker: JobTracker = Depends(get_job_tracker),
) -> JobTransitionOut:
    try:
        completed = await tracker.complete_job(job_id, payload.stats, payload.message)
        job = await tracker.get_job(job_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return JobTransitionOut(job_id=job.id, transitioned=completed, status=job.status)


@router.post("/{job_id}/fail", response_model=JobTransitionOut)
async def fail_job(
    job_id: str,
    payload: JobFailRequest,
    tracker: JobTracker = Depends(get_job_tracker),
) -> JobTransitionOut:
    try:
        failed = await tracker.fail_job(job_id, payload.error_message)
        job = await tracker.get_job(job_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return JobTransitionOut(job_id=job.id, transitioned=failed, status=job.status)
