from __future__ import annotations

import logging
from typing import Any

from setwatch.core.config import Settings, get_settings
from setwatch.schemas.jobs import Job, JobMetadata
from setwatch.services.repository import (
    JOB_COUNTER_COLUMNS,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
)
from setwatch.services.stages import StageType

logger = logging.getLogger(__name__)

JOB_STARTED_MESSAGE = "Job started"
JOB_COMPLETED_MESSAGE = "Job completed"
JOB_CANCELLED_MESSAGE = "Job cancelled by user"


def split_job_stats(stats: dict[str, Any] | None) -> tuple[dict[str, int], dict[str, Any]]:
    """Separate the listing counters stored in dedicated columns from free-form stage stats."""
    counters: dict[str, int] = {}
    extra: dict[str, Any] = {}
    for key, value in (stats or {}).items():
        if key in JOB_COUNTER_COLUMNS and isinstance(value, int) and not isinstance(value, bool):
            counters[key] = value
        else:
            extra[key] = value
    return counters, extra


class JobTracker:
    def __init__(self, repository: Any, settings: Settings | None = None) -> None:
        self.repository = repository
        self.settings = settings or get_settings()

    def timeout_minutes(self, stage: StageType | str) -> int:
        return self.settings.job_timeout_minutes.get(
            StageType(stage).value,
            self.settings.job_default_timeout_minutes,
        )

    async def create_job(
        self,
        stage: StageType,
        metadata: JobMetadata,
        *,
        dataset_id: str | None = None,
        marketplace: str = "ebay",
    ) -> Job:
        row = await self.repository.insert_job(
            stage=stage.value,
            dataset_id=dataset_id,
            marketplace=marketplace,
            metadata=metadata.model_dump(mode="json"),
            timeout_minutes=self.timeout_minutes(stage),
            last_update=JOB_STARTED_MESSAGE,
        )
        job = Job.from_row(row)
        logger.info("job created job_id=%s stage=%s dataset_id=%s", job.id, stage.value, dataset_id)
        return job

    async def get_job(self, job_id: str) -> Job:
        return Job.from_row(await self.repository.get_job(job_id))

    async def list_jobs(
        self,
        *,
        dataset_id: str | None = None,
        stage: StageType | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        rows = await self.repository.list_jobs(
            dataset_id=dataset_id,
            stage=stage.value if stage else None,
            status=status,
            limit=limit,
            offset=offset,
        )
        return [Job.from_row(row) for row in rows]

    async def update_job_progress(self, job_id: str, message: str, stats: dict[str, Any] | None = None) -> bool:
        """Best-effort progress write; failures are logged and reported as ``False``."""
        counters, extra = split_job_stats(stats)
        try:
            return await self.repository.update_job_progress(job_id, message=message, counters=counters, stats=extra)
        except RepositoryError:
            logger.warning("job progress update failed job_id=%s", job_id, exc_info=True)
            return False

    async def complete_job(
        self,
        job_id: str,
        stats: dict[str, Any] | None = None,
        message: str | None = None,
    ) -> bool:
        counters, extra = split_job_stats(stats)
        completed = await self.repository.complete_job(
            job_id,
            message=message or JOB_COMPLETED_MESSAGE,
            counters=counters,
            stats=extra,
        )
        if completed:
            logger.info("job completed job_id=%s", job_id)
        else:
            logger.info("job completion ignored job_id=%s reason=not_running", job_id)
        return completed

    async def fail_job(self, job_id: str, error_message: str) -> bool:
        failed = await self.repository.fail_job(
            job_id,
            error_message=error_message,
            last_update=f"Job failed: {error_message}",
        )
        if failed:
            logger.warning("job failed job_id=%s error=%s", job_id, error_message)
        else:
            logger.info("job failure ignored job_id=%s reason=not_running", job_id)
        return failed

    async def cancel_job(self, job_id: str) -> Job:
        job = await self.get_job(job_id)
        if not job.is_running:
            raise RepositoryConflictError(f"job is not running (status={job.status.value})")
        if not await self.repository.fail_job(
            job_id,
            error_message=JOB_CANCELLED_MESSAGE,
            last_update=JOB_CANCELLED_MESSAGE,
        ):
            raise RepositoryConflictError("job is not running")
        logger.info("job cancelled job_id=%s stage=%s", job_id, job.stage.value)
        return await self.get_job(job_id)

    async def is_cancelled(self, job_id: str) -> bool:
        try:
            job = await self.get_job(job_id)
        except RepositoryNotFoundError:
            return True
        return not job.is_running

    async def update_metadata(self, job_id: str, metadata: JobMetadata) -> bool:
        return await self.repository.update_job_metadata(job_id, metadata.model_dump(mode="json"))

    async def get_running_job(self, dataset_id: str) -> Job | None:
        row = await self.repository.get_running_job(dataset_id)
        return Job.from_row(row) if row else None

    async def completed_stages(self, dataset_id: str) -> set[StageType]:
        return {StageType(stage) for stage in await self.repository.list_completed_stages(dataset_id)}

    async def latest_completed_job(self, dataset_id: str, stage: StageType) -> Job | None:
        row = await self.repository.get_latest_completed_job(dataset_id, stage.value)
        return Job.from_row(row) if row else None

    async def latest_stage_statuses(self, dataset_id: str) -> dict[str, str]:
        return await self.repository.get_latest_stage_statuses(dataset_id)

    async def sweep_stale_jobs(self) -> list[str]:
        job_ids = await self.repository.sweep_stale_jobs(stall_minutes=self.settings.job_stall_minutes)
        if job_ids:
            logger.warning("stale jobs swept count=%s job_ids=%s", len(job_ids), ",".join(job_ids))
        return job_ids

    async def stale_job_stats(self) -> dict[str, Any]:
        return await self.repository.get_stale_job_stats(stall_minutes=self.settings.job_stall_minutes)
