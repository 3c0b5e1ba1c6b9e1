from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from setwatch.core.config import Settings, get_settings
from setwatch.schemas.jobs import (
    AnalyzeMetadata,
    CatalogRefreshMetadata,
    EnrichMetadata,
    Job,
    JobMetadata,
    MaterializeMetadata,
    ReconcileMetadata,
    SanitizeMetadata,
    TriggerSource,
)
from setwatch.services.dispatch import StageDispatcher
from setwatch.services.job_tracker import JOB_CANCELLED_MESSAGE
from setwatch.services.repository import RepositoryConflictError
from setwatch.services.stages import (
    CAPTURE_DEPENDENT_STAGES,
    MANUAL_ONLY_STAGES,
    StageType,
    next_stage,
    remaining_stages,
)

logger = logging.getLogger(__name__)


class SequencingRejection(Exception):
    """Base class for requests the sequencer refuses; ``reason`` is a stable machine-readable code."""

    reason = "rejected"
    status_code = 400

    def to_detail(self) -> dict[str, Any]:
        return {"reason": self.reason, "message": str(self)}


class StageAlreadyRunningError(SequencingRejection):
    reason = "already_running"
    status_code = 409

    def __init__(self, running_stage: StageType | None, job_id: str | None) -> None:
        stage_label = running_stage.value if running_stage else "unknown"
        super().__init__(f"a {stage_label} job is already running for this dataset")
        self.running_stage = running_stage
        self.job_id = job_id

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["running_stage"] = self.running_stage.value if self.running_stage else None
        detail["job_id"] = self.job_id
        return detail


class CaptureRequiredError(SequencingRejection):
    reason = "capture_required"

    def __init__(self, stage: StageType | None = None) -> None:
        target = stage.value if stage else "the pipeline"
        super().__init__(f"a completed capture job is required before running {target}")
        self.stage = stage


class ManualTriggerRequiredError(SequencingRejection):
    reason = "manual_trigger_required"

    def __init__(self, stage: StageType) -> None:
        super().__init__(f"{stage.value} must be triggered manually")
        self.stage = stage


class PipelineCompleteError(SequencingRejection):
    reason = "pipeline_complete"

    def __init__(self) -> None:
        super().__init__("all pipeline stages have completed for this dataset")


@dataclass(slots=True)
class StageDispatchResult:
    stage: StageType
    job_id: str
    message: str


@dataclass(slots=True)
class ChainDispatchResult:
    stages: tuple[StageType, ...]
    job_id: str | None
    message: str


@dataclass(slots=True)
class DatasetProgress:
    completed_stages: list[StageType]
    next_stage: StageType | None
    job_statuses: dict[str, str] = field(default_factory=dict)


class PipelineSequencer:
    """Decide and dispatch the next pipeline stage for a dataset.

    At most one job runs per dataset. The check here gives a readable rejection; the partial
    unique index on running jobs settles concurrent triggers that both pass it.
    """

    def __init__(self, repository: Any, dispatcher: StageDispatcher, settings: Settings | None = None) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.tracker = dispatcher.tracker
        self.settings = settings or get_settings()

    async def run_next(self, dataset_id: str) -> StageDispatchResult:
        await self.repository.get_dataset(dataset_id)
        await self._ensure_idle(dataset_id)
        completed = await self.tracker.completed_stages(dataset_id)
        stage = next_stage(completed)
        if stage is None:
            raise PipelineCompleteError()
        metadata, marketplace = await self._metadata_for(dataset_id, stage, "run_next")
        job = await self._dispatch(dataset_id, stage, metadata, marketplace)
        return StageDispatchResult(stage=stage, job_id=job.id, message=f"Started {stage.value} job")

    async def run_to_completion(self, dataset_id: str) -> ChainDispatchResult:
        await self.repository.get_dataset(dataset_id)
        await self._ensure_idle(dataset_id)
        completed = await self.tracker.completed_stages(dataset_id)
        if StageType.CAPTURE not in completed:
            raise CaptureRequiredError()

        stages = remaining_stages(completed)
        if not stages:
            return ChainDispatchResult(stages=(), job_id=None, message="No remaining stages to run")

        async def resolve(stage: StageType) -> tuple[JobMetadata, str]:
            return await self._metadata_for(dataset_id, stage, "run_to_completion")

        try:
            job = await self.dispatcher.dispatch_chain(stages, resolve, dataset_id=dataset_id)
        except RepositoryConflictError as exc:
            raise await self._already_running(dataset_id) from exc
        logger.info(
            "pipeline chain started dataset_id=%s stages=%s",
            dataset_id,
            ",".join(stage.value for stage in stages),
        )
        return ChainDispatchResult(
            stages=stages,
            job_id=job.id,
            message=f"Running {len(stages)} remaining stages",
        )

    async def trigger_stage(
        self,
        dataset_id: str,
        stage: StageType,
        metadata: JobMetadata | None = None,
        *,
        marketplace: str | None = None,
    ) -> StageDispatchResult:
        await self.repository.get_dataset(dataset_id)
        await self._ensure_idle(dataset_id)
        if metadata is None:
            if stage in MANUAL_ONLY_STAGES:
                raise ManualTriggerRequiredError(stage)
            metadata, resolved_marketplace = await self._metadata_for(dataset_id, stage, "manual")
            marketplace = marketplace or resolved_marketplace
        job = await self._dispatch(dataset_id, stage, metadata, marketplace or getattr(metadata, "marketplace", "ebay"))
        return StageDispatchResult(stage=stage, job_id=job.id, message=f"Started {stage.value} job")

    async def cancel(self, dataset_id: str) -> Job | None:
        running = await self.tracker.get_running_job(dataset_id)
        if running is None:
            return None
        if not await self.tracker.fail_job(running.id, JOB_CANCELLED_MESSAGE):
            return None
        logger.info("dataset job cancelled dataset_id=%s job_id=%s", dataset_id, running.id)
        return await self.tracker.get_job(running.id)

    async def progress(self, dataset_id: str) -> DatasetProgress:
        await self.repository.get_dataset(dataset_id)
        completed = await self.tracker.completed_stages(dataset_id)
        ordered = [stage for stage in StageType if stage in completed]
        return DatasetProgress(
            completed_stages=ordered,
            next_stage=next_stage(completed),
            job_statuses=await self.tracker.latest_stage_statuses(dataset_id),
        )

    async def _ensure_idle(self, dataset_id: str) -> None:
        running = await self.tracker.get_running_job(dataset_id)
        if running is not None:
            raise StageAlreadyRunningError(running.stage, running.id)

    async def _already_running(self, dataset_id: str) -> StageAlreadyRunningError:
        running = await self.tracker.get_running_job(dataset_id)
        if running is None:
            return StageAlreadyRunningError(None, None)
        return StageAlreadyRunningError(running.stage, running.id)

    async def _dispatch(self, dataset_id: str, stage: StageType, metadata: JobMetadata, marketplace: str) -> Job:
        try:
            job = await self.dispatcher.dispatch(stage, metadata, dataset_id=dataset_id, marketplace=marketplace)
        except RepositoryConflictError as exc:
            raise await self._already_running(dataset_id) from exc
        logger.info("stage dispatched dataset_id=%s stage=%s job_id=%s", dataset_id, stage.value, job.id)
        return job

    async def _metadata_for(
        self,
        dataset_id: str,
        stage: StageType,
        triggered_by: TriggerSource,
    ) -> tuple[JobMetadata, str]:
        if stage in MANUAL_ONLY_STAGES:
            raise ManualTriggerRequiredError(stage)

        if stage in CAPTURE_DEPENDENT_STAGES:
            capture = await self.tracker.latest_completed_job(dataset_id, StageType.CAPTURE)
            if capture is None:
                raise CaptureRequiredError(stage)
            model = EnrichMetadata if stage is StageType.ENRICH else MaterializeMetadata
            return (
                model(capture_job_id=capture.id, marketplace=capture.marketplace, triggered_by=triggered_by),
                capture.marketplace,
            )

        marketplace = await self._dataset_marketplace(dataset_id)
        if stage is StageType.SANITIZE:
            return SanitizeMetadata(triggered_by=triggered_by), marketplace
        if stage is StageType.RECONCILE:
            return (
                ReconcileMetadata(
                    reconciliation_version=self.settings.reconciliation_version,
                    triggered_by=triggered_by,
                ),
                marketplace,
            )
        if stage is StageType.ANALYZE:
            return AnalyzeMetadata(triggered_by=triggered_by), marketplace
        return CatalogRefreshMetadata(triggered_by=triggered_by), marketplace

    async def _dataset_marketplace(self, dataset_id: str) -> str:
        capture = await self.tracker.latest_completed_job(dataset_id, StageType.CAPTURE)
        return capture.marketplace if capture else "ebay"
