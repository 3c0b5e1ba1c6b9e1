from fastapi import APIRouter, Depends, HTTPException, status

from setwatch.api.deps import get_sequencer, repository_http_error
from setwatch.schemas.jobs import CaptureMetadata
from setwatch.schemas.pipeline import (
    CaptureTriggerRequest,
    DatasetCancelOut,
    DatasetProgressOut,
    RunToCompletionOut,
    StageDispatchOut,
)
from setwatch.services.repository import RepositoryError
from setwatch.services.sequencer import PipelineSequencer, SequencingRejection
from setwatch.services.stages import StageType

router = APIRouter()


def _rejection(exc: SequencingRejection) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.post("/{dataset_id}/run-next-job", response_model=StageDispatchOut, status_code=status.HTTP_202_ACCEPTED)
async def run_next_job(dataset_id: str, sequencer: PipelineSequencer = Depends(get_sequencer)) -> StageDispatchOut:
    try:
        result = await sequencer.run_next(dataset_id)
    except SequencingRejection as exc:
        raise _rejection(exc) from exc
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return StageDispatchOut(message=result.message, stage=result.stage, job_id=result.job_id)


@router.post(
    "/{dataset_id}/run-to-completion",
    response_model=RunToCompletionOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_to_completion(
    dataset_id: str,
    sequencer: PipelineSequencer = Depends(get_sequencer),
) -> RunToCompletionOut:
    try:
        result = await sequencer.run_to_completion(dataset_id)
    except SequencingRejection as exc:
        raise _rejection(exc) from exc
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return RunToCompletionOut(
        status="running" if result.stages else "complete",
        message=result.message,
        remaining_stages=list(result.stages),
        stages_count=len(result.stages),
        job_id=result.job_id,
    )


@router.post("/{dataset_id}/cancel", response_model=DatasetCancelOut)
async def cancel_dataset_job(dataset_id: str, sequencer: PipelineSequencer = Depends(get_sequencer)) -> DatasetCancelOut:
    try:
        job = await sequencer.cancel(dataset_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    if job is None:
        return DatasetCancelOut(success=False, message="No running job for this dataset")
    return DatasetCancelOut(success=True, message=f"Cancelled {job.stage.value} job", job_id=job.id)


@router.get("/{dataset_id}/progress", response_model=DatasetProgressOut)
async def get_dataset_progress(
    dataset_id: str,
    sequencer: PipelineSequencer = Depends(get_sequencer),
) -> DatasetProgressOut:
    try:
        progress = await sequencer.progress(dataset_id)
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return DatasetProgressOut(
        dataset_id=dataset_id,
        completed_stages=progress.completed_stages,
        next_stage=progress.next_stage,
        job_statuses=progress.job_statuses,
    )


@router.post("/{dataset_id}/capture", response_model=StageDispatchOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_capture(
    dataset_id: str,
    payload: CaptureTriggerRequest,
    sequencer: PipelineSequencer = Depends(get_sequencer),
) -> StageDispatchOut:
    metadata = CaptureMetadata(keywords=payload.keywords, marketplace=payload.marketplace, limit=payload.limit)
    try:
        result = await sequencer.trigger_stage(
            dataset_id,
            StageType.CAPTURE,
            metadata,
            marketplace=payload.marketplace,
        )
    except SequencingRejection as exc:
        raise _rejection(exc) from exc
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return StageDispatchOut(message=result.message, stage=result.stage, job_id=result.job_id)


@router.post(
    "/{dataset_id}/stages/{stage}",
    response_model=StageDispatchOut,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_stage(
    dataset_id: str,
    stage: StageType,
    sequencer: PipelineSequencer = Depends(get_sequencer),
) -> StageDispatchOut:
    try:
        result = await sequencer.trigger_stage(dataset_id, stage)
    except SequencingRejection as exc:
        raise _rejection(exc) from exc
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc
    return StageDispatchOut(message=result.message, stage=result.stage, job_id=result.job_id)
