from fastapi import APIRouter, Depends, HTTPException, status

from setwatch.api.deps import get_sequencer, repository_http_error
from setwatch.core.config import get_settings
from setwatch.schemas.jobs import ReconcileMetadata
from setwatch.schemas.pipeline import ReconcileTriggerOut, ReconcileTriggerRequest
from setwatch.services.extraction import UnknownReconciliationVersionError, get_identifier_pattern, supported_versions
from setwatch.services.repository import RepositoryError
from setwatch.services.sequencer import PipelineSequencer, SequencingRejection
from setwatch.services.stages import StageType

router = APIRouter()


@router.post("/trigger", response_model=ReconcileTriggerOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_reconcile(
    payload: ReconcileTriggerRequest,
    sequencer: PipelineSequencer = Depends(get_sequencer),
) -> ReconcileTriggerOut:
    version = payload.reconciliation_version or get_settings().reconciliation_version
    try:
        get_identifier_pattern(version)
    except UnknownReconciliationVersionError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"{exc}; supported: {', '.join(supported_versions())}",
        ) from exc

    metadata = ReconcileMetadata(
        listing_ids=payload.listing_ids,
        limit=payload.limit,
        reconciliation_version=version,
        cleanup_policy=payload.cleanup_policy,
        rerun=payload.rerun,
    )
    try:
        if payload.dataset_id:
            result = await sequencer.trigger_stage(payload.dataset_id, StageType.RECONCILE, metadata)
            job_id = result.job_id
        else:
            job = await sequencer.dispatcher.dispatch(StageType.RECONCILE, metadata)
            job_id = job.id
    except SequencingRejection as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc

    return ReconcileTriggerOut(
        message="Reconcile job started",
        job_id=job_id,
        reconciliation_version=version,
    )
