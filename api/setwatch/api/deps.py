from fastapi import Depends, HTTPException, status

from setwatch.core.config import get_settings
from setwatch.services.dispatch import StageDispatcher, get_dispatcher
from setwatch.services.job_detail import JobDetailService
from setwatch.services.job_tracker import JobTracker
from setwatch.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from setwatch.services.sequencer import PipelineSequencer


def get_job_tracker(repository=Depends(get_repository)) -> JobTracker:
    return JobTracker(repository, get_settings())


def get_sequencer(
    repository=Depends(get_repository),
    dispatcher: StageDispatcher = Depends(get_dispatcher),
) -> PipelineSequencer:
    return PipelineSequencer(repository, dispatcher, get_settings())


def get_job_detail_service(
    repository=Depends(get_repository),
    tracker: JobTracker = Depends(get_job_tracker),
) -> JobDetailService:
    return JobDetailService(repository, tracker, batch_size=get_settings().job_detail_batch_size)


def repository_http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
