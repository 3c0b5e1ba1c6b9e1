from pydantic import BaseModel, Field

from setwatch.services.joins import CleanupPolicy
from setwatch.services.stages import StageType


class StageDispatchOut(BaseModel):
    status: str = "running"
    message: str
    stage: StageType
    job_id: str


class RunToCompletionOut(BaseModel):
    status: str
    message: str
    remaining_stages: list[StageType]
    stages_count: int
    job_id: str | None = None


class DatasetCancelOut(BaseModel):
    success: bool
    message: str
    job_id: str | None = None


class DatasetProgressOut(BaseModel):
    dataset_id: str
    completed_stages: list[StageType]
    next_stage: StageType | None
    job_statuses: dict[str, str]


class CaptureTriggerRequest(BaseModel):
    keywords: list[str] = Field(min_length=1)
    marketplace: str = Field(default="ebay", min_length=1)
    limit: int | None = Field(default=None, ge=1)


class ReconcileTriggerRequest(BaseModel):
    dataset_id: str | None = None
    listing_ids: list[str] | None = None
    limit: int | None = Field(default=None, ge=1)
    reconciliation_version: str | None = None
    cleanup_policy: CleanupPolicy = CleanupPolicy.SUPERSEDE
    rerun: bool = False


class ReconcileTriggerOut(BaseModel):
    status: str = "running"
    message: str
    job_id: str
    reconciliation_version: str
