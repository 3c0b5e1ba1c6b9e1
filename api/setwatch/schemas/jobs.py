from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from setwatch.services.joins import CleanupPolicy
from setwatch.services.stages import JobStatus, StageType, is_terminal

TriggerSource = Literal["manual", "run_next", "run_to_completion"]


class _StageMetadata(BaseModel):
    triggered_by: TriggerSource = "manual"


class CaptureMetadata(_StageMetadata):
    stage: Literal["capture"] = "capture"
    keywords: list[str] = Field(default_factory=list)
    marketplace: str = "ebay"
    limit: int | None = None


class EnrichMetadata(_StageMetadata):
    stage: Literal["enrich"] = "enrich"
    capture_job_id: str
    marketplace: str = "ebay"


class MaterializeMetadata(_StageMetadata):
    stage: Literal["materialize"] = "materialize"
    capture_job_id: str
    marketplace: str = "ebay"


class SanitizeMetadata(_StageMetadata):
    stage: Literal["sanitize"] = "sanitize"
    listing_ids: list[str] | None = None


class ExtractedIdEntry(BaseModel):
    extracted_id: str
    listing_id: str


class ReconcileDistribution(BaseModel):
    listings_with_zero_ids: int = 0
    listings_with_one_id: int = 0
    listings_with_two_ids: int = 0
    listings_with_three_ids: int = 0
    listings_with_four_ids: int = 0
    listings_with_five_or_more_ids: int = 0


class ReconcileExtractedIds(BaseModel):
    total_extracted: int = 0
    total_validated: int = 0
    total_not_validated: int = 0
    validated_ids: list[ExtractedIdEntry] = Field(default_factory=list)
    not_validated_ids: list[ExtractedIdEntry] = Field(default_factory=list)


class ReconcileMetadata(_StageMetadata):
    stage: Literal["reconcile"] = "reconcile"
    listing_ids: list[str] | None = None
    limit: int | None = None
    reconciliation_version: str
    cleanup_policy: CleanupPolicy = CleanupPolicy.SUPERSEDE
    rerun: bool = False
    total_listings_input: int | None = None
    processed_listing_ids: list[str] | None = None
    distribution: ReconcileDistribution | None = None
    total_joins_created: int | None = None
    extracted_ids: ReconcileExtractedIds | None = None


class AnalyzeMetadata(_StageMetadata):
    stage: Literal["analyze"] = "analyze"
    listing_ids: list[str] | None = None
    analysis_version: str = "1.0.0"


class CatalogRefreshMetadata(_StageMetadata):
    stage: Literal["catalog_refresh"] = "catalog_refresh"
    source: str = "rebrickable"


JobMetadata = Annotated[
    Union[
        CaptureMetadata,
        EnrichMetadata,
        MaterializeMetadata,
        SanitizeMetadata,
        ReconcileMetadata,
        AnalyzeMetadata,
        CatalogRefreshMetadata,
    ],
    Field(discriminator="stage"),
]

JOB_METADATA_ADAPTER: TypeAdapter[JobMetadata] = TypeAdapter(JobMetadata)


def parse_job_metadata(stage: StageType | str, raw: dict[str, Any] | None) -> JobMetadata:
    payload = dict(raw or {})
    payload["stage"] = StageType(stage).value
    return JOB_METADATA_ADAPTER.validate_python(payload)


class Job(BaseModel):
    id: str
    stage: StageType
    dataset_id: str | None = None
    marketplace: str = "ebay"
    status: JobStatus
    listings_found: int = 0
    listings_new: int = 0
    listings_updated: int = 0
    stats: dict[str, Any] = Field(default_factory=dict)
    metadata: JobMetadata
    last_update: str | None = None
    error_message: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    updated_at: datetime
    timeout_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Job:
        payload = dict(row)
        payload["metadata"] = parse_job_metadata(row["stage"], row.get("metadata"))
        return cls.model_validate(payload)

    @property
    def is_running(self) -> bool:
        return not is_terminal(self.status)


class JobProgressRequest(BaseModel):
    message: str = Field(min_length=1)
    stats: dict[str, Any] = Field(default_factory=dict)


class JobCompleteRequest(BaseModel):
    message: str | None = None
    stats: dict[str, Any] = Field(default_factory=dict)


class JobFailRequest(BaseModel):
    error_message: str = Field(min_length=1)


class JobTransitionOut(BaseModel):
    job_id: str
    transitioned: bool
    status: JobStatus


class CancelJobOut(BaseModel):
    success: bool
    message: str
    job_id: str


class StaleSweepOut(BaseModel):
    jobs_updated: int
    job_ids: list[str]


class StaleJobStatsOut(BaseModel):
    running_jobs: int
    potentially_stale: int
    oldest_running_job: datetime | None = None


class ReconcileCandidateOut(BaseModel):
    extracted_id: str
    validated: bool


class ReconcileSetOut(BaseModel):
    catalog_set_id: str
    set_num: str
    name: str


class ReconcileListingOut(BaseModel):
    listing_id: str
    title: str
    description: str | None = None
    sanitised_title: str | None = None
    sanitised_description: str | None = None
    extracted_ids: list[ReconcileCandidateOut] = Field(default_factory=list)
    validated_sets: list[ReconcileSetOut] = Field(default_factory=list)


class JobDetailOut(BaseModel):
    job: Job
    reconciliation_version: str | None = None
    listings: list[ReconcileListingOut] | None = None
