from __future__ import annotations

import logging
from typing import Any

import httpx

from setwatch.core.config import Settings
from setwatch.schemas.jobs import (
    AnalyzeMetadata,
    ExtractedIdEntry,
    Job,
    ReconcileDistribution,
    ReconcileExtractedIds,
    ReconcileMetadata,
    SanitizeMetadata,
)
from setwatch.services.extraction import build_listing_text, extract_all
from setwatch.services.job_tracker import JobTracker
from setwatch.services.joins import JoinService
from setwatch.services.progress import ProgressTracker
from setwatch.services.reconcile import BatchReconcileResult, ReconcileService
from setwatch.services.sanitize import sanitize_listing
from setwatch.services.stages import StageType
from setwatch.services.validation import SetValidator

logger = logging.getLogger(__name__)

ANALYSIS_VERSION = "1.0.0"
REMOTE_STAGES = (StageType.CAPTURE, StageType.ENRICH, StageType.MATERIALIZE, StageType.CATALOG_REFRESH)


class StageServiceNotConfiguredError(RuntimeError):
    def __init__(self, stage: StageType) -> None:
        super().__init__(f"no stage service configured for {stage.value}; set SW_STAGE_SERVICE_URLS")
        self.stage = stage


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[start : start + size] for start in range(0, len(items), size)]


class _ListingStageHandler:
    def __init__(self, repository: Any, tracker: JobTracker, settings: Settings) -> None:
        self.repository = repository
        self.tracker = tracker
        self.settings = settings

    def _progress(self, job: Job) -> ProgressTracker:
        async def write(message: str, stats: dict[str, Any]) -> None:
            await self.tracker.update_job_progress(job.id, message, stats)

        return ProgressTracker(
            write,
            milestone_interval=self.settings.progress_milestone_interval,
            time_interval_ms=self.settings.progress_time_interval_ms,
        )

    async def _listing_ids(self, job: Job, explicit: list[str] | None) -> list[str]:
        if explicit:
            return list(dict.fromkeys(explicit))
        if job.dataset_id:
            return await self.repository.list_dataset_listing_ids(job.dataset_id)
        return []


class SanitizeHandler(_ListingStageHandler):
    async def __call__(self, job: Job) -> None:
        metadata = job.metadata
        explicit = metadata.listing_ids if isinstance(metadata, SanitizeMetadata) else None
        listing_ids = await self._listing_ids(job, explicit)
        progress = self._progress(job)
        await progress.force_update(f"Sanitising {len(listing_ids)} listings", {"listings_found": len(listing_ids)})

        sanitised = 0
        for chunk in _chunks(listing_ids, self.settings.reconcile_batch_size):
            for listing in await self.repository.get_listings(chunk):
                title, description = sanitize_listing(listing.title, listing.description)
                await self.repository.update_listing_sanitised(
                    listing.id,
                    sanitised_title=title,
                    sanitised_description=description,
                )
                sanitised += 1
                await progress.record_progress(
                    f"Sanitised {sanitised} of {len(listing_ids)} listings",
                    {"listings_updated": sanitised},
                )

        await progress.flush()
        await self.tracker.complete_job(
            job.id,
            {"listings_found": len(listing_ids), "listings_updated": sanitised},
            f"Sanitised {sanitised} listings",
        )


class AnalyzeHandler(_ListingStageHandler):
    async def __call__(self, job: Job) -> None:
        metadata = job.metadata
        explicit = metadata.listing_ids if isinstance(metadata, AnalyzeMetadata) else None
        version = metadata.analysis_version if isinstance(metadata, AnalyzeMetadata) else ANALYSIS_VERSION
        listing_ids = await self._listing_ids(job, explicit)
        progress = self._progress(job)
        await progress.force_update(f"Analysing {len(listing_ids)} listings", {"listings_found": len(listing_ids)})

        analysed = 0
        for chunk in _chunks(listing_ids, self.settings.reconcile_batch_size):
            for listing in await self.repository.get_listings(chunk):
                text = build_listing_text(
                    listing.sanitised_title or listing.title,
                    listing.sanitised_description or listing.description,
                )
                extraction = extract_all(text)
                price_per_piece = None
                if listing.price and extraction.piece_count:
                    price_per_piece = listing.price / extraction.piece_count
                await self.repository.upsert_listing_analysis(
                    listing.id,
                    piece_count=extraction.piece_count,
                    piece_count_estimated=extraction.piece_count_estimated,
                    minifig_count=extraction.minifig_count,
                    minifig_count_estimated=extraction.minifig_count_estimated,
                    condition=extraction.condition,
                    price_per_piece=price_per_piece,
                    analysis_version=version,
                )
                analysed += 1
                await progress.record_progress(
                    f"Analysed {analysed} of {len(listing_ids)} listings",
                    {"listings_updated": analysed},
                )

        await progress.flush()
        await self.tracker.complete_job(
            job.id,
            {"listings_found": len(listing_ids), "listings_updated": analysed},
            f"Analysed {analysed} listings",
        )


class ReconcileHandler(_ListingStageHandler):
    def __init__(self, repository: Any, tracker: JobTracker, settings: Settings, service: ReconcileService) -> None:
        super().__init__(repository, tracker, settings)
        self.service = service

    async def __call__(self, job: Job) -> None:
        metadata = job.metadata
        if not isinstance(metadata, ReconcileMetadata):
            raise TypeError(f"reconcile handler received {job.stage.value} metadata")

        listing_ids = await self._resolve_listing_ids(job, metadata)
        total = len(listing_ids)
        progress = self._progress(job)
        await progress.force_update(f"Reconciling {total} listings", {"listings_found": total})

        overall = BatchReconcileResult()

        async def on_listing(_: str, current: BatchReconcileResult) -> None:
            done = overall.succeeded + overall.failed + current.succeeded + current.failed
            await progress.record_progress(
                f"Reconciled {done} of {total} listings",
                {
                    "listings_updated": overall.succeeded + current.succeeded,
                    "listings_failed": overall.failed + current.failed,
                    "extracted": overall.total_extracted + current.total_extracted,
                    "validated": overall.total_validated + current.total_validated,
                    "joins_created": overall.total_joins_created + current.total_joins_created,
                },
            )

        for chunk in _chunks(listing_ids, self.settings.reconcile_batch_size):
            if await self.tracker.is_cancelled(job.id):
                logger.info("reconcile stopped job_id=%s reason=cancelled processed=%s", job.id, overall.succeeded)
                return
            result = await self.service.reconcile_batch(
                chunk,
                metadata.reconciliation_version,
                cleanup_policy=metadata.cleanup_policy,
                on_listing=on_listing,
            )
            overall.merge(result)

        await progress.flush()
        if not await self.tracker.update_metadata(job.id, self._result_metadata(metadata, total, overall)):
            logger.info("reconcile stopped job_id=%s reason=not_running processed=%s", job.id, overall.succeeded)
            return

        stats = {
            "listings_found": total,
            "listings_updated": overall.succeeded,
            "listings_failed": overall.failed,
            "extracted": overall.total_extracted,
            "validated": overall.total_validated,
            "joins_created": overall.total_joins_created,
        }
        if total and not overall.succeeded:
            await self.tracker.fail_job(job.id, f"All {total} listings failed to reconcile")
            return
        await self.tracker.complete_job(job.id, stats, f"Reconciled {overall.succeeded} of {total} listings")

    async def _resolve_listing_ids(self, job: Job, metadata: ReconcileMetadata) -> list[str]:
        if metadata.listing_ids:
            listing_ids = list(dict.fromkeys(metadata.listing_ids))
        elif job.dataset_id:
            listing_ids = await self.repository.list_dataset_listing_ids(job.dataset_id)
        else:
            return await self.repository.list_pending_reconcile_listing_ids(
                reconciliation_version=metadata.reconciliation_version,
                rerun=metadata.rerun,
                limit=metadata.limit,
            )
        if metadata.limit is not None:
            listing_ids = listing_ids[: metadata.limit]
        return listing_ids

    @staticmethod
    def _result_metadata(
        metadata: ReconcileMetadata,
        total: int,
        result: BatchReconcileResult,
    ) -> ReconcileMetadata:
        validated = [
            ExtractedIdEntry(extracted_id=ref.extracted_id, listing_id=ref.listing_id)
            for listing in result.results
            for ref in listing.validated
        ]
        not_validated = [
            ExtractedIdEntry(extracted_id=ref.extracted_id, listing_id=ref.listing_id)
            for listing in result.results
            for ref in listing.not_validated
        ]
        return metadata.model_copy(
            update={
                "total_listings_input": total,
                "processed_listing_ids": list(result.processed_listing_ids),
                "distribution": ReconcileDistribution(**result.distribution),
                "total_joins_created": result.total_joins_created,
                "extracted_ids": ReconcileExtractedIds(
                    total_extracted=result.total_extracted,
                    total_validated=len(validated),
                    total_not_validated=len(not_validated),
                    validated_ids=validated,
                    not_validated_ids=not_validated,
                ),
            }
        )


class RemoteStageHandler:
    """Hand a job to the external service that owns the stage.

    The service reports back through the job progress/complete/fail endpoints; the job stays
    running until it does (or until the stale sweep times it out).
    """

    def __init__(
        self,
        stage: StageType,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.stage = stage
        self.settings = settings
        self.transport = transport

    async def __call__(self, job: Job) -> None:
        base_url = self.settings.stage_service_urls.get(self.stage.value)
        if not base_url:
            raise StageServiceNotConfiguredError(self.stage)
        payload = {
            "job_id": job.id,
            "stage": job.stage.value,
            "dataset_id": job.dataset_id,
            "marketplace": job.marketplace,
            "metadata": job.metadata.model_dump(mode="json"),
        }
        async with httpx.AsyncClient(
            timeout=self.settings.stage_service_timeout_seconds,
            transport=self.transport,
        ) as client:
            response = await client.post(f"{base_url.rstrip('/')}/jobs", json=payload)
            response.raise_for_status()
        logger.info("stage handed off job_id=%s stage=%s url=%s", job.id, job.stage.value, base_url)


def build_stage_handlers(repository: Any, tracker: JobTracker, settings: Settings) -> dict[StageType, Any]:
    reconcile = ReconcileService(
        repository,
        SetValidator(repository, batch_size=settings.validation_batch_size),
        JoinService(repository),
    )
    handlers: dict[StageType, Any] = {stage: RemoteStageHandler(stage, settings) for stage in REMOTE_STAGES}
    handlers[StageType.SANITIZE] = SanitizeHandler(repository, tracker, settings)
    handlers[StageType.RECONCILE] = ReconcileHandler(repository, tracker, settings, reconcile)
    handlers[StageType.ANALYZE] = AnalyzeHandler(repository, tracker, settings)
    return handlers
