from __future__ import annotations

import logging
from typing import Any

from setwatch.schemas.jobs import (
    JobDetailOut,
    ReconcileCandidateOut,
    ReconcileListingOut,
    ReconcileMetadata,
    ReconcileSetOut,
)
from setwatch.services.job_tracker import JobTracker
from setwatch.services.repository import RepositoryUnavailableError

logger = logging.getLogger(__name__)


class JobDetailService:
    """Expand a reconcile job into its per-listing breakdown.

    Listings, their active joins and the joined catalog sets are fetched in batches; a batch that
    fails is logged and left out so the rest of the breakdown is still returned.
    """

    def __init__(self, repository: Any, tracker: JobTracker, batch_size: int = 100) -> None:
        self.repository = repository
        self.tracker = tracker
        self.batch_size = max(1, batch_size)

    async def get_job_detail(self, job_id: str) -> JobDetailOut:
        job = await self.tracker.get_job(job_id)
        metadata = job.metadata
        if not isinstance(metadata, ReconcileMetadata):
            return JobDetailOut(job=job)

        candidates: dict[str, list[ReconcileCandidateOut]] = {}
        if metadata.extracted_ids is not None:
            for entry in metadata.extracted_ids.validated_ids:
                candidates.setdefault(entry.listing_id, []).append(
                    ReconcileCandidateOut(extracted_id=entry.extracted_id, validated=True)
                )
            for entry in metadata.extracted_ids.not_validated_ids:
                candidates.setdefault(entry.listing_id, []).append(
                    ReconcileCandidateOut(extracted_id=entry.extracted_id, validated=False)
                )

        listing_ids = list(metadata.processed_listing_ids or candidates)
        listings: list[ReconcileListingOut] = []
        for start in range(0, len(listing_ids), self.batch_size):
            batch = listing_ids[start : start + self.batch_size]
            try:
                listings.extend(await self._load_batch(batch, candidates, metadata.reconciliation_version))
            except RepositoryUnavailableError:
                raise
            except Exception:
                logger.warning("job detail batch failed job_id=%s offset=%s size=%s", job_id, start, len(batch), exc_info=True)

        return JobDetailOut(
            job=job,
            reconciliation_version=metadata.reconciliation_version,
            listings=listings,
        )

    async def _load_batch(
        self,
        listing_ids: list[str],
        candidates: dict[str, list[ReconcileCandidateOut]],
        reconciliation_version: str,
    ) -> list[ReconcileListingOut]:
        listings = {listing.id: listing for listing in await self.repository.get_listings(listing_ids)}
        joins = [
            join
            for join in await self.repository.list_active_joins(listing_ids)
            if join.reconciliation_version == reconciliation_version
        ]
        catalog_ids = list(dict.fromkeys(join.catalog_set_id for join in joins))
        sets = {record.id: record for record in await self.repository.get_catalog_sets(catalog_ids)}

        sets_by_listing: dict[str, list[ReconcileSetOut]] = {}
        for join in joins:
            record = sets.get(join.catalog_set_id)
            if record is None:
                continue
            sets_by_listing.setdefault(join.listing_id, []).append(
                ReconcileSetOut(catalog_set_id=record.id, set_num=record.set_num, name=record.name)
            )

        out: list[ReconcileListingOut] = []
        for listing_id in listing_ids:
            listing = listings.get(listing_id)
            if listing is None:
                continue
            out.append(
                ReconcileListingOut(
                    listing_id=listing.id,
                    title=listing.title,
                    description=listing.description,
                    sanitised_title=listing.sanitised_title,
                    sanitised_description=listing.sanitised_description,
                    extracted_ids=candidates.get(listing.id, []),
                    validated_sets=sets_by_listing.get(listing.id, []),
                )
            )
        return out
