from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
import logging
from types import MappingProxyType
from typing import Any

from setwatch.services.extraction import build_listing_text, extract_identifiers, get_identifier_pattern
from setwatch.services.joins import CleanupPolicy, JoinService
from setwatch.services.repository import RepositoryUnavailableError
from setwatch.services.validation import SetMatch, SetValidator

logger = logging.getLogger(__name__)

DISTRIBUTION_BUCKETS = (
    "listings_with_zero_ids",
    "listings_with_one_id",
    "listings_with_two_ids",
    "listings_with_three_ids",
    "listings_with_four_ids",
    "listings_with_five_or_more_ids",
)


def distribution_bucket(candidate_count: int) -> str:
    return DISTRIBUTION_BUCKETS[min(max(candidate_count, 0), len(DISTRIBUTION_BUCKETS) - 1)]


@dataclass(slots=True, frozen=True)
class CandidateRef:
    extracted_id: str
    listing_id: str


@dataclass(slots=True, frozen=True)
class ListingReconcileResult:
    listing_id: str
    extracted_ids: tuple[str, ...]
    matches: Mapping[str, SetMatch]
    validated: tuple[CandidateRef, ...]
    not_validated: tuple[CandidateRef, ...]
    joins_created: int


@dataclass(slots=True, frozen=True)
class ListingReconcileFailure:
    listing_id: str
    error: str


@dataclass(slots=True)
class BatchReconcileResult:
    results: list[ListingReconcileResult] = field(default_factory=list)
    failures: list[ListingReconcileFailure] = field(default_factory=list)
    processed_listing_ids: list[str] = field(default_factory=list)
    distribution: dict[str, int] = field(default_factory=lambda: dict.fromkeys(DISTRIBUTION_BUCKETS, 0))

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def total_extracted(self) -> int:
        return sum(len(result.extracted_ids) for result in self.results)

    @property
    def total_validated(self) -> int:
        return sum(len(result.validated) for result in self.results)

    @property
    def total_joins_created(self) -> int:
        return sum(result.joins_created for result in self.results)

    def merge(self, other: BatchReconcileResult) -> None:
        self.results.extend(other.results)
        self.failures.extend(other.failures)
        self.processed_listing_ids.extend(other.processed_listing_ids)
        for bucket, count in other.distribution.items():
            self.distribution[bucket] = self.distribution.get(bucket, 0) + count


ListingCallback = Callable[[str, BatchReconcileResult], Awaitable[None]]


class ReconcileService:
    def __init__(self, repository: Any, validator: SetValidator, joins: JoinService) -> None:
        self.repository = repository
        self.validator = validator
        self.joins = joins

    async def reconcile_listing(
        self,
        listing_id: str,
        reconciliation_version: str,
        *,
        cleanup_policy: CleanupPolicy = CleanupPolicy.SUPERSEDE,
    ) -> ListingReconcileResult:
        listing = await self.repository.get_listing(listing_id)
        # Only sanitised text is considered; raw HTML never reaches the extractor.
        text = build_listing_text(listing.sanitised_title, listing.sanitised_description)
        extracted = extract_identifiers(text, reconciliation_version)

        # A listing is reconciled under this version even when nothing was extracted.
        await self.repository.mark_listing_reconciled(listing_id, reconciliation_version)

        if not extracted:
            return ListingReconcileResult(
                listing_id=listing_id,
                extracted_ids=(),
                matches=MappingProxyType({}),
                validated=(),
                not_validated=(),
                joins_created=0,
            )

        matches = await self.validator.validate(extracted)
        validated = tuple(
            CandidateRef(extracted_id=candidate, listing_id=listing_id)
            for candidate in extracted
            if matches[candidate].validated
        )
        not_validated = tuple(
            CandidateRef(extracted_id=candidate, listing_id=listing_id)
            for candidate in extracted
            if not matches[candidate].validated
        )
        summary = await self.joins.create_joins(
            listing_id,
            [matches[candidate] for candidate in extracted],
            reconciliation_version,
            cleanup_policy=cleanup_policy,
        )
        return ListingReconcileResult(
            listing_id=listing_id,
            extracted_ids=extracted,
            matches=matches,
            validated=validated,
            not_validated=not_validated,
            joins_created=summary.written,
        )

    async def reconcile_batch(
        self,
        listing_ids: Sequence[str],
        reconciliation_version: str,
        *,
        cleanup_policy: CleanupPolicy = CleanupPolicy.SUPERSEDE,
        on_listing: ListingCallback | None = None,
    ) -> BatchReconcileResult:
        """Reconcile listings one after another.

        A failing listing is recorded and the batch moves on; a database outage aborts the batch.
        """
        get_identifier_pattern(reconciliation_version)
        batch = BatchReconcileResult()
        for listing_id in listing_ids:
            try:
                result = await self.reconcile_listing(
                    listing_id,
                    reconciliation_version,
                    cleanup_policy=cleanup_policy,
                )
            except RepositoryUnavailableError:
                logger.error("reconcile aborted listing_id=%s reason=database_unavailable", listing_id)
                raise
            except Exception as exc:
                logger.warning("reconcile listing failed listing_id=%s error=%s", listing_id, exc, exc_info=True)
                batch.failures.append(ListingReconcileFailure(listing_id=listing_id, error=str(exc)))
            else:
                batch.results.append(result)
                batch.processed_listing_ids.append(listing_id)
                batch.distribution[distribution_bucket(len(result.extracted_ids))] += 1
            if on_listing is not None:
                await on_listing(listing_id, batch)
        return batch
