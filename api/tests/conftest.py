from __future__ import annotations

import copy
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from setwatch.core.config import Settings
from setwatch.services.repository import (
    JOB_COUNTER_COLUMNS,
    TIMED_OUT_LAST_UPDATE,
    CatalogSetRecord,
    JoinRecord,
    ListingRecord,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakePipelineRepository:
    """In-memory stand-in for PostgresRepository with the same method surface."""

    def __init__(self) -> None:
        self.datasets: dict[str, dict[str, Any]] = {}
        self.dataset_listings: dict[str, list[str]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.listings: dict[str, ListingRecord] = {}
        self.catalog: dict[str, CatalogSetRecord] = {}
        self.joins: dict[str, JoinRecord] = {}
        self.analysis: dict[str, dict[str, Any]] = {}
        self.progress_writes: list[tuple[str, str, dict[str, Any]]] = []
        self.exact_lookups: list[list[str]] = []
        self.fail_exact_batches = False
        self.failing_candidates: set[str] = set()
        self.failing_listings: set[str] = set()
        self.fail_progress_writes = False
        self._job_seq: dict[str, int] = {}
        self._seq = itertools.count(1)

    # Seeding helpers

    def add_dataset(self, name: str = "dataset") -> str:
        dataset_id = str(uuid.uuid4())
        self.datasets[dataset_id] = {"id": dataset_id, "name": name, "description": None, "created_at": _now()}
        self.dataset_listings[dataset_id] = []
        return dataset_id

    def add_listing(
        self,
        title: str,
        description: str | None = None,
        *,
        sanitised_title: str | None = None,
        sanitised_description: str | None = None,
        price: float | None = None,
        dataset_id: str | None = None,
        status: str = "active",
    ) -> str:
        listing_id = str(uuid.uuid4())
        self.listings[listing_id] = ListingRecord(
            id=listing_id,
            title=title,
            description=description,
            sanitised_title=sanitised_title,
            sanitised_description=sanitised_description,
            price=price,
            status=status,
            reconciled_at=None,
            reconciliation_version=None,
        )
        if dataset_id is not None:
            self.dataset_listings[dataset_id].append(listing_id)
        return listing_id

    def add_catalog_set(self, set_num: str, name: str | None = None) -> str:
        catalog_id = str(uuid.uuid4())
        self.catalog[catalog_id] = CatalogSetRecord(id=catalog_id, set_num=set_num, name=name or f"Set {set_num}")
        return catalog_id

    def add_job(
        self,
        stage: str,
        status: str,
        *,
        dataset_id: str | None = None,
        marketplace: str = "ebay",
        metadata: dict[str, Any] | None = None,
        started_minutes_ago: float = 0.0,
        timeout_minutes: int = 30,
    ) -> str:
        started_at = _now() - timedelta(minutes=started_minutes_ago)
        job_id = str(uuid.uuid4())
        self.jobs[job_id] = {
            "id": job_id,
            "stage": stage,
            "dataset_id": dataset_id,
            "marketplace": marketplace,
            "status": status,
            "listings_found": 0,
            "listings_new": 0,
            "listings_updated": 0,
            "stats": {},
            "metadata": metadata or {},
            "last_update": "Job started",
            "error_message": None,
            "started_at": started_at,
            "completed_at": None if status == "running" else started_at,
            "updated_at": started_at,
            "timeout_at": started_at + timedelta(minutes=timeout_minutes),
        }
        self._job_seq[job_id] = next(self._seq)
        return job_id

    def active_joins_for(self, listing_id: str) -> list[JoinRecord]:
        return [join for join in self.joins.values() if join.listing_id == listing_id and join.status == "active"]

    # Repository surface

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def get_dataset(self, dataset_id: str) -> dict[str, Any]:
        if dataset_id not in self.datasets:
            raise RepositoryNotFoundError("dataset not found")
        return dict(self.datasets[dataset_id])

    async def list_dataset_listing_ids(self, dataset_id: str) -> list[str]:
        return list(self.dataset_listings.get(dataset_id, []))

    async def insert_job(
        self,
        *,
        stage: str,
        dataset_id: str | None,
        marketplace: str,
        metadata: dict[str, Any],
        timeout_minutes: int,
        last_update: str,
    ) -> dict[str, Any]:
        if dataset_id is not None:
            if dataset_id not in self.datasets:
                raise RepositoryNotFoundError("dataset not found")
            if any(job["dataset_id"] == dataset_id and job["status"] == "running" for job in self.jobs.values()):
                raise RepositoryConflictError("dataset already has a running job")
        job_id = self.add_job(
            stage,
            "running",
            dataset_id=dataset_id,
            marketplace=marketplace,
            metadata=copy.deepcopy(metadata),
            timeout_minutes=timeout_minutes,
        )
        self.jobs[job_id]["last_update"] = last_update
        return copy.deepcopy(self.jobs[job_id])

    async def get_job(self, job_id: str) -> dict[str, Any]:
        if job_id not in self.jobs:
            raise RepositoryNotFoundError("job not found")
        return copy.deepcopy(self.jobs[job_id])

    async def list_jobs(
        self,
        *,
        dataset_id: str | None,
        stage: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        rows = [
            job
            for job in self._jobs_newest_first()
            if (dataset_id is None or job["dataset_id"] == dataset_id)
            and (stage is None or job["stage"] == stage)
            and (status is None or job["status"] == status)
        ]
        return [copy.deepcopy(job) for job in rows[offset : offset + limit]]

    async def get_running_job(self, dataset_id: str) -> dict[str, Any] | None:
        for job in self._jobs_newest_first():
            if job["dataset_id"] == dataset_id and job["status"] == "running":
                return copy.deepcopy(job)
        return None

    async def list_completed_stages(self, dataset_id: str) -> set[str]:
        return {
            job["stage"]
            for job in self.jobs.values()
            if job["dataset_id"] == dataset_id and job["status"] == "completed"
        }

    async def get_latest_completed_job(self, dataset_id: str, stage: str) -> dict[str, Any] | None:
        for job in self._jobs_newest_first():
            if job["dataset_id"] == dataset_id and job["stage"] == stage and job["status"] == "completed":
                return copy.deepcopy(job)
        return None

    async def get_latest_stage_statuses(self, dataset_id: str) -> dict[str, str]:
        statuses: dict[str, str] = {}
        for job in self._jobs_newest_first():
            if job["dataset_id"] == dataset_id:
                statuses.setdefault(job["stage"], job["status"])
        return statuses

    async def update_job_progress(
        self,
        job_id: str,
        *,
        message: str,
        counters: dict[str, int],
        stats: dict[str, Any],
    ) -> bool:
        if self.fail_progress_writes:
            raise RepositoryError("progress write failed")
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "running":
            return False
        self._apply_stats(job, counters, stats)
        job["last_update"] = message
        job["updated_at"] = _now()
        self.progress_writes.append((job_id, message, {**counters, **stats}))
        return True

    async def complete_job(
        self,
        job_id: str,
        *,
        message: str,
        counters: dict[str, int],
        stats: dict[str, Any],
    ) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "running":
            return False
        self._apply_stats(job, counters, stats)
        job["status"] = "completed"
        job["last_update"] = message
        job["completed_at"] = job["updated_at"] = _now()
        return True

    async def fail_job(self, job_id: str, *, error_message: str, last_update: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "running":
            return False
        job["status"] = "failed"
        job["error_message"] = error_message
        job["last_update"] = last_update
        job["completed_at"] = job["updated_at"] = _now()
        return True

    async def update_job_metadata(self, job_id: str, metadata: dict[str, Any]) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job["status"] != "running":
            return False
        job["metadata"] = copy.deepcopy(metadata)
        job["updated_at"] = _now()
        return True

    async def sweep_stale_jobs(self, *, stall_minutes: int) -> list[str]:
        now = _now()
        swept: list[str] = []
        for job in self.jobs.values():
            if job["status"] != "running" or not self._is_stale(job, now, stall_minutes):
                continue
            minutes = int((now - job["started_at"]).total_seconds() // 60)
            job["status"] = "failed"
            job["last_update"] = TIMED_OUT_LAST_UPDATE
            job["error_message"] = f"Job timed out after {minutes} minutes"
            job["completed_at"] = job["updated_at"] = now
            swept.append(job["id"])
        return swept

    async def get_stale_job_stats(self, *, stall_minutes: int) -> dict[str, Any]:
        now = _now()
        running = [job for job in self.jobs.values() if job["status"] == "running"]
        return {
            "running_jobs": len(running),
            "potentially_stale": sum(1 for job in running if self._is_stale(job, now, stall_minutes)),
            "oldest_running_job": min((job["started_at"] for job in running), default=None),
        }

    async def get_listing(self, listing_id: str) -> ListingRecord:
        if listing_id in self.failing_listings:
            raise RepositoryError(f"listing fetch failed: {listing_id}")
        if listing_id not in self.listings:
            raise RepositoryNotFoundError("listing not found")
        return copy.copy(self.listings[listing_id])

    async def get_listings(self, listing_ids: list[str]) -> list[ListingRecord]:
        return [copy.copy(self.listings[listing_id]) for listing_id in listing_ids if listing_id in self.listings]

    async def list_pending_reconcile_listing_ids(
        self,
        *,
        reconciliation_version: str,
        rerun: bool,
        limit: int | None,
    ) -> list[str]:
        pending = [
            listing.id
            for listing in self.listings.values()
            if listing.status == "active"
            and (rerun or listing.reconciled_at is None or listing.reconciliation_version != reconciliation_version)
        ]
        return pending if limit is None else pending[:limit]

    async def mark_listing_reconciled(self, listing_id: str, reconciliation_version: str) -> None:
        listing = self.listings[listing_id]
        listing.reconciled_at = _now()
        listing.reconciliation_version = reconciliation_version

    async def update_listing_sanitised(
        self,
        listing_id: str,
        *,
        sanitised_title: str | None,
        sanitised_description: str | None,
    ) -> None:
        listing = self.listings[listing_id]
        listing.sanitised_title = sanitised_title
        listing.sanitised_description = sanitised_description

    async def upsert_listing_analysis(self, listing_id: str, **fields: Any) -> None:
        self.analysis[listing_id] = {"listing_id": listing_id, **fields}

    async def find_catalog_sets_exact(self, set_nums: list[str]) -> list[CatalogSetRecord]:
        self.exact_lookups.append(list(set_nums))
        if self.fail_exact_batches and len(set_nums) > 1:
            raise RepositoryError("batch lookup failed")
        if any(set_num in self.failing_candidates for set_num in set_nums):
            raise RepositoryError("lookup failed")
        wanted = set(set_nums)
        return [record for record in self.catalog.values() if record.set_num in wanted]

    async def find_catalog_set_by_prefix(self, candidate: str) -> CatalogSetRecord | None:
        if candidate in self.failing_candidates:
            raise RepositoryError("lookup failed")
        matches = [record for record in self.catalog.values() if record.set_num.startswith(f"{candidate}-")]
        if not matches:
            return None
        return min(matches, key=lambda record: (len(record.set_num), record.set_num))

    async def get_catalog_sets(self, catalog_set_ids: list[str]) -> list[CatalogSetRecord]:
        return [self.catalog[catalog_id] for catalog_id in catalog_set_ids if catalog_id in self.catalog]

    async def list_active_joins(self, listing_ids: list[str]) -> list[JoinRecord]:
        wanted = set(listing_ids)
        return [copy.copy(join) for join in self.joins.values() if join.listing_id in wanted and join.status == "active"]

    async def delete_outdated_joins(self, listing_id: str, reconciliation_version: str) -> int:
        outdated = [join.id for join in self.active_joins_for(listing_id) if join.reconciliation_version != reconciliation_version]
        for join_id in outdated:
            del self.joins[join_id]
        return len(outdated)

    async def supersede_outdated_joins(self, listing_id: str, reconciliation_version: str) -> int:
        outdated = [join for join in self.active_joins_for(listing_id) if join.reconciliation_version != reconciliation_version]
        for join in outdated:
            join.status = "superseded"
        return len(outdated)

    async def get_active_join(self, listing_id: str, catalog_set_id: str) -> JoinRecord | None:
        for join in self.active_joins_for(listing_id):
            if join.catalog_set_id == catalog_set_id:
                return copy.copy(join)
        return None

    async def update_join(
        self,
        join_id: str,
        *,
        nature: str,
        reconciliation_version: str,
        potential_year_match: bool,
    ) -> None:
        join = self.joins[join_id]
        join.nature = nature
        join.reconciliation_version = reconciliation_version
        join.potential_year_match = potential_year_match

    async def insert_join(
        self,
        *,
        listing_id: str,
        catalog_set_id: str,
        nature: str,
        reconciliation_version: str,
        potential_year_match: bool,
    ) -> None:
        if any(join.catalog_set_id == catalog_set_id for join in self.active_joins_for(listing_id)):
            raise RepositoryConflictError("listing already has an active join for this catalog set")
        join_id = str(uuid.uuid4())
        self.joins[join_id] = JoinRecord(
            id=join_id,
            listing_id=listing_id,
            catalog_set_id=catalog_set_id,
            nature=nature,
            reconciliation_version=reconciliation_version,
            status="active",
            potential_year_match=potential_year_match,
        )

    def _jobs_newest_first(self) -> list[dict[str, Any]]:
        return sorted(
            self.jobs.values(),
            key=lambda job: (job["started_at"], self._job_seq[job["id"]]),
            reverse=True,
        )

    @staticmethod
    def _apply_stats(job: dict[str, Any], counters: dict[str, int], stats: dict[str, Any]) -> None:
        for key in JOB_COUNTER_COLUMNS:
            if key in counters:
                job[key] = counters[key]
        job["stats"] = {**job["stats"], **stats}

    @staticmethod
    def _is_stale(job: dict[str, Any], now: datetime, stall_minutes: int) -> bool:
        if job["timeout_at"] is not None and job["timeout_at"] < now:
            return True
        return stall_minutes > 0 and job["updated_at"] < now - timedelta(minutes=stall_minutes)


@pytest.fixture
def fake_repo() -> FakePipelineRepository:
    return FakePipelineRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=None,
        otel_enabled=False,
        progress_milestone_interval=10,
        progress_time_interval_ms=60_000,
        chain_poll_interval_seconds=0.0,
    )
