from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from setwatch.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class ListingRecord:
    id: str
    title: str
    description: str | None
    sanitised_title: str | None
    sanitised_description: str | None
    price: float | None
    status: str
    reconciled_at: datetime | None
    reconciliation_version: str | None


@dataclass(slots=True)
class CatalogSetRecord:
    id: str
    set_num: str
    name: str


@dataclass(slots=True)
class JoinRecord:
    id: str
    listing_id: str
    catalog_set_id: str
    nature: str
    reconciliation_version: str
    status: str
    potential_year_match: bool


JOB_STAGES = {"capture", "enrich", "materialize", "sanitize", "reconcile", "analyze", "catalog_refresh"}
JOB_STATUSES = {"running", "completed", "failed"}
JOB_COUNTER_COLUMNS = ("listings_found", "listings_new", "listings_updated")
TIMED_OUT_LAST_UPDATE = "Job timed out: No progress detected or exceeded maximum runtime"

_JOB_COLUMNS = """
              id::text as id,
              stage::text as stage,
              dataset_id::text as dataset_id,
              marketplace,
              status::text as status,
              listings_found,
              listings_new,
              listings_updated,
              stats,
              metadata,
              last_update,
              error_message,
              started_at,
              completed_at,
              updated_at,
              timeout_at
"""

_LISTING_COLUMNS = """
              id::text as id,
              title,
              description,
              sanitised_title,
              sanitised_description,
              price,
              status,
              reconciled_at,
              reconciliation_version
"""

_JOIN_COLUMNS = """
              id::text as id,
              listing_id::text as listing_id,
              catalog_set_id::text as catalog_set_id,
              nature,
              reconciliation_version,
              status::text as status,
              potential_year_match
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    # Datasets

    async def get_dataset(self, dataset_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select id::text as id, name, description, created_at
                from datasets
                where id = $1::uuid
                """,
                dataset_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("dataset not found") from exc
        if row is None:
            raise RepositoryNotFoundError("dataset not found")
        return dict(row)

    async def list_dataset_listing_ids(self, dataset_id: str) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select listing_id::text as listing_id
            from dataset_listings
            where dataset_id = $1::uuid
            order by added_at asc, listing_id asc
            """,
            dataset_id,
        )
        return [row["listing_id"] for row in rows]

    # Jobs

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
        if stage not in JOB_STAGES:
            raise RepositoryValidationError(f"unknown stage: {stage}")
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into jobs (
                  stage,
                  dataset_id,
                  marketplace,
                  status,
                  metadata,
                  last_update,
                  started_at,
                  updated_at,
                  timeout_at
                )
                values (
                  $1::stage_type,
                  $2::uuid,
                  $3,
                  'running',
                  $4::jsonb,
                  $5,
                  now(),
                  now(),
                  now() + ($6::int * interval '1 minute')
                )
                returning {_JOB_COLUMNS}
                """,
                stage,
                dataset_id,
                marketplace,
                json.dumps(metadata),
                last_update,
                timeout_minutes,
            )
        except pg_exc.UniqueViolationError as exc:
            # jobs_one_running_per_dataset_idx: another job claimed the dataset first.
            raise RepositoryConflictError("dataset already has a running job") from exc
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("dataset not found") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("invalid job payload") from exc
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                where id = $1::uuid
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def list_jobs(
        self,
        *,
        dataset_id: str | None,
        stage: str | None,
        status: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        if stage is not None and stage not in JOB_STAGES:
            raise RepositoryValidationError(f"stage must be one of: {', '.join(sorted(JOB_STAGES))}")
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError("status must be one of: running, completed, failed")
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from jobs
                where ($1::uuid is null or dataset_id = $1::uuid)
                  and ($2::text is null or stage::text = $2)
                  and ($3::text is null or status::text = $3)
                order by started_at desc, id desc
                limit $4
                offset $5
                """,
                dataset_id,
                stage,
                status,
                limit,
                offset,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("dataset_id must be a uuid") from exc
        return [self._job_row_to_dict(row) for row in rows]

    async def get_running_job(self, dataset_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where dataset_id = $1::uuid and status = 'running'
            order by started_at desc
            limit 1
            """,
            dataset_id,
        )
        return self._job_row_to_dict(row) if row else None

    async def list_completed_stages(self, dataset_id: str) -> set[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select distinct stage::text as stage
            from jobs
            where dataset_id = $1::uuid and status = 'completed'
            """,
            dataset_id,
        )
        return {row["stage"] for row in rows}

    async def get_latest_completed_job(self, dataset_id: str, stage: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where dataset_id = $1::uuid
              and stage = $2::stage_type
              and status = 'completed'
            order by started_at desc, id desc
            limit 1
            """,
            dataset_id,
            stage,
        )
        return self._job_row_to_dict(row) if row else None

    async def get_latest_stage_statuses(self, dataset_id: str) -> dict[str, str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select distinct on (stage)
              stage::text as stage,
              status::text as status
            from jobs
            where dataset_id = $1::uuid
            order by stage, started_at desc, id desc
            """,
            dataset_id,
        )
        return {row["stage"]: row["status"] for row in rows}

    async def update_job_progress(
        self,
        job_id: str,
        *,
        message: str,
        counters: dict[str, int],
        stats: dict[str, Any],
    ) -> bool:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update jobs
                set
                  last_update = $2,
                  listings_found = coalesce($3::int, listings_found),
                  listings_new = coalesce($4::int, listings_new),
                  listings_updated = coalesce($5::int, listings_updated),
                  stats = stats || $6::jsonb,
                  updated_at = now()
                where id = $1::uuid and status = 'running'
                returning id::text as id
                """,
                job_id,
                message,
                counters.get("listings_found"),
                counters.get("listings_new"),
                counters.get("listings_updated"),
                json.dumps(stats),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return row is not None

    async def complete_job(
        self,
        job_id: str,
        *,
        message: str,
        counters: dict[str, int],
        stats: dict[str, Any],
    ) -> bool:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update jobs
                set
                  status = 'completed',
                  last_update = $2,
                  listings_found = coalesce($3::int, listings_found),
                  listings_new = coalesce($4::int, listings_new),
                  listings_updated = coalesce($5::int, listings_updated),
                  stats = stats || $6::jsonb,
                  completed_at = now(),
                  updated_at = now()
                where id = $1::uuid and status = 'running'
                returning id::text as id
                """,
                job_id,
                message,
                counters.get("listings_found"),
                counters.get("listings_new"),
                counters.get("listings_updated"),
                json.dumps(stats),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return row is not None

    async def fail_job(self, job_id: str, *, error_message: str, last_update: str) -> bool:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update jobs
                set
                  status = 'failed',
                  error_message = $2,
                  last_update = $3,
                  completed_at = now(),
                  updated_at = now()
                where id = $1::uuid and status = 'running'
                returning id::text as id
                """,
                job_id,
                error_message,
                last_update,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return row is not None

    async def update_job_metadata(self, job_id: str, metadata: dict[str, Any]) -> bool:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update jobs
                set metadata = $2::jsonb, updated_at = now()
                where id = $1::uuid and status = 'running'
                returning id::text as id
                """,
                job_id,
                json.dumps(metadata),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return row is not None

    async def sweep_stale_jobs(self, *, stall_minutes: int) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id
                      from jobs
                      where status = 'running'
                        and (
                          timeout_at < now()
                          or ($1::int > 0 and updated_at < now() - ($1::int * interval '1 minute'))
                        )
                      order by started_at asc
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'failed',
                      last_update = $2,
                      error_message = 'Job timed out after '
                        || floor(extract(epoch from now() - j.started_at) / 60)::int
                        || ' minutes',
                      completed_at = now(),
                      updated_at = now()
                    from stale s
                    where j.id = s.id
                    returning j.id::text as id
                    """,
                    max(0, stall_minutes),
                    TIMED_OUT_LAST_UPDATE,
                )
        return [row["id"] for row in rows]

    async def get_stale_job_stats(self, *, stall_minutes: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              count(*)::int as running_jobs,
              count(*) filter (
                where timeout_at < now()
                  or ($1::int > 0 and updated_at < now() - ($1::int * interval '1 minute'))
              )::int as potentially_stale,
              min(started_at) as oldest_running_job
            from jobs
            where status = 'running'
            """,
            max(0, stall_minutes),
        )
        return dict(row)

    # Listings

    async def get_listing(self, listing_id: str) -> ListingRecord:
        listings = await self.get_listings([listing_id])
        if not listings:
            raise RepositoryNotFoundError("listing not found")
        return listings[0]

    async def get_listings(self, listing_ids: list[str]) -> list[ListingRecord]:
        if not listing_ids:
            return []
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_LISTING_COLUMNS}
                from listings
                where id = any($1::uuid[])
                """,
                listing_ids,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError("listing ids must be uuids") from exc
        return [self._listing_row_to_record(row) for row in rows]

    async def list_pending_reconcile_listing_ids(
        self,
        *,
        reconciliation_version: str,
        rerun: bool,
        limit: int | None,
    ) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id
            from listings
            where status = 'active'
              and (
                $1::bool
                or reconciled_at is null
                or reconciliation_version is distinct from $2
              )
            order by created_at asc, id asc
            limit $3
            """,
            rerun,
            reconciliation_version,
            limit,
        )
        return [row["id"] for row in rows]

    async def mark_listing_reconciled(self, listing_id: str, reconciliation_version: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update listings
            set reconciled_at = now(), reconciliation_version = $2, updated_at = now()
            where id = $1::uuid
            """,
            listing_id,
            reconciliation_version,
        )

    async def update_listing_sanitised(
        self,
        listing_id: str,
        *,
        sanitised_title: str | None,
        sanitised_description: str | None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update listings
            set
              sanitised_title = $2,
              sanitised_description = $3,
              sanitised_at = now(),
              updated_at = now()
            where id = $1::uuid
            """,
            listing_id,
            sanitised_title,
            sanitised_description,
        )

    async def upsert_listing_analysis(
        self,
        listing_id: str,
        *,
        piece_count: int | None,
        piece_count_estimated: bool,
        minifig_count: int | None,
        minifig_count_estimated: bool,
        condition: str,
        price_per_piece: float | None,
        analysis_version: str,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into listing_analysis (
              listing_id,
              piece_count,
              piece_count_estimated,
              minifig_count,
              minifig_count_estimated,
              condition,
              price_per_piece,
              analysis_version,
              analysed_at
            )
            values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, now())
            on conflict (listing_id) do update
            set
              piece_count = excluded.piece_count,
              piece_count_estimated = excluded.piece_count_estimated,
              minifig_count = excluded.minifig_count,
              minifig_count_estimated = excluded.minifig_count_estimated,
              condition = excluded.condition,
              price_per_piece = excluded.price_per_piece,
              analysis_version = excluded.analysis_version,
              analysed_at = excluded.analysed_at
            """,
            listing_id,
            piece_count,
            piece_count_estimated,
            minifig_count,
            minifig_count_estimated,
            condition,
            price_per_piece,
            analysis_version,
        )

    # Catalog

    async def find_catalog_sets_exact(self, set_nums: list[str]) -> list[CatalogSetRecord]:
        if not set_nums:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, set_num, name
            from catalog_sets
            where set_num = any($1::text[])
            """,
            set_nums,
        )
        return [CatalogSetRecord(id=row["id"], set_num=row["set_num"], name=row["name"]) for row in rows]

    async def find_catalog_set_by_prefix(self, candidate: str) -> CatalogSetRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id::text as id, set_num, name
            from catalog_sets
            where set_num like $1 || '-%'
            order by length(set_num) asc, set_num asc
            limit 1
            """,
            candidate,
        )
        if row is None:
            return None
        return CatalogSetRecord(id=row["id"], set_num=row["set_num"], name=row["name"])

    async def get_catalog_sets(self, catalog_set_ids: list[str]) -> list[CatalogSetRecord]:
        if not catalog_set_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, set_num, name
            from catalog_sets
            where id = any($1::uuid[])
            """,
            catalog_set_ids,
        )
        return [CatalogSetRecord(id=row["id"], set_num=row["set_num"], name=row["name"]) for row in rows]

    # Listing/catalog joins

    async def list_active_joins(self, listing_ids: list[str]) -> list[JoinRecord]:
        if not listing_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOIN_COLUMNS}
            from listing_catalog_joins
            where listing_id = any($1::uuid[]) and status = 'active'
            order by created_at asc, id asc
            """,
            listing_ids,
        )
        return [self._join_row_to_record(row) for row in rows]

    async def delete_outdated_joins(self, listing_id: str, reconciliation_version: str) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            delete from listing_catalog_joins
            where listing_id = $1::uuid
              and status = 'active'
              and reconciliation_version <> $2
            returning id
            """,
            listing_id,
            reconciliation_version,
        )
        return len(rows)

    async def supersede_outdated_joins(self, listing_id: str, reconciliation_version: str) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update listing_catalog_joins
            set status = 'superseded', updated_at = now()
            where listing_id = $1::uuid
              and status = 'active'
              and reconciliation_version <> $2
            returning id
            """,
            listing_id,
            reconciliation_version,
        )
        return len(rows)

    async def get_active_join(self, listing_id: str, catalog_set_id: str) -> JoinRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOIN_COLUMNS}
            from listing_catalog_joins
            where listing_id = $1::uuid
              and catalog_set_id = $2::uuid
              and status = 'active'
            """,
            listing_id,
            catalog_set_id,
        )
        return self._join_row_to_record(row) if row else None

    async def update_join(
        self,
        join_id: str,
        *,
        nature: str,
        reconciliation_version: str,
        potential_year_match: bool,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update listing_catalog_joins
            set
              nature = $2,
              reconciliation_version = $3,
              potential_year_match = $4,
              updated_at = now()
            where id = $1::uuid
            """,
            join_id,
            nature,
            reconciliation_version,
            potential_year_match,
        )

    async def insert_join(
        self,
        *,
        listing_id: str,
        catalog_set_id: str,
        nature: str,
        reconciliation_version: str,
        potential_year_match: bool,
    ) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into listing_catalog_joins (
                  listing_id,
                  catalog_set_id,
                  nature,
                  reconciliation_version,
                  status,
                  potential_year_match
                )
                values ($1::uuid, $2::uuid, $3, $4, 'active', $5)
                """,
                listing_id,
                catalog_set_id,
                nature,
                reconciliation_version,
                potential_year_match,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("listing already has an active join for this catalog set") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _job_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        job = dict(row)
        job["stats"] = cls._coerce_json_dict(row["stats"])
        job["metadata"] = cls._coerce_json_dict(row["metadata"])
        return job

    @classmethod
    def _listing_row_to_record(cls, row: asyncpg.Record) -> ListingRecord:
        return ListingRecord(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            sanitised_title=row["sanitised_title"],
            sanitised_description=row["sanitised_description"],
            price=cls._coerce_float(row["price"]),
            status=row["status"],
            reconciled_at=row["reconciled_at"],
            reconciliation_version=row["reconciliation_version"],
        )

    @staticmethod
    def _join_row_to_record(row: asyncpg.Record) -> JoinRecord:
        return JoinRecord(
            id=row["id"],
            listing_id=row["listing_id"],
            catalog_set_id=row["catalog_set_id"],
            nature=row["nature"],
            reconciliation_version=row["reconciliation_version"],
            status=row["status"],
            potential_year_match=bool(row["potential_year_match"]),
        )

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        if isinstance(value, (int, float, Decimal)):
            return float(value)
        return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
