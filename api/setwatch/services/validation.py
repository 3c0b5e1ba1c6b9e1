from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import logging
from types import MappingProxyType
from typing import Any, Literal

from setwatch.services.repository import CatalogSetRecord, RepositoryUnavailableError

logger = logging.getLogger(__name__)

MatchType = Literal["exact", "prefix"]


@dataclass(slots=True, frozen=True)
class SetMatch:
    catalog_id: str | None
    set_num: str | None
    match_type: MatchType | None

    @property
    def validated(self) -> bool:
        return self.catalog_id is not None


UNRESOLVED = SetMatch(catalog_id=None, set_num=None, match_type=None)


class SetValidator:
    """Resolve candidate identifiers against the catalog.

    Exact ``set_num`` matches are looked up in batches; anything left over is retried as a
    prefix (``"10251"`` finds ``"10251-1"``), preferring the shortest and then lowest set number.
    Lookup failures are isolated to the candidate (or batch) that raised them.
    """

    def __init__(self, repository: Any, batch_size: int = 50) -> None:
        self.repository = repository
        self.batch_size = max(1, batch_size)

    async def validate(self, candidates: Sequence[str]) -> Mapping[str, SetMatch]:
        unique = list(dict.fromkeys(candidates))
        results: dict[str, SetMatch] = {}
        failed: set[str] = set()

        for start in range(0, len(unique), self.batch_size):
            batch = unique[start : start + self.batch_size]
            try:
                records = await self.repository.find_catalog_sets_exact(batch)
            except RepositoryUnavailableError:
                raise
            except Exception:
                logger.warning("catalog exact batch lookup failed size=%s; retrying per candidate", len(batch), exc_info=True)
                records = await self._exact_one_by_one(batch, failed)
            for record in records:
                results[record.set_num] = SetMatch(catalog_id=record.id, set_num=record.set_num, match_type="exact")

        for candidate in unique:
            if candidate in results or candidate in failed:
                continue
            try:
                record = await self.repository.find_catalog_set_by_prefix(candidate)
            except RepositoryUnavailableError:
                raise
            except Exception:
                logger.warning("catalog prefix lookup failed candidate=%s", candidate, exc_info=True)
                continue
            if record is not None:
                results[candidate] = SetMatch(catalog_id=record.id, set_num=record.set_num, match_type="prefix")

        return MappingProxyType({candidate: results.get(candidate, UNRESOLVED) for candidate in unique})

    async def _exact_one_by_one(self, batch: list[str], failed: set[str]) -> list[CatalogSetRecord]:
        records: list[CatalogSetRecord] = []
        for candidate in batch:
            try:
                records.extend(await self.repository.find_catalog_sets_exact([candidate]))
            except RepositoryUnavailableError:
                raise
            except Exception:
                logger.warning("catalog exact lookup failed candidate=%s", candidate, exc_info=True)
                failed.add(candidate)
        return records
