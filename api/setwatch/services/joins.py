from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
import logging
import re
from typing import Any, assert_never

logger = logging.getLogger(__name__)

DEFAULT_JOIN_NATURE = "mentioned"
YEAR_MATCH_RANGE = range(1990, 2051)
_YEAR_PREFIX_RE = re.compile(r"^\d{4}$", re.ASCII)


class CleanupPolicy(str, Enum):
    DELETE = "delete"
    SUPERSEDE = "supersede"
    KEEP = "keep"


@dataclass(slots=True)
class JoinWriteSummary:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    superseded: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


def potential_year_match(set_num: str) -> bool:
    """True when the part before the first dash reads like a year (``"2019-1"``)."""
    prefix = set_num.split("-", 1)[0]
    return bool(_YEAR_PREFIX_RE.match(prefix)) and int(prefix) in YEAR_MATCH_RANGE


class JoinService:
    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def create_joins(
        self,
        listing_id: str,
        matches: Iterable[Any],
        reconciliation_version: str,
        *,
        nature: str = DEFAULT_JOIN_NATURE,
        cleanup_policy: CleanupPolicy = CleanupPolicy.SUPERSEDE,
    ) -> JoinWriteSummary:
        """Write one active join per matched catalog entry for ``reconciliation_version``.

        ``matches`` are validator results; entries without a ``catalog_id`` are skipped.
        Active joins left by other versions are cleaned up first according to ``cleanup_policy``.
        """
        summary = JoinWriteSummary()
        await self._cleanup(listing_id, reconciliation_version, cleanup_policy, summary)

        seen: set[str] = set()
        for match in matches:
            catalog_id = getattr(match, "catalog_id", None)
            if catalog_id is None or catalog_id in seen:
                continue
            seen.add(catalog_id)
            year_match = potential_year_match(match.set_num)

            existing = await self.repository.get_active_join(listing_id, catalog_id)
            if existing is not None:
                await self.repository.update_join(
                    existing.id,
                    nature=nature,
                    reconciliation_version=reconciliation_version,
                    potential_year_match=year_match,
                )
                summary.updated += 1
                continue

            await self.repository.insert_join(
                listing_id=listing_id,
                catalog_set_id=catalog_id,
                nature=nature,
                reconciliation_version=reconciliation_version,
                potential_year_match=year_match,
            )
            summary.inserted += 1

        logger.debug(
            "joins written listing_id=%s version=%s inserted=%s updated=%s deleted=%s superseded=%s",
            listing_id,
            reconciliation_version,
            summary.inserted,
            summary.updated,
            summary.deleted,
            summary.superseded,
        )
        return summary

    async def _cleanup(
        self,
        listing_id: str,
        reconciliation_version: str,
        cleanup_policy: CleanupPolicy,
        summary: JoinWriteSummary,
    ) -> None:
        match cleanup_policy:
            case CleanupPolicy.DELETE:
                summary.deleted = await self.repository.delete_outdated_joins(listing_id, reconciliation_version)
            case CleanupPolicy.SUPERSEDE:
                summary.superseded = await self.repository.supersede_outdated_joins(
                    listing_id, reconciliation_version
                )
            case CleanupPolicy.KEEP:
                pass
            case _:
                assert_never(cleanup_policy)
