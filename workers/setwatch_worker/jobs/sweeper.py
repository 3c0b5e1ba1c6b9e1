from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepOutcome:
    jobs_updated: int
    job_ids: list[str]


def parse_sweep_response(payload: dict[str, Any]) -> SweepOutcome:
    job_ids = [str(job_id) for job_id in payload.get("job_ids") or []]
    return SweepOutcome(jobs_updated=int(payload.get("jobs_updated", len(job_ids))), job_ids=job_ids)


def oldest_running_minutes(stats: dict[str, Any], now: datetime | None = None) -> float | None:
    oldest = stats.get("oldest_running_job")
    if not oldest:
        return None
    if isinstance(oldest, str):
        oldest = datetime.fromisoformat(oldest.replace("Z", "+00:00"))
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - oldest).total_seconds() / 60.0)


def should_alert(stats: dict[str, Any], threshold: int) -> bool:
    """A backlog of stale-looking jobs that survives a sweep usually means a stage service is down."""
    return threshold > 0 and int(stats.get("potentially_stale", 0)) >= threshold


async def run_sweep(client: Any) -> SweepOutcome:
    outcome = parse_sweep_response(await client.sweep_stale_jobs())
    if outcome.jobs_updated:
        logger.warning("stale jobs timed out count=%s job_ids=%s", outcome.jobs_updated, ",".join(outcome.job_ids))
    return outcome


async def report_stale_stats(client: Any, threshold: int) -> dict[str, Any]:
    stats = await client.get_stale_job_stats()
    age = oldest_running_minutes(stats)
    if should_alert(stats, threshold):
        logger.warning(
            "stale job backlog running=%s potentially_stale=%s oldest_minutes=%s",
            stats.get("running_jobs"),
            stats.get("potentially_stale"),
            f"{age:.1f}" if age is not None else "n/a",
        )
    else:
        logger.info(
            "job stats running=%s potentially_stale=%s",
            stats.get("running_jobs"),
            stats.get("potentially_stale"),
        )
    return stats
