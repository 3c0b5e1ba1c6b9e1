from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class StageType(str, Enum):
    CAPTURE = "capture"
    ENRICH = "enrich"
    MATERIALIZE = "materialize"
    SANITIZE = "sanitize"
    RECONCILE = "reconcile"
    ANALYZE = "analyze"
    CATALOG_REFRESH = "catalog_refresh"


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# The one place the pipeline order is declared. catalog_refresh runs outside the pipeline.
PIPELINE_ORDER: tuple[StageType, ...] = (
    StageType.CAPTURE,
    StageType.ENRICH,
    StageType.MATERIALIZE,
    StageType.SANITIZE,
    StageType.RECONCILE,
    StageType.ANALYZE,
)

# Stages that need parameters only a human can supply.
MANUAL_ONLY_STAGES: frozenset[StageType] = frozenset({StageType.CAPTURE})

# Stages that consume the output of the most recent completed capture.
CAPTURE_DEPENDENT_STAGES: frozenset[StageType] = frozenset({StageType.ENRICH, StageType.MATERIALIZE})


def next_stage(completed: Iterable[StageType | str]) -> StageType | None:
    """Return the first pipeline stage missing from ``completed``, or None when all are done."""
    done = {StageType(stage) for stage in completed}
    for stage in PIPELINE_ORDER:
        if stage not in done:
            return stage
    return None


def remaining_stages(completed: Iterable[StageType | str]) -> tuple[StageType, ...]:
    done = {StageType(stage) for stage in completed}
    return tuple(stage for stage in PIPELINE_ORDER if stage not in done)


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) is not JobStatus.RUNNING
