from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime, timezone
from functools import lru_cache
import logging
from typing import Protocol

from opentelemetry import trace

from setwatch.core.config import Settings, get_settings
from setwatch.schemas.jobs import Job, JobMetadata
from setwatch.services.handlers import build_stage_handlers
from setwatch.services.job_tracker import JobTracker
from setwatch.services.repository import RepositoryConflictError, get_repository
from setwatch.services.stages import JobStatus, StageType

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MetadataResolver = Callable[[StageType], Awaitable[tuple[JobMetadata, str]]]


class StageHandler(Protocol):
    async def __call__(self, job: Job) -> None: ...


class StageDispatcher:
    """Create stage jobs and run their handlers in the background.

    The job row is written before the caller gets control back, so a second trigger for the
    same dataset already sees it as running. Handlers either finish the job themselves
    (in-process stages) or leave it running for an external service to call back.
    """

    def __init__(
        self,
        tracker: JobTracker,
        handlers: Mapping[StageType, StageHandler],
        *,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.tracker = tracker
        self.handlers = dict(handlers)
        self.poll_interval_seconds = max(0.0, poll_interval_seconds)
        self._tasks: set[asyncio.Task[None]] = set()
        self._chains: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def dispatch(
        self,
        stage: StageType,
        metadata: JobMetadata,
        *,
        dataset_id: str | None = None,
        marketplace: str = "ebay",
    ) -> Job:
        job = await self.tracker.create_job(stage, metadata, dataset_id=dataset_id, marketplace=marketplace)
        self._spawn(self.run_stage(job), name=f"stage:{stage.value}:{job.id}")
        return job

    async def dispatch_chain(
        self,
        stages: Sequence[StageType],
        resolve_metadata: MetadataResolver,
        *,
        dataset_id: str,
    ) -> Job:
        """Start ``stages`` in order; only the first job is created before returning."""
        if not stages:
            raise ValueError("dispatch_chain requires at least one stage")
        first, *rest = stages
        metadata, marketplace = await resolve_metadata(first)
        job = await self.tracker.create_job(first, metadata, dataset_id=dataset_id, marketplace=marketplace)
        task = self._spawn(
            self._run_chain(job, list(rest), resolve_metadata, dataset_id),
            name=f"chain:{dataset_id}",
        )
        self._chains.add(task)
        task.add_done_callback(self._chains.discard)
        return job

    async def run_stage(self, job: Job) -> None:
        handler = self.handlers.get(job.stage)
        if handler is None:
            await self.tracker.fail_job(job.id, f"no handler registered for stage {job.stage.value}")
            return
        with tracer.start_as_current_span("stage.run") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.stage", job.stage.value)
            try:
                await handler(job)
            except Exception as exc:
                logger.exception("stage handler failed job_id=%s stage=%s", job.id, job.stage.value)
                await self.tracker.fail_job(job.id, str(exc) or exc.__class__.__name__)

    async def wait_for_terminal(self, job_id: str) -> Job:
        """Poll until the job leaves ``running``, failing it once ``timeout_at`` has passed."""
        while True:
            job = await self.tracker.get_job(job_id)
            if not job.is_running:
                return job
            now = datetime.now(timezone.utc)
            if job.timeout_at is not None and job.timeout_at <= now:
                minutes = int((now - job.started_at).total_seconds() // 60)
                await self.tracker.fail_job(job.id, f"Job timed out after {minutes} minutes")
                return await self.tracker.get_job(job_id)
            await asyncio.sleep(self.poll_interval_seconds)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel pipeline chains, then wait for the stage tasks still running."""
        for task in list(self._chains):
            logger.info("pipeline chain cancelled task=%s", task.get_name())
            task.cancel()
        await self.drain()

    async def _run_chain(
        self,
        job: Job,
        remaining: list[StageType],
        resolve_metadata: MetadataResolver,
        dataset_id: str,
    ) -> None:
        while True:
            await self.run_stage(job)
            finished = await self.wait_for_terminal(job.id)
            if finished.status is not JobStatus.COMPLETED:
                logger.warning(
                    "pipeline chain stopped dataset_id=%s stage=%s status=%s",
                    dataset_id,
                    finished.stage.value,
                    finished.status.value,
                )
                return
            if not remaining:
                logger.info("pipeline chain finished dataset_id=%s", dataset_id)
                return
            stage = remaining.pop(0)
            metadata, marketplace = await resolve_metadata(stage)
            try:
                job = await self.tracker.create_job(stage, metadata, dataset_id=dataset_id, marketplace=marketplace)
            except RepositoryConflictError:
                logger.warning("pipeline chain stopped dataset_id=%s stage=%s reason=already_running", dataset_id, stage.value)
                return

    def _spawn(self, coro: Awaitable[None], *, name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(coro: Awaitable[None], name: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("background stage task failed task=%s", name)


@lru_cache
def get_dispatcher() -> StageDispatcher:
    settings: Settings = get_settings()
    repository = get_repository()
    tracker = JobTracker(repository, settings)
    return StageDispatcher(
        tracker,
        build_stage_handlers(repository, tracker, settings),
        poll_interval_seconds=settings.chain_poll_interval_seconds,
    )
