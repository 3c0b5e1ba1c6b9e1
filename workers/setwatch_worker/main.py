from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from setwatch_worker.core.config import get_settings
from setwatch_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from setwatch_worker.jobs.sweeper import report_stale_stats, run_sweep
from setwatch_worker.services.job_client import JobClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = JobClient(base_url=settings.api_base_url, timeout_seconds=settings.request_timeout_seconds)

    backoff = settings.sweep_interval_seconds
    last_stats_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.sweep_cycle"):
                    await run_sweep(client)
                    now = time.monotonic()
                    if now - last_stats_at >= settings.stats_interval_seconds:
                        await report_stale_stats(client, settings.stale_alert_threshold)
                        last_stats_at = now
                backoff = settings.sweep_interval_seconds
                await asyncio.sleep(settings.sweep_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
