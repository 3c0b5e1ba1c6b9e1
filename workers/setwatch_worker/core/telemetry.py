from __future__ import annotations

from setwatch.core.telemetry import (
    HTTPX_INSTRUMENTOR,
    TelemetryRuntime,
    build_tracer_provider,
    configure_logging,
    shutdown_provider,
)
from setwatch_worker.core.config import Settings


def configure_worker_logging() -> None:
    configure_logging()


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    provider = build_tracer_provider(
        service_name=settings.otel_service_name,
        environment=settings.environment,
        sample_ratio=settings.otel_trace_sample_ratio,
        exporter_endpoint=settings.otel_exporter_otlp_endpoint,
        exporter_headers=settings.otel_exporter_otlp_headers,
    )
    HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        shutdown_provider(runtime)
