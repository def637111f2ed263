"""Optional observability.

``OBSERVABILITY`` selects the backend:

- ``"logfire"``: Pydantic Logfire (needs ``LOGFIRE_TOKEN``)
- ``"otel"``: OpenTelemetry traces over OTLP/HTTP
- ``"off"``: nothing (default)

Both backends are optional dependencies and are imported lazily.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI
from loguru import logger

if TYPE_CHECKING:
    from pydantic_ai.models.instrumented import InstrumentationSettings

    from marketplace_assistant.config import Settings

SERVICE_VERSION = "0.3.0"


def is_observability_active(settings: Settings) -> bool:
    """Return True when any observability backend is enabled."""
    return settings.observability.lower() in ("logfire", "otel")


def setup_telemetry(app: FastAPI, settings: Settings) -> None:
    """Instrument the FastAPI app for the configured backend (no-op when off)."""
    mode = settings.observability.lower()
    if mode == "off":
        logger.info("Observability disabled (OBSERVABILITY=off)")
    elif mode == "logfire":
        _setup_logfire(app, settings)
    elif mode == "otel":
        _setup_otel(app, settings)
    else:
        logger.warning("Unknown observability mode '{}', disabling", mode)


def _setup_logfire(app: FastAPI, settings: Settings) -> None:
    import logfire

    logfire.configure(service_name=settings.otel_service_name, service_version=SERVICE_VERSION)
    logfire.instrument_fastapi(app)
    logfire.instrument_pydantic_ai()
    logger.info("Logfire enabled | service={}", settings.otel_service_name)


def _setup_otel(app: FastAPI, settings: Settings) -> None:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.otel_service_name, "service.version": SERVICE_VERSION}
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=f"{settings.otel_exporter_otlp_endpoint}/v1/traces")
        )
    )
    if settings.otel_console_exporter:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    logger.info(
        "OpenTelemetry enabled | service={} endpoint={}",
        settings.otel_service_name,
        settings.otel_exporter_otlp_endpoint,
    )


def get_instrumentation_settings(settings: Settings) -> InstrumentationSettings | None:
    """PydanticAI instrumentation for agents, or None when observability is off."""
    if not is_observability_active(settings):
        return None

    from pydantic_ai.models.instrumented import InstrumentationSettings

    return InstrumentationSettings()
