from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_api.core.config import Settings

SERVICE_NAME = "crm-api"

_exporters_attached = False
_provider: TracerProvider | None = None


def _get_or_create_provider(service_name: str, version: str = "0.1.0") -> TracerProvider:
    global _provider

    if _provider is not None:
        return _provider

    provider = TracerProvider(resource=Resource.create({"service.name": service_name, "service.version": version}))
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def configure_tracing(settings: Settings) -> TracerProvider | None:
    """Install the tracer provider and its exporters once per process."""
    global _exporters_attached

    if not settings.otel_enabled:
        return None

    provider = _get_or_create_provider(SERVICE_NAME, settings.app_version)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    provider = _get_or_create_provider(service_name)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def tag_current_span(**attributes: str | int | bool | None) -> None:
    span = trace.get_current_span()
    if not span.is_recording():
        return
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        headers = dict(scope.get("headers", []))
        raw = headers.get(b"x-correlation-id") or headers.get(b"x-request-id")
        if raw:
            span.set_attribute("correlation_id", raw.decode("utf-8"))

    return server_request_hook
