from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crmcore.context import CORRELATION_HEADER, is_valid_correlation_id


_provider: TracerProvider | None = None
_exporters_installed = False


def _get_or_create_provider(service_name: str) -> TracerProvider:
    """The global tracer provider can be set once per process; reuse it afterwards."""
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
                "deployment.environment": os.getenv("APP_ENV", "local"),
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def _processors_from_env() -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_installed

    if not enable:
        return None

    provider = _get_or_create_provider(service_name)
    if not _exporters_installed:
        for processor in _processors_from_env():
            provider.add_span_processor(processor)
        _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "crmcore") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _get_or_create_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def annotate_current_span(**attributes: Any) -> None:
    span = trace.get_current_span()
    if not span.is_recording():
        return
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def get_fastapi_server_request_hook():
    header = CORRELATION_HEADER.encode("latin-1")

    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        raw = dict(scope.get("headers", [])).get(header)
        if not raw:
            return
        correlation_id = raw.decode("latin-1")
        if is_valid_correlation_id(correlation_id):
            span.set_attribute("correlation_id", correlation_id)

    return server_request_hook
