from __future__ import annotations

import os
from importlib.metadata import PackageNotFoundError, version
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


DISTRIBUTION_NAME = "advisor-crm-api"

_provider: TracerProvider | None = None
_exporters_installed = False


def _service_version() -> str:
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return os.getenv("APP_VERSION", "0.1.0")


def _tracer_provider(service_name: str, environment: str | None = None) -> TracerProvider:
    global _provider

    if _provider is None:
        attributes: dict[str, Any] = {
            "service.name": service_name,
            "service.version": _service_version(),
        }
        if environment:
            attributes["deployment.environment"] = environment
        _provider = TracerProvider(resource=Resource.create(attributes))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str, enable: bool, environment: str | None = None) -> TracerProvider | None:
    """Install span exporters once per process.

    ``OTEL_EXPORTER_OTLP_ENDPOINT`` ships spans over OTLP/HTTP in batches and
    ``OTEL_CONSOLE_EXPORTER=true`` echoes each span to stdout.
    """
    global _exporters_installed

    if not enable:
        return None

    provider = _tracer_provider(service_name, environment)
    if _exporters_installed:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "advisor-crm-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _tracer_provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        for name, value in scope.get("headers", []):
            if name == b"x-correlation-id":
                span.set_attribute("correlation_id", value.decode("utf-8", errors="replace"))
                break

    return server_request_hook
