"""Tracing setup.

One ``TracerProvider`` is installed per process. Exporters are attached from
environment: ``OTEL_EXPORTER_OTLP_ENDPOINT`` adds a batched OTLP/HTTP exporter,
``OTEL_CONSOLE_EXPORTER=true`` echoes spans to stdout. Tests attach an
in-memory exporter instead.
"""

from __future__ import annotations

import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


_state: dict[str, Any] = {"provider": None, "exporters_attached": False}


def _provider(service_name: str) -> TracerProvider:
    if _state["provider"] is None:
        resource = Resource.create({"service.name": service_name, "service.version": os.getenv("APP_VERSION", "0.1.0")})
        _state["provider"] = TracerProvider(resource=resource)
        trace.set_tracer_provider(_state["provider"])
    return _state["provider"]


def configure_tracing(service_name: str, *, enabled: bool) -> TracerProvider | None:
    if not enabled:
        return None
    provider = _provider(service_name)
    if _state["exporters_attached"]:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _state["exporters_attached"] = True
    return provider


def install_inmemory_exporter(service_name: str = "quotedesk-api") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def correlation_request_hook(span: Any, scope: dict[str, Any]) -> None:
    """Copy ``X-Correlation-Id`` onto the server span before any middleware runs."""
    if span is None or not span.is_recording():
        return
    for name, value in scope.get("headers", ()):
        if name == b"x-correlation-id":
            span.set_attribute("correlation_id", value.decode("latin-1"))
            return
