"""OpenTelemetry initialization and span helpers for sync passes."""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import Iterator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "almanac"

_installed_endpoint: str | None = None


def init_telemetry(service_name: str = "almanac") -> trace.Tracer:
    """Return a tracer, exporting over OTLP gRPC when an endpoint is configured.

    The global TracerProvider is installed at most once per process; without
    ``OTEL_EXPORTER_OTLP_ENDPOINT`` spans go to OpenTelemetry's no-op tracer.
    """
    global _installed_endpoint

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and _installed_endpoint is None:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _installed_endpoint = endpoint
        logger.info("Exporting sync spans to %s", endpoint)
    elif not endpoint:
        logger.debug("No OTLP endpoint configured; sync spans are not exported")
    return trace.get_tracer(service_name)


@contextlib.contextmanager
def sync_span(name: str, *, scope_id: str, **attributes: str | int | bool) -> Iterator[trace.Span]:
    """Open a span named ``almanac.<name>`` tagged with the sync scope.

    Exceptions are recorded on the span and the status set to ERROR before
    the exception propagates.
    """
    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(
        f"almanac.{name}",
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        span.set_attribute("almanac.scope", scope_id)
        for key, value in attributes.items():
            span.set_attribute(f"almanac.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
