"""OpenTelemetry initialization and span helpers for sync operations."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "compass"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with OTLP gRPC exporter on the first call. Later calls reuse the installed
    provider.

    Args:
        service_name: Service name for tracing (e.g., "compass-sync")

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(service_name)


class sync_span:
    """Create an OpenTelemetry span for a sync engine operation.

    Used as a context manager::

        with sync_span("import.calendar", user_id=user_id, calendar_id=calendar_id):
            ...

    The span is named ``compass.sync.<operation>``. Exceptions are recorded
    on the span and its status set to ERROR before the exception propagates.
    The current user id is also bound into the logging context.
    """

    def __init__(self, operation: str, *, user_id: str | None = None, **attributes: str) -> None:
        self._operation = operation
        self._user_id = user_id
        self._attributes = attributes
        self._span_name = f"compass.sync.{operation}"
        self._span: trace.Span | None = None
        self._token: object | None = None
        self._log_token: object | None = None

    def __enter__(self) -> trace.Span:
        from compass.core.logging import bind_user_context

        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        if self._user_id is not None:
            self._span.set_attribute("compass.user_id", self._user_id)
            self._log_token = bind_user_context(self._user_id)
        for key, value in self._attributes.items():
            self._span.set_attribute(f"compass.{key}", value)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        from compass.core.logging import reset_user_context

        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)
        if self._log_token is not None:
            reset_user_context(self._log_token)
