from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import TYPE_CHECKING

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from senseflow.core.config import Settings

if TYPE_CHECKING:
    from senseflow.schemas.calls import BatchResult

ATTR_API_BASE_URL = "senseflow.api.base_url"
ATTR_BATCH_SIZE = "senseflow.batch.size"
ATTR_BATCH_CONTINUE_ON_FAIL = "senseflow.batch.continue_on_fail"
ATTR_BATCH_READY = "senseflow.batch.ready"
ATTR_BATCH_NOT_READY = "senseflow.batch.not_ready"
ATTR_ITEM_INDEX = "senseflow.item.index"
ATTR_ITEM_OPERATION = "senseflow.item.operation"
ATTR_ITEM_ROUTE = "senseflow.item.route"
ATTR_CALL_ID = "senseflow.call.id"
ATTR_CALL_STATUS = "senseflow.call.status"

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def configure_logging() -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s",
    )


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                ATTR_API_BASE_URL: settings.api_base_url,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # Outgoing phone-call requests become child spans of the item spans.
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    if settings.otel_exporter_otlp_endpoint:
        headers = parse_headers(settings.otel_exporter_otlp_headers)
        return OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, headers=headers or None)
    if os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        # The exporter reads endpoint and headers from the standard variables itself.
        return OTLPSpanExporter()
    logging.getLogger(__name__).info(
        "OTel exporter endpoint not set; spans remain local-only for service=%s",
        settings.otel_service_name,
    )
    return None


def parse_headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def mark_batch_started(span: Span, *, size: int, continue_on_fail: bool) -> None:
    span.set_attribute(ATTR_BATCH_SIZE, size)
    span.set_attribute(ATTR_BATCH_CONTINUE_ON_FAIL, continue_on_fail)


def mark_batch_finished(span: Span, result: BatchResult) -> None:
    span.set_attribute(ATTR_BATCH_READY, len(result.ready))
    span.set_attribute(ATTR_BATCH_NOT_READY, len(result.not_ready))


def mark_item(
    span: Span,
    *,
    index: int,
    operation: str | None = None,
    call_id: str | None = None,
    route: str | None = None,
    call_status: object = None,
) -> None:
    span.set_attribute(ATTR_ITEM_INDEX, index)
    if operation:
        span.set_attribute(ATTR_ITEM_OPERATION, operation)
    if call_id:
        span.set_attribute(ATTR_CALL_ID, call_id)
    if route:
        span.set_attribute(ATTR_ITEM_ROUTE, route)
    if call_status is not None:
        span.set_attribute(ATTR_CALL_STATUS, str(call_status))


def mark_item_failed(span: Span, exc: BaseException) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, f"{type(exc).__name__}: {exc}"))


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
