from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from bounty_indexer.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16

_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_rpc_instrumentor = HTTPXClientInstrumentor()


@dataclass(frozen=True, slots=True)
class ExportTarget:
    endpoint: str
    headers: dict[str, str] = field(default_factory=dict)

    def exporter(self) -> OTLPSpanExporter:
        if self.headers:
            return OTLPSpanExporter(endpoint=self.endpoint, headers=self.headers)
        return OTLPSpanExporter(endpoint=self.endpoint)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    target: ExportTarget | None = None

    @property
    def exporting(self) -> bool:
        return self.target is not None


def configure_indexer_logging(level: int = logging.INFO) -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def resolve_export_target(settings: Settings) -> ExportTarget | None:
    """Pick the OTLP endpoint from settings, falling back to the standard OTEL_* variables."""
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        return None
    raw_headers = settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS")
    return ExportTarget(endpoint=endpoint, headers=parse_otlp_headers(raw_headers))


def setup_indexer_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        logger.info("telemetry disabled service=%s", settings.otel_service_name)
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    resource = Resource.create({SERVICE_NAME: settings.otel_service_name, DEPLOYMENT_ENVIRONMENT: settings.environment})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    target = resolve_export_target(settings)
    if target is not None:
        provider.add_span_processor(BatchSpanProcessor(target.exporter()))
    trace.set_tracer_provider(provider)
    # ledger RPC calls become child spans of the sync spans
    _rpc_instrumentor.instrument()

    runtime = TelemetryRuntime(enabled=True, provider=provider, target=target)
    if runtime.exporting:
        logger.info(
            "telemetry enabled service=%s sample_ratio=%s exporting to %s",
            settings.otel_service_name,
            settings.otel_trace_sample_ratio,
            target.endpoint,
        )
    else:
        logger.info(
            "telemetry enabled service=%s sample_ratio=%s; no OTLP endpoint, spans stay local",
            settings.otel_service_name,
            settings.otel_trace_sample_ratio,
        )
    return runtime


def shutdown_indexer_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _rpc_instrumentor.uninstrument()
    if runtime.provider is None:
        return
    if runtime.exporting:
        runtime.provider.force_flush()
    runtime.provider.shutdown()


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""
    if not raw:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            continue
        parsed[key.strip()] = value.strip()
    return parsed


def _stamp_trace_context(record: logging.LogRecord) -> logging.LogRecord:
    context = trace.get_current_span().get_span_context()
    record.trace_id = format(context.trace_id, "032x") if context.is_valid else _NO_TRACE_ID
    record.span_id = format(context.span_id, "016x") if context.is_valid else _NO_SPAN_ID
    return record


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return
    logging.setLogRecordFactory(lambda *args, **kwargs: _stamp_trace_context(_base_record_factory(*args, **kwargs)))
    _correlation_installed = True
