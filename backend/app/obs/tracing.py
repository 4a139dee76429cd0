"""Distributed tracing setup (OpenTelemetry) for the backend."""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Any, ContextManager, Optional

from fastapi import FastAPI

from app.settings import settings

try:  # pragma: no cover - installed through the "tracing" extra
	from opentelemetry import trace
	from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
	from opentelemetry.instrumentation.asyncpg import AsyncPGInstrumentor
	from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
	from opentelemetry.instrumentation.redis import RedisInstrumentor
	from opentelemetry.sdk.resources import Resource
	from opentelemetry.sdk.trace import TracerProvider
	from opentelemetry.sdk.trace.export import BatchSpanProcessor
	export_available = True
except ImportError:  # pragma: no cover - tracing extra not installed
	export_available = False
	trace = None  # type: ignore


LOGGER = logging.getLogger(__name__)
_instrumented = False


def init_tracing(app: FastAPI) -> Optional[Any]:
	"""Initialise OpenTelemetry tracing if enabled and dependencies present."""
	global _instrumented
	if not settings.obs_tracing_enabled:
		LOGGER.debug("tracing_disabled")
		return None
	if not export_available or trace is None:
		LOGGER.warning("tracing_unavailable", extra={"reason": "opentelemetry_missing"})
		return None
	if settings.otel_exporter_otlp_endpoint is None:
		LOGGER.warning("tracing_unavailable", extra={"reason": "otlp_endpoint_unset"})
		return None
	if _instrumented:
		return trace.get_tracer_provider()

	resource = Resource.create(
		{
			"service.name": settings.service_name,
			"service.version": settings.git_commit,
			"deployment.environment": settings.environment,
		}
	)
	provider = TracerProvider(resource=resource)
	provider.add_span_processor(
		BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True))
	)
	trace.set_tracer_provider(provider)

	FastAPIInstrumentor.instrument_app(app)
	AsyncPGInstrumentor().instrument()
	RedisInstrumentor().instrument()

	_instrumented = True
	LOGGER.info("tracing_initialised", extra={"endpoint": settings.otel_exporter_otlp_endpoint})
	return provider


def shutdown_tracing() -> None:
	if not export_available or trace is None:
		return
	provider = trace.get_tracer_provider()
	if hasattr(provider, "shutdown"):
		provider.shutdown()


def span(name: str, **attributes: Any) -> ContextManager[Any]:
	"""Span around a messaging operation; a no-op until tracing is initialised."""
	if not _instrumented or trace is None:
		return nullcontext()
	tracer = trace.get_tracer(settings.service_name)
	return tracer.start_as_current_span(f"messaging.{name}", attributes=attributes)
