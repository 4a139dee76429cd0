"""HTTP middleware: request ids, access logs, request metrics and traceparent."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.obs import logging as obs_logging
from app.obs import metrics
from app.settings import settings

try:  # pragma: no cover - optional dependency
	from opentelemetry import trace
except ImportError:  # pragma: no cover - otel optional
	trace = None  # type: ignore

REQUEST_ID_HEADER = "X-Request-Id"


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


def _traceparent() -> str | None:
	if trace is None:
		return None
	context = trace.get_current_span().get_span_context()
	if not context.is_valid:
		return None
	return f"00-{context.trace_id:032x}-{context.span_id:016x}-01"


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app) -> None:
		super().__init__(app)
		self._logger = obs_logging.get_logger("sehra.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not settings.obs_enabled:
			return await call_next(request)

		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		with obs_logging.bound_context(
			request_id=request_id,
			user_id=request.headers.get("X-User-Id"),
			client_ip=request.client.host if request.client else None,
		):
			start = time.perf_counter()
			status_code = 500
			try:
				response = await call_next(request)
				status_code = response.status_code
			except Exception:
				self._logger.exception("http_request_error", extra={"method": request.method, "path": request.url.path})
				raise
			finally:
				elapsed = time.perf_counter() - start
				route = _route_template(request)
				metrics.observe_request(route, request.method, status_code, elapsed)
				self._logger.info(
					"http_request",
					extra={"route": route, "status": status_code, "method": request.method, "latency_ms": round(elapsed * 1000, 3)},
				)
			response.headers.setdefault(REQUEST_ID_HEADER, request_id)
			traceparent = _traceparent()
			if traceparent:
				response.headers.setdefault("traceparent", traceparent)
			return response


def install(app) -> None:
	app.add_middleware(ObservabilityMiddleware)
