"""Structured JSON logging with per-request and per-connection context."""

from __future__ import annotations

import json
import logging
import random
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional

from app.settings import settings

try:  # pragma: no cover - otel optional
	from opentelemetry import trace as otel_trace
except ImportError:  # pragma: no cover - optional dependency
	otel_trace = None  # type: ignore

_LOGGER_NAME = "sehra"

# request_id, route, user_id, client_ip, connection_id
_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("obs_context", default={})

# Message text never reaches the logs, only ids and counts.
_REDACTED_KEYS = ("token", "secret", "authorization", "password", "content", "preview", "body", "payload")
_MAX_STRING_LENGTH = 256

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}


def bind_context(**fields: Optional[str]) -> Token:
	"""Layer fields over the current context; pass the token to reset_context."""
	merged = dict(_CONTEXT.get())
	merged.update({key: str(value) for key, value in fields.items() if value is not None})
	return _CONTEXT.set(merged)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


@contextmanager
def bound_context(**fields: Optional[str]) -> Iterator[None]:
	token = bind_context(**fields)
	try:
		yield
	finally:
		reset_context(token)


def current_context() -> Dict[str, str]:
	return dict(_CONTEXT.get())


def current_request_id() -> Optional[str]:
	return _CONTEXT.get().get("request_id")


def _scrub(key: str, value: Any) -> Any:
	if any(word in key.lower() for word in _REDACTED_KEYS):
		return "[redacted]"
	if isinstance(value, str) and len(value) > _MAX_STRING_LENGTH:
		return value[:_MAX_STRING_LENGTH] + "…"
	if isinstance(value, dict):
		return {str(k): _scrub(str(k), v) for k, v in value.items()}
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: context first, then the record's extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, object] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
		}
		payload.update(_CONTEXT.get())
		if otel_trace is not None:
			context = otel_trace.get_current_span().get_span_context()
			if context.is_valid:
				payload["trace_id"] = f"{context.trace_id:032x}"
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _RECORD_ATTRS or key.startswith("_"):
				continue
			payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Randomly sample info-level logs, keep warnings/errors."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	"""Configure root logger with JSON formatting and sampling."""
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
