"""Request ID helper for endpoints and error handlers."""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from app.obs import logging as obs_logging


def get_request_id(request: Optional[Request] = None, default: str = "unknown") -> str:
	"""Return the id the observability middleware bound for this request.

	Falls back to request.state and then the inbound header when the logging
	context is not bound, e.g. with observability disabled.
	"""
	rid = obs_logging.current_request_id()
	if rid:
		return rid
	if request is not None:
		rid = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
	return rid or default
