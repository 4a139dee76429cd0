"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.request_id import get_request_id
from app.domain.messaging.exceptions import MessagingError, RateLimitExceeded, StorageUnavailable

RETRY_AFTER_SECONDS = "1"


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(StarletteHTTPException)
	async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
		rid = get_request_id(request)
		payload = {"detail": exc.detail, "request_id": rid}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

	@app.exception_handler(RequestValidationError)
	async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
		rid = get_request_id(request)
		payload = {"detail": "validation_error", "errors": jsonable_encoder(exc.errors()), "request_id": rid}
		return JSONResponse(status_code=422, content=payload)

	@app.exception_handler(MessagingError)
	async def messaging_exc_handler(request: Request, exc: MessagingError):  # type: ignore[override]
		rid = get_request_id(request)
		headers = None
		if isinstance(exc, StorageUnavailable):
			headers = {"Retry-After": RETRY_AFTER_SECONDS}
		elif isinstance(exc, RateLimitExceeded) and exc.retry_after:
			headers = {"Retry-After": str(exc.retry_after)}
		payload = {"detail": exc.detail, "request_id": rid}
		return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)
