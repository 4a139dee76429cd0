"""Custom exceptions for the messaging core."""

from __future__ import annotations

from fastapi import status


class MessagingError(Exception):
	"""Base class for messaging errors."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "messaging_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class ValidationError(MessagingError):
	"""Malformed send request: empty content, self-addressed, oversized."""

	status_code = status.HTTP_400_BAD_REQUEST
	detail = "validation_error"


class AuthError(MessagingError):
	"""Missing or invalid identity on a connection or API call."""

	status_code = status.HTTP_401_UNAUTHORIZED
	detail = "invalid_token"


class StorageUnavailable(MessagingError):
	"""Persistence unreachable; the caller may retry."""

	status_code = status.HTTP_503_SERVICE_UNAVAILABLE
	detail = "storage_unavailable"


class RateLimitExceeded(MessagingError):
	status_code = status.HTTP_429_TOO_MANY_REQUESTS
	detail = "rate_limited"

	def __init__(self, detail: str | None = None, *, retry_after: int | None = None) -> None:
		super().__init__(detail)
		self.retry_after = retry_after


class NotFoundError(MessagingError):
	status_code = status.HTTP_404_NOT_FOUND
	detail = "message_not_found"
