"""Idempotency keys for write endpoints, held in Redis with a TTL."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Optional

from redis.exceptions import RedisError

from app.infra.redis import redis_client
from app.obs import metrics as obs_metrics
from app.settings import settings

LOGGER = logging.getLogger(__name__)


class IdempotencyConflictError(Exception):
	"""Raised when an idempotency key is replayed with a conflicting payload."""


class IdempotencyInProgressError(Exception):
	"""Raised when a key is reserved but its first request has not finished."""


class IdempotencyUnavailableError(Exception):
	"""Raised when idempotency storage is unavailable but required."""


def hash_payload(s: str) -> str:
	return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _key(handler: str, key: str) -> str:
	return f"idem:{handler}:{key}"


def _unavailable() -> None:
	obs_metrics.inc_idem_unavail()
	LOGGER.warning("idempotency_store_unavailable")
	if settings.idempotency_required and not settings.is_dev():
		raise IdempotencyUnavailableError("idempotency_unavailable")


async def begin(
	key: str,
	handler: str,
	*,
	payload_hash: Optional[str],
	ttl_s: int | None = None,
) -> Optional[dict[str, str]]:
	"""Reserve or replay an idempotency key.

	Returns `{"result_id": ...}` when the key already completed with the same
	payload, None when the caller should go ahead and do the work. A key that
	is reserved but not yet completed raises IdempotencyInProgressError.
	"""
	ttl = ttl_s or settings.idempotency_ttl_seconds
	redis_key = _key(handler, key)
	record = json.dumps({"payload_hash": payload_hash, "result_id": None})
	try:
		reserved = await redis_client.set(redis_key, record, ex=ttl, nx=True)
		existing = None if reserved else await redis_client.get(redis_key)
	except (RedisError, OSError):
		_unavailable()
		return None
	if reserved or not existing:
		obs_metrics.inc_idem_miss()
		return None
	data = json.loads(existing)
	existing_hash = data.get("payload_hash")
	if payload_hash and existing_hash and existing_hash != payload_hash:
		obs_metrics.inc_idem_conflict()
		raise IdempotencyConflictError("idempotency_conflict")
	result_id = data.get("result_id")
	if result_id is None:
		obs_metrics.inc_idem_conflict()
		raise IdempotencyInProgressError("idempotency_in_progress")
	obs_metrics.inc_idem_hit()
	return {"result_id": str(result_id)}


async def complete(key: str, handler: str, result_id: str) -> None:
	redis_key = _key(handler, key)
	try:
		existing = await redis_client.get(redis_key)
		data = json.loads(existing) if existing else {"payload_hash": None}
		data["result_id"] = str(result_id)
		if existing:
			await redis_client.set(redis_key, json.dumps(data), keepttl=True)
		else:
			await redis_client.set(redis_key, json.dumps(data), ex=settings.idempotency_ttl_seconds)
	except (RedisError, OSError):
		_unavailable()


async def release(key: str, handler: str) -> None:
	"""Drop an unfinished reservation so the same key can be retried."""
	redis_key = _key(handler, key)
	try:
		existing = await redis_client.get(redis_key)
		if existing and json.loads(existing).get("result_id") is None:
			await redis_client.delete(redis_key)
	except (RedisError, OSError):
		obs_metrics.inc_idem_unavail()
		LOGGER.warning("idempotency_release_failed", extra={"handler": handler})
