from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.infra import idempotency
from app.infra.idempotency import (
	IdempotencyConflictError,
	IdempotencyInProgressError,
	IdempotencyUnavailableError,
)
from app.infra.redis import redis_client
from app.settings import settings


@pytest.mark.asyncio
async def test_first_use_reserves_and_replay_returns_result():
	digest = idempotency.hash_payload('{"content": "hi"}')

	assert await idempotency.begin("bride:k1", "messages.send", payload_hash=digest) is None
	await idempotency.complete("bride:k1", "messages.send", "42")

	assert await idempotency.begin("bride:k1", "messages.send", payload_hash=digest) == {"result_id": "42"}


@pytest.mark.asyncio
async def test_reuse_with_different_payload_conflicts():
	await idempotency.begin("bride:k2", "messages.send", payload_hash=idempotency.hash_payload("a"))

	with pytest.raises(IdempotencyConflictError):
		await idempotency.begin("bride:k2", "messages.send", payload_hash=idempotency.hash_payload("b"))


@pytest.mark.asyncio
async def test_key_expires_with_ttl(fake_redis):
	await idempotency.begin("bride:k3", "messages.send", payload_hash="x", ttl_s=30)

	assert 0 < await fake_redis.ttl("idem:messages.send:bride:k3") <= 30


@pytest.mark.asyncio
async def test_unavailable_store_tolerated_in_dev(monkeypatch):
	monkeypatch.setattr(redis_client.client, "set", AsyncMock(side_effect=RedisConnectionError("down")))

	assert await idempotency.begin("bride:k4", "messages.send", payload_hash="x") is None


@pytest.mark.asyncio
async def test_unavailable_store_fails_closed_in_production(monkeypatch):
	monkeypatch.setattr(redis_client.client, "set", AsyncMock(side_effect=RedisConnectionError("down")))
	settings.environment = "production"

	with pytest.raises(IdempotencyUnavailableError):
		await idempotency.begin("bride:k5", "messages.send", payload_hash="x")


@pytest.mark.asyncio
async def test_reserved_key_without_result_is_in_progress():
	await idempotency.begin("bride:k6", "messages.send", payload_hash="x")

	with pytest.raises(IdempotencyInProgressError):
		await idempotency.begin("bride:k6", "messages.send", payload_hash="x")


@pytest.mark.asyncio
async def test_release_frees_unfinished_key_only():
	await idempotency.begin("bride:k7", "messages.send", payload_hash="x")
	await idempotency.release("bride:k7", "messages.send")
	assert await idempotency.begin("bride:k7", "messages.send", payload_hash="x") is None

	await idempotency.complete("bride:k7", "messages.send", "7")
	await idempotency.release("bride:k7", "messages.send")
	assert await idempotency.begin("bride:k7", "messages.send", payload_hash="x") == {"result_id": "7"}
