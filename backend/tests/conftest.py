import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Settings are read at import time; the app needs a secret and in-process backends.
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("MESSAGE_STORE_BACKEND", "memory")
os.environ.setdefault("DIRECTORY_BACKEND", "memory")
os.environ.setdefault("ENV", "dev")

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from app.domain.messaging.connections import ConnectionManager
from app.domain.messaging.directory import InMemoryUserDirectory
from app.domain.messaging.service import MessagingService, set_service
from app.domain.messaging.store import InMemoryMessageStore
from app.infra import postgres
from app.main import app
from app.settings import settings


class RecordingHandle:
	"""Connection handle that records every event pushed to it."""

	def __init__(self, handle_id: str, *, fail: bool = False) -> None:
		self.handle_id = handle_id
		self.fail = fail
		self.events: list[tuple[str, dict]] = []

	async def send(self, event: str, payload: dict) -> None:
		if self.fail:
			raise ConnectionResetError("socket gone")
		self.events.append((event, payload))

	def named(self, event: str) -> list[dict]:
		return [payload for name, payload in self.events if name == event]


@pytest.fixture
def make_handle():
	return RecordingHandle


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from app.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests authenticate via X-User-Id/X-User-Role headers, which are only
	accepted in dev mode.
	"""
	original_env = settings.environment
	original_backend = settings.message_store_backend
	settings.environment = "dev"
	settings.message_store_backend = "memory"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.message_store_backend = original_backend


@pytest.fixture
def directory():
	return InMemoryUserDirectory()


@pytest.fixture(autouse=True)
def messaging(directory):
	service = MessagingService(
		store=InMemoryMessageStore(),
		connections=ConnectionManager(send_timeout=0.5),
		directory=directory,
	)
	set_service(service)
	try:
		yield service
	finally:
		set_service(None)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
