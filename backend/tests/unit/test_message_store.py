import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.messaging.exceptions import ValidationError
from app.domain.messaging.models import HistoryCursor
from app.domain.messaging.store import InMemoryMessageStore, build_store, validate_new_message


class SteppingClock:
	def __init__(self, start: datetime) -> None:
		self.now = start

	def __call__(self) -> datetime:
		return self.now

	def advance(self, seconds: float = 1.0) -> None:
		self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
	return SteppingClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
	return InMemoryMessageStore(max_length=100, clock=clock)


@pytest.mark.asyncio
async def test_append_assigns_increasing_ids_and_defaults(store):
	first = await store.append("bride-1", "vendor-1", "  Hello there  ")
	second = await store.append("vendor-1", "bride-1", "Hi!", "quote")

	assert first.id < second.id
	assert first.content == "Hello there"
	assert first.message_type == "text"
	assert second.message_type == "quote"
	assert first.read is False and first.read_at is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
	("sender", "recipient", "content", "detail"),
	[
		("u1", "u1", "hi", "self_message"),
		("u1", "u2", "   ", "empty_content"),
		("u1", "", "hi", "invalid_recipient"),
		("", "u2", "hi", "invalid_sender"),
		("u1", "u2", "x" * 101, "content_too_long"),
	],
)
async def test_append_rejects_invalid_messages(store, sender, recipient, content, detail):
	with pytest.raises(ValidationError) as exc_info:
		await store.append(sender, recipient, content)
	assert exc_info.value.detail == detail
	assert await store.history("u1", "u2") == []


def test_validate_rejects_oversized_message_type():
	with pytest.raises(ValidationError) as exc_info:
		validate_new_message("u1", "u2", "hi", "t" * 40, max_length=10)
	assert exc_info.value.detail == "invalid_message_type"


@pytest.mark.asyncio
async def test_history_is_symmetric_and_ascending(store, clock):
	await store.append("a", "b", "one")
	clock.advance()
	await store.append("b", "a", "two")
	clock.advance()
	await store.append("a", "c", "elsewhere")
	clock.advance()
	await store.append("a", "b", "three")

	forward = await store.history("a", "b")
	backward = await store.history("b", "a")

	assert [m.content for m in forward] == ["one", "two", "three"]
	assert forward == backward


@pytest.mark.asyncio
async def test_history_limit_keeps_newest_and_cursor_pages_older(store, clock):
	for n in range(5):
		await store.append("a", "b", f"m{n}")
		clock.advance()

	page = await store.history("a", "b", limit=2)
	assert [m.content for m in page] == ["m3", "m4"]

	older = await store.history("a", "b", limit=2, before=HistoryCursor.after(page[0]))
	assert [m.content for m in older] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_same_timestamp_orders_by_id(store):
	first = await store.append("a", "b", "first")
	second = await store.append("b", "a", "second")

	assert first.created_at == second.created_at
	assert [m.id for m in await store.history("a", "b")] == [first.id, second.id]


@pytest.mark.asyncio
async def test_clock_going_backwards_does_not_reorder(store, clock):
	first = await store.append("a", "b", "first")
	clock.advance(-30)
	second = await store.append("a", "b", "second")

	assert second.created_at >= first.created_at
	assert [m.content for m in await store.history("a", "b")] == ["first", "second"]


@pytest.mark.asyncio
async def test_mark_read_is_directional_and_idempotent(store, clock):
	await store.append("vendor", "bride", "quote ready")
	await store.append("vendor", "bride", "call me")
	await store.append("bride", "vendor", "thanks")
	clock.advance(5)

	assert await store.mark_read("bride", "vendor") == 2
	assert await store.mark_read("bride", "vendor") == 0

	history = await store.history("bride", "vendor")
	by_content = {m.content: m for m in history}
	assert by_content["quote ready"].read and by_content["quote ready"].read_at == clock.now
	assert by_content["thanks"].read is False
	assert await store.unread_counts("vendor") == {"bride": 1}


@pytest.mark.asyncio
async def test_unread_counts_omit_zero_entries(store):
	await store.append("s1", "bride", "hello")
	await store.append("s1", "bride", "again")
	await store.append("v1", "bride", "hi")
	await store.append("bride", "v2", "outgoing only")

	assert await store.unread_counts("bride") == {"s1": 2, "v1": 1}
	await store.mark_read("bride", "v1")
	assert await store.unread_counts("bride") == {"s1": 2}


@pytest.mark.asyncio
async def test_last_messages_and_summaries_agree(store, clock):
	await store.append("a", "b", "old")
	clock.advance()
	latest_b = await store.append("b", "a", "new")
	clock.advance()
	latest_c = await store.append("a", "c", "to c")

	last = await store.last_messages("a")
	summaries = await store.conversation_summaries("a")

	assert last == {"b": latest_b, "c": latest_c}
	assert summaries == {"b": (latest_b, 1), "c": (latest_c, 0)}


@pytest.mark.asyncio
async def test_concurrent_appends_keep_unique_ids(store):
	messages = await asyncio.gather(*(store.append("a", "b", f"m{n}") for n in range(20)))

	assert len({m.id for m in messages}) == 20
	assert len(await store.history("a", "b")) == 20


@pytest.mark.asyncio
async def test_get_returns_none_for_unknown_id(store):
	message = await store.append("a", "b", "hi")

	assert await store.get(message.id) == message
	assert await store.get(9999) is None


def test_build_store_selects_memory_backend():
	assert isinstance(build_store("memory"), InMemoryMessageStore)
