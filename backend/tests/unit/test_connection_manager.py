import asyncio

import pytest

from app.domain.messaging.connections import ConnectionManager, HandleAlreadyBound
from app.domain.messaging.exceptions import AuthError


class SlowHandle:
	def __init__(self, handle_id: str) -> None:
		self.handle_id = handle_id

	async def send(self, event: str, payload: dict) -> None:
		await asyncio.sleep(5)


@pytest.mark.asyncio
async def test_register_opens_session_and_counts_connections(make_handle):
	manager = ConnectionManager()

	session = await manager.register("bride", make_handle("h1"))
	assert session.connection_count == 1
	session = await manager.register("bride", make_handle("h2"))

	assert session.connection_count == 2
	assert manager.is_online("bride")
	assert manager.online_user_ids() == ["bride"]


@pytest.mark.asyncio
async def test_register_requires_identity(make_handle):
	manager = ConnectionManager()

	with pytest.raises(AuthError):
		await manager.register("  ", make_handle("h1"))
	assert not manager.online_user_ids()


@pytest.mark.asyncio
async def test_handle_cannot_move_between_users(make_handle):
	manager = ConnectionManager()
	handle = make_handle("h1")
	await manager.register("bride", handle)

	with pytest.raises(HandleAlreadyBound):
		await manager.register("vendor", handle)
	assert manager.owner_of("h1") == "bride"
	assert not manager.is_online("vendor")


@pytest.mark.asyncio
async def test_unregister_closes_session_with_last_handle(make_handle):
	manager = ConnectionManager()
	first, second = make_handle("h1"), make_handle("h2")
	await manager.register("bride", first)
	await manager.register("bride", second)

	assert await manager.unregister(first) == "bride"
	assert manager.is_online("bride")
	assert await manager.unregister("h2") == "bride"
	assert not manager.is_online("bride")
	assert await manager.unregister("h2") is None


@pytest.mark.asyncio
async def test_register_after_disconnect_is_refused(make_handle):
	manager = ConnectionManager()
	handle = make_handle("h1")

	# disconnect processed before the connect that raced it
	assert await manager.unregister(handle) is None
	with pytest.raises(AuthError) as exc_info:
		await manager.register("bride", handle)
	assert exc_info.value.detail == "connection_closed"
	assert not manager.is_online("bride")


@pytest.mark.asyncio
async def test_emit_reaches_every_handle_of_the_user(make_handle):
	manager = ConnectionManager()
	phone, laptop, other = make_handle("h1"), make_handle("h2"), make_handle("h3")
	await manager.register("bride", phone)
	await manager.register("bride", laptop)
	await manager.register("vendor", other)

	delivered = await manager.emit_to_user("bride", "receive_message", {"id": 1})

	assert delivered is True
	assert phone.named("receive_message") == [{"id": 1}]
	assert laptop.named("receive_message") == [{"id": 1}]
	assert other.events == []


@pytest.mark.asyncio
async def test_emit_to_offline_user_is_a_miss():
	manager = ConnectionManager()

	assert await manager.emit_to_user("nobody", "receive_message", {}) is False


@pytest.mark.asyncio
async def test_failing_handle_is_dropped_without_affecting_siblings(make_handle):
	manager = ConnectionManager()
	healthy, broken = make_handle("h1"), make_handle("h2", fail=True)
	await manager.register("bride", healthy)
	await manager.register("bride", broken)

	delivered = await manager.emit_to_user("bride", "receive_message", {"id": 2})

	assert delivered is True
	assert healthy.named("receive_message") == [{"id": 2}]
	assert manager.owner_of("h2") is None
	assert manager.session("bride").handle_ids == {"h1"}


@pytest.mark.asyncio
async def test_slow_handle_times_out_and_is_dropped():
	manager = ConnectionManager(send_timeout=0.05)
	await manager.register("bride", SlowHandle("slow"))

	assert await manager.emit_to_user("bride", "receive_message", {}) is False
	assert not manager.is_online("bride")


@pytest.mark.asyncio
async def test_lifecycle_listeners_see_session_transitions(make_handle):
	manager = ConnectionManager()
	seen: list[tuple[str, str, str, bool]] = []

	async def on_connect(user_id, handle, opened):
		seen.append(("connect", user_id, handle.handle_id, opened))

	async def on_disconnect(user_id, handle, closed):
		seen.append(("disconnect", user_id, handle.handle_id, closed))

	manager.on_connect(on_connect)
	manager.on_disconnect(on_disconnect)
	await manager.register("bride", make_handle("h1"))
	await manager.register("bride", make_handle("h2"))
	await manager.unregister("h1")
	await manager.unregister("h2")

	assert seen == [
		("connect", "bride", "h1", True),
		("connect", "bride", "h2", False),
		("disconnect", "bride", "h1", False),
		("disconnect", "bride", "h2", True),
	]


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_register(make_handle):
	manager = ConnectionManager()

	async def broken(user_id, handle, opened):
		raise RuntimeError("boom")

	manager.on_connect(broken)
	await manager.register("bride", make_handle("h1"))

	assert manager.is_online("bride")


@pytest.mark.asyncio
async def test_concurrent_register_and_unregister_leave_consistent_table(make_handle):
	manager = ConnectionManager()
	handles = [make_handle(f"h{n}") for n in range(10)]

	await asyncio.gather(*(manager.register("bride", handle) for handle in handles))
	await asyncio.gather(*(manager.unregister(handle) for handle in handles[:9]))

	assert manager.session("bride").handle_ids == {"h9"}
	assert manager.owner_of("h0") is None


@pytest.mark.asyncio
async def test_session_snapshot_is_detached(make_handle):
	manager = ConnectionManager()
	await manager.register("bride", make_handle("h1"))

	snapshot = manager.session("bride")
	snapshot.handle_ids.add("forged")

	assert manager.session("bride").handle_ids == {"h1"}
