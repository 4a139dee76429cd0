from unittest.mock import AsyncMock, MagicMock

import pytest

from app.domain.messaging.directory import InMemoryUserDirectory, PostgresUserDirectory
from app.domain.messaging.exceptions import StorageUnavailable
from app.domain.messaging.policy import DirectoryUser, Role, can_message


def _user(user_id: str, role: str, supervisor_id: str | None = None) -> DirectoryUser:
	return DirectoryUser(id=user_id, role=Role.parse(role), supervisor_id=supervisor_id)


def test_role_parse_is_lenient():
	assert Role.parse(" Vendor ") is Role.VENDOR
	assert Role.parse("photographer") is None


@pytest.mark.parametrize(
	("viewer", "other", "allowed"),
	[
		(_user("b", "bride"), _user("v", "vendor"), True),
		(_user("b", "bride"), _user("s", "supervisor"), True),
		(_user("b", "bride"), _user("g", "groom"), False),
		(_user("s", "supervisor"), _user("b", "bride", supervisor_id="s"), True),
		(_user("s", "supervisor"), _user("b", "bride", supervisor_id="other"), False),
		(_user("s", "supervisor"), _user("s2", "supervisor"), False),
		(_user("v", "vendor"), _user("f", "family"), True),
		(_user("v", "vendor"), _user("v2", "vendor"), False),
		(_user("v", "vendor"), _user("a", "admin"), True),
		(_user("a", "admin"), _user("v", "vendor"), True),
		(_user("x", "unknown"), _user("a", "admin"), False),
	],
)
def test_can_message_matrix(viewer, other, allowed):
	assert can_message(viewer, other) is allowed


def test_nobody_lists_themselves():
	admin = _user("a", "admin")
	assert can_message(admin, admin) is False


@pytest.mark.asyncio
async def test_in_memory_directory_preserves_listing_order():
	directory = InMemoryUserDirectory()
	directory.add_user("admin", "admin")
	directory.add_user("v9", "vendor")
	directory.add_user("v1", "vendor")
	directory.add_user("groom", "groom")

	assert await directory.eligible_contacts("groom") == ["admin", "v9", "v1"]
	assert await directory.eligible_contacts("missing") == []


@pytest.mark.asyncio
async def test_postgres_directory_filters_candidates_in_sql():
	conn = AsyncMock()
	conn.fetchrow.return_value = {"id": "2", "role": "supervisor", "supervisor_id": None, "name": "Maya"}
	conn.fetch.return_value = [
		{"id": "1", "role": "bride", "supervisor_id": "2", "name": "Asha"},
		{"id": "4", "role": "vendor", "supervisor_id": None, "name": "Lights Co"},
	]
	pool = MagicMock()
	pool.acquire.return_value.__aenter__.return_value = conn
	directory = PostgresUserDirectory(AsyncMock(return_value=pool))

	assert await directory.eligible_contacts("2") == ["1", "4"]
	sql, viewer_id, listed, assigned = conn.fetch.await_args.args
	assert "WHERE id::text <> $1" in sql
	assert viewer_id == "2"
	assert listed == ["vendor", "admin"]
	assert assigned == ["bride", "family", "groom"]


@pytest.mark.asyncio
async def test_postgres_directory_unknown_viewer_skips_listing():
	conn = AsyncMock()
	conn.fetchrow.return_value = None
	pool = MagicMock()
	pool.acquire.return_value.__aenter__.return_value = conn
	directory = PostgresUserDirectory(AsyncMock(return_value=pool))

	assert await directory.eligible_contacts("missing") == []
	conn.fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_postgres_directory_unreachable():
	directory = PostgresUserDirectory(AsyncMock(side_effect=OSError("down")))

	with pytest.raises(StorageUnavailable):
		await directory.eligible_contacts("1")
