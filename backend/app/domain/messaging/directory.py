"""User directory collaborator: eligible contacts per viewer."""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import asyncpg

from app.infra.postgres import get_pool
from app.obs import metrics as obs_metrics
from app.settings import settings

from .exceptions import StorageUnavailable
from .policy import CLIENT_ROLES, DirectoryUser, Role, can_message


class UserDirectory(Protocol):
	async def eligible_contacts(self, user_id: str) -> List[str]:
		...


def _eligible(viewer_id: str, users: Iterable[DirectoryUser]) -> List[str]:
	listing = list(users)
	viewer = next((user for user in listing if user.id == viewer_id), None)
	if viewer is None:
		return []
	return [user.id for user in listing if can_message(viewer, user)]


class InMemoryUserDirectory:
	"""Directory held in process; listing order is insertion order."""

	def __init__(self, users: Optional[Iterable[DirectoryUser]] = None) -> None:
		self._users: Dict[str, DirectoryUser] = {}
		for user in users or ():
			self.add(user)

	def add(self, user: DirectoryUser) -> None:
		self._users[user.id] = user

	def add_user(
		self,
		user_id: str,
		role: str | Role,
		*,
		supervisor_id: Optional[str] = None,
		display_name: Optional[str] = None,
	) -> DirectoryUser:
		user = DirectoryUser(
			id=str(user_id),
			role=Role.parse(role),
			supervisor_id=str(supervisor_id) if supervisor_id is not None else None,
			display_name=display_name,
		)
		self.add(user)
		return user

	async def eligible_contacts(self, user_id: str) -> List[str]:
		return _eligible(user_id, self._users.values())


def _candidate_roles(viewer: DirectoryUser) -> Tuple[Optional[List[str]], List[str]]:
	"""Roles listed outright, and client roles listed only when assigned to the viewer.

	None for the first entry means every role.
	"""
	clients = sorted(role.value for role in CLIENT_ROLES)
	if viewer.role is Role.ADMIN:
		return None, []
	if viewer.is_client:
		return [Role.SUPERVISOR.value, Role.VENDOR.value, Role.ADMIN.value], []
	if viewer.role is Role.SUPERVISOR:
		return [Role.VENDOR.value, Role.ADMIN.value], clients
	if viewer.role is Role.VENDOR:
		return clients + [Role.SUPERVISOR.value, Role.ADMIN.value], []
	return [], []


def _row_to_user(row) -> DirectoryUser:
	return DirectoryUser(
		id=str(row["id"]),
		role=Role.parse(row["role"]),
		supervisor_id=row["supervisor_id"],
		display_name=row["name"],
	)


class PostgresUserDirectory:
	"""Reads the application's `users` table, ordered by id."""

	def __init__(self, pool_provider: Callable[[], Awaitable[asyncpg.pool.Pool]] = get_pool) -> None:
		self._pool_provider = pool_provider

	async def eligible_contacts(self, user_id: str) -> List[str]:
		try:
			pool = await self._pool_provider()
			async with pool.acquire() as conn:
				row = await conn.fetchrow(
					"""
					SELECT id::text AS id, role, supervisor_id::text AS supervisor_id, name
					FROM users
					WHERE id::text = $1
					""",
					user_id,
				)
				if row is None:
					return []
				viewer = _row_to_user(row)
				listed, assigned = _candidate_roles(viewer)
				if listed == [] and not assigned:
					return []
				rows = await conn.fetch(
					"""
					SELECT id::text AS id, role, supervisor_id::text AS supervisor_id, name
					FROM users
					WHERE id::text <> $1
					  AND (
						$2::text[] IS NULL
						OR lower(trim(role)) = ANY($2::text[])
						OR (lower(trim(role)) = ANY($3::text[]) AND supervisor_id::text = $1)
					  )
					ORDER BY id
					""",
					viewer.id,
					listed,
					assigned,
				)
		except (OSError, asyncpg.exceptions.InterfaceError, asyncpg.exceptions.PostgresConnectionError) as exc:
			obs_metrics.storage_error("directory")
			raise StorageUnavailable() from exc
		return [user.id for user in map(_row_to_user, rows) if can_message(viewer, user)]


def build_directory(backend: Optional[str] = None) -> UserDirectory:
	backend = backend or settings.directory_backend
	if backend == "memory":
		return InMemoryUserDirectory()
	return PostgresUserDirectory()
