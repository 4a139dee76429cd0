"""Message persistence: the single source of truth for history and read state.

Two backends share one contract: PostgreSQL through asyncpg, and an in-memory
store used by tests and local development. Every operation is one atomic
statement (or one critical section), so a failed call never leaves partial
state behind.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import asyncpg

from app.infra.postgres import get_pool
from app.obs import metrics as obs_metrics
from app.settings import settings

from .exceptions import StorageUnavailable, ValidationError
from .models import DEFAULT_MESSAGE_TYPE, ConversationKey, HistoryCursor, Message

MAX_MESSAGE_TYPE_LENGTH = 32

Summaries = Dict[str, Tuple[Message, int]]


class MessageStore(Protocol):
	async def append(
		self,
		from_user_id: str,
		to_user_id: str,
		content: str,
		message_type: Optional[str] = None,
	) -> Message:
		...

	async def get(self, message_id: int) -> Optional[Message]:
		...

	async def history(
		self,
		user_a: str,
		user_b: str,
		*,
		limit: Optional[int] = None,
		before: Optional[HistoryCursor] = None,
	) -> List[Message]:
		...

	async def mark_read(self, viewer_id: str, other_party_id: str) -> int:
		...

	async def unread_counts(self, viewer_id: str) -> Dict[str, int]:
		...

	async def last_messages(self, viewer_id: str) -> Dict[str, Message]:
		...

	async def conversation_summaries(self, viewer_id: str) -> Summaries:
		...


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def validate_new_message(
	from_user_id: str,
	to_user_id: str,
	content: str,
	message_type: Optional[str],
	*,
	max_length: Optional[int] = None,
) -> Tuple[str, str, str, str]:
	"""Return normalised (sender, recipient, content, type) or raise ValidationError."""
	sender = str(from_user_id or "").strip()
	recipient = str(to_user_id or "").strip()
	if not sender:
		raise ValidationError("invalid_sender")
	if not recipient:
		raise ValidationError("invalid_recipient")
	if sender == recipient:
		raise ValidationError("self_message")
	text = content.strip() if isinstance(content, str) else ""
	if not text:
		raise ValidationError("empty_content")
	limit = max_length if max_length is not None else settings.message_max_length
	if len(text) > limit:
		raise ValidationError("content_too_long")
	kind = (message_type or "").strip() or DEFAULT_MESSAGE_TYPE
	if len(kind) > MAX_MESSAGE_TYPE_LENGTH:
		raise ValidationError("invalid_message_type")
	return sender, recipient, text, kind


def _page(messages: List[Message], limit: Optional[int]) -> List[Message]:
	"""Keep the newest `limit` of an ascending list, still ascending."""
	if limit is None:
		return messages
	if limit <= 0:
		return []
	return messages[-limit:]


class InMemoryMessageStore:
	"""Process-local store guarded by a single asyncio lock."""

	def __init__(
		self,
		*,
		max_length: Optional[int] = None,
		clock: Callable[[], datetime] = _utcnow,
	) -> None:
		self._lock = asyncio.Lock()
		self._clock = clock
		self._max_length = max_length
		self._next_id = 1
		self._messages: Dict[int, Message] = {}
		# conversation_id -> message ids in (created_at, id) order
		self._conversations: Dict[str, List[int]] = {}
		self._partners: Dict[str, set[str]] = {}
		self._last_created_at: Optional[datetime] = None

	async def append(
		self,
		from_user_id: str,
		to_user_id: str,
		content: str,
		message_type: Optional[str] = None,
	) -> Message:
		sender, recipient, text, kind = validate_new_message(
			from_user_id, to_user_id, content, message_type, max_length=self._max_length
		)
		async with self._lock:
			created_at = self._clock()
			# A clock step backwards must not reorder a conversation.
			if self._last_created_at is not None and created_at < self._last_created_at:
				created_at = self._last_created_at
			self._last_created_at = created_at
			message = Message(
				id=self._next_id,
				from_user_id=sender,
				to_user_id=recipient,
				content=text,
				message_type=kind,
				created_at=created_at,
			)
			self._next_id += 1
			self._messages[message.id] = message
			self._conversations.setdefault(message.conversation.conversation_id, []).append(message.id)
			self._partners.setdefault(sender, set()).add(recipient)
			self._partners.setdefault(recipient, set()).add(sender)
			return message

	async def get(self, message_id: int) -> Optional[Message]:
		async with self._lock:
			return self._messages.get(message_id)

	async def history(
		self,
		user_a: str,
		user_b: str,
		*,
		limit: Optional[int] = None,
		before: Optional[HistoryCursor] = None,
	) -> List[Message]:
		key = ConversationKey.from_participants(user_a, user_b)
		async with self._lock:
			messages = self._conversation_messages(key)
		if before is not None:
			messages = [m for m in messages if before.admits(m)]
		return _page(messages, limit)

	async def mark_read(self, viewer_id: str, other_party_id: str) -> int:
		key = ConversationKey.from_participants(viewer_id, other_party_id)
		async with self._lock:
			read_at = self._clock()
			updated = 0
			for message_id in self._conversations.get(key.conversation_id, []):
				message = self._messages[message_id]
				if message.to_user_id == viewer_id and message.from_user_id == other_party_id and not message.read:
					self._messages[message_id] = message.mark_read(read_at)
					updated += 1
			return updated

	async def unread_counts(self, viewer_id: str) -> Dict[str, int]:
		summaries = await self.conversation_summaries(viewer_id)
		return {party: unread for party, (_, unread) in summaries.items() if unread}

	async def last_messages(self, viewer_id: str) -> Dict[str, Message]:
		summaries = await self.conversation_summaries(viewer_id)
		return {party: last for party, (last, _) in summaries.items()}

	async def conversation_summaries(self, viewer_id: str) -> Summaries:
		async with self._lock:
			result: Summaries = {}
			for party in self._partners.get(viewer_id, ()):
				messages = self._conversation_messages(ConversationKey.from_participants(viewer_id, party))
				if not messages:
					continue
				unread = sum(1 for m in messages if m.to_user_id == viewer_id and m.from_user_id == party and not m.read)
				result[party] = (messages[-1], unread)
			return result

	def _conversation_messages(self, key: ConversationKey) -> List[Message]:
		return [self._messages[mid] for mid in self._conversations.get(key.conversation_id, [])]


SCHEMA_STATEMENTS: Tuple[str, ...] = (
	"""
	CREATE TABLE IF NOT EXISTS messages (
		id BIGSERIAL PRIMARY KEY,
		from_user_id TEXT NOT NULL,
		to_user_id TEXT NOT NULL,
		content TEXT NOT NULL,
		message_type TEXT NOT NULL DEFAULT 'text',
		read BOOLEAN NOT NULL DEFAULT FALSE,
		read_at TIMESTAMPTZ,
		created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
		CONSTRAINT messages_not_self CHECK (from_user_id <> to_user_id),
		CONSTRAINT messages_content_present CHECK (length(btrim(content)) > 0),
		CONSTRAINT messages_read_at_consistent CHECK (read OR read_at IS NULL)
	)
	""",
	"""
	CREATE INDEX IF NOT EXISTS messages_pair_idx
	ON messages (LEAST(from_user_id, to_user_id), GREATEST(from_user_id, to_user_id), created_at DESC, id DESC)
	""",
	"""
	CREATE INDEX IF NOT EXISTS messages_unread_idx
	ON messages (to_user_id, from_user_id) WHERE NOT read
	""",
	"CREATE INDEX IF NOT EXISTS messages_sender_idx ON messages (from_user_id)",
)

_COLUMNS = "id, from_user_id, to_user_id, content, message_type, read, read_at, created_at"

_UNAVAILABLE_ERRORS: Tuple[type[BaseException], ...] = (
	OSError,
	asyncio.TimeoutError,
	asyncpg.exceptions.InterfaceError,
	asyncpg.exceptions.PostgresConnectionError,
	asyncpg.exceptions.CannotConnectNowError,
	asyncpg.exceptions.TooManyConnectionsError,
)


async def ensure_schema(pool: asyncpg.pool.Pool) -> None:
	async with pool.acquire() as conn:
		async with conn.transaction():
			for statement in SCHEMA_STATEMENTS:
				await conn.execute(statement)


class PostgresMessageStore:
	"""Repository backed by asyncpg; one append-only `messages` table."""

	def __init__(
		self,
		pool_provider: Callable[[], Awaitable[asyncpg.pool.Pool]] = get_pool,
		*,
		max_length: Optional[int] = None,
	) -> None:
		self._pool_provider = pool_provider
		self._max_length = max_length

	@asynccontextmanager
	async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
		try:
			pool = await self._pool_provider()
			async with pool.acquire() as conn:
				yield conn
		except asyncpg.exceptions.CheckViolationError as exc:
			raise ValidationError("constraint_violation") from exc
		except _UNAVAILABLE_ERRORS as exc:
			obs_metrics.storage_error(operation)
			raise StorageUnavailable() from exc

	async def append(
		self,
		from_user_id: str,
		to_user_id: str,
		content: str,
		message_type: Optional[str] = None,
	) -> Message:
		sender, recipient, text, kind = validate_new_message(
			from_user_id, to_user_id, content, message_type, max_length=self._max_length
		)
		async with self._connection("append") as conn:
			row = await conn.fetchrow(
				f"""
				INSERT INTO messages (from_user_id, to_user_id, content, message_type)
				VALUES ($1, $2, $3, $4)
				RETURNING {_COLUMNS}
				""",
				sender,
				recipient,
				text,
				kind,
			)
		return self._row_to_message(row)

	async def get(self, message_id: int) -> Optional[Message]:
		async with self._connection("get") as conn:
			row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM messages WHERE id = $1", int(message_id))
		return self._row_to_message(row) if row else None

	async def history(
		self,
		user_a: str,
		user_b: str,
		*,
		limit: Optional[int] = None,
		before: Optional[HistoryCursor] = None,
	) -> List[Message]:
		key = ConversationKey.from_participants(user_a, user_b)
		params: List[object] = [key.user_a, key.user_b]
		where_clause = ""
		if before is not None:
			params.extend([before.created_at, before.message_id])
			where_clause = " AND (created_at, id) < ($3, $4)"
		limit_clause = ""
		if limit is not None:
			params.append(max(0, int(limit)))
			limit_clause = f" LIMIT ${len(params)}"
		query = (
			f"""
			SELECT {_COLUMNS}
			FROM messages
			WHERE LEAST(from_user_id, to_user_id) = $1
				AND GREATEST(from_user_id, to_user_id) = $2
			"""
			+ where_clause
			+ " ORDER BY created_at DESC, id DESC"
			+ limit_clause
		)
		async with self._connection("history") as conn:
			rows = await conn.fetch(query, *params)
		return [self._row_to_message(row) for row in reversed(rows)]

	async def mark_read(self, viewer_id: str, other_party_id: str) -> int:
		async with self._connection("mark_read") as conn:
			status = await conn.execute(
				"""
				UPDATE messages
				SET read = TRUE, read_at = $3
				WHERE to_user_id = $1 AND from_user_id = $2 AND NOT read
				""",
				viewer_id,
				other_party_id,
				_utcnow(),
			)
		return _affected_rows(status)

	async def unread_counts(self, viewer_id: str) -> Dict[str, int]:
		async with self._connection("unread_counts") as conn:
			rows = await conn.fetch(
				"""
				SELECT from_user_id, COUNT(*) AS unread
				FROM messages
				WHERE to_user_id = $1 AND NOT read
				GROUP BY from_user_id
				""",
				viewer_id,
			)
		return {str(row["from_user_id"]): int(row["unread"]) for row in rows}

	async def last_messages(self, viewer_id: str) -> Dict[str, Message]:
		async with self._connection("last_messages") as conn:
			rows = await conn.fetch(
				f"""
				SELECT DISTINCT ON (party_id) party_id, {_COLUMNS}
				FROM (
					SELECT CASE WHEN from_user_id = $1 THEN to_user_id ELSE from_user_id END AS party_id, {_COLUMNS}
					FROM messages
					WHERE from_user_id = $1 OR to_user_id = $1
				) AS mine
				ORDER BY party_id, created_at DESC, id DESC
				""",
				viewer_id,
			)
		return {str(row["party_id"]): self._row_to_message(row) for row in rows}

	async def conversation_summaries(self, viewer_id: str) -> Summaries:
		async with self._connection("conversation_summaries") as conn:
			rows = await conn.fetch(
				f"""
				SELECT DISTINCT ON (party_id) party_id, {_COLUMNS},
					COUNT(*) FILTER (WHERE to_user_id = $1 AND NOT read) OVER (PARTITION BY party_id) AS unread
				FROM (
					SELECT CASE WHEN from_user_id = $1 THEN to_user_id ELSE from_user_id END AS party_id, {_COLUMNS}
					FROM messages
					WHERE from_user_id = $1 OR to_user_id = $1
				) AS mine
				ORDER BY party_id, created_at DESC, id DESC
				""",
				viewer_id,
			)
		return {str(row["party_id"]): (self._row_to_message(row), int(row["unread"])) for row in rows}

	def _row_to_message(self, row) -> Message:
		return Message(
			id=int(row["id"]),
			from_user_id=str(row["from_user_id"]),
			to_user_id=str(row["to_user_id"]),
			content=row["content"],
			message_type=row["message_type"] or DEFAULT_MESSAGE_TYPE,
			read=bool(row["read"]),
			read_at=row["read_at"],
			created_at=row["created_at"],
		)


def _affected_rows(status: str) -> int:
	"""Parse asyncpg's command tag, e.g. 'UPDATE 3'."""
	try:
		return int(str(status).rsplit(" ", 1)[-1])
	except ValueError:
		return 0


def build_store(backend: Optional[str] = None) -> MessageStore:
	backend = backend or settings.message_store_backend
	if backend == "memory":
		return InMemoryMessageStore()
	return PostgresMessageStore()
