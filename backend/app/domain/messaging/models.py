"""Domain models for the messaging core."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Tuple

DEFAULT_MESSAGE_TYPE = "text"


@dataclass(slots=True, frozen=True)
class ConversationKey:
	"""Canonical representation of a 1:1 conversation (unordered pair)."""

	user_a: str
	user_b: str

	@classmethod
	def from_participants(cls, user_one: str, user_two: str) -> "ConversationKey":
		ordered = tuple(sorted((str(user_one), str(user_two))))
		return cls(user_a=ordered[0], user_b=ordered[1])

	@property
	def conversation_id(self) -> str:
		return f"dm:{self.user_a}:{self.user_b}"

	def participants(self) -> Tuple[str, str]:
		return (self.user_a, self.user_b)

	def other(self, user_id: str) -> str:
		return self.user_b if user_id == self.user_a else self.user_a


@dataclass(slots=True, frozen=True)
class Message:
	id: int
	from_user_id: str
	to_user_id: str
	content: str
	created_at: datetime
	message_type: str = DEFAULT_MESSAGE_TYPE
	read: bool = False
	read_at: Optional[datetime] = None

	@property
	def sort_key(self) -> Tuple[datetime, int]:
		return (self.created_at, self.id)

	@property
	def conversation(self) -> ConversationKey:
		return ConversationKey.from_participants(self.from_user_id, self.to_user_id)

	def is_participant(self, user_id: str) -> bool:
		return user_id in (self.from_user_id, self.to_user_id)

	def party_for(self, viewer_id: str) -> str:
		return self.to_user_id if self.from_user_id == viewer_id else self.from_user_id

	def mark_read(self, at: datetime) -> "Message":
		if self.read:
			return self
		return replace(self, read=True, read_at=at)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"from_user_id": self.from_user_id,
			"to_user_id": self.to_user_id,
			"content": self.content,
			"message_type": self.message_type,
			"read": self.read,
			"read_at": self.read_at.isoformat() if self.read_at else None,
			"created_at": self.created_at.isoformat(),
		}


@dataclass(slots=True, frozen=True)
class HistoryCursor:
	"""Keyset position in a conversation: everything strictly older is next."""

	created_at: datetime
	message_id: int

	@classmethod
	def after(cls, message: Message) -> "HistoryCursor":
		return cls(created_at=message.created_at, message_id=message.id)

	def admits(self, message: Message) -> bool:
		return message.sort_key < (self.created_at, self.message_id)


@dataclass(slots=True, frozen=True)
class ConversationSummary:
	party_id: str
	last_message: Optional[Message] = None
	unread_count: int = 0

	@property
	def started(self) -> bool:
		return self.last_message is not None


@dataclass(slots=True)
class Session:
	"""Live push connections bound to one authenticated user."""

	user_id: str
	connected_at: datetime
	last_seen: datetime
	handle_ids: set[str] = field(default_factory=set)

	@property
	def connection_count(self) -> int:
		return len(self.handle_ids)
