"""Pydantic schemas for the messaging API and socket events."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .models import ConversationSummary, Message


class SendMessageRequest(BaseModel):
	# Length and emptiness are checked by the store so they surface as 400s.
	model_config = ConfigDict(populate_by_name=True)

	to_user_id: str = Field(
		...,
		description="Recipient user identifier",
		validation_alias=AliasChoices("to_user_id", "toUserId"),
	)
	content: str = Field(..., validation_alias=AliasChoices("content", "message"))
	message_type: Optional[str] = Field(
		default=None,
		description="Free-form tag, defaults to 'text'",
		validation_alias=AliasChoices("message_type", "messageType", "type"),
	)


class MarkReadRequest(BaseModel):
	"""Socket payload naming the party whose messages were read."""

	model_config = ConfigDict(populate_by_name=True)

	from_user_id: str = Field(..., validation_alias=AliasChoices("from_user_id", "fromUserId", "party_id"))


class TypingRequest(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	peer_id: str = Field(..., min_length=1, validation_alias=AliasChoices("peer_id", "toUserId", "to_user_id"))


class MessageResponse(BaseModel):
	id: int
	from_user_id: str
	to_user_id: str
	content: str
	message_type: str
	read: bool
	read_at: Optional[datetime] = None
	created_at: datetime

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			id=message.id,
			from_user_id=message.from_user_id,
			to_user_id=message.to_user_id,
			content=message.content,
			message_type=message.message_type,
			read=message.read,
			read_at=message.read_at,
			created_at=message.created_at,
		)


class MessageListResponse(BaseModel):
	items: List[MessageResponse]
	next_cursor: Optional[str] = None


class ReadReceiptResponse(BaseModel):
	updated_count: int


class UnreadTotalResponse(BaseModel):
	total: int


class ConversationResponse(BaseModel):
	party_id: str
	last_message: Optional[MessageResponse] = None
	unread_count: int = 0

	@classmethod
	def from_model(cls, summary: ConversationSummary) -> "ConversationResponse":
		return cls(
			party_id=summary.party_id,
			last_message=MessageResponse.from_model(summary.last_message) if summary.last_message else None,
			unread_count=summary.unread_count,
		)


class ConversationListResponse(BaseModel):
	items: List[ConversationResponse]
