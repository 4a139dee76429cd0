"""Messaging service facade used by the HTTP routes and the socket namespace."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from redis.exceptions import RedisError

from app.api.pagination import encode_cursor
from app.infra import rate_limit
from app.infra.auth import AuthenticatedUser
from app.obs import metrics as obs_metrics
from app.settings import settings

from .connections import ConnectionManager
from .conversations import ConversationIndex
from .delivery import DeliveryCoordinator
from .directory import UserDirectory, build_directory
from .exceptions import NotFoundError, RateLimitExceeded
from .models import HistoryCursor
from .schemas import (
	ConversationListResponse,
	ConversationResponse,
	MessageListResponse,
	MessageResponse,
	ReadReceiptResponse,
	SendMessageRequest,
	UnreadTotalResponse,
)
from .store import MessageStore, build_store

LOGGER = logging.getLogger(__name__)


def clamp_limit(limit: Optional[int]) -> int:
	if limit is None:
		return settings.history_default_limit
	return max(1, min(int(limit), settings.history_max_limit))


async def _enforce_send_rate(user_id: str) -> None:
	try:
		budget = await rate_limit.consume(
			"messages.send",
			user_id,
			limit=settings.messages_send_rate_limit,
			window_seconds=settings.messages_send_rate_window_seconds,
		)
	except (RedisError, OSError):
		# Limiter outage fails open.
		LOGGER.warning("send_rate_limit_unavailable", extra={"actor_id": user_id})
		return
	if not budget.allowed:
		obs_metrics.rate_limited("messages.send")
		raise RateLimitExceeded(retry_after=budget.reset_in)


class MessagingService:
	def __init__(
		self,
		store: MessageStore | None = None,
		connections: ConnectionManager | None = None,
		directory: UserDirectory | None = None,
	) -> None:
		self.store = store or build_store()
		self.connections = connections or ConnectionManager(send_timeout=settings.push_send_timeout_seconds)
		self.directory = directory or build_directory()
		self.coordinator = DeliveryCoordinator(
			self.store,
			self.connections,
			echo_to_sender=settings.messages_echo_to_sender,
		)
		self.coordinator.attach()
		self.index = ConversationIndex(self.store, self.directory)

	async def send_message(self, auth_user: AuthenticatedUser, payload: SendMessageRequest) -> MessageResponse:
		await _enforce_send_rate(auth_user.id)
		message = await self.coordinator.send(
			auth_user.id,
			payload.to_user_id,
			payload.content,
			payload.message_type,
		)
		return MessageResponse.from_model(message)

	async def get_message(self, auth_user: AuthenticatedUser, message_id: int) -> MessageResponse:
		message = await self.store.get(message_id)
		if not message or not message.is_participant(auth_user.id):
			raise NotFoundError()
		return MessageResponse.from_model(message)

	async def list_history(
		self,
		auth_user: AuthenticatedUser,
		other_user_id: str,
		*,
		cursor: Optional[HistoryCursor] = None,
		limit: Optional[int] = None,
	) -> MessageListResponse:
		"""One page of a conversation, oldest first.

		`next_cursor` points at the oldest message on the page and is only set
		when older messages remain.
		"""
		limit = clamp_limit(limit)
		rows = await self.store.history(auth_user.id, other_user_id, limit=limit + 1, before=cursor)
		page = rows[-limit:] if len(rows) > limit else rows
		next_cursor = None
		if len(rows) > limit and page:
			oldest = page[0]
			next_cursor = encode_cursor(oldest.created_at, oldest.id)
		return MessageListResponse(
			items=[MessageResponse.from_model(message) for message in page],
			next_cursor=next_cursor,
		)

	async def mark_read(self, auth_user: AuthenticatedUser, other_user_id: str) -> ReadReceiptResponse:
		updated = await self.coordinator.mark_read(auth_user.id, other_user_id)
		return ReadReceiptResponse(updated_count=updated)

	async def unread_counts(self, auth_user: AuthenticatedUser) -> Dict[str, int]:
		return await self.store.unread_counts(auth_user.id)

	async def unread_total(self, auth_user: AuthenticatedUser) -> UnreadTotalResponse:
		counts = await self.store.unread_counts(auth_user.id)
		return UnreadTotalResponse(total=sum(counts.values()))

	async def list_conversations(self, auth_user: AuthenticatedUser) -> ConversationListResponse:
		summaries = await self.index.list_conversations(auth_user.id)
		return ConversationListResponse(items=[ConversationResponse.from_model(item) for item in summaries])


_SERVICE: MessagingService | None = None


def get_service() -> MessagingService:
	global _SERVICE
	if _SERVICE is None:
		_SERVICE = MessagingService()
	return _SERVICE


def set_service(service: MessagingService | None) -> None:
	global _SERVICE
	_SERVICE = service


async def send_message(auth_user: AuthenticatedUser, payload: SendMessageRequest) -> MessageResponse:
	return await get_service().send_message(auth_user, payload)


async def get_message(auth_user: AuthenticatedUser, message_id: int) -> MessageResponse:
	return await get_service().get_message(auth_user, message_id)


async def list_history(
	auth_user: AuthenticatedUser,
	other_user_id: str,
	*,
	cursor: Optional[HistoryCursor] = None,
	limit: Optional[int] = None,
) -> MessageListResponse:
	return await get_service().list_history(auth_user, other_user_id, cursor=cursor, limit=limit)


async def mark_read(auth_user: AuthenticatedUser, other_user_id: str) -> ReadReceiptResponse:
	return await get_service().mark_read(auth_user, other_user_id)


async def unread_counts(auth_user: AuthenticatedUser) -> Dict[str, int]:
	return await get_service().unread_counts(auth_user)


async def unread_total(auth_user: AuthenticatedUser) -> UnreadTotalResponse:
	return await get_service().unread_total(auth_user)


async def list_conversations(auth_user: AuthenticatedUser) -> ConversationListResponse:
	return await get_service().list_conversations(auth_user)
