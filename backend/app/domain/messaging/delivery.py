"""Delivery coordinator: the send and read protocols.

Persistence always happens first and is the only thing a caller's success
depends on. Pushes are best-effort: an offline recipient picks the message up
on their next history fetch, so nothing here retries, queues or waits for
acknowledgements.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from app.obs import metrics as obs_metrics
from app.obs import tracing

from .connections import ConnectionHandle, ConnectionManager
from .exceptions import StorageUnavailable
from .models import Message
from .store import MessageStore

LOGGER = logging.getLogger(__name__)

EVENT_RECEIVE_MESSAGE = "receive_message"
EVENT_MESSAGE_SENT_ACK = "message_sent_ack"
EVENT_MESSAGES_READ = "messages_read"
EVENT_UNREAD_COUNT = "unread_count"


def unread_payload(counts: Dict[str, int]) -> dict:
	return {"counts": dict(counts), "total": sum(counts.values())}


class DeliveryCoordinator:
	def __init__(
		self,
		store: MessageStore,
		connections: ConnectionManager,
		*,
		echo_to_sender: bool = True,
	) -> None:
		self._store = store
		self._connections = connections
		self._echo_to_sender = echo_to_sender

	@property
	def store(self) -> MessageStore:
		return self._store

	@property
	def connections(self) -> ConnectionManager:
		return self._connections

	def attach(self) -> None:
		"""Push an unread snapshot to every connection as it comes up."""
		self._connections.on_connect(self._on_connect)

	async def send(
		self,
		from_user_id: str,
		to_user_id: str,
		content: str,
		message_type: Optional[str] = None,
	) -> Message:
		with tracing.span("send", sender=from_user_id, recipient=to_user_id):
			return await self._send(from_user_id, to_user_id, content, message_type)

	async def _send(
		self,
		from_user_id: str,
		to_user_id: str,
		content: str,
		message_type: Optional[str],
	) -> Message:
		# Validation and storage errors propagate before anything is pushed.
		message = await self._store.append(from_user_id, to_user_id, content, message_type)
		obs_metrics.inc_message_sent(message.message_type)
		payload = message.to_dict()
		delivered = await self._connections.emit_to_user(message.to_user_id, EVENT_RECEIVE_MESSAGE, payload)
		if self._echo_to_sender:
			await self._connections.emit_to_user(message.from_user_id, EVENT_MESSAGE_SENT_ACK, payload)
		if delivered:
			await self._push_unread(message.to_user_id)
		LOGGER.info(
			"message_sent",
			extra={"message_id": message.id, "recipient_id": message.to_user_id, "pushed": delivered},
		)
		return message

	async def mark_read(self, viewer_id: str, other_party_id: str) -> int:
		with tracing.span("mark_read", viewer=viewer_id, party=other_party_id):
			updated = await self._store.mark_read(viewer_id, other_party_id)
		if updated == 0:
			return 0
		obs_metrics.inc_messages_read(updated)
		await self._connections.emit_to_user(
			other_party_id,
			EVENT_MESSAGES_READ,
			{"by": viewer_id, "count": updated},
		)
		# Keep the viewer's other tabs' badges in step.
		await self._push_unread(viewer_id)
		return updated

	async def _push_unread(self, user_id: str) -> None:
		if not self._connections.is_online(user_id):
			return
		try:
			counts = await self._store.unread_counts(user_id)
		except StorageUnavailable:
			LOGGER.warning("unread_snapshot_unavailable", extra={"target": user_id})
			return
		await self._connections.emit_to_user(user_id, EVENT_UNREAD_COUNT, unread_payload(counts))

	async def _on_connect(self, user_id: str, handle: ConnectionHandle, session_opened: bool) -> None:
		try:
			counts = await self._store.unread_counts(user_id)
		except StorageUnavailable:
			LOGGER.warning("unread_snapshot_unavailable", extra={"target": user_id})
			return
		await handle.send(EVENT_UNREAD_COUNT, unread_payload(counts))
