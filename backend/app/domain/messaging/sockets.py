"""Socket.IO namespace carrying the messaging push channel."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import socketio
from pydantic import ValidationError as PayloadError
from redis.exceptions import RedisError

from app.infra import rate_limit
from app.infra.auth import AuthenticatedUser, identity_from_handshake
from app.obs import logging as obs_logging
from app.obs import metrics as obs_metrics
from app.settings import settings

from .connections import ConnectionHandle, ConnectionManager
from .exceptions import AuthError, MessagingError
from .schemas import MarkReadRequest, SendMessageRequest, TypingRequest
from .service import MessagingService, get_service

LOGGER = logging.getLogger(__name__)

EVENT_ACK = "messages:ack"
EVENT_TYPING = "typing"


def _headers(scope: dict) -> Dict[str, str]:
	headers: Dict[str, str] = {}
	for key, value in scope.get("headers", []):
		name = key.decode("latin-1") if isinstance(key, bytes) else str(key)
		headers[name.lower()] = value.decode("latin-1") if isinstance(value, bytes) else str(value)
	return headers


class SocketConnection:
	"""A single socket sid seen through the connection manager's handle interface."""

	def __init__(self, namespace: "MessagingNamespace", sid: str) -> None:
		self.namespace = namespace
		self.handle_id = sid

	async def send(self, event: str, payload: dict) -> None:
		obs_metrics.socket_event(self.namespace.namespace, event)
		await self.namespace.emit(event, payload, to=self.handle_id)


class MessagingNamespace(socketio.AsyncNamespace):
	def __init__(self, service: MessagingService | None = None) -> None:
		super().__init__("/messages")
		self._service = service
		self._sessions: Dict[str, AuthenticatedUser] = {}
		self._listening: Optional[ConnectionManager] = None

	@property
	def service(self) -> MessagingService:
		return self._service or get_service()

	def user_for(self, sid: str) -> Optional[AuthenticatedUser]:
		return self._sessions.get(sid)

	def _listen(self, connections: ConnectionManager) -> None:
		if self._listening is not connections:
			connections.on_disconnect(self._handle_dropped)
			self._listening = connections

	async def _handle_dropped(self, user_id: str, handle: ConnectionHandle, closed: bool) -> None:
		"""Close a socket whose handle the manager pruned on its own."""
		if not isinstance(handle, SocketConnection) or handle.namespace is not self:
			return
		sid = handle.handle_id
		if self._sessions.pop(sid, None) is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		LOGGER.info("socket_pruned", extra={"user_id": user_id, "connection_id": sid})
		await self.disconnect(sid)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		try:
			user = identity_from_handshake(_headers(scope), auth if isinstance(auth, dict) else None)
			self._sessions[sid] = user
			self._listen(self.service.connections)
			await self.service.connections.register(user.id, SocketConnection(self, sid))
		except AuthError as exc:
			self._sessions.pop(sid, None)
			obs_metrics.socket_disconnected(self.namespace)
			LOGGER.info("socket_refused", extra={"reason": exc.detail})
			raise ConnectionRefusedError(exc.detail) from None
		await self.emit(EVENT_ACK, {"ok": True, "user_id": user.id}, to=sid)

	async def on_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
		user = self._sessions.pop(sid, None)
		if user is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		await self.service.connections.unregister(sid)

	async def on_send_message(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "send_message")
		user = self._sessions.get(sid)
		if not user:
			return {"ok": False, "error": "unauthenticated"}
		await self.service.connections.touch(sid)
		try:
			request = SendMessageRequest.model_validate(payload or {})
		except PayloadError:
			return {"ok": False, "error": "invalid_payload"}
		try:
			with obs_logging.bound_context(user_id=user.id, connection_id=sid):
				message = await self.service.send_message(user, request)
		except MessagingError as exc:
			return {"ok": False, "error": exc.detail}
		return {"ok": True, "message": message.model_dump(mode="json")}

	async def on_mark_messages_read(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, "mark_messages_read")
		user = self._sessions.get(sid)
		if not user:
			return {"ok": False, "error": "unauthenticated"}
		await self.service.connections.touch(sid)
		try:
			request = MarkReadRequest.model_validate(payload or {})
		except PayloadError:
			return {"ok": False, "error": "invalid_payload"}
		try:
			with obs_logging.bound_context(user_id=user.id, connection_id=sid):
				receipt = await self.service.mark_read(user, request.from_user_id)
		except MessagingError as exc:
			return {"ok": False, "error": exc.detail}
		return {"ok": True, "updated_count": receipt.updated_count}

	async def on_typing(self, sid: str, payload: Optional[dict] = None) -> dict:
		obs_metrics.socket_event(self.namespace, EVENT_TYPING)
		user = self._sessions.get(sid)
		if not user:
			return {"ok": False, "error": "unauthenticated"}
		try:
			request = TypingRequest.model_validate(payload or {})
		except PayloadError:
			return {"ok": False, "error": "invalid_payload"}
		try:
			allowed = await rate_limit.allow("typing", user.id, limit=settings.typing_rate_limit)
		except (RedisError, OSError):
			LOGGER.warning("typing_rate_limit_unavailable", extra={"actor_id": user.id})
			allowed = True
		if not allowed:
			obs_metrics.rate_limited(EVENT_TYPING)
			return {"ok": False, "error": "rate_limited"}
		delivered = await self.service.connections.emit_to_user(
			request.peer_id,
			EVENT_TYPING,
			{"from_user_id": user.id, "peer_id": request.peer_id},
		)
		return {"ok": True, "delivered": delivered}
