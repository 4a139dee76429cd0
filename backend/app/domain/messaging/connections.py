"""Connection manager: which users are reachable over a live push channel.

Transport-neutral. A handle is anything with a stable ``handle_id`` and an
async ``send(event, payload)``; the Socket.IO namespace supplies one, other
transports can supply their own.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Union

from app.obs import metrics as obs_metrics

from .exceptions import AuthError
from .models import Session

LOGGER = logging.getLogger(__name__)

_TOMBSTONE_LIMIT = 4096


class ConnectionHandle(Protocol):
	handle_id: str

	async def send(self, event: str, payload: dict) -> None:
		...


LifecycleListener = Callable[[str, ConnectionHandle, bool], Awaitable[None]]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class HandleAlreadyBound(AuthError):
	detail = "handle_already_bound"


class ConnectionManager:
	"""Session table mapping authenticated users to their live handles.

	The table is only touched under ``self._lock``; sends happen outside it so
	a slow connection never stalls register/unregister for everyone else.
	"""

	def __init__(self, *, send_timeout: Optional[float] = None) -> None:
		self._lock = asyncio.Lock()
		self._send_timeout = send_timeout
		self._sessions: Dict[str, Session] = {}
		self._handles: Dict[str, ConnectionHandle] = {}
		self._owners: Dict[str, str] = {}
		self._retired: "OrderedDict[str, None]" = OrderedDict()
		self._connect_listeners: List[LifecycleListener] = []
		self._disconnect_listeners: List[LifecycleListener] = []

	def on_connect(self, listener: LifecycleListener) -> None:
		"""Subscribe to every successful register: (user_id, handle, session_opened)."""
		self._connect_listeners.append(listener)

	def on_disconnect(self, listener: LifecycleListener) -> None:
		"""Subscribe to every effective unregister: (user_id, handle, session_closed)."""
		self._disconnect_listeners.append(listener)

	async def register(self, user_id: str, handle: ConnectionHandle) -> Session:
		user_id = str(user_id or "").strip()
		if not user_id:
			raise AuthError("unauthenticated")
		handle_id = handle.handle_id
		async with self._lock:
			if handle_id in self._retired:
				raise AuthError("connection_closed")
			owner = self._owners.get(handle_id)
			if owner is not None and owner != user_id:
				raise HandleAlreadyBound()
			now = _utcnow()
			session = self._sessions.get(user_id)
			opened = session is None
			if session is None:
				session = Session(user_id=user_id, connected_at=now, last_seen=now)
				self._sessions[user_id] = session
			session.handle_ids.add(handle_id)
			session.last_seen = now
			self._handles[handle_id] = handle
			self._owners[handle_id] = user_id
			snapshot = self._snapshot(session)
			online = len(self._sessions)
		obs_metrics.set_sessions_online(online)
		if opened:
			LOGGER.info("messaging_session_opened", extra={"user_id": user_id})
		await self._notify(self._connect_listeners, user_id, handle, opened)
		return snapshot

	async def unregister(self, handle: Union[ConnectionHandle, str]) -> Optional[str]:
		"""Drop a handle; unknown or already-removed handles are a no-op."""
		handle_id = handle if isinstance(handle, str) else handle.handle_id
		async with self._lock:
			user_id = self._owners.pop(handle_id, None)
			removed = self._handles.pop(handle_id, None)
			if user_id is None:
				# Remember it so a register racing behind this disconnect is refused.
				self._retire(handle_id)
				return None
			self._retire(handle_id)
			closed = False
			session = self._sessions.get(user_id)
			if session is not None:
				session.handle_ids.discard(handle_id)
				if not session.handle_ids:
					del self._sessions[user_id]
					closed = True
			online = len(self._sessions)
		obs_metrics.set_sessions_online(online)
		if closed:
			LOGGER.info("messaging_session_closed", extra={"user_id": user_id})
		if removed is not None:
			await self._notify(self._disconnect_listeners, user_id, removed, closed)
		return user_id

	async def emit_to_user(self, user_id: str, event: str, payload: dict) -> bool:
		"""Send to every live handle of the user; False means offline, not failure."""
		async with self._lock:
			session = self._sessions.get(user_id)
			handles = [self._handles[h] for h in sorted(session.handle_ids)] if session else []
		if not handles:
			obs_metrics.push_outcome(event, "miss")
			LOGGER.debug("push_delivery_miss", extra={"event": event, "target": user_id})
			return False
		results = await asyncio.gather(*(self._send(handle, event, payload) for handle in handles))
		delivered = any(results)
		if delivered:
			async with self._lock:
				session = self._sessions.get(user_id)
				if session is not None:
					session.last_seen = _utcnow()
		obs_metrics.push_outcome(event, "delivered" if delivered else "miss")
		return delivered

	async def touch(self, handle: Union[ConnectionHandle, str]) -> None:
		handle_id = handle if isinstance(handle, str) else handle.handle_id
		async with self._lock:
			user_id = self._owners.get(handle_id)
			session = self._sessions.get(user_id) if user_id else None
			if session is not None:
				session.last_seen = _utcnow()

	def is_online(self, user_id: str) -> bool:
		return user_id in self._sessions

	def session(self, user_id: str) -> Optional[Session]:
		session = self._sessions.get(user_id)
		return self._snapshot(session) if session else None

	def online_user_ids(self) -> List[str]:
		return sorted(self._sessions)

	def owner_of(self, handle_id: str) -> Optional[str]:
		return self._owners.get(handle_id)

	async def _send(self, handle: ConnectionHandle, event: str, payload: dict) -> bool:
		try:
			if self._send_timeout:
				await asyncio.wait_for(handle.send(event, payload), timeout=self._send_timeout)
			else:
				await handle.send(event, payload)
		except Exception:  # any transport failure is a miss for this handle only
			obs_metrics.push_outcome(event, "error")
			LOGGER.warning(
				"push_handle_failed",
				exc_info=True,
				extra={"event": event, "handle_id": handle.handle_id},
			)
			# A handle that cannot be written to is stale; drop it.
			await self.unregister(handle.handle_id)
			return False
		return True

	def _retire(self, handle_id: str) -> None:
		self._retired[handle_id] = None
		self._retired.move_to_end(handle_id)
		while len(self._retired) > _TOMBSTONE_LIMIT:
			self._retired.popitem(last=False)

	@staticmethod
	def _snapshot(session: Session) -> Session:
		return replace(session, handle_ids=set(session.handle_ids))

	async def _notify(
		self,
		listeners: List[LifecycleListener],
		user_id: str,
		handle: ConnectionHandle,
		flag: bool,
	) -> None:
		for listener in listeners:
			try:
				await listener(user_id, handle, flag)
			except Exception:  # a listener bug must not break connect/disconnect
				LOGGER.exception("connection_listener_failed", extra={"target": user_id})
