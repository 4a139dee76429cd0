"""FastAPI endpoints for direct messaging."""

from __future__ import annotations

import json
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status

from app.api.pagination import decode_cursor
from app.api.request_id import get_request_id
from app.domain.messaging.models import HistoryCursor
from app.domain.messaging.schemas import (
	ConversationListResponse,
	MessageListResponse,
	MessageResponse,
	ReadReceiptResponse,
	SendMessageRequest,
	UnreadTotalResponse,
)
from app.domain.messaging.service import (
	get_message,
	list_conversations,
	list_history,
	mark_read,
	send_message,
	unread_counts,
	unread_total,
)
from app.infra import idempotency
from app.infra.auth import AuthenticatedUser, get_current_user
from app.infra.idempotency import (
	IdempotencyConflictError,
	IdempotencyInProgressError,
	IdempotencyUnavailableError,
)

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])

_SEND_HANDLER = "messages.send"


@router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
	payload: SendMessageRequest,
	request: Request,
	response: Response,
	idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MessageResponse:
	request_id = get_request_id(request)
	response.headers["X-Request-Id"] = request_id
	if not idempotency_key:
		return await send_message(auth_user, payload)

	# Keys are scoped per sender so two users can never collide.
	key = f"{auth_user.id}:{idempotency_key.strip()}"
	serialized = json.dumps(payload.model_dump(mode="json"), sort_keys=True)
	try:
		existing = await idempotency.begin(key, _SEND_HANDLER, payload_hash=idempotency.hash_payload(serialized))
	except IdempotencyUnavailableError:
		raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="idempotency_unavailable", headers={"X-Request-Id": request_id}) from None
	except IdempotencyConflictError:
		raise HTTPException(status.HTTP_409_CONFLICT, detail="idempotency_conflict", headers={"X-Request-Id": request_id}) from None
	except IdempotencyInProgressError:
		raise HTTPException(status.HTTP_409_CONFLICT, detail="idempotency_in_progress", headers={"X-Request-Id": request_id}) from None
	if existing:
		message = await get_message(auth_user, int(existing["result_id"]))
		response.status_code = status.HTTP_200_OK
		return message
	try:
		result = await send_message(auth_user, payload)
	except Exception:
		await idempotency.release(key, _SEND_HANDLER)
		raise
	try:
		await idempotency.complete(key, _SEND_HANDLER, str(result.id))
	except IdempotencyUnavailableError:
		# The message is stored; the key stays reserved and replays conflict.
		LOGGER.warning("idempotency_complete_failed", extra={"message_id": result.id})
	return result


@router.get("/messages/unread/count", response_model=Dict[str, int])
async def unread_counts_endpoint(auth_user: AuthenticatedUser = Depends(get_current_user)) -> Dict[str, int]:
	return await unread_counts(auth_user)


@router.get("/messages/unread/total", response_model=UnreadTotalResponse)
async def unread_total_endpoint(auth_user: AuthenticatedUser = Depends(get_current_user)) -> UnreadTotalResponse:
	return await unread_total(auth_user)


@router.get("/messages/{other_party_id}", response_model=MessageListResponse)
async def list_history_endpoint(
	other_party_id: str,
	request: Request,
	limit: Optional[int] = Query(default=None, ge=1),
	before: Optional[str] = Query(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> MessageListResponse:
	cursor = None
	if before:
		try:
			created_at, message_id = decode_cursor(before)
		except ValueError:
			raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="invalid_cursor", headers={"X-Request-Id": get_request_id(request)}) from None
		cursor = HistoryCursor(created_at=created_at, message_id=message_id)
	return await list_history(auth_user, other_party_id, cursor=cursor, limit=limit)


@router.post("/messages/{other_party_id}/read", response_model=ReadReceiptResponse)
async def mark_read_endpoint(
	other_party_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ReadReceiptResponse:
	return await mark_read(auth_user, other_party_id)


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ConversationListResponse:
	return await list_conversations(auth_user)
