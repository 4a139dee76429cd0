"""Authentication helpers for FastAPI endpoints and socket handshakes.

The surrounding application owns credentials; this module only verifies the
access JWT it issues (HS256, settings.secret_key) and, in development, accepts
plain X-User-* headers for local tools.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from app.domain.messaging.exceptions import AuthError
from app.infra import jwt as jwt_helper
from app.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	role: Optional[str] = None
	display_name: Optional[str] = None
	roles: Tuple[str, ...] = ()
	session_id: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return role == self.role or role in self.roles


_bearer_scheme = HTTPBearer(auto_error=False)


def _split_roles(claim: object) -> Tuple[str, ...]:
	if isinstance(claim, (list, tuple)):
		return tuple(str(r).strip() for r in claim if str(r).strip())
	if isinstance(claim, str):
		return tuple(part.strip() for part in claim.split(",") if part.strip())
	return ()


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser.

	Requirements:
	- issuer="sehra-api", audience="sehra-fe"
	- required claims: sub, exp, iat
	- role is a single string; roles can be list[str] or comma-separated string.
	"""
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError:
		raise AuthError("invalid_token") from None

	role = payload.get("role")
	display_name = payload.get("name") or payload.get("display_name")
	session_id = payload.get("sid")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		role=str(role) if role else None,
		display_name=str(display_name) if display_name is not None else None,
		roles=_split_roles(payload.get("roles")),
		session_id=str(session_id).strip() if session_id is not None else None,
	)


def resolve_identity(
	*,
	token: Optional[str] = None,
	dev_user_id: Optional[str] = None,
	dev_role: Optional[str] = None,
) -> AuthenticatedUser:
	"""Resolve an identity from a bearer token or, in development only, plain headers."""
	token = (token or "").strip()
	if token:
		return verify_access_jwt(token)
	if settings.is_dev() and dev_user_id and dev_user_id.strip():
		role = (dev_role or "").strip() or None
		return AuthenticatedUser(id=dev_user_id.strip(), role=role)
	raise AuthError("invalid_token")


def identity_from_handshake(headers: Mapping[str, str], auth: Optional[Mapping[str, object]]) -> AuthenticatedUser:
	"""Resolve the identity for a push connection from its handshake."""
	auth = auth or {}
	token = auth.get("token")
	if not token:
		authorization = headers.get("authorization") or ""
		if authorization.lower().startswith("bearer "):
			token = authorization.split(" ", 1)[1]
	return resolve_identity(
		token=str(token) if token else None,
		dev_user_id=str(auth.get("userId") or headers.get("x-user-id") or "") or None,
		dev_role=str(auth.get("role") or headers.get("x-user-role") or "") or None,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow simple headers. In all other environments, headers are
	ignored and a valid Bearer JWT is required.
	"""
	token = credentials.credentials if credentials and credentials.scheme.lower() == "bearer" else None
	try:
		return resolve_identity(token=token, dev_user_id=x_user_id, dev_role=x_user_role)
	except AuthError as exc:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.detail) from None
