import pytest

from app.domain.messaging.exceptions import AuthError
from app.infra import jwt as jwt_helper
from app.infra.auth import identity_from_handshake, resolve_identity, verify_access_jwt
from app.settings import settings


def test_verify_access_jwt_reads_claims():
	token = jwt_helper.encode_access({"sub": "vendor-7", "role": "vendor", "name": "Bloom Florals", "roles": "vendor,beta"})

	user = verify_access_jwt(token)

	assert user.id == "vendor-7"
	assert user.role == "vendor"
	assert user.display_name == "Bloom Florals"
	assert user.has_role("beta")


def test_expired_token_is_rejected():
	token = jwt_helper.encode_access({"sub": "vendor-7"}, ttl_seconds=-60)

	with pytest.raises(AuthError):
		verify_access_jwt(token)


def test_tampered_token_is_rejected():
	token = jwt_helper.encode_access({"sub": "vendor-7"})

	with pytest.raises(AuthError):
		verify_access_jwt(token.rsplit(".", 1)[0] + ".not-the-signature")


def test_dev_headers_only_honoured_in_dev():
	assert resolve_identity(dev_user_id="bride-1", dev_role="bride").id == "bride-1"

	settings.environment = "production"
	with pytest.raises(AuthError):
		resolve_identity(dev_user_id="bride-1")


def test_handshake_prefers_auth_token_over_headers():
	token = jwt_helper.encode_access({"sub": "bride-1"})

	user = identity_from_handshake({"x-user-id": "someone-else"}, {"token": token})

	assert user.id == "bride-1"


def test_handshake_accepts_bearer_header():
	token = jwt_helper.encode_access({"sub": "s-4", "role": "supervisor"})

	user = identity_from_handshake({"authorization": f"Bearer {token}"}, None)

	assert (user.id, user.role) == ("s-4", "supervisor")


def test_handshake_without_identity_is_refused():
	with pytest.raises(AuthError):
		identity_from_handshake({}, {})
