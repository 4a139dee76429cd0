from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone


def encode_cursor(dt: datetime, id: int) -> str:
	payload = {"t": dt.isoformat(), "id": int(id)}
	return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


def decode_cursor(s: str) -> tuple[datetime, int]:
	"""Inverse of encode_cursor; raises ValueError on anything malformed.

	Timestamps without an offset are read as UTC.
	"""
	try:
		data = json.loads(base64.urlsafe_b64decode(s.encode()).decode())
		created_at = datetime.fromisoformat(data["t"])
		cursor_id = int(data["id"])
	except (binascii.Error, UnicodeDecodeError, KeyError, TypeError) as exc:
		raise ValueError("invalid_cursor") from exc
	if created_at.tzinfo is None:
		created_at = created_at.replace(tzinfo=timezone.utc)
	return created_at, cursor_id
