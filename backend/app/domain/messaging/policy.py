"""Who may message whom, by role."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Role(str, Enum):
	BRIDE = "bride"
	GROOM = "groom"
	FAMILY = "family"
	SUPERVISOR = "supervisor"
	VENDOR = "vendor"
	ADMIN = "admin"

	@classmethod
	def parse(cls, value: object) -> Optional["Role"]:
		try:
			return cls(str(value).strip().lower())
		except ValueError:
			return None


CLIENT_ROLES = frozenset({Role.BRIDE, Role.GROOM, Role.FAMILY})


@dataclass(slots=True, frozen=True)
class DirectoryUser:
	id: str
	role: Optional[Role]
	supervisor_id: Optional[str] = None
	display_name: Optional[str] = None

	@property
	def is_client(self) -> bool:
		return self.role in CLIENT_ROLES


def can_message(viewer: DirectoryUser, other: DirectoryUser) -> bool:
	"""Return True when `other` belongs in the viewer's contact list.

	- clients see supervisors, vendors and admins
	- supervisors see their assigned clients, vendors and admins
	- vendors see clients, supervisors and admins
	- admins see everyone
	"""
	if viewer.id == other.id or viewer.role is None:
		return False
	if viewer.role is Role.ADMIN:
		return True
	if other.role is Role.ADMIN:
		return True
	if viewer.is_client:
		return other.role in (Role.SUPERVISOR, Role.VENDOR)
	if viewer.role is Role.SUPERVISOR:
		if other.is_client:
			return other.supervisor_id == viewer.id
		return other.role is Role.VENDOR
	if viewer.role is Role.VENDOR:
		return other.is_client or other.role is Role.SUPERVISOR
	return False
