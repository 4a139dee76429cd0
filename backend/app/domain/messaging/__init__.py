"""Messaging domain exports."""

from .connections import ConnectionManager
from .conversations import ConversationIndex
from .delivery import DeliveryCoordinator
from .exceptions import AuthError, MessagingError, RateLimitExceeded, StorageUnavailable, ValidationError
from .store import InMemoryMessageStore, PostgresMessageStore, build_store

__all__ = [
	"AuthError",
	"ConnectionManager",
	"ConversationIndex",
	"DeliveryCoordinator",
	"InMemoryMessageStore",
	"MessagingError",
	"PostgresMessageStore",
	"RateLimitExceeded",
	"StorageUnavailable",
	"ValidationError",
	"build_store",
]
