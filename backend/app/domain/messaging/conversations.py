"""Conversation index: the per-user contact list."""

from __future__ import annotations

from typing import List, Optional

from .directory import UserDirectory
from .models import ConversationSummary
from .store import MessageStore


def _rank_key(summary: ConversationSummary):
	last = summary.last_message
	stamp, message_id = (last.created_at.timestamp(), last.id) if last is not None else (0.0, 0)
	# unread desc, newest first, then party id asc
	return (-summary.unread_count, -stamp, -message_id, summary.party_id)


class ConversationIndex:
	def __init__(self, store: MessageStore, directory: Optional[UserDirectory] = None) -> None:
		self._store = store
		self._directory = directory

	async def list_conversations(self, viewer_id: str) -> List[ConversationSummary]:
		"""Started conversations ranked by urgency, then eligible unstarted contacts.

		Last message and unread count come from one store read, so the two can
		never disagree. Unstarted contacts keep the directory's listing order.
		"""
		summaries = await self._store.conversation_summaries(viewer_id)
		started = sorted(
			(
				ConversationSummary(party_id=party, last_message=last, unread_count=unread)
				for party, (last, unread) in summaries.items()
				if party != viewer_id
			),
			key=_rank_key,
		)
		if self._directory is None:
			return started
		seen = {summary.party_id for summary in started}
		seen.add(viewer_id)
		unstarted: List[ConversationSummary] = []
		for party in await self._directory.eligible_contacts(viewer_id):
			if party in seen:
				continue
			seen.add(party)
			unstarted.append(ConversationSummary(party_id=party))
		return started + unstarted
