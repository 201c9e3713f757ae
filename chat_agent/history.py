"""Per-conversation view over the message store."""

from __future__ import annotations

from typing import Iterable

from chat_agent.db import Database
from chat_agent.models import Message


class HistoryStore:
    """Append-ordered message history for one conversation.

    The runtime only appends new turns and rewrites entries whose tool
    invocations changed state; it never reorders or deletes.
    """

    def __init__(self, db: Database, conversation_id: str) -> None:
        self._db = db
        self.conversation_id = conversation_id

    def append(self, messages: Iterable[Message]) -> None:
        self._db.append_messages(self.conversation_id, list(messages))

    def read_all(self) -> list[Message]:
        return self._db.get_messages(self.conversation_id)

    def rewrite(self, messages: Iterable[Message]) -> None:
        self._db.update_messages(self.conversation_id, list(messages))
