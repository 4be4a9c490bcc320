"""Conversation store adapter.

The orchestrator depends only on the ``ConversationStore`` protocol.
``InMemoryConversationStore`` is the implementation used by the server,
the CLI and the tests; a document database would implement the same four
methods with per-document atomic updates.

Ownership is enforced here: asking for another user's conversation
raises ``ConversationAccessError``, never returns it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from procurement_agent.errors import ConversationAccessError, ConversationNotFoundError
from procurement_agent.models import AgentAction, Conversation, Message, UsageTotals, utcnow

logger = logging.getLogger(__name__)

TITLE_LENGTH = 60
PREVIEW_LENGTH = 100


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1].rstrip() + "…"


class ConversationStore(Protocol):
    async def load_or_create(
        self,
        conversation_id: str | None,
        user_id: str | None,
        *,
        title: str | None = None,
    ) -> Conversation: ...

    async def append(
        self,
        conversation_id: str,
        messages: list[Message],
        actions: list[AgentAction],
        *,
        usage: UsageTotals | None = None,
    ) -> Conversation: ...

    async def get(self, conversation_id: str, user_id: str | None) -> Conversation: ...

    async def list_for_user(self, user_id: str | None, limit: int = 20) -> list[Conversation]: ...


class InMemoryConversationStore:
    """Process-local store.  Reads and writes hand out deep copies."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    def _owned(self, conversation_id: str, user_id: str | None) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        if conversation.user_id != user_id:
            logger.warning(
                "User %s attempted to access conversation %s owned by another user",
                user_id, conversation_id,
            )
            raise ConversationAccessError(conversation_id)
        return conversation

    async def load_or_create(
        self,
        conversation_id: str | None,
        user_id: str | None,
        *,
        title: str | None = None,
    ) -> Conversation:
        async with self._lock:
            if conversation_id:
                return self._owned(conversation_id, user_id).model_copy(deep=True)

            conversation = Conversation(user_id=user_id)
            if title:
                conversation.title = _truncate(title, TITLE_LENGTH)
            self._conversations[conversation.id] = conversation
            logger.info("Created conversation %s for user %s", conversation.id, user_id)
            return conversation.model_copy(deep=True)

    async def append(
        self,
        conversation_id: str,
        messages: list[Message],
        actions: list[AgentAction],
        *,
        usage: UsageTotals | None = None,
    ) -> Conversation:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            conversation.messages.extend(messages)
            conversation.actions.extend(actions)
            if usage is not None:
                conversation.usage = conversation.usage.plus(usage)
            if messages:
                conversation.last_message_preview = _truncate(messages[-1].content, PREVIEW_LENGTH)
            conversation.updated_at = utcnow()
            return conversation.model_copy(deep=True)

    async def get(self, conversation_id: str, user_id: str | None) -> Conversation:
        async with self._lock:
            return self._owned(conversation_id, user_id).model_copy(deep=True)

    async def list_for_user(self, user_id: str | None, limit: int = 20) -> list[Conversation]:
        async with self._lock:
            owned = [c for c in self._conversations.values() if c.user_id == user_id]
            owned.sort(key=lambda c: c.updated_at, reverse=True)
            return [c.model_copy(deep=True) for c in owned[:limit]]
