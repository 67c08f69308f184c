"""
CONVERSATION STORE MODULE
=========================

In-memory map from conversation id to Conversation, bounded by a capacity.
When a put() grows the map past the capacity, the conversation that was
inserted longest ago is evicted (insertion order, not last access).

The store is created once in the app lifespan and handed to ChatService, so a
persistent or shared backing store can replace it without touching the relay.
All access happens on the event loop thread; there is no lock.
"""

import logging
from typing import Dict, List, Optional

from app.models import Conversation


logger = logging.getLogger("chat_relay")


class ConversationStore:
    """Bounded, insertion-ordered conversation map."""

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        # dicts keep insertion order; overwriting a key keeps its original slot.
        self._conversations: Dict[str, Conversation] = {}

    def get(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        if not conversation_id:
            return None
        return self._conversations.get(conversation_id)

    def put(self, conversation: Conversation) -> None:
        """Insert or overwrite by id, then evict the oldest entries while over capacity."""
        self._conversations[conversation.id] = conversation
        while len(self._conversations) > self.capacity:
            oldest_id = next(iter(self._conversations))
            del self._conversations[oldest_id]
            logger.info("Evicted conversation %s (store over capacity %d)", oldest_id, self.capacity)

    def delete(self, conversation_id: str) -> None:
        """Remove if present. Missing ids are not an error."""
        self._conversations.pop(conversation_id, None)

    def ids(self) -> List[str]:
        """Ids in insertion order (oldest first)."""
        return list(self._conversations)

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations
