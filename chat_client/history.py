"""
LOCAL CONVERSATION HISTORY
==========================

The client's own list of recent conversations, saved as one JSON file. It is
independent of the server's store: the server keeps up to 100 conversations in
memory, the client keeps the 20 most recently updated ones on disk. The two only
agree on the final text of each finished message.

Entries are ordered most recent first. Saving an id that is already present
replaces it and moves it to the front.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import Field

from app.models import CamelModel, Message, Role
from config import MAX_LOCAL_CONVERSATIONS


logger = logging.getLogger("chat_client")

TITLE_LENGTH = 50


class SavedConversation(CamelModel):
    id: str
    title: str
    model: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message_count: int = 0
    messages: List[Message] = Field(default_factory=list)


def make_title(messages: List[Message]) -> str:
    """First user message, cut to TITLE_LENGTH characters."""
    for message in messages:
        if message.role == Role.USER and message.content.strip():
            text = message.content.strip().replace("\n", " ")
            return text if len(text) <= TITLE_LENGTH else text[:TITLE_LENGTH] + "..."
    return "New chat"


class ConversationHistory:
    """
    Most-recent-first list of saved conversations, capped at `limit`.

    Args:
        path: JSON file to load from and save to. None keeps the list in memory only.
        limit: Maximum number of conversations kept.
    """

    def __init__(self, path: Optional[Path] = None, limit: int = MAX_LOCAL_CONVERSATIONS):
        self.path = Path(path) if path else None
        self.limit = limit
        self.conversations: List[SavedConversation] = []
        self.load()

    def load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self.conversations = [SavedConversation.model_validate(item) for item in data][: self.limit]
        except Exception as e:
            # A corrupt file should not stop the client from starting.
            logger.warning("Could not load conversation history from %s: %s", self.path, e)
            self.conversations = []

    def save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump([c.to_wire() for c in self.conversations], f, indent=2, ensure_ascii=False)

    def upsert(self, conversation_id: str, messages: List[Message], model: Optional[str] = None) -> SavedConversation:
        """Create or replace the entry for conversation_id and move it to the front."""
        saved = SavedConversation(
            id=conversation_id,
            title=make_title(messages),
            model=model,
            message_count=len(messages),
            messages=[m.model_copy() for m in messages],
        )
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        self.conversations.insert(0, saved)
        del self.conversations[self.limit:]
        self.save()
        return saved

    def get(self, conversation_id: str) -> Optional[SavedConversation]:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def remove(self, conversation_id: str) -> None:
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        self.save()

    def __len__(self) -> int:
        return len(self.conversations)
