"""
DATA MODELS MODULE
==================

This file defines the Pydantic models used for API requests, responses, the
in-memory conversation records, and the events that flow through the relay.
FastAPI uses them to validate incoming JSON and to serialize responses; the
relay and the terminal client use them to build and read stream events.

All JSON goes out with camelCase keys (conversationId, createdAt, messageId)
so any client written against the original API keeps working.

MODELS:
  ChatRequest     - Body of POST /chat/message and POST /chat/message/stream.
  Message         - One message in a conversation (user, assistant or system).
  Conversation    - Id, ordered messages, creation time and model.
  UpstreamEvent   - One decoded frame from the model server (fragment / done / error).
  StreamEvent     - One frame sent to the client on the event stream.
  ChatResponse    - Body returned by POST /chat/message on success.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_id() -> str:
    """Fresh opaque id for conversations and messages."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """JSON-ready dict with camelCase keys and unset optional fields left out."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ==============================================================================
# MESSAGES AND CONVERSATIONS
# ==============================================================================

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(CamelModel):
    """
    A single message in a conversation.

    `content` only changes while `streaming` is True (the assistant reply being
    built chunk by chunk); once finalized it is left alone.
    """
    id: str = Field(default_factory=new_id)
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    streaming: bool = False

    def to_upstream(self) -> dict:
        """Role and content only; this is all the model server is sent."""
        return {"role": self.role.value, "content": self.content}


class Conversation(CamelModel):
    """Ordered history for one conversation id. Owned by the ConversationStore."""
    id: str = Field(default_factory=new_id)
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    model: str


# ==============================================================================
# API REQUEST / RESPONSE MODELS
# ==============================================================================

class ChatRequest(CamelModel):
    """
    Request body for POST /chat/message and POST /chat/message/stream.

    - message: The user's text. Emptiness is checked by the chat service (after
      trimming) so the error comes back as `{"success": false, "error": ...}`.
    - model: Optional. Falls back to the conversation's model, then DEFAULT_MODEL.
    - conversation_id: Optional. Unknown ids start a new conversation.
    """
    message: Optional[str] = None
    model: Optional[str] = None
    conversation_id: Optional[str] = None


class ChatResponse(CamelModel):
    success: bool = True
    conversation_id: str
    message: Message
    model: str


# ==============================================================================
# STREAM EVENTS
# ==============================================================================

class UpstreamEvent(BaseModel):
    """
    One frame from the model server, reduced to what the relay needs.

    The server sends `{"message": {"content": "..."}, "done": false}` per token
    batch, and `{"error": "..."}` when generation fails.
    """
    fragment: str = ""
    done: bool = False
    error: Optional[str] = None

    @classmethod
    def from_frame(cls, frame: dict) -> "UpstreamEvent":
        message = frame.get("message")
        fragment = ""
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            fragment = message["content"]
        error = frame.get("error")
        return cls(
            fragment=fragment,
            done=bool(frame.get("done", False)),
            error=str(error) if error else None,
        )


class StreamEvent(CamelModel):
    """
    One frame on the relay's event stream.

    `chunk` is the full assistant text generated so far, not the latest delta,
    so a client only ever has to replace its copy with the newest value.
    """
    success: bool = True
    chunk: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    done: bool = False
    error: Optional[str] = None
