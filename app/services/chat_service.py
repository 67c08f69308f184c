"""
CHAT SERVICE MODULE
===================

Runs chat turns against the model server and keeps conversation history in the
ConversationStore. Two ways to run a turn:

  send_message()  - single-shot: wait for the full reply, return the assistant Message.
  start_stream()  - streaming: returns a RelaySession whose run() yields StreamEvents
                    as the model produces text.

Both share the same first steps, done before any network call:
  1. Validate the message (non-empty after trimming, not too long).
  2. Resolve the conversation: known id -> existing record, otherwise a new one.
  3. Append the user message and put the conversation in the store.

So the user's message is recorded even if the model call then fails; only the
assistant's half of the turn is lost. Nothing is retried.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from app.exceptions import ChatError, ClientAbort, UpstreamProtocolError, ValidationError
from app.models import Conversation, Message, Role, StreamEvent, new_id
from app.services.conversation_store import ConversationStore
from app.services.ollama_service import OllamaService
from config import DEFAULT_MODEL, MAX_MESSAGE_LENGTH


logger = logging.getLogger("chat_relay")

DisconnectProbe = Callable[[], Awaitable[bool]]


# ==============================================================================
# RELAY SESSION (ONE STREAMING TURN)
# ==============================================================================

class RelaySession:
    """
    One streaming turn: one upstream request, one downstream consumer.

    The conversation already holds the user message when the session is created.
    run() forwards each fragment as a StreamEvent carrying the cumulative text,
    then either finalizes the assistant message (done) or emits a single
    success=False event (error). If the client disconnects, the upstream request
    is closed and nothing is recorded for the assistant.
    """

    def __init__(self, store: ConversationStore, ollama: OllamaService, conversation: Conversation):
        self.store = store
        self.ollama = ollama
        self.conversation = conversation
        # Stable for the whole turn; becomes the assistant Message id on success.
        self.message_id = new_id()
        self.text = ""
        self.finished = False

    def _event(self, **kwargs) -> StreamEvent:
        return StreamEvent(conversation_id=self.conversation.id, message_id=self.message_id, **kwargs)

    async def run(self, is_disconnected: Optional[DisconnectProbe] = None) -> AsyncIterator[StreamEvent]:
        history = [m.to_upstream() for m in self.conversation.messages]
        upstream = self.ollama.chat_stream(self.conversation.model, history)
        try:
            async for event in upstream:
                if event.error:
                    raise UpstreamProtocolError(event.error)

                if event.fragment:
                    self.text += event.fragment
                    yield self._event(chunk=self.text, done=False)

                if event.done:
                    break
                if is_disconnected is not None and await is_disconnected():
                    raise ClientAbort("Client disconnected")

        except ClientAbort:
            logger.info("Client left conversation %s mid-stream; upstream closed", self.conversation.id)
            return
        except asyncio.CancelledError:
            logger.info("Stream for conversation %s cancelled; upstream closed", self.conversation.id)
            raise
        except ChatError as e:
            logger.warning("Turn failed for conversation %s: %s", self.conversation.id, e.message)
            yield self._event(success=False, error=e.message, done=True)
            return
        finally:
            await upstream.aclose()

        self._finalize()
        yield self._event(chunk=self.text, done=True)

    def _finalize(self) -> None:
        self.conversation.messages.append(
            Message(id=self.message_id, role=Role.ASSISTANT, content=self.text)
        )
        self.store.put(self.conversation)
        self.finished = True
        logger.info(
            "Conversation %s: streamed reply complete (%d chars, %d messages)",
            self.conversation.id, len(self.text), len(self.conversation.messages),
        )


# ==============================================================================
# CHAT SERVICE
# ==============================================================================

class ChatService:
    """Entry point for both chat paths. Holds the store and the model server client."""

    def __init__(self, store: ConversationStore, ollama: OllamaService, default_model: str = DEFAULT_MODEL):
        self.store = store
        self.ollama = ollama
        self.default_model = default_model

    # ---- shared turn setup ----

    @staticmethod
    def validate_message(message: Optional[str]) -> str:
        if message is None or not message.strip():
            raise ValidationError("Message is required")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message is too long (max {MAX_MESSAGE_LENGTH} characters)")
        return message

    def get_or_create_conversation(self, conversation_id: Optional[str], model: Optional[str]) -> Conversation:
        """Known id -> stored record. Missing or unknown id -> new record with a fresh id."""
        conversation = self.store.get(conversation_id)
        if conversation is not None:
            return conversation
        if conversation_id:
            logger.info("Unknown conversation id %s; starting a new conversation", conversation_id)
        return Conversation(model=model or self.default_model)

    def begin_turn(self, message: Optional[str], model: Optional[str], conversation_id: Optional[str]) -> Conversation:
        """Validate, resolve, append the user message and store the conversation."""
        text = self.validate_message(message)
        conversation = self.get_or_create_conversation(conversation_id, model)
        conversation.messages.append(Message(role=Role.USER, content=text))
        self.store.put(conversation)
        return conversation

    # ---- single-shot ----

    async def send_message(
        self, message: Optional[str], model: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> Tuple[Conversation, Message]:
        conversation = self.begin_turn(message, model, conversation_id)
        history = [m.to_upstream() for m in conversation.messages]

        # Failures propagate; the user message stays in the conversation.
        reply = await self.ollama.chat(conversation.model, history)

        assistant = Message(role=Role.ASSISTANT, content=reply)
        conversation.messages.append(assistant)
        self.store.put(conversation)
        logger.info("Conversation %s: reply complete (%d messages)", conversation.id, len(conversation.messages))
        return conversation, assistant

    # ---- streaming ----

    def start_stream(
        self, message: Optional[str], model: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> RelaySession:
        conversation = self.begin_turn(message, model, conversation_id)
        return RelaySession(self.store, self.ollama, conversation)

    # ---- conversations ----

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.store.get(conversation_id)

    def clear_conversation(self, conversation_id: str) -> None:
        self.store.delete(conversation_id)

    def conversation_ids(self) -> List[str]:
        return self.store.ids()
