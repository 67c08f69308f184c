"""
STREAM CLIENT
=============

Client side of the relay's streaming chat. Keeps a local message list and
rebuilds the assistant's reply from the event stream as it arrives.

ONE TURN (send):
  1. Append the user message and an empty assistant placeholder (streaming=True)
     to the local list, before any network call.
  2. POST {base_url}/chat/message/stream and decode the `data: <json>` events
     with the same FrameDecoder the server uses.
  3. Each successful event replaces the placeholder's content with the event's
     `chunk` (the full text so far) and sets streaming = not done.
  4. done=True: the reply is final; the conversation is saved to the local
     ConversationHistory (most recent first, at most 20).
  5. Any failure (error event, HTTP error, connection lost, timeout, cancel):
     the placeholder is removed, the user message stays, and a system message
     "Error: ..." is appended. Nothing partial is saved.

cancel() may be called from another thread (e.g. on Ctrl+C). It shuts the
in-flight response down, so a read waiting on a silent server fails at once
and the turn ends as "Request cancelled". The HTTP response is always closed.
"""

import logging
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

import pydantic
import requests

from app.exceptions import ChatError, ClientAbort, UpstreamProtocolError, UpstreamUnavailable
from app.models import Message, Role, StreamEvent
from app.utils.frame_decoder import FrameDecoder
from chat_client.history import ConversationHistory
from config import CHAT_API_URL, CLIENT_TIMEOUT


logger = logging.getLogger("chat_client")

CONNECT_TIMEOUT = 10.0
TIMEOUT_MESSAGE = "Request timed out. Please try again."
CANCELLED_MESSAGE = "Request cancelled"
CONNECTION_MESSAGE = "Failed to connect to server. Please try again."


class StreamClient:
    """
    Args:
        base_url: Relay API root, e.g. http://localhost:3001/api/v1.
        history: Local conversation list; a fresh in-memory one if omitted.
        timeout: Overall limit in seconds for one streamed turn.
        session: requests.Session (or anything with the same post/get/delete).
        on_update: Called with this client after every change to the local state.
    """

    def __init__(
        self,
        base_url: str = CHAT_API_URL,
        history: Optional[ConversationHistory] = None,
        timeout: float = CLIENT_TIMEOUT,
        session=None,
        model: Optional[str] = None,
        on_update: Optional[Callable[["StreamClient"], None]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.history = history if history is not None else ConversationHistory()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.model = model
        self.on_update = on_update

        self.messages: List[Message] = []
        self.conversation_id: Optional[str] = None
        self.is_loading = False
        self.is_streaming = False
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._response = None

    # ---- local state ----

    def _notify(self) -> None:
        if self.on_update:
            self.on_update(self)

    def new_conversation(self) -> None:
        self.messages = []
        self.conversation_id = None
        self._notify()

    def load_conversation(self, conversation_id: str) -> bool:
        """Restore a conversation from the local history. False if it is not there."""
        saved = self.history.get(conversation_id)
        if saved is None:
            return False
        self.messages = [m.model_copy() for m in saved.messages]
        self.conversation_id = saved.id
        if saved.model:
            self.model = saved.model
        self._notify()
        return True

    # ---- streaming turn ----

    def cancel(self) -> None:
        """Abort the in-flight request (thread-safe); a read blocked on the socket returns at once."""
        self._cancel.set()
        with self._lock:
            response = self._response
        if response is not None:
            _abort_response(response)

    def send(self, text: str, model: Optional[str] = None) -> Optional[Message]:
        """
        Run one streamed turn. Returns the finished assistant Message, or None if
        the turn failed (the failure is then the last message in self.messages).
        """
        if not text or not text.strip() or self.is_loading:
            return None

        model = model or self.model
        placeholder = Message(role=Role.ASSISTANT, content="", streaming=True)
        self.messages.append(Message(role=Role.USER, content=text))
        self.messages.append(placeholder)
        self._cancel.clear()
        self.is_loading = True
        self.is_streaming = True
        self._notify()

        try:
            self._stream(text, model, placeholder)
        except ChatError as e:
            self._fail(placeholder, e.message)
            return None
        finally:
            self.is_loading = False
            self.is_streaming = False

        self._finish(placeholder, model)
        return placeholder

    def _stream(self, text: str, model: Optional[str], placeholder: Message) -> None:
        body = {"message": text, "model": model, "conversationId": self.conversation_id}
        deadline = time.monotonic() + self.timeout
        response = None
        try:
            response = self.session.post(
                f"{self.base_url}/chat/message/stream",
                json=body,
                stream=True,
                timeout=(CONNECT_TIMEOUT, self.timeout),
                headers={"Accept": "text/event-stream"},
            )
            with self._lock:
                self._response = response
            if self._cancel.is_set():
                raise ClientAbort(CANCELLED_MESSAGE)
            if response.status_code >= 400:
                raise UpstreamProtocolError(_error_from_response(response))

            decoder = FrameDecoder(prefix="data:")
            for chunk in response.iter_content(chunk_size=None):
                if self._cancel.is_set():
                    raise ClientAbort(CANCELLED_MESSAGE)
                if time.monotonic() > deadline:
                    raise ClientAbort(TIMEOUT_MESSAGE, code="CLIENT_TIMEOUT")
                for frame in decoder.feed(chunk):
                    if self._apply(frame, placeholder):
                        return
            if self._cancel.is_set():
                raise ClientAbort(CANCELLED_MESSAGE)
            for frame in decoder.close():
                if self._apply(frame, placeholder):
                    return
            raise UpstreamProtocolError("Connection closed before the reply was complete")

        except (requests.exceptions.RequestException, OSError, ValueError, AttributeError) as e:
            # a response closed by cancel() fails the blocked read with any of these
            error = self._transport_error(e)
            if error is None:
                raise
            raise error from e
        finally:
            with self._lock:
                self._response = None
            if response is not None:
                response.close()

    def _transport_error(self, exc: Exception) -> Optional[ChatError]:
        if self._cancel.is_set():
            return ClientAbort(CANCELLED_MESSAGE)
        if isinstance(exc, requests.exceptions.Timeout):
            return ClientAbort(TIMEOUT_MESSAGE, code="CLIENT_TIMEOUT")
        if isinstance(exc, requests.exceptions.ConnectionError):
            logger.warning("Connection to %s failed: %s", self.base_url, exc)
            return UpstreamUnavailable(CONNECTION_MESSAGE)
        if isinstance(exc, requests.exceptions.RequestException):
            return UpstreamUnavailable(str(exc))
        return None

    def _apply(self, frame: Dict, placeholder: Message) -> bool:
        """Apply one event to the placeholder. True once the stream is finished."""
        try:
            event = StreamEvent.model_validate(frame)
        except pydantic.ValidationError:
            logger.debug("Skipping unrecognised event: %s", frame)
            return False

        if not event.success:
            raise UpstreamProtocolError(event.error or "Failed to get response")

        if event.conversation_id:
            self.conversation_id = event.conversation_id
        if event.message_id:
            placeholder.id = event.message_id
        if event.chunk is not None:
            placeholder.content = event.chunk
        placeholder.streaming = not event.done
        self._notify()
        return event.done

    def _finish(self, placeholder: Message, model: Optional[str]) -> None:
        self.is_loading = False
        self.is_streaming = False
        placeholder.streaming = False
        if self.conversation_id:
            saved = [m for m in self.messages if not m.streaming]
            self.history.upsert(self.conversation_id, saved, model)
        self._notify()

    def _fail(self, placeholder: Message, error: str) -> None:
        self.is_loading = False
        self.is_streaming = False
        logger.info("Turn failed: %s", error)
        self.messages = [m for m in self.messages if m is not placeholder]
        self.messages.append(Message(role=Role.SYSTEM, content=f"Error: {error}"))
        self._notify()

    # ---- plain requests ----

    def _get_json(self, method: str, path: str, timeout: float = 10.0) -> Dict:
        """Non-streaming call; failures come back as {"success": False, "error": ...}."""
        try:
            response = self.session.request(method, f"{self.base_url}{path}", timeout=timeout)
        except requests.exceptions.RequestException as e:
            return {"success": False, "error": str(e)}
        try:
            data = response.json()
        except ValueError:
            return {"success": False, "error": f"HTTP {response.status_code}"}
        if response.status_code >= 400 and isinstance(data, dict):
            data.setdefault("success", False)
        return data

    def check_health(self) -> Dict:
        return self._get_json("GET", "/chat/health")

    def get_models(self) -> Dict:
        return self._get_json("GET", "/chat/models")

    def get_conversation(self, conversation_id: Optional[str] = None) -> Dict:
        """The server's copy of a conversation (the current one by default)."""
        conversation_id = conversation_id or self.conversation_id
        if not conversation_id:
            return {"success": False, "error": "No active conversation"}
        return self._get_json("GET", f"/chat/conversation/{conversation_id}")

    def clear_conversation(self) -> Dict:
        """Ask the server to forget the current conversation, then start a new local one."""
        result = {"success": True}
        if self.conversation_id:
            result = self._get_json("DELETE", f"/chat/conversation/{self.conversation_id}")
        self.new_conversation()
        return result


def _error_from_response(response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {response.status_code}"


def _abort_response(response) -> None:
    """Shut the response's socket down so a read blocked in another thread returns."""
    raw = getattr(response, "raw", None)
    connection = getattr(raw, "connection", None) or getattr(raw, "_connection", None)
    sock = getattr(connection, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("Socket already closed: %s", e)
    response.close()
