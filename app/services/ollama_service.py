"""
OLLAMA SERVICE MODULE
=====================

Async client for the local model server (Ollama-compatible API). This is the
only place that speaks HTTP to the model server; ChatService calls it and never
sees httpx.

ENDPOINTS USED:
  GET  /api/tags  - health probe and model list.
  POST /api/chat  - chat completion: {model, messages: [{role, content}], stream}.
                    With stream=true the body is newline-delimited JSON, one
                    object per token batch: {"message": {"content": "..."}, "done": false},
                    ending with "done": true. Failures arrive as {"error": "..."}.

ERRORS:
  Every transport or HTTP failure is raised as one of the ChatError subclasses
  (UpstreamUnavailable, UpstreamTimeout, UpstreamProtocolError) with a message
  fit to show the user. Malformed stream lines are skipped by the FrameDecoder.
  Nothing here retries.
"""

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Dict, List, Optional

import httpx

from app.exceptions import UpstreamProtocolError, UpstreamTimeout, UpstreamUnavailable
from app.models import UpstreamEvent
from app.utils.frame_decoder import aiter_frames
from config import (
    HEALTH_TIMEOUT,
    MODELS_TIMEOUT,
    OLLAMA_BASE_URL,
    UPSTREAM_CONNECT_TIMEOUT,
    UPSTREAM_TIMEOUT,
)


logger = logging.getLogger("chat_relay")


# ==============================================================================
# OLLAMA SERVICE CLASS
# ==============================================================================

class OllamaService:
    """
    Holds one httpx.AsyncClient (connection pool) for the lifetime of the app.

    Args:
        base_url: Model server root, e.g. http://localhost:11434.
        timeout: Wall-clock limit in seconds for one chat call (streaming or not).
        transport: Optional httpx transport; tests pass an httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: str = OLLAMA_BASE_URL,
        timeout: float = UPSTREAM_TIMEOUT,
        connect_timeout: float = UPSTREAM_CONNECT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(connect_timeout, timeout)),
            transport=transport,
            trust_env=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ---- health and models ----

    async def check_connection(self) -> Dict:
        """Probe /api/tags. Never raises: returns {success, connected, models?, error?}."""
        try:
            names = await self._fetch_model_names(HEALTH_TIMEOUT)
            return {"success": True, "connected": True, "models": names}
        except (UpstreamUnavailable, UpstreamTimeout, UpstreamProtocolError) as e:
            logger.warning("Model server health check failed: %s", e.message)
            return {"success": False, "connected": False, "error": e.message}

    async def list_models(self) -> List[str]:
        """Names of the models installed on the model server."""
        return await self._fetch_model_names(MODELS_TIMEOUT)

    async def _fetch_model_names(self, timeout: float) -> List[str]:
        try:
            resp = await self._client.get("/api/tags", timeout=timeout)
        except httpx.RequestError as e:
            raise self._request_error(e) from e
        if resp.status_code >= 400:
            raise self._status_error(resp.status_code, resp.content)
        try:
            models = resp.json().get("models") or []
        except (ValueError, AttributeError) as e:
            raise UpstreamProtocolError("Invalid response from Ollama") from e
        return [m["name"] for m in models if isinstance(m, dict) and m.get("name")]

    # ---- chat ----

    def _payload(self, model: str, messages: List[Dict], stream: bool) -> Dict:
        return {"model": model, "messages": messages, "stream": stream}

    async def chat(self, model: str, messages: List[Dict]) -> str:
        """Single-shot completion: wait for the whole reply and return its text."""
        payload = self._payload(model, messages, stream=False)
        try:
            resp = await asyncio.wait_for(self._client.post("/api/chat", json=payload), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout("Request timed out. Please try again.") from e
        except httpx.RequestError as e:
            raise self._request_error(e) from e

        if resp.status_code >= 400:
            raise self._status_error(resp.status_code, resp.content)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProtocolError("Invalid response from Ollama") from e
        if isinstance(data, dict) and data.get("error"):
            raise UpstreamProtocolError(str(data["error"]))

        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict) or not isinstance(message.get("content"), str):
            raise UpstreamProtocolError("Invalid response from Ollama")
        return message["content"]

    async def chat_stream(self, model: str, messages: List[Dict]) -> AsyncIterator[UpstreamEvent]:
        """
        Streaming completion: yield one UpstreamEvent per decoded frame, as it arrives.

        The whole body is read under one deadline of `timeout` seconds; waiting
        for the next frame (keep-alive lines included) never outlives it.

        The request is closed when the generator finishes, fails, or is closed
        early by the caller (aclose / task cancellation).
        """
        payload = self._payload(model, messages, stream=True)
        deadline = time.monotonic() + self.timeout
        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise self._status_error(resp.status_code, body)

                frames = aiter_frames(resp.aiter_bytes())
                try:
                    while True:
                        frame = await self._next_frame(frames, deadline)
                        if frame is None:
                            break
                        yield UpstreamEvent.from_frame(frame)
                finally:
                    await frames.aclose()
        except httpx.RequestError as e:
            raise self._request_error(e) from e

    @staticmethod
    async def _next_frame(frames: AsyncIterator[Dict], deadline: float) -> Optional[Dict]:
        """Next decoded frame, None at end of body. UpstreamTimeout once the deadline passes."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise UpstreamTimeout("Request timed out. Ollama may be overloaded.")
        try:
            return await asyncio.wait_for(frames.__anext__(), timeout=remaining)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError as e:
            raise UpstreamTimeout("Request timed out. Ollama may be overloaded.") from e

    # ---- error mapping ----

    def _request_error(self, exc: httpx.RequestError):
        """Map an httpx transport error to the user-facing upstream error."""
        if isinstance(exc, httpx.TimeoutException):
            logger.warning("Model server timed out: %s", exc)
            return UpstreamTimeout("Request timed out. Ollama may be overloaded.")
        if isinstance(exc, httpx.ConnectError):
            logger.warning("Model server unreachable at %s: %s", self.base_url, exc)
            return UpstreamUnavailable(f"Cannot connect to Ollama at {self.base_url}. Please start Ollama.")
        logger.warning("Model server request failed: %s", exc)
        return UpstreamUnavailable(f"Ollama request failed: {exc}")

    @staticmethod
    def _status_error(status_code: int, body: bytes) -> UpstreamProtocolError:
        """Map an HTTP error status (and the server's {"error": ...} body, if any) to an error."""
        detail = None
        try:
            data = json.loads(body or b"{}")
            if isinstance(data, dict) and data.get("error"):
                detail = str(data["error"])
        except ValueError:
            pass

        if status_code == 404 and not detail:
            message = "Ollama API endpoint not found. Please check Ollama version."
        elif status_code >= 500:
            message = detail or "Ollama server error"
        else:
            message = detail or f"Ollama API error: {status_code}"
        logger.warning("Model server returned HTTP %s: %s", status_code, message)
        return UpstreamProtocolError(message)
