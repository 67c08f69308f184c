import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from app import main
from app.services.chat_service import ChatService
from app.services.conversation_store import ConversationStore
from app.services.ollama_service import OllamaService


OLLAMA_URL = "http://ollama.test"


def ndjson(*frames) -> bytes:
    """Model server stream body: one JSON object per line."""
    return b"".join(json.dumps(f).encode() + b"\n" for f in frames)


def token(text, done=False):
    return {"model": "llama2", "message": {"role": "assistant", "content": text}, "done": done}


class FakeOllama:
    """
    httpx.MockTransport handler standing in for the model server.

    `chunks` is the raw body of the next /api/chat reply, delivered in exactly
    those pieces, `delay` seconds apart. Every /api/chat request body is
    recorded in `requests`.
    """

    def __init__(self, chunks=(), status_code=200, chat_json=None, tags=None, error=None, delay=0.0):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.chat_json = chat_json
        self.tags = tags if tags is not None else {"models": [{"name": "llama2"}, {"name": "mistral"}]}
        self.error = error
        self.delay = delay
        self.requests = []
        self.closed = False

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.error is not None:
            raise self.error(f"{self.error.__name__} for test", request=request)

        if request.url.path == "/api/tags":
            return httpx.Response(200, json=self.tags)

        body = json.loads(request.content)
        self.requests.append(body)
        if not body.get("stream"):
            return httpx.Response(self.status_code, json=self.chat_json or {})

        async def stream():
            try:
                for chunk in self.chunks:
                    if self.delay:
                        await asyncio.sleep(self.delay)
                    yield chunk
            finally:
                self.closed = True

        return httpx.Response(self.status_code, content=stream())

    def service(self, timeout=5.0) -> OllamaService:
        return OllamaService(base_url=OLLAMA_URL, timeout=timeout, transport=httpx.MockTransport(self))


@pytest.fixture
def store():
    return ConversationStore(capacity=100)


@pytest.fixture
def api():
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def use_upstream(api, monkeypatch, store):
    """Point the running app at a FakeOllama; returns the ChatService in use."""

    def install(fake: FakeOllama) -> ChatService:
        service = ChatService(store, fake.service(), default_model="llama2")
        monkeypatch.setattr(main, "conversation_store", store)
        monkeypatch.setattr(main, "ollama_service", service.ollama)
        monkeypatch.setattr(main, "chat_service", service)
        return service

    return install
