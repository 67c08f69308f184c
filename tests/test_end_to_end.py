"""Client and server together: the StreamClient reads what the FastAPI app actually emits."""

from app.models import Role
from chat_client.stream_client import StreamClient
from config import API_PREFIX
from tests.conftest import FakeOllama, ndjson, token


class RelayResponse:
    """requests-style streaming response over a TestClient response, one chunk per event frame."""

    def __init__(self, response):
        self.status_code = response.status_code
        self._response = response
        self.closed = False

    def iter_content(self, chunk_size=None):
        for frame in self._response.content.split(b"\n\n"):
            if frame:
                yield frame + b"\n\n"

    def json(self):
        return self._response.json()

    def close(self):
        self.closed = True


class RelaySession:
    """Routes StreamClient's requests into the in-process app."""

    def __init__(self, api):
        self.api = api
        self.responses = []

    def post(self, url, json=None, **kwargs):
        response = RelayResponse(self.api.post(url, json=json))
        self.responses.append(response)
        return response

    def request(self, method, url, **kwargs):
        return self.api.request(method, url)


def _client(api, **kwargs):
    session = RelaySession(api)
    return StreamClient(base_url=f"http://testserver{API_PREFIX}", session=session, **kwargs), session


def test_scenario_a_new_conversation(api, use_upstream, store):
    use_upstream(FakeOllama(chunks=[ndjson(token("Hi"), token(" there"), token("", done=True))]))
    client, _ = _client(api)

    client.send("Hello")

    assert [(m.role, m.content, m.streaming) for m in client.messages] == [
        (Role.USER, "Hello", False), (Role.ASSISTANT, "Hi there", False),
    ]
    server = store.get(client.conversation_id)
    assert [(m.role, m.content) for m in server.messages] == [
        (Role.USER, "Hello"), (Role.ASSISTANT, "Hi there"),
    ]
    assert client.messages[1].id == server.messages[1].id
    assert client.history.get(client.conversation_id).message_count == 2


def test_scenario_b_upstream_error_mid_stream(api, use_upstream, store):
    use_upstream(FakeOllama(chunks=[ndjson(token("Hi"), {"error": "model crashed"})]))
    client, _ = _client(api)

    assert client.send("Hello") is None

    assert [(m.role, m.content) for m in client.messages] == [
        (Role.USER, "Hello"), (Role.SYSTEM, "Error: model crashed"),
    ]
    (cid,) = store.ids()
    assert [m.role for m in store.get(cid).messages] == [Role.USER]
    assert len(client.history) == 0


def test_scenario_c_existing_conversation(api, use_upstream, store):
    fake = FakeOllama(chunks=[ndjson(token("one", done=True))])
    use_upstream(fake)
    client, _ = _client(api)
    client.send("first")
    cid = client.conversation_id
    assert len(store.get(cid).messages) == 2

    fake.chunks = [ndjson(token("two", done=True))]
    client.send("second")

    assert client.conversation_id == cid
    assert [m.content for m in store.get(cid).messages] == ["first", "one", "second", "two"]
    assert [m["content"] for m in fake.requests[1]["messages"]] == ["first", "one", "second"]


def test_scenario_d_cancel_after_first_chunk(api, use_upstream):
    use_upstream(FakeOllama(chunks=[ndjson(token("Hi"), token(" there"), token("", done=True))]))

    def cancel_on_first_text(c):
        if c.messages and c.messages[-1].role == Role.ASSISTANT and c.messages[-1].content:
            c.cancel()

    client, session = _client(api, on_update=cancel_on_first_text)
    assert client.send("Hello") is None

    assert [(m.role, m.content) for m in client.messages] == [
        (Role.USER, "Hello"), (Role.SYSTEM, "Error: Request cancelled"),
    ]
    assert not any(m.role == Role.ASSISTANT for m in client.messages)
    assert len(client.history) == 0
    assert session.responses[0].closed


def test_validation_error_reaches_client(api, use_upstream, store):
    use_upstream(FakeOllama())
    client, _ = _client(api)
    client.send("x" * 40_000)
    assert client.messages[-1].role == Role.SYSTEM
    assert "too long" in client.messages[-1].content
    assert len(store) == 0


def test_client_plain_calls_against_server(api, use_upstream):
    use_upstream(FakeOllama(chunks=[ndjson(token("ok", done=True))]))
    client, _ = _client(api)
    assert client.get_models()["models"] == ["llama2", "mistral"]
    assert client.check_health()["connected"] is True

    client.send("Hello")
    conversation = client.get_conversation()["conversation"]
    assert len(conversation["messages"]) == 2

    assert client.clear_conversation()["success"] is True
    missing = client.get_conversation(conversation["id"])
    assert missing == {"success": False, "error": "Conversation not found"}
