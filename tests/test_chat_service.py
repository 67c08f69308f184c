import asyncio

import httpx
import pytest

from app.exceptions import UpstreamUnavailable, ValidationError
from app.models import Role
from app.services.chat_service import ChatService
from tests.conftest import FakeOllama, ndjson, token


def _service(store, fake):
    return ChatService(store, fake.service(), default_model="llama2")


def _run(session, is_disconnected=None):
    async def go():
        return [e async for e in session.run(is_disconnected=is_disconnected)]

    return asyncio.run(go())


@pytest.mark.parametrize("message", [None, "", "   \n\t"])
def test_empty_message_rejected_without_mutation(store, message):
    service = _service(store, FakeOllama())
    with pytest.raises(ValidationError):
        service.start_stream(message)
    assert len(store) == 0


def test_user_message_recorded_before_streaming(store):
    fake = FakeOllama(chunks=[ndjson(token("x", done=True))])
    session = _service(store, fake).start_stream("Hello")

    stored = store.get(session.conversation.id)
    assert [m.role for m in stored.messages] == [Role.USER]
    assert stored.messages[0].content == "Hello"
    assert stored.model == "llama2"


def test_successful_turn_streams_cumulative_chunks(store):
    body = ndjson(token("Hi"), token(" there"), token("", done=True))
    fake = FakeOllama(chunks=[body[:5], body[5:]])
    session = _service(store, fake).start_stream("Hello", model="mistral")
    events = _run(session)

    assert [e.chunk for e in events] == ["Hi", "Hi there", "Hi there"]
    assert [e.done for e in events] == [False, False, True]
    assert all(e.success for e in events)
    assert {e.conversation_id for e in events} == {session.conversation.id}
    assert {e.message_id for e in events} == {session.message_id}

    conv = store.get(session.conversation.id)
    assert [(m.role, m.content) for m in conv.messages] == [
        (Role.USER, "Hello"), (Role.ASSISTANT, "Hi there"),
    ]
    assert conv.messages[1].id == session.message_id
    assert conv.model == "mistral"
    assert fake.requests[0]["model"] == "mistral"


def test_stream_end_without_done_frame_still_completes(store):
    fake = FakeOllama(chunks=[ndjson(token("only"))])
    session = _service(store, fake).start_stream("Hello")
    events = _run(session)
    assert events[-1].done is True
    assert events[-1].chunk == "only"
    assert store.get(session.conversation.id).messages[-1].content == "only"


def test_existing_conversation_sends_full_history(store):
    fake = FakeOllama(chunks=[ndjson(token("one", done=True))])
    service = _service(store, fake)
    first = service.start_stream("first")
    _run(first)

    fake.chunks = [ndjson(token("two", done=True))]
    second = service.start_stream("second", conversation_id=first.conversation.id)
    _run(second)

    assert second.conversation.id == first.conversation.id
    assert fake.requests[1]["messages"] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "one"},
        {"role": "user", "content": "second"},
    ]
    assert len(store.get(first.conversation.id).messages) == 4


def test_unknown_conversation_id_starts_new_conversation(store):
    fake = FakeOllama(chunks=[ndjson(token("x", done=True))])
    session = _service(store, fake).start_stream("Hello", conversation_id="does-not-exist")
    assert session.conversation.id != "does-not-exist"
    assert "does-not-exist" not in store


def test_error_frame_mid_stream_keeps_only_user_message(store):
    fake = FakeOllama(chunks=[ndjson(token("partial"), {"error": "model crashed"}, token("late"))])
    session = _service(store, fake).start_stream("Hello")
    events = _run(session)

    assert events[0].chunk == "partial"
    assert events[-1].success is False
    assert events[-1].error == "model crashed"
    assert len([e for e in events if not e.success]) == 1
    assert [m.role for m in store.get(session.conversation.id).messages] == [Role.USER]


def test_transport_failure_becomes_single_error_event(store):
    fake = FakeOllama(error=httpx.ConnectError)
    session = _service(store, fake).start_stream("Hello")
    events = _run(session)

    assert len(events) == 1
    assert events[0].success is False
    assert "Cannot connect to Ollama" in events[0].error
    assert len(store.get(session.conversation.id).messages) == 1


def test_slow_upstream_ends_with_timeout_event(store):
    fake = FakeOllama(chunks=[ndjson(token("early"))] + [b"\n"] * 40 + [ndjson(token("late", done=True))], delay=0.02)
    service = ChatService(store, fake.service(timeout=0.1), default_model="llama2")
    session = service.start_stream("Hello")
    events = _run(session)

    assert [e.chunk for e in events if e.success] == ["early"]
    assert events[-1].success is False
    assert events[-1].done is True
    assert "timed out" in events[-1].error
    assert not session.finished
    assert [m.role for m in store.get(session.conversation.id).messages] == [Role.USER]


def test_client_disconnect_closes_upstream_and_records_nothing(store):
    fake = FakeOllama(chunks=[ndjson(token("a")), ndjson(token("b")), ndjson(token("c", done=True))])
    session = _service(store, fake).start_stream("Hello")

    async def gone():
        return True

    events = _run(session, is_disconnected=gone)
    assert [e.chunk for e in events] == ["a"]
    assert fake.closed
    assert not session.finished
    assert len(store.get(session.conversation.id).messages) == 1


def test_single_shot_turn(store):
    fake = FakeOllama(chat_json={"message": {"role": "assistant", "content": "Hi!"}, "done": True})
    conversation, assistant = asyncio.run(_service(store, fake).send_message("Hello"))

    assert assistant.role == Role.ASSISTANT
    assert assistant.content == "Hi!"
    assert [m.content for m in store.get(conversation.id).messages] == ["Hello", "Hi!"]


def test_single_shot_failure_keeps_user_message(store):
    fake = FakeOllama(error=httpx.ConnectError)
    service = _service(store, fake)
    with pytest.raises(UpstreamUnavailable):
        asyncio.run(service.send_message("Hello"))

    (cid,) = store.ids()
    assert [m.content for m in store.get(cid).messages] == ["Hello"]


def test_new_turns_trigger_store_eviction(store):
    store.capacity = 2
    fake = FakeOllama(chat_json={"message": {"content": "ok"}, "done": True})
    service = _service(store, fake)
    ids = [asyncio.run(service.send_message(f"m{i}"))[0].id for i in range(3)]
    assert store.ids() == ids[1:]
