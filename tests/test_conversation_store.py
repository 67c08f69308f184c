import pytest

from app.models import Conversation
from app.services.conversation_store import ConversationStore


def _conv(cid):
    return Conversation(id=cid, model="llama2")


def test_get_put_delete():
    store = ConversationStore()
    conv = _conv("a")
    store.put(conv)
    assert store.get("a") is conv
    assert "a" in store
    assert store.get("missing") is None
    assert store.get(None) is None

    store.delete("a")
    assert store.get("a") is None
    assert len(store) == 0


def test_delete_missing_id_is_a_no_op():
    store = ConversationStore()
    store.put(_conv("a"))
    store.delete("nope")
    store.delete("nope")
    assert store.ids() == ["a"]


def test_101st_insert_evicts_the_earliest():
    store = ConversationStore(capacity=100)
    for i in range(100):
        store.put(_conv(f"c{i}"))
    assert len(store) == 100

    store.put(_conv("c100"))
    assert len(store) == 100
    assert "c0" not in store
    assert store.ids()[0] == "c1"
    assert store.ids()[-1] == "c100"


def test_eviction_is_by_insertion_not_access():
    store = ConversationStore(capacity=2)
    store.put(_conv("a"))
    store.put(_conv("b"))
    store.get("a")
    store.put(_conv("c"))
    assert store.ids() == ["b", "c"]


def test_eviction_skips_deleted_ids():
    store = ConversationStore(capacity=2)
    store.put(_conv("a"))
    store.put(_conv("b"))
    store.delete("a")
    store.put(_conv("c"))
    assert store.ids() == ["b", "c"]
    store.put(_conv("d"))
    assert store.ids() == ["c", "d"]


def test_overwrite_keeps_position_and_does_not_evict():
    store = ConversationStore(capacity=2)
    first = _conv("a")
    store.put(first)
    store.put(_conv("b"))
    replacement = _conv("a")
    store.put(replacement)
    assert store.ids() == ["a", "b"]
    assert store.get("a") is replacement


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ConversationStore(capacity=0)
