import json
from pathlib import Path

import pytest

from nukenote.blocked_inviters import (
    BlockedInviterStore,
    InMemoryBlockedInviterStore,
    JsonBlockedInviterStore,
    block_inviter,
    iso_timestamp,
)
from nukenote.errors import ValidationError
from nukenote.receipts import BlockedReceipt, BurnedReceipt, InMemoryReceiptStore, receipt_from_dict

INVITER = "AB" * 32
KEY = INVITER.lower()


def _ready(thread_id="thread-1", **extra):
    return receipt_from_dict({"threadId": thread_id, "status": "ready", "ctTxid": "c" * 64, "ctVout": 0, **extra})


def test_save_normalizes_and_fills_timestamps():
    store = InMemoryBlockedInviterStore()

    entry = store.save(f"  {INVITER} ", {"inviterName": "Mallory", "threadId": "thread-1"})

    assert entry.inviter_id == KEY
    assert entry.source == "local"
    assert entry.blocked_at == entry.updated_at
    assert entry.blocked_at.endswith("Z")
    assert entry.inviter_name == "Mallory"
    assert store.is_blocked(INVITER)
    assert not store.is_blocked("")
    assert [item.inviter_id for item in store.list()] == [KEY]


def test_stale_save_keeps_existing_entry():
    store = InMemoryBlockedInviterStore()
    store.save(KEY, {"updatedAt": "2024-05-02T00:00:00Z", "blockedAt": "2024-05-01T00:00:00Z", "source": "sync"})

    stale = store.save(KEY, {"updatedAt": "2024-05-01T12:00:00+00:00", "source": "backup"})
    assert stale.source == "sync"
    assert stale.updated_at == "2024-05-02T00:00:00Z"

    newer = store.save(KEY, {"updatedAt": "2024-05-03T00:00:00Z", "inviterName": "M"})
    assert newer.updated_at == "2024-05-03T00:00:00Z"
    assert newer.blocked_at == "2024-05-01T00:00:00Z"
    assert newer.source == "sync"
    assert newer.inviter_name == "M"


def test_remove_honours_updated_at():
    store = InMemoryBlockedInviterStore()
    store.save(KEY, {"updatedAt": "2024-05-02T00:00:00Z"})

    assert store.remove(KEY, updated_at="2024-05-02T00:00:00Z") is False
    assert store.is_blocked(KEY)
    assert store.remove(INVITER, updated_at="2024-05-03T00:00:00Z") is True
    assert not store.is_blocked(KEY)
    assert store.remove(KEY) is False
    assert store.remove("") is False


def test_save_requires_an_id():
    with pytest.raises(ValidationError):
        InMemoryBlockedInviterStore().save("  ")


def test_iso_timestamp_normalizes_offsets():
    assert iso_timestamp("2024-05-01T02:00:00+02:00") == "2024-05-01T00:00:00Z"
    assert iso_timestamp("2024-05-01T00:00:00") == "2024-05-01T00:00:00Z"
    assert iso_timestamp("yesterday") is None
    assert iso_timestamp(1714521600) is None


def test_merge_applies_only_newer_entries():
    store = InMemoryBlockedInviterStore()
    store.save(KEY, {"updatedAt": "2024-05-02T00:00:00Z"})
    exported = [
        {"id": KEY, "updatedAt": "2024-05-01T00:00:00Z", "source": "backup"},
        {"id": "cd" * 32, "updatedAt": "2024-05-01T00:00:00Z", "source": "backup"},
        {"updatedAt": "2024-05-01T00:00:00Z"},
        "junk",
    ]

    assert store.merge(exported) == 1
    assert store.get(KEY).source == "local"
    assert store.get("CD" * 32).source == "backup"
    assert store.merge({"not": "a list"}) == 0


def test_json_store_persists(tmp_path: Path):
    path = tmp_path / "blocked.json"
    JsonBlockedInviterStore(path).save(KEY, {"threadId": "thread-1"})

    reopened = JsonBlockedInviterStore(path)
    assert reopened.is_blocked(KEY)
    assert reopened.get(KEY).thread_id == "thread-1"
    assert json.loads(path.read_text(encoding="utf-8"))[KEY]["id"] == KEY


def test_json_store_skips_malformed_entries(tmp_path: Path):
    path = tmp_path / "blocked.json"
    path.write_text(json.dumps({"abc": "junk", KEY: {"blockedAt": "2024-05-01T00:00:00Z"}}), encoding="utf-8")

    entries = JsonBlockedInviterStore(path).list()
    assert [entry.inviter_id for entry in entries] == [KEY]
    assert entries[0].updated_at == "2024-05-01T00:00:00Z"


def test_block_inviter_marks_the_thread_blocked():
    blocked = InMemoryBlockedInviterStore()
    receipts = InMemoryReceiptStore()
    receipts.save(_ready())

    result = block_inviter(blocked, INVITER, receipts=receipts, thread_id="thread-1", inviter_name="Mallory")

    assert isinstance(result, BlockedReceipt)
    assert receipts.get("thread-1").status == "blocked"
    assert blocked.get(KEY).thread_id == "thread-1"
    assert block_inviter(blocked, INVITER, receipts=receipts, thread_id="missing") is None


def test_block_inviter_leaves_burned_threads_burned():
    receipts = InMemoryReceiptStore()
    receipts.save(_ready(status="burned", burnTxid="e" * 64, burnedAt=1, burnedBy=KEY))

    result = block_inviter(InMemoryBlockedInviterStore(), INVITER, receipts=receipts, thread_id="thread-1")

    assert isinstance(result, BurnedReceipt)
    assert receipts.get("thread-1").status == "burned"


def test_store_base_is_abstract():
    with pytest.raises(TypeError):
        BlockedInviterStore()
