from pathlib import Path

import pytest

from nukenote.errors import ValidationError
from nukenote.receipts import (
    BlockedReceipt,
    BurnedReceipt,
    DtIssuance,
    DtOutput,
    InMemoryReceiptStore,
    JsonReceiptStore,
    ReadyReceipt,
    ReceiptStore,
    add_issuance,
    burn_receipt,
    receipt_from_dict,
    receipt_to_dict,
)


def _raw(**overrides):
    data = {
        "threadId": "thread-1",
        "identityKind": "holder",
        "status": "ready",
        "ctTxid": "c" * 64,
        "ctVout": 0,
        "dtIssuances": [{"txid": "d" * 64, "outputs": [{"recipientPubkey": "alice", "vout": 1}]}],
        "lastMintTxid": "d" * 64,
    }
    data.update(overrides)
    return data


def test_status_selects_variant():
    assert isinstance(receipt_from_dict(_raw()), ReadyReceipt)
    assert isinstance(receipt_from_dict(_raw(status="blocked")), BlockedReceipt)
    burned = receipt_from_dict(_raw(status="burned", burnTxid="e" * 64, burnedAt=1, burnedBy="alice"))
    assert isinstance(burned, BurnedReceipt)
    assert burned.burn_proof == {"burnTxid": "e" * 64, "burnedAt": 1, "burnedBy": "alice"}


def test_burn_fields_only_on_burned_variant():
    with pytest.raises(ValidationError):
        receipt_from_dict(_raw(burnTxid="e" * 64))
    with pytest.raises(ValidationError):
        receipt_from_dict(_raw(status="burned", burnTxid="e" * 64))


def test_invalid_shapes_are_rejected():
    with pytest.raises(ValidationError):
        receipt_from_dict(_raw(status="pending"))
    with pytest.raises(ValidationError):
        receipt_from_dict(_raw(identityKind="admin"))
    with pytest.raises(ValidationError):
        receipt_from_dict(_raw(ctVout=-1))
    with pytest.raises(ValidationError):
        receipt_from_dict(_raw(dtIssuances=[{"txid": "d" * 64, "outputs": [{"recipientPubkey": "a", "vout": True}]}]))


def test_ct_outpoint_is_independent_of_status():
    blocked = receipt_from_dict(_raw(status="blocked"))
    assert blocked.ct_outpoint.txid == "c" * 64
    assert ReadyReceipt(thread_id="t").ct_outpoint is None


def test_to_dict_round_trips():
    raw = _raw(status="burned", burnTxid="e" * 64, burnedAt="2024-01-01T00:00:00Z", burnedBy="alice")
    assert receipt_to_dict(receipt_from_dict(raw)) == raw


def test_burn_and_add_issuance_return_new_receipts():
    receipt = receipt_from_dict(_raw())
    extended = add_issuance(receipt, DtIssuance(txid="f" * 64, outputs=(DtOutput("bob", 2),)))
    burned = burn_receipt(extended, burn_txid="e" * 64, burned_at=5, burned_by="alice")

    assert len(receipt.dt_issuances) == 1
    assert extended.last_mint_txid == "f" * 64
    assert [issuance.txid for issuance in burned.dt_issuances] == ["d" * 64, "f" * 64]
    assert burned.status == "burned"


def test_in_memory_store_update_strips_burn_fields_when_unburned():
    store = InMemoryReceiptStore()
    store.save(receipt_from_dict(_raw(status="burned", burnTxid="e" * 64, burnedAt=1, burnedBy="a")))

    updated = store.update("thread-1", {"status": "blocked"})

    assert isinstance(updated, BlockedReceipt)
    assert store.update("missing", {"status": "ready"}) is None


def test_json_store_persists(tmp_path: Path):
    path = tmp_path / "receipts.json"
    store = JsonReceiptStore(path)
    store.save(receipt_from_dict(_raw()))
    store.save(receipt_from_dict(_raw(threadId="thread-2", status="blocked")))

    reopened = JsonReceiptStore(path)
    assert reopened.get("thread-1") == receipt_from_dict(_raw())
    assert {receipt.thread_id for receipt in reopened.list()} == {"thread-1", "thread-2"}

    reopened.delete("thread-2")
    assert JsonReceiptStore(path).get("thread-2") is None


def test_json_store_tolerates_corrupt_file(tmp_path: Path):
    path = tmp_path / "receipts.json"
    path.write_text("{broken", encoding="utf-8")

    store = JsonReceiptStore(path)
    assert store.list() == []
    store.save(receipt_from_dict(_raw()))
    assert store.get("thread-1") is not None


def test_store_base_cannot_be_instantiated():
    with pytest.raises(TypeError):
        ReceiptStore()
