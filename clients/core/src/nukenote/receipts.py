"""Join receipts: the resolved CT/DT state a participant holds for a thread."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union

from .errors import ValidationError
from .storage import atomic_write_json, read_json_object

IDENTITY_KINDS = frozenset({"guest", "holder"})
STATUSES = frozenset({"ready", "burned", "blocked"})


@dataclass(frozen=True)
class Outpoint:
    txid: str
    vout: int

    def to_dict(self) -> Dict[str, Any]:
        return {"txid": self.txid, "vout": self.vout}


@dataclass(frozen=True)
class DtOutput:
    recipient_pubkey: str
    vout: int


@dataclass(frozen=True)
class DtIssuance:
    txid: str
    outputs: tuple[DtOutput, ...] = ()


@dataclass(frozen=True)
class _Receipt:
    thread_id: str
    identity_kind: str = "guest"
    ct_txid: Optional[str] = None
    ct_vout: Optional[int] = None
    dt_issuances: tuple[DtIssuance, ...] = field(default_factory=tuple)
    last_mint_txid: Optional[str] = None

    status: ClassVar[str] = ""

    def __post_init__(self) -> None:
        if not isinstance(self.thread_id, str) or not self.thread_id:
            raise ValidationError("threadId is required")
        if self.identity_kind not in IDENTITY_KINDS:
            raise ValidationError(f"identityKind must be one of {sorted(IDENTITY_KINDS)}")
        if self.ct_txid is not None:
            if not isinstance(self.ct_vout, int) or isinstance(self.ct_vout, bool) or self.ct_vout < 0:
                raise ValidationError("ctVout must be a non-negative integer when ctTxid is set")

    @property
    def ct_outpoint(self) -> Optional[Outpoint]:
        if self.ct_txid is None or self.ct_vout is None:
            return None
        return Outpoint(self.ct_txid, self.ct_vout)


@dataclass(frozen=True)
class ReadyReceipt(_Receipt):
    status: ClassVar[str] = "ready"


@dataclass(frozen=True)
class BlockedReceipt(_Receipt):
    status: ClassVar[str] = "blocked"


@dataclass(frozen=True)
class BurnedReceipt(_Receipt):
    burn_txid: Any = None
    burned_at: Any = None
    burned_by: Any = None

    status: ClassVar[str] = "burned"

    def __post_init__(self) -> None:
        super().__post_init__()
        missing = [
            name
            for name, value in (
                ("burnTxid", self.burn_txid),
                ("burnedAt", self.burned_at),
                ("burnedBy", self.burned_by),
            )
            if value is None or value == ""
        ]
        if missing:
            raise ValidationError(f"burned receipt requires {', '.join(missing)}")

    @property
    def burn_proof(self) -> Dict[str, Any]:
        return {"burnTxid": self.burn_txid, "burnedAt": self.burned_at, "burnedBy": self.burned_by}


JoinReceipt = Union[ReadyReceipt, BurnedReceipt, BlockedReceipt]

_VARIANTS = {"ready": ReadyReceipt, "burned": BurnedReceipt, "blocked": BlockedReceipt}
_BURN_KEYS = ("burnTxid", "burnedAt", "burnedBy")


def _parse_issuances(raw: Any) -> tuple[DtIssuance, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError("dtIssuances must be a list")
    issuances: List[DtIssuance] = []
    for entry in raw:
        if not isinstance(entry, Mapping) or not isinstance(entry.get("txid"), str):
            raise ValidationError("each DT issuance needs a txid")
        outputs_raw = entry.get("outputs") or []
        if not isinstance(outputs_raw, list):
            raise ValidationError("DT issuance outputs must be a list")
        outputs: List[DtOutput] = []
        for output in outputs_raw:
            if not isinstance(output, Mapping):
                raise ValidationError("DT output must be an object")
            pubkey = output.get("recipientPubkey")
            vout = output.get("vout")
            if not isinstance(pubkey, str) or not isinstance(vout, int) or isinstance(vout, bool):
                raise ValidationError("DT output needs recipientPubkey and integer vout")
            outputs.append(DtOutput(recipient_pubkey=pubkey, vout=vout))
        issuances.append(DtIssuance(txid=entry["txid"], outputs=tuple(outputs)))
    return tuple(issuances)


def receipt_from_dict(data: Mapping[str, Any]) -> JoinReceipt:
    """Build the receipt variant named by ``data["status"]``.

    Burn fields on a non-burned receipt are rejected, matching the rule that
    they exist only once the CT has been destroyed.
    """

    if not isinstance(data, Mapping):
        raise ValidationError("receipt must be an object")
    status = data.get("status")
    variant = _VARIANTS.get(status) if isinstance(status, str) else None
    if variant is None:
        raise ValidationError(f"status must be one of {sorted(STATUSES)}")

    common: Dict[str, Any] = {
        "thread_id": data.get("threadId"),
        "identity_kind": data.get("identityKind", "guest"),
        "ct_txid": data.get("ctTxid"),
        "ct_vout": data.get("ctVout"),
        "dt_issuances": _parse_issuances(data.get("dtIssuances")),
        "last_mint_txid": data.get("lastMintTxid"),
    }
    if variant is BurnedReceipt:
        return BurnedReceipt(
            **common,
            burn_txid=data.get("burnTxid"),
            burned_at=data.get("burnedAt"),
            burned_by=data.get("burnedBy"),
        )
    present = [key for key in _BURN_KEYS if data.get(key) is not None]
    if present:
        raise ValidationError(f"{', '.join(present)} only allowed on burned receipts")
    return variant(**common)


def receipt_to_dict(receipt: JoinReceipt) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "threadId": receipt.thread_id,
        "identityKind": receipt.identity_kind,
        "status": receipt.status,
        "ctTxid": receipt.ct_txid,
        "ctVout": receipt.ct_vout,
        "dtIssuances": [
            {
                "txid": issuance.txid,
                "outputs": [{"recipientPubkey": out.recipient_pubkey, "vout": out.vout} for out in issuance.outputs],
            }
            for issuance in receipt.dt_issuances
        ],
        "lastMintTxid": receipt.last_mint_txid,
    }
    if isinstance(receipt, BurnedReceipt):
        payload.update(receipt.burn_proof)
    return payload


def burn_receipt(receipt: JoinReceipt, *, burn_txid: str, burned_at: Any, burned_by: str) -> BurnedReceipt:
    data = receipt_to_dict(receipt)
    data.update({"status": "burned", "burnTxid": burn_txid, "burnedAt": burned_at, "burnedBy": burned_by})
    return receipt_from_dict(data)  # type: ignore[return-value]


def block_receipt(receipt: JoinReceipt) -> JoinReceipt:
    """Move a ready receipt to ``blocked``; burned and blocked receipts are returned as-is."""

    if not isinstance(receipt, ReadyReceipt):
        return receipt
    data = receipt_to_dict(receipt)
    data["status"] = "blocked"
    return receipt_from_dict(data)


def add_issuance(receipt: JoinReceipt, issuance: DtIssuance) -> JoinReceipt:
    data = receipt_to_dict(receipt)
    data["dtIssuances"].append(
        {
            "txid": issuance.txid,
            "outputs": [{"recipientPubkey": out.recipient_pubkey, "vout": out.vout} for out in issuance.outputs],
        }
    )
    data["lastMintTxid"] = issuance.txid
    return receipt_from_dict(data)


class ReceiptStore(abc.ABC):
    """Keyed persistence of join receipts by thread id."""

    @abc.abstractmethod
    def save(self, receipt: JoinReceipt) -> JoinReceipt:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, thread_id: str) -> Optional[JoinReceipt]:
        raise NotImplementedError

    @abc.abstractmethod
    def list(self) -> List[JoinReceipt]:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, thread_id: str) -> None:
        raise NotImplementedError

    def update(self, thread_id: str, updates: Mapping[str, Any]) -> Optional[JoinReceipt]:
        """Merge camelCase ``updates`` into the stored receipt and re-validate it."""

        existing = self.get(thread_id)
        if existing is None:
            return None
        data = receipt_to_dict(existing)
        data.update(updates)
        if data.get("status") != "burned":
            for key in _BURN_KEYS:
                data.pop(key, None)
        return self.save(receipt_from_dict(data))


class InMemoryReceiptStore(ReceiptStore):
    def __init__(self) -> None:
        self._receipts: Dict[str, JoinReceipt] = {}

    def save(self, receipt: JoinReceipt) -> JoinReceipt:
        self._receipts[receipt.thread_id] = receipt
        return receipt

    def get(self, thread_id: str) -> Optional[JoinReceipt]:
        return self._receipts.get(thread_id)

    def list(self) -> List[JoinReceipt]:
        return list(self._receipts.values())

    def delete(self, thread_id: str) -> None:
        self._receipts.pop(thread_id, None)


class JsonReceiptStore(ReceiptStore):
    """Receipts persisted as one JSON object keyed by thread id."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        data = read_json_object(self._path)
        return {str(key): value for key, value in data.items() if isinstance(value, dict)}

    def save(self, receipt: JoinReceipt) -> JoinReceipt:
        data = self._load()
        data[receipt.thread_id] = receipt_to_dict(receipt)
        atomic_write_json(self._path, data)
        return receipt

    def get(self, thread_id: str) -> Optional[JoinReceipt]:
        raw = self._load().get(thread_id)
        if raw is None:
            return None
        try:
            return receipt_from_dict(raw)
        except ValidationError:
            return None

    def list(self) -> List[JoinReceipt]:
        receipts: List[JoinReceipt] = []
        for raw in self._load().values():
            try:
                receipts.append(receipt_from_dict(raw))
            except ValidationError:
                continue
        return receipts

    def delete(self, thread_id: str) -> None:
        data = self._load()
        if data.pop(thread_id, None) is not None:
            atomic_write_json(self._path, data)
