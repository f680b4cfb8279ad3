"""Thread access decisions from CT/DT state.

A participant may read and post in a thread while the thread's Control Token
is unspent and a Data Token output names the participant's public key. Burning
the CT revokes every DT at once; the decision then carries the burn proof.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from .errors import AccessDeniedError
from .receipts import BurnedReceipt, JoinReceipt, Outpoint, _Receipt


class AccessReason(str, enum.Enum):
    VALID_DT = "VALID_DT"
    NO_DT_FOUND = "NO_DT_FOUND"
    CT_BURNED = "CT_BURNED"


DETAILS = {
    AccessReason.VALID_DT: "Valid Data Token found. Control Token is active. Access granted.",
    AccessReason.NO_DT_FOUND: "No valid Data Token found for this user. DT ownership is required for thread access.",
    AccessReason.CT_BURNED: "Control Token has been burned. All access revoked.",
}


@dataclass(frozen=True)
class AccessDecision:
    thread_id: str
    has_access: bool
    reason: AccessReason
    details: str
    ct_outpoint: Optional[Outpoint] = None
    dt_outpoint: Optional[Outpoint] = None
    burn_proof: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "hasAccess": self.has_access,
            "reason": self.reason.value,
            "details": self.details,
            "ctOutpoint": self.ct_outpoint.to_dict() if self.ct_outpoint else None,
            "dtOutpoint": self.dt_outpoint.to_dict() if self.dt_outpoint else None,
        }
        if self.burn_proof is not None:
            payload["burnProof"] = dict(self.burn_proof)
        return payload


ReceiptInput = Union[JoinReceipt, Mapping[str, Any], None]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _view(receipt: ReceiptInput) -> Tuple[Any, Optional[Outpoint], Iterable[Tuple[Any, Iterable[Tuple[Any, Any]]]], Any, Optional[Dict[str, Any]]]:
    """Flatten a typed or raw receipt into (status, ct, issuances, last mint, burn proof)."""

    if isinstance(receipt, _Receipt):
        issuances = [
            (issuance.txid, [(out.recipient_pubkey, out.vout) for out in issuance.outputs])
            for issuance in receipt.dt_issuances
        ]
        burn = receipt.burn_proof if isinstance(receipt, BurnedReceipt) else None
        return receipt.status, receipt.ct_outpoint, issuances, receipt.last_mint_txid, burn

    if not isinstance(receipt, Mapping):
        return None, None, [], None, None

    ct_txid = receipt.get("ctTxid")
    ct_outpoint = None
    # A present ctVout is reported as-is, even when it is not an integer.
    if isinstance(ct_txid, str) and ct_txid and "ctVout" in receipt:
        ct_outpoint = Outpoint(ct_txid, receipt["ctVout"])

    raw_issuances = receipt.get("dtIssuances")
    issuances = []
    if isinstance(raw_issuances, list):
        for issuance in raw_issuances:
            if not isinstance(issuance, Mapping):
                continue
            outputs = issuance.get("outputs")
            pairs = []
            if isinstance(outputs, list):
                pairs = [
                    (output.get("recipientPubkey"), output.get("vout"))
                    for output in outputs
                    if isinstance(output, Mapping)
                ]
            issuances.append((issuance.get("txid"), pairs))

    burn = None
    if receipt.get("status") == "burned":
        burn = {
            "burnTxid": receipt.get("burnTxid"),
            "burnedAt": receipt.get("burnedAt"),
            "burnedBy": receipt.get("burnedBy"),
        }
    return receipt.get("status"), ct_outpoint, issuances, receipt.get("lastMintTxid"), burn


def validate_thread_access(thread_id: str, user_public_key: str, receipt: ReceiptInput) -> AccessDecision:
    """Decide whether ``user_public_key`` may access ``thread_id``.

    Never raises. A burned CT wins over any DT; otherwise the first DT output
    (in issuance order) naming the user grants access. Anything else, including
    a missing or malformed receipt, is ``NO_DT_FOUND``.
    """

    status, ct_outpoint, issuances, last_mint_txid, burn = _view(receipt)

    if status == "burned":
        return AccessDecision(
            thread_id=thread_id,
            has_access=False,
            reason=AccessReason.CT_BURNED,
            details=DETAILS[AccessReason.CT_BURNED],
            ct_outpoint=ct_outpoint,
            burn_proof=burn,
        )

    for txid, outputs in issuances:
        for recipient_pubkey, vout in outputs:
            if recipient_pubkey != user_public_key or not _is_int(vout):
                continue
            dt_txid = txid if isinstance(txid, str) and txid else last_mint_txid
            if not isinstance(dt_txid, str) or not dt_txid:
                continue
            return AccessDecision(
                thread_id=thread_id,
                has_access=True,
                reason=AccessReason.VALID_DT,
                details=DETAILS[AccessReason.VALID_DT],
                ct_outpoint=ct_outpoint,
                dt_outpoint=Outpoint(dt_txid, vout),
            )

    return AccessDecision(
        thread_id=thread_id,
        has_access=False,
        reason=AccessReason.NO_DT_FOUND,
        details=DETAILS[AccessReason.NO_DT_FOUND],
        ct_outpoint=ct_outpoint,
    )


def require_access(thread_id: str, user_public_key: str, receipt: ReceiptInput) -> AccessDecision:
    decision = validate_thread_access(thread_id, user_public_key, receipt)
    if not decision.has_access:
        raise AccessDeniedError(decision)
    return decision


def can_access_thread(receipt: ReceiptInput) -> bool:
    status = _view(receipt)[0]
    return status == "ready"


def access_status_message(receipt: ReceiptInput) -> str:
    status = _view(receipt)[0]
    if status is None:
        return "No access token found"
    if status == "burned":
        return "Thread burned - access permanently revoked"
    if status == "blocked":
        return "Thread blocked"
    if status == "ready":
        return "Active - access granted"
    return f"Status: {status}"


def format_outpoint(outpoint: Optional[Outpoint]) -> str:
    if outpoint is None or not outpoint.txid:
        return "N/A"
    return f"{outpoint.txid[:8]}...{outpoint.txid[-8:]}:{outpoint.vout}"


def explorer_url(outpoint: Optional[Outpoint], network: str = "main") -> Optional[str]:
    if outpoint is None or not outpoint.txid:
        return None
    base_url = "https://test.whatsonchain.com" if network == "test" else "https://whatsonchain.com"
    return f"{base_url}/tx/{outpoint.txid}"
