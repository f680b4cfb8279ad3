"""Invite payloads carried as a base64url JSON blob in a link path segment."""

from __future__ import annotations

import binascii
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional
from urllib.parse import unquote, urlsplit

from .errors import ValidationError
from .keywrap import KeyInput, wrap_key
from .wallet import WalletHandle, b64url, b64url_decode, sign_payload, verify_payload_signature

if TYPE_CHECKING:  # pragma: no cover
    from .blocked_inviters import BlockedInviterStore

logger = logging.getLogger(__name__)

INVITE_PROTO = "NukeNote.Invite"
INVITE_VERSION = 1
INVITE_TYPE = "invite"
POLICIES = ("mutual", "initiator")
DEFAULT_INVITE_TTL = 86400
INVITE_PATH_SEGMENT = "invite"


@dataclass(frozen=True)
class ParsedInvite:
    blob: str
    payload: Dict[str, Any]
    hash: str

    @property
    def thread_id(self) -> str:
        return self.payload["threadId"]

    @property
    def inviter(self) -> str:
        return self.payload["inviter"]


def create_invite(
    *,
    inviter: str,
    wrap: str,
    thread_id: Optional[str] = None,
    policy: str = "mutual",
    inviter_name: Optional[str] = None,
    expires_at: Optional[int] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Build an unsigned invite payload; ``exp`` defaults to one day from now."""

    if policy not in POLICIES:
        raise ValidationError(f"unsupported policy: {policy}")
    if not inviter:
        raise ValidationError("inviter public key is required")
    if not wrap:
        raise ValidationError("per-recipient wrapped key is required")
    if expires_at is None:
        current = time.time() if now is None else now
        expires_at = int(current) + DEFAULT_INVITE_TTL

    payload: Dict[str, Any] = {
        "proto": INVITE_PROTO,
        "v": INVITE_VERSION,
        "t": INVITE_TYPE,
        "threadId": thread_id or str(uuid.uuid4()),
        "inviter": inviter,
        "policy": policy,
        "wrap": wrap,
        "exp": int(expires_at),
    }
    if inviter_name:
        payload["inviterName"] = inviter_name
    return payload


def sign_invite(payload: Mapping[str, Any], wallet: WalletHandle) -> Dict[str, Any]:
    unsigned = {key: value for key, value in payload.items() if key != "sig"}
    return {**unsigned, "sig": sign_payload(wallet, unsigned)}


def create_signed_invite(
    wallet: WalletHandle,
    *,
    thread_key: bytes,
    recipient_public_key: KeyInput,
    thread_id: Optional[str] = None,
    policy: str = "mutual",
    inviter_name: Optional[str] = None,
    expires_at: Optional[int] = None,
) -> Dict[str, Any]:
    """Wrap ``thread_key`` for the invitee and sign the resulting payload."""

    payload = create_invite(
        inviter=wallet.identity_key(),
        wrap=wrap_key(thread_key, recipient_public_key),
        thread_id=thread_id,
        policy=policy,
        inviter_name=inviter_name,
        expires_at=expires_at,
    )
    return sign_invite(payload, wallet)


def encode_invite(payload: Mapping[str, Any]) -> str:
    return b64url(json.dumps(dict(payload), separators=(",", ":")).encode("utf-8"))


def build_invite_link(base_url: str, blob: str) -> str:
    base = (base_url or "").rstrip("/")
    return f"{base}/{INVITE_PATH_SEGMENT}/{blob}"


def extract_invite_blob(link_or_blob: str) -> str:
    """Return the blob from an invite link, or the input when it is already a blob."""

    text = (link_or_blob or "").strip()
    if not text:
        raise ValidationError("invite blob required")
    path = urlsplit(text).path if "://" in text else text.split("?", 1)[0].split("#", 1)[0]
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        raise ValidationError("invite link has no blob")
    if INVITE_PATH_SEGMENT in segments:
        index = len(segments) - 1 - segments[::-1].index(INVITE_PATH_SEGMENT)
        if index + 1 >= len(segments):
            raise ValidationError("invite link has no blob")
        return unquote(segments[index + 1])
    return unquote(segments[-1])


def validate_invite_payload(payload: Any) -> List[str]:
    if not isinstance(payload, dict):
        return ["payload must be an object"]

    errors = []
    if payload.get("t") != INVITE_TYPE:
        errors.append(f"unexpected payload type {payload.get('t', '(missing)')}")
    if payload.get("v") != INVITE_VERSION:
        errors.append(f"unsupported invite version {payload.get('v', '(missing)')}")
    for key in ("threadId", "inviter", "wrap"):
        if not payload.get(key):
            errors.append(f"{key} missing")
    if payload.get("policy") not in POLICIES:
        errors.append(f"policy must be one of {', '.join(POLICIES)}")
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        errors.append("exp must be numeric (unix seconds)")
    return errors


def parse_invite_blob(blob: str) -> ParsedInvite:
    if not blob:
        raise ValidationError("invite blob required")
    try:
        decoded = b64url_decode(blob)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("invite blob is not valid base64url") from exc
    try:
        payload = json.loads(decoded.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("invite blob is not valid JSON") from exc

    errors = validate_invite_payload(payload)
    if errors:
        raise ValidationError(f"invalid invite payload: {', '.join(errors)}")
    return ParsedInvite(blob=blob, payload=payload, hash=hashlib.sha256(decoded).hexdigest())


def verify_invite_signature(payload: Mapping[str, Any]) -> bool:
    signature = payload.get("sig")
    inviter = payload.get("inviter")
    if not isinstance(signature, str) or not isinstance(inviter, str):
        return False
    return verify_payload_signature(inviter, payload, signature)


def is_expired(payload: Mapping[str, Any], now: Optional[float] = None) -> bool:
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return True
    current = time.time() if now is None else now
    return current >= exp


@dataclass(frozen=True)
class InviteCheck:
    invite: ParsedInvite
    signature_valid: bool
    expired: bool
    blocked: bool

    @property
    def acceptable(self) -> bool:
        return self.signature_valid and not self.expired and not self.blocked


def check_invite(
    link_or_blob: str,
    *,
    blocked: BlockedInviterStore | None = None,
    now: Optional[float] = None,
) -> InviteCheck:
    """Parse an invite link or blob and report whether it may be joined.

    Malformed invites raise :class:`ValidationError`; a bad signature, expiry or
    a blocked inviter are reported on the result instead.
    """

    parsed = parse_invite_blob(extract_invite_blob(link_or_blob))
    is_blocked = blocked is not None and blocked.is_blocked(parsed.inviter)
    if is_blocked:
        logger.info("invite for thread %s comes from a blocked inviter", parsed.thread_id)
    return InviteCheck(
        invite=parsed,
        signature_valid=verify_invite_signature(parsed.payload),
        expired=is_expired(parsed.payload, now),
        blocked=is_blocked,
    )
