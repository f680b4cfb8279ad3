"""Safety numbers and detection of fingerprint drift for verified contacts.

A safety number is twelve five-digit groups taken from a double SHA-256 of the
public key. When a verified contact's recomputed number no longer matches the
recorded one, the contact is de-verified and every thread with that peer gets
a single ``[SAFETY_CHANGED]`` system message.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Union

from .contacts import Contact, ContactStore
from .errors import ValidationError
from .redact import short_key
from .transport import DeliveryTransport

logger = logging.getLogger(__name__)

SAFETY_CHANGED_MARKER = "[SAFETY_CHANGED]"
SAFETY_NUMBER_GROUPS = 12


def _hex_bytes(value: Any, what: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{what} is required and must be a string")
    try:
        return bytes.fromhex(value.lower())
    except ValueError as exc:
        raise ValidationError(f"{what} must be hex encoded") from exc


def _groups(data: bytes) -> str:
    digest = hashlib.sha256(hashlib.sha256(data).digest()).digest()
    groups = []
    for index in range(SAFETY_NUMBER_GROUPS):
        offset = (index * 2) % len(digest)
        value = (digest[offset] << 8) | digest[offset + 1]
        groups.append(f"{value % 100000:05d}")
    return " ".join(groups)


def safety_number(pubkey_hex: str) -> str:
    return _groups(_hex_bytes(pubkey_hex, "pubkey_hex"))


def joint_safety_number(pubkey_hex_a: str, pubkey_hex_b: str) -> str:
    """Order-independent safety number for a pair of keys."""

    _hex_bytes(pubkey_hex_a, "pubkey_hex_a")
    _hex_bytes(pubkey_hex_b, "pubkey_hex_b")
    first, second = sorted([pubkey_hex_a.lower(), pubkey_hex_b.lower()])
    return _groups(_hex_bytes(first + second, "joint key"))


def compare_safety_numbers(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return "".join(a.split()).lower() == "".join(b.split()).lower()


@dataclass
class Conversation:
    id: str
    peer_public_key: Optional[str] = None
    self_public_key: Optional[str] = None
    safety_warning_sent: bool = False


@dataclass
class SafetyScanResult:
    deverified: List[str] = field(default_factory=list)
    warned_threads: List[str] = field(default_factory=list)
    failed_threads: List[str] = field(default_factory=list)


def _field(obj: Any, attr: str, wire: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(wire, obj.get(attr))
    return getattr(obj, attr, None)


def _has_marker(messages: Iterable[Any]) -> bool:
    for message in messages or ():
        text = _field(message, "text", "text")
        if isinstance(text, str) and text.startswith(SAFETY_CHANGED_MARKER):
            return True
    return False


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


ContactLike = Union[Contact, Mapping[str, Any]]
ConversationLike = Union[Conversation, Mapping[str, Any]]


async def detect_safety_number_changes(
    contacts: Mapping[str, ContactLike],
    conversations: Sequence[ConversationLike],
    messages_by_thread: Mapping[str, Sequence[Any]],
    send_message: Callable[[str, dict], Any],
    upsert_contact: Callable[[str, dict], Any],
    *,
    fingerprint: Callable[[str], str] = safety_number,
) -> SafetyScanResult:
    """De-verify drifted contacts and warn each affected thread once.

    ``send_message`` and ``upsert_contact`` may be plain or async callables.
    Failures are logged per contact and per thread; nothing propagates.
    """

    result = SafetyScanResult()
    for pubkey, contact in (contacts or {}).items():
        try:
            await _check_contact(
                pubkey, contact, conversations or (), messages_by_thread or {}, send_message, upsert_contact,
                fingerprint, result,
            )
        except Exception:
            logger.exception("safety check for contact %s failed", short_key(pubkey))
    return result


async def _check_contact(
    pubkey: str,
    contact: ContactLike,
    conversations: Sequence[ConversationLike],
    messages_by_thread: Mapping[str, Sequence[Any]],
    send_message: Callable[[str, dict], Any],
    upsert_contact: Callable[[str, dict], Any],
    fingerprint: Callable[[str], str],
    result: SafetyScanResult,
) -> None:
    if not contact or not _field(contact, "verified", "verified"):
        return
    expected = _field(contact, "verified_safety_number", "verifiedSafetyNumber")
    if not expected:
        return

    try:
        current = fingerprint(pubkey)
    except Exception as exc:
        logger.warning("could not compute safety number for %s: %s", short_key(pubkey), exc)
        return
    if compare_safety_numbers(current, expected):
        return

    try:
        await _call(
            upsert_contact,
            pubkey,
            {"verified": False, "verifiedSafetyNumber": None, "lastVerifiedSafetyNumber": expected},
        )
    except Exception as exc:
        logger.warning("failed to de-verify contact %s: %s", short_key(pubkey), exc)
    result.deverified.append(pubkey)

    for conversation in conversations:
        peer = _field(conversation, "peer_public_key", "peerPublicKey")
        thread_id = _field(conversation, "id", "id")
        if not isinstance(peer, str) or peer.lower() != pubkey.lower() or not thread_id:
            continue
        if _field(conversation, "safety_warning_sent", "safetyWarningSent"):
            continue
        if _has_marker(messages_by_thread.get(thread_id, ())):
            continue

        author = _field(conversation, "self_public_key", "selfPublicKey") or "self"
        try:
            await _call(send_message, thread_id, {"author": author, "text": SAFETY_CHANGED_MARKER})
        except Exception as exc:
            logger.warning("failed to post safety warning to thread %s: %s", short_key(thread_id), exc)
            result.failed_threads.append(thread_id)
            continue
        result.warned_threads.append(thread_id)


class SafetyNumberMonitor:
    """Runs the drift check against a contact store and posts warnings over a transport."""

    def __init__(
        self,
        contacts: ContactStore,
        conversations: Callable[[], Iterable[Conversation]],
        messages: Callable[[str], Sequence[Any]],
        transport: DeliveryTransport,
        *,
        interval: float = 60.0,
        fingerprint: Callable[[str], str] = safety_number,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._contacts = contacts
        self._conversations = conversations
        self._messages = messages
        self._transport = transport
        self._interval = interval
        self._fingerprint = fingerprint
        self._id_factory = id_factory
        self._task: asyncio.Task | None = None

    def _send(self, thread_id: str, message: dict) -> None:
        self._transport.publish_message(thread_id, {"id": self._id_factory(), **message})

    async def run_once(self) -> SafetyScanResult:
        conversations = list(self._conversations())
        history = {conversation.id: list(self._messages(conversation.id)) for conversation in conversations}
        result = await detect_safety_number_changes(
            self._contacts.all(),
            conversations,
            history,
            self._send,
            self._contacts.upsert,
            fingerprint=self._fingerprint,
        )
        warned = set(result.warned_threads)
        for conversation in conversations:
            if conversation.id in warned:
                conversation.safety_warning_sent = True
        if result.deverified:
            logger.warning(
                "safety number changed for %d contact(s); warned %d thread(s)",
                len(result.deverified),
                len(result.warned_threads),
            )
        return result

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        try:
            while True:
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("safety monitor pass failed")
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            return
