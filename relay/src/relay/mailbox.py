from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Tuple

from nacl import exceptions as nacl_exceptions
from nacl.signing import VerifyKey


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class MailboxEvent:
    """An immutable envelope stored in a thread mailbox."""

    thread_id: str
    seq: int
    message_id: str
    envelope: Dict[str, Any]
    sender: str
    ts_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "messageId": self.message_id,
            "envelope": self.envelope,
            "sender": self.sender,
            "ts": self.ts_ms,
        }


class ThreadMailbox:
    """In-memory, append-only per-thread mailbox with idempotency enforcement."""

    def __init__(self, ttl_ms: int | None = None, *, now_func=_now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._events: Dict[str, List[MailboxEvent]] = {}
        self._last_seq: Dict[str, int] = {}
        self._idempotency: Dict[Tuple[str, str], MailboxEvent] = {}

    def append(
        self,
        thread_id: str,
        message_id: str,
        envelope: Dict[str, Any],
        sender: str,
        ts_ms: int | None = None,
    ) -> tuple[int, MailboxEvent, bool]:
        """Append an envelope or return the stored one for ``(thread_id, message_id)``.

        Sequence numbers are monotonic per thread starting at 1 and are never
        reused after expiry.
        """

        key = (thread_id, message_id)
        if key in self._idempotency:
            event = self._idempotency[key]
            return event.seq, event, False

        seq = self._last_seq.get(thread_id, 0) + 1
        event = MailboxEvent(
            thread_id=thread_id,
            seq=seq,
            message_id=message_id,
            envelope=dict(envelope),
            sender=sender,
            ts_ms=self._now() if ts_ms is None else ts_ms,
        )
        self._last_seq[thread_id] = seq
        self._events.setdefault(thread_id, []).append(event)
        self._idempotency[key] = event
        return seq, event, True

    def list_since(self, thread_id: str, after_seq: int, limit: int | None = None) -> list[MailboxEvent]:
        """Return events with ``seq`` greater than ``after_seq`` in ascending order."""

        if after_seq < 0:
            raise ValueError("after_seq must be non-negative")
        events = [event for event in self._events.get(thread_id, []) if event.seq > after_seq]
        if limit is not None:
            events = events[: max(limit, 0)]
        return events

    def last_seq(self, thread_id: str) -> int:
        return self._last_seq.get(thread_id, 0)

    def expire(self) -> int:
        """Drop events older than the TTL. Returns the number removed."""

        if self._ttl_ms is None:
            return 0
        cutoff = self._now() - self._ttl_ms
        removed = 0
        for thread_id, events in list(self._events.items()):
            kept = [event for event in events if event.ts_ms >= cutoff]
            for event in events:
                if event.ts_ms < cutoff:
                    self._idempotency.pop((thread_id, event.message_id), None)
                    removed += 1
            if kept:
                self._events[thread_id] = kept
            else:
                self._events.pop(thread_id, None)
        return removed


class ReaderCursors:
    """Tracks per-reader acknowledgement cursors per thread."""

    def __init__(self) -> None:
        self._positions: Dict[Tuple[str, str], int] = {}

    def ack(self, reader: str, thread_id: str, seq: int) -> int:
        """Advance the reader's cursor past ``seq``; cursors never move backwards."""

        if seq < 0:
            raise ValueError("ack cursor must be non-negative")
        key = (reader, thread_id)
        next_seq = max(self._positions.get(key, 1), seq + 1)
        self._positions[key] = next_seq
        return next_seq

    def next_seq(self, reader: str, thread_id: str) -> int:
        return self._positions.get((reader, thread_id), 1)


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def canonical_bytes(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def verify_envelope(envelope: Mapping[str, Any]) -> bool:
    """Check the Ed25519 ``sig`` over the envelope minus ``sig`` against ``identityKey``."""

    identity_key = envelope.get("identityKey")
    signature = envelope.get("sig")
    if not isinstance(identity_key, str) or not isinstance(signature, str):
        return False
    unsigned = {key: value for key, value in envelope.items() if key != "sig"}
    try:
        VerifyKey(bytes.fromhex(identity_key)).verify(canonical_bytes(unsigned), b64url_decode(signature))
    except (ValueError, TypeError, nacl_exceptions.BadSignatureError, nacl_exceptions.CryptoError):
        return False
    return True
