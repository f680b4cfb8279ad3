"""Inviters the user refuses to hear from, keyed by lowercase identity key.

Entries merge last-writer-wins on ``updatedAt``: a save or remove carrying a
timestamp no newer than the stored one is ignored.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import ValidationError
from .receipts import JoinReceipt, ReceiptStore, block_receipt
from .redact import short_key
from .storage import atomic_write_json, read_json_object
from .telemetry import utc_now_iso

logger = logging.getLogger(__name__)

_WIRE_NAMES = {
    "inviter_id": "id",
    "blocked_at": "blockedAt",
    "updated_at": "updatedAt",
    "source": "source",
    "thread_id": "threadId",
    "inviter_name": "inviterName",
}
_FROM_WIRE = {wire: name for name, wire in _WIRE_NAMES.items()}


@dataclass(frozen=True)
class BlockedInviter:
    inviter_id: str
    blocked_at: str
    updated_at: str
    source: str = "local"
    thread_id: Optional[str] = None
    inviter_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {wire: getattr(self, name) for name, wire in _WIRE_NAMES.items()}

    @classmethod
    def from_dict(cls, inviter_id: str, data: Mapping[str, Any]) -> "BlockedInviter":
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = _FROM_WIRE.get(key, key)
            if name in known and name != "inviter_id":
                values[name] = value
        if not values.get("blocked_at"):
            values["blocked_at"] = values.get("updated_at") or utc_now_iso()
        if not values.get("updated_at"):
            values["updated_at"] = values["blocked_at"]
        return cls(inviter_id=inviter_id, **values)


def iso_timestamp(value: Any) -> Optional[str]:
    """Normalise an ISO-8601 string to UTC ``...Z`` form; None when unparseable."""

    parsed = _parse_iso(value)
    if parsed is None:
        return None
    return parsed.isoformat().replace("+00:00", "Z")


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _not_newer(incoming: Optional[str], existing: Optional[str]) -> bool:
    incoming_at = _parse_iso(incoming)
    existing_at = _parse_iso(existing)
    if incoming_at is None or existing_at is None:
        return False
    return incoming_at <= existing_at


def _normalize(inviter_id: Any) -> Optional[str]:
    if not isinstance(inviter_id, str) or not inviter_id.strip():
        return None
    return inviter_id.strip().lower()


class BlockedInviterStore(abc.ABC):
    @abc.abstractmethod
    def _read(self) -> Dict[str, BlockedInviter]:
        raise NotImplementedError

    @abc.abstractmethod
    def _write(self, entries: Dict[str, BlockedInviter]) -> None:
        raise NotImplementedError

    def list(self) -> List[BlockedInviter]:
        return sorted(self._read().values(), key=lambda entry: entry.inviter_id)

    def get(self, inviter_id: str) -> Optional[BlockedInviter]:
        key = _normalize(inviter_id)
        return self._read().get(key) if key else None

    def is_blocked(self, inviter_id: Any) -> bool:
        key = _normalize(inviter_id)
        return key is not None and key in self._read()

    def save(self, inviter_id: str, metadata: Mapping[str, Any] | None = None) -> BlockedInviter:
        """Block ``inviter_id``, merging camelCase ``metadata`` into any existing entry.

        Returns the stored entry unchanged when ``metadata['updatedAt']`` is not
        newer than the stored ``updatedAt``.
        """

        key = _normalize(inviter_id)
        if key is None:
            raise ValidationError("inviter id is required to block an inviter")
        meta = dict(metadata or {})
        entries = self._read()
        existing = entries.get(key)
        incoming_updated = iso_timestamp(meta.get("updatedAt"))

        if existing is not None and _not_newer(incoming_updated, existing.updated_at):
            logger.debug("ignoring stale block for inviter %s", short_key(key))
            return existing

        now = utc_now_iso()
        merged = existing.to_dict() if existing is not None else {}
        merged.update({k: v for k, v in meta.items() if v is not None})
        merged["blockedAt"] = iso_timestamp(meta.get("blockedAt")) or (existing.blocked_at if existing else now)
        merged["updatedAt"] = incoming_updated or now
        merged["source"] = meta.get("source") or (existing.source if existing else "local")

        entry = BlockedInviter.from_dict(key, merged)
        entries[key] = entry
        self._write(entries)
        logger.info("blocked inviter %s (source=%s)", short_key(key), entry.source)
        return entry

    def remove(self, inviter_id: str, *, updated_at: Optional[str] = None) -> bool:
        key = _normalize(inviter_id)
        if key is None:
            return False
        entries = self._read()
        existing = entries.get(key)
        if existing is None:
            return False
        if _not_newer(iso_timestamp(updated_at), existing.updated_at):
            logger.debug("ignoring stale unblock for inviter %s", short_key(key))
            return False
        del entries[key]
        self._write(entries)
        logger.info("unblocked inviter %s", short_key(key))
        return True

    def merge(self, entries: Any) -> int:
        """Apply exported ``to_dict`` entries; returns how many were stored."""

        if not isinstance(entries, list):
            return 0
        applied = 0
        for raw in entries:
            if not isinstance(raw, Mapping) or _normalize(raw.get("id")) is None:
                continue
            before = self.get(raw["id"])
            if self.save(raw["id"], raw) != before:
                applied += 1
        return applied


class InMemoryBlockedInviterStore(BlockedInviterStore):
    def __init__(self) -> None:
        self._entries: Dict[str, BlockedInviter] = {}

    def _read(self) -> Dict[str, BlockedInviter]:
        return dict(self._entries)

    def _write(self, entries: Dict[str, BlockedInviter]) -> None:
        self._entries = dict(entries)


class JsonBlockedInviterStore(BlockedInviterStore):
    """Blocked inviters persisted as one JSON object keyed by identity key."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()

    def _read(self) -> Dict[str, BlockedInviter]:
        entries: Dict[str, BlockedInviter] = {}
        for inviter_id, raw in read_json_object(self._path).items():
            if not isinstance(raw, dict):
                logger.warning("skipping malformed blocked inviter %s", short_key(inviter_id))
                continue
            entries[inviter_id] = BlockedInviter.from_dict(inviter_id, raw)
        return entries

    def _write(self, entries: Dict[str, BlockedInviter]) -> None:
        atomic_write_json(self._path, {inviter_id: entry.to_dict() for inviter_id, entry in entries.items()})


def block_inviter(
    store: BlockedInviterStore,
    inviter_id: str,
    *,
    receipts: ReceiptStore | None = None,
    thread_id: Optional[str] = None,
    inviter_name: Optional[str] = None,
) -> Optional[JoinReceipt]:
    """Block an inviter and move the thread's join receipt to ``blocked``.

    Returns the receipt as stored afterwards, or None when there is no
    receipt for ``thread_id``. Burned receipts stay burned.
    """

    metadata: Dict[str, Any] = {"threadId": thread_id, "inviterName": inviter_name}
    store.save(inviter_id, metadata)
    if receipts is None or not thread_id:
        return None
    receipt = receipts.get(thread_id)
    if receipt is None:
        return None
    blocked = block_receipt(receipt)
    if blocked is not receipt:
        receipts.save(blocked)
        logger.info("thread %s blocked", short_key(thread_id))
    return blocked
