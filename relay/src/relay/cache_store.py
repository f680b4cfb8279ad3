from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

DEFAULT_TTL_SECONDS = 172_800
DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_MAX_BYTES = 524_288_000
PERSISTENT_PREFIX = "wallet-backup:"


def _now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(value: int | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class QuotaExceeded(Exception):
    pass


@dataclass
class CacheEntry:
    id: str
    payload: Any
    size: int
    created_at_ms: int
    expires_at_ms: int | None

    def expired(self, now_ms: int) -> bool:
        return self.expires_at_ms is not None and self.expires_at_ms < now_ms


class HelperCacheStore:
    """Bounded in-memory store for encrypted offline payloads.

    Entries expire after ``ttl_seconds`` unless their id starts with
    ``wallet-backup:``. Writes beyond the entry or byte quota raise
    :class:`QuotaExceeded`.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        now_func=_now_ms,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._now = now_func
        self._entries: Dict[str, CacheEntry] = {}
        self.started_at_ms = now_func()

    def __len__(self) -> int:
        return len(self._entries)

    def used_bytes(self) -> int:
        return sum(entry.size for entry in self._entries.values())

    def put(self, entry_id: str, payload: Any) -> CacheEntry:
        size = len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        existing = self._entries.get(entry_id)
        count = len(self._entries) - (1 if existing else 0)
        used = self.used_bytes() - (existing.size if existing else 0)
        if count >= self.max_entries:
            raise QuotaExceeded("Entry limit exceeded")
        if used + size > self.max_bytes:
            raise QuotaExceeded("Storage limit exceeded")

        now_ms = self._now()
        expires_at_ms = None if entry_id.startswith(PERSISTENT_PREFIX) else now_ms + self.ttl_seconds * 1000
        entry = CacheEntry(
            id=entry_id,
            payload=payload,
            size=size,
            created_at_ms=now_ms,
            expires_at_ms=expires_at_ms,
        )
        self._entries[entry_id] = entry
        return entry

    def get(self, entry_id: str) -> Optional[CacheEntry]:
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        if entry.expired(self._now()):
            self._entries.pop(entry_id, None)
            return None
        return entry

    def delete(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    def prune(self) -> int:
        now_ms = self._now()
        expired = [entry_id for entry_id, entry in self._entries.items() if entry.expired(now_ms)]
        for entry_id in expired:
            self._entries.pop(entry_id, None)
        return len(expired)

    def uptime_seconds(self) -> int:
        return max(0, (self._now() - self.started_at_ms) // 1000)

    def quota(self) -> Dict[str, Any]:
        created = [entry.created_at_ms for entry in self._entries.values()]
        return {
            "limitBytes": self.max_bytes,
            "usedBytes": self.used_bytes(),
            "ttlSeconds": self.ttl_seconds,
            "entryLimit": self.max_entries,
            "entryCount": len(self._entries),
            "oldestEntryIso": iso_from_ms(min(created)) if created else None,
            "newestEntryIso": iso_from_ms(max(created)) if created else None,
        }
