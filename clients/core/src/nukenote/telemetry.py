"""Transport telemetry: bounded event log, RTT window and summaries."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

TELEMETRY_MAX_ENTRIES = 200
RTT_WINDOW_SIZE = 20

KINDS = frozenset({"status", "heartbeat", "reconnect", "ping", "error"})


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TelemetryEvent:
    kind: str
    timestamp: str = field(default_factory=utc_now_iso)
    status: Optional[str] = None
    rtt_ms: Optional[float] = None
    attempts: Optional[int] = None
    delay: Optional[float] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "timestamp": self.timestamp}
        if self.status is not None:
            payload["status"] = self.status
        if self.rtt_ms is not None:
            payload["rttMs"] = self.rtt_ms
        if self.attempts is not None:
            payload["attempts"] = self.attempts
        if self.delay is not None:
            payload["delay"] = self.delay
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


TelemetrySink = Callable[[TelemetryEvent], None]


class TelemetryLog:
    """Append-only log keeping the most recent ``limit`` events."""

    def __init__(self, limit: int = TELEMETRY_MAX_ENTRIES) -> None:
        self._entries: Deque[TelemetryEvent] = deque(maxlen=limit)

    def __call__(self, event: TelemetryEvent) -> None:
        self.append(event)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, event: TelemetryEvent) -> None:
        self._entries.append(event)

    def entries(self, limit: int | None = None) -> List[TelemetryEvent]:
        items = list(self._entries)
        if not limit or limit <= 0:
            return items
        return items[-limit:]

    def clear(self) -> None:
        self._entries.clear()

    def summary(self) -> Dict[str, Any]:
        return summarize(self.entries())


class RttWindow:
    """Sliding window over the last ``size`` round-trip samples."""

    def __init__(self, size: int = RTT_WINDOW_SIZE) -> None:
        if size < 1:
            raise ValueError("size must be positive")
        self._samples: Deque[float] = deque(maxlen=size)

    def add(self, rtt_ms: float) -> None:
        self._samples.append(float(rtt_ms))

    @property
    def samples(self) -> List[float]:
        return list(self._samples)

    def average(self) -> Optional[float]:
        if not self._samples:
            return None
        return sum(self._samples) / len(self._samples)


def summarize(events: List[TelemetryEvent]) -> Dict[str, Any]:
    """Reduce telemetry events, newest last, into connection statistics."""

    last_connected = None
    last_disconnected = None
    reconnect_count = 0
    last_ping = None
    rtts: List[float] = []

    for event in reversed(events):
        if event.kind == "status":
            if event.status == "online" and last_connected is None:
                last_connected = event.timestamp
            if event.status in {"disconnected", "closed"} and last_disconnected is None:
                last_disconnected = event.timestamp
        elif event.kind == "reconnect":
            reconnect_count = max(reconnect_count, event.attempts or 0)
        elif event.kind == "heartbeat":
            if last_ping is None:
                last_ping = event.timestamp
            if event.rtt_ms is not None:
                rtts.append(event.rtt_ms)

    return {
        "lastConnected": last_connected,
        "lastDisconnected": last_disconnected,
        "reconnectCount": reconnect_count,
        "lastPing": last_ping,
        "avgRtt": round(sum(rtts) / len(rtts)) if rtts else None,
    }
