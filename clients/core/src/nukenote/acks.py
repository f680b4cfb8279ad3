from __future__ import annotations

from collections import OrderedDict
from typing import Optional, Set, Tuple

DELIVERED = "delivered"
FAILED = "failed"
PENDING = "pending"
TERMINAL_STATES = frozenset({DELIVERED, FAILED})

DEFAULT_MAX_SETTLED = 1000


class DeliveryTracker:
    """Tracks terminal delivery state per ``(thread_id, message_id)``.

    The first terminal ack for a send wins; later acks for the same pair are
    ignored so duplicate relay confirmations never flip a message's state.
    :meth:`resend` opens the pair again for a fresh attempt. Only the most
    recent ``max_settled`` terminal states are kept.
    """

    def __init__(self, max_settled: int = DEFAULT_MAX_SETTLED) -> None:
        if max_settled < 1:
            raise ValueError("max_settled must be positive")
        self._max_settled = max_settled
        self._states: "OrderedDict[Tuple[str, str], str]" = OrderedDict()
        self._pending: Set[Tuple[str, str]] = set()

    def __len__(self) -> int:
        return len(self._states)

    def mark_sent(self, thread_id: str, message_id: str) -> None:
        key = (thread_id, message_id)
        if key not in self._states:
            self._pending.add(key)

    def resend(self, thread_id: str, message_id: str) -> None:
        """Forget any settled state for the pair and mark it pending again."""

        key = (thread_id, message_id)
        self._states.pop(key, None)
        self._pending.add(key)

    def record(self, thread_id: str, message_id: str, delivery: str) -> bool:
        """Record a terminal state. Returns False when the pair was already settled."""

        if delivery not in TERMINAL_STATES:
            raise ValueError(f"delivery must be one of {sorted(TERMINAL_STATES)}")
        key = (thread_id, message_id)
        if key in self._states:
            return False
        self._states[key] = delivery
        self._pending.discard(key)
        while len(self._states) > self._max_settled:
            self._states.popitem(last=False)
        return True

    def state(self, thread_id: str, message_id: str) -> Optional[str]:
        key = (thread_id, message_id)
        if key in self._states:
            return self._states[key]
        if key in self._pending:
            return PENDING
        return None

    def is_settled(self, thread_id: str, message_id: str) -> bool:
        return (thread_id, message_id) in self._states

    def pending(self, thread_id: str | None = None) -> list[str]:
        return sorted(message_id for tid, message_id in self._pending if thread_id is None or tid == thread_id)

    def forget_thread(self, thread_id: str) -> None:
        for key in [key for key in self._states if key[0] == thread_id]:
            del self._states[key]
        self._pending = {key for key in self._pending if key[0] != thread_id}

    def clear(self) -> None:
        self._states.clear()
        self._pending.clear()
