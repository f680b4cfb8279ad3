"""Delivery transport contract, typed events and the in-process transport.

Every transport fans events out to per-thread subscribers and produces exactly
one asynchronous ack for each published message that carries an ``id``.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Set, Tuple

from .acks import DELIVERED, FAILED, DeliveryTracker
from .telemetry import TelemetryEvent, TelemetrySink, utc_now_iso

logger = logging.getLogger(__name__)

MODES = ("loopback", "direct", "store_forward")
FRAME_TYPES = ("message", "ack", "control", "typing")


@dataclass(frozen=True)
class TransportEvent:
    thread_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    type: ClassVar[str] = ""


@dataclass(frozen=True)
class MessageEvent(TransportEvent):
    type: ClassVar[str] = "message"


@dataclass(frozen=True)
class AckEvent(TransportEvent):
    type: ClassVar[str] = "ack"

    @property
    def message_id(self) -> Optional[str]:
        return self.payload.get("messageId")

    @property
    def delivery(self) -> Optional[str]:
        return self.payload.get("delivery")

    @property
    def acked_at(self) -> Optional[str]:
        return self.payload.get("ackedAt")


@dataclass(frozen=True)
class ControlEvent(TransportEvent):
    type: ClassVar[str] = "control"


@dataclass(frozen=True)
class TypingEvent(TransportEvent):
    type: ClassVar[str] = "typing"


_EVENT_TYPES = {
    "message": MessageEvent,
    "ack": AckEvent,
    "control": ControlEvent,
    "typing": TypingEvent,
}


def ack_event(thread_id: str, message_id: str, delivery: str, acked_at: str | None = None) -> AckEvent:
    return AckEvent(
        thread_id=thread_id,
        payload={"messageId": message_id, "delivery": delivery, "ackedAt": acked_at or utc_now_iso()},
    )


def event_from_frame(frame_type: str, thread_id: str, payload: Any) -> Optional[TransportEvent]:
    event_cls = _EVENT_TYPES.get(frame_type)
    if event_cls is None:
        return None
    return event_cls(thread_id=thread_id, payload=dict(payload) if isinstance(payload, dict) else {})


def normalize_thread_id(thread_id: Any) -> str:
    return str(thread_id or "").strip()


def message_id_of(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    value = payload.get("id")
    if value is None or value == "":
        return None
    return str(value)


Handler = Callable[[TransportEvent], None]
Unsubscribe = Callable[[], None]
StatusCallback = Callable[[Dict[str, Any]], None]


def _noop() -> None:
    return None


@dataclass(eq=False)
class Subscription:
    thread_id: str
    handler: Handler

    def deliver(self, event: TransportEvent) -> None:
        self.handler(event)


class SubscriptionRegistry:
    """Registers per-thread handlers and dispatches events to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, thread_id: str, handler: Handler) -> Tuple[Subscription, bool]:
        """Add a handler; the flag is True when it is the thread's first."""

        subs = self._subscriptions.setdefault(thread_id, [])
        subscription = Subscription(thread_id=thread_id, handler=handler)
        subs.append(subscription)
        return subscription, len(subs) == 1

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a handler; returns True when the thread has no handlers left."""

        subs = self._subscriptions.get(subscription.thread_id)
        if not subs:
            return False
        try:
            subs.remove(subscription)
        except ValueError:
            return False
        if not subs:
            self._subscriptions.pop(subscription.thread_id, None)
            return True
        return False

    def dispatch(self, event: TransportEvent) -> None:
        for subscription in list(self._subscriptions.get(event.thread_id, [])):
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("transport listener failed for thread %s", event.thread_id)

    def threads(self) -> List[str]:
        return list(self._subscriptions)

    def has_subscribers(self, thread_id: str) -> bool:
        return bool(self._subscriptions.get(thread_id))

    def clear(self) -> None:
        self._subscriptions.clear()


class DeliveryTransport(abc.ABC):
    """Base class for transports. Subclasses implement ``_publish`` and ``_shutdown``."""

    mode: ClassVar[str] = ""

    def __init__(
        self,
        *,
        on_status: StatusCallback | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        self._registry = SubscriptionRegistry()
        self._tracker = DeliveryTracker()
        self._on_status = on_status
        self._telemetry = telemetry
        self._status = "connecting"
        self._closed = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def status(self) -> str:
        return self._status

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tracker(self) -> DeliveryTracker:
        return self._tracker

    def set_status_listener(self, callback: StatusCallback | None) -> None:
        self._on_status = callback

    def subscribe(self, thread_id: str, handler: Handler) -> Unsubscribe:
        normalized = normalize_thread_id(thread_id)
        if not normalized or not callable(handler) or self._closed:
            return _noop

        subscription, first = self._registry.subscribe(normalized, handler)
        if first:
            self._on_first_subscriber(normalized)

        done = False

        def unsubscribe() -> None:
            nonlocal done
            if done:
                return
            done = True
            if self._closed:
                return
            if self._registry.unsubscribe(subscription):
                self._tracker.forget_thread(normalized)
                try:
                    self._on_last_unsubscribe(normalized)
                except Exception:
                    logger.warning("unsubscribe from %s failed", normalized, exc_info=True)

        return unsubscribe

    def publish_message(self, thread_id: str, payload: Dict[str, Any]) -> None:
        self._publish_frame("message", thread_id, payload)

    def publish_ack(self, thread_id: str, payload: Dict[str, Any]) -> None:
        self._publish_frame("ack", thread_id, payload)

    def publish_control(self, thread_id: str, payload: Dict[str, Any]) -> None:
        self._publish_frame("control", thread_id, payload)

    def publish_typing(self, thread_id: str, payload: Dict[str, Any]) -> None:
        self._publish_frame("typing", thread_id, payload)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._registry.clear()
        self._shutdown()
        self._set_status("closed")

    async def wait_closed(self) -> None:
        """Wait for background tasks cancelled by ``close`` to finish."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _publish_frame(self, frame_type: str, thread_id: str, payload: Dict[str, Any]) -> None:
        thread = normalize_thread_id(thread_id)
        if not thread:
            return
        if self._closed:
            logger.warning("%s transport closed: dropped %s for thread %s", self.mode, frame_type, thread)
            return
        body = dict(payload or {})
        if frame_type == "message":
            message_id = message_id_of(body)
            if message_id is not None:
                self._tracker.resend(thread, message_id)
        self._publish(frame_type, thread, body)

    @abc.abstractmethod
    def _publish(self, frame_type: str, thread_id: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _shutdown(self) -> None:
        raise NotImplementedError

    def _on_first_subscriber(self, thread_id: str) -> None:
        return None

    def _on_last_unsubscribe(self, thread_id: str) -> None:
        return None

    def _dispatch(self, event: TransportEvent) -> None:
        if self._closed:
            return
        self._registry.dispatch(event)

    def _emit_ack(self, thread_id: str, message_id: str, delivery: str) -> None:
        if self._closed:
            return
        if not self._tracker.record(thread_id, message_id, delivery):
            logger.debug("duplicate ack for %s/%s ignored", thread_id, message_id)
            return
        self._registry.dispatch(ack_event(thread_id, message_id, delivery))

    def _set_status(self, status: str, **extra: Any) -> None:
        self._status = status
        self._record("status", status=status)
        callback = self._on_status
        if callback is None:
            return
        try:
            callback({"status": status, **extra})
        except Exception:
            logger.exception("status listener failed")

    def _record(self, kind: str, **fields: Any) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry(TelemetryEvent(kind=kind, **fields))
        except Exception:
            logger.warning("telemetry sink failed", exc_info=True)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()


class LoopbackTransport(DeliveryTransport):
    """Dispatches to local subscribers and acks after ``ack_delay`` seconds."""

    mode = "loopback"

    def __init__(
        self,
        *,
        ack_delay: float = 0.05,
        on_status: StatusCallback | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        super().__init__(on_status=on_status, telemetry=telemetry)
        self._ack_delay = ack_delay
        self._timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._set_status("online")

    def _publish(self, frame_type: str, thread_id: str, payload: Dict[str, Any]) -> None:
        event = event_from_frame(frame_type, thread_id, payload)
        if event is not None:
            self._dispatch(event)
        if frame_type != "message":
            return
        message_id = message_id_of(payload)
        if message_id is None:
            return
        delivery = FAILED if payload.get("delivery") == FAILED else DELIVERED
        loop = asyncio.get_running_loop()
        key = (thread_id, message_id)
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._timers[key] = loop.call_later(self._ack_delay, self._fire_ack, key, delivery)

    def _fire_ack(self, key: Tuple[str, str], delivery: str) -> None:
        self._timers.pop(key, None)
        self._emit_ack(key[0], key[1], delivery)

    def _shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
