from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

Frame = Dict[str, Any]
Callback = Callable[[Frame], None]


@dataclass(eq=False)
class Subscription:
    client_id: str
    thread_id: str
    callback: Callback

    def deliver(self, frame: Frame) -> None:
        self.callback(frame)


class ThreadHub:
    """Registers websocket clients per thread and fans frames out to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, client_id: str, thread_id: str, callback: Callback) -> Subscription:
        for existing in self._subscriptions.get(thread_id, []):
            if existing.client_id == client_id:
                return existing
        subscription = Subscription(client_id=client_id, thread_id=thread_id, callback=callback)
        self._subscriptions.setdefault(thread_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.thread_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.thread_id, None)

    def find(self, client_id: str, thread_id: str) -> Subscription | None:
        for subscription in self._subscriptions.get(thread_id, []):
            if subscription.client_id == client_id:
                return subscription
        return None

    def subscriber_count(self, thread_id: str) -> int:
        return len(self._subscriptions.get(thread_id, []))

    def broadcast(self, thread_id: str, frame: Frame, *, exclude: str | None = None) -> int:
        """Deliver ``frame`` to every subscriber of ``thread_id`` except ``exclude``.

        Returns the number of subscribers the frame was handed to.
        """

        delivered = 0
        for subscription in list(self._subscriptions.get(thread_id, [])):
            if exclude is not None and subscription.client_id == exclude:
                continue
            subscription.deliver(frame)
            delivered += 1
        return delivered
