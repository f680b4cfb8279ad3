"""Direct relay transport over an aiohttp websocket.

Outbound frames are queued while disconnected and flushed once the socket is
open again; subscriptions are re-sent on every (re)connect. The relay confirms
each message with a ``delivery`` frame; a message left unconfirmed for
``ack_timeout`` seconds is acked as failed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from .acks import DELIVERED, FAILED
from .errors import TransportError
from .redact import short_key
from .telemetry import RttWindow, TelemetrySink
from .transport import (
    DeliveryTransport,
    StatusCallback,
    event_from_frame,
    message_id_of,
    normalize_thread_id,
)

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAYS = (2.0, 5.0, 10.0)
DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_ACK_TIMEOUT = 10.0


def relay_ws_url(host: str, path: str = "/v1/ws") -> str:
    """Build the websocket URL for ``host``, which may be bare or carry a scheme."""

    target = host.strip()
    if "://" not in target:
        target = f"ws://{target}"
    parts = urlsplit(target)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    if scheme not in {"ws", "wss"}:
        raise TransportError(f"unsupported relay scheme: {parts.scheme}")
    if not parts.netloc:
        raise TransportError(f"relay host has no network location: {host}")
    url_path = parts.path if parts.path not in {"", "/"} else path
    return urlunsplit((scheme, parts.netloc, url_path, parts.query, ""))


class RelayTransport(DeliveryTransport):
    mode = "direct"

    def __init__(
        self,
        host: str,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        reconnect_delays: Sequence[float] = DEFAULT_RECONNECT_DELAYS,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        on_status: StatusCallback | None = None,
        telemetry: TelemetrySink | None = None,
        clock=time.monotonic,
    ) -> None:
        if not isinstance(host, str) or not host.strip():
            raise TransportError("direct transport requires a relay host")
        if not reconnect_delays:
            raise TransportError("reconnect_delays must not be empty")
        self._url = relay_ws_url(host)
        super().__init__(on_status=on_status, telemetry=telemetry)
        self._heartbeat_interval = heartbeat_interval
        self._reconnect_delays = tuple(reconnect_delays)
        self._ack_timeout = ack_timeout
        self._clock = clock

        self._queue: Deque[Dict[str, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._online = asyncio.Event()
        self._ack_timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._runner: Optional[asyncio.Task] = None
        self._reconnects = 0
        self._last_ping_at: Optional[float] = None
        self._rtt = RttWindow()

    @property
    def url(self) -> str:
        return self._url

    @property
    def reconnect_count(self) -> int:
        return self._reconnects

    @property
    def rtt(self) -> RttWindow:
        return self._rtt

    def start(self) -> None:
        """Start the connection loop; a no-op without a running event loop."""

        if self._runner is not None or self._closed:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._runner = self._spawn(self._run())

    async def wait_online(self, timeout: float | None = None) -> None:
        self.start()
        await asyncio.wait_for(self._online.wait(), timeout)

    def _on_first_subscriber(self, thread_id: str) -> None:
        self.start()
        self._enqueue({"type": "subscribe", "threadId": thread_id})

    def _on_last_unsubscribe(self, thread_id: str) -> None:
        self._enqueue({"type": "unsubscribe", "threadId": thread_id})

    def _publish(self, frame_type: str, thread_id: str, payload: Dict[str, Any]) -> None:
        self.start()
        self._enqueue({"type": frame_type, "threadId": thread_id, "payload": payload})
        if frame_type != "message":
            return
        message_id = message_id_of(payload)
        if message_id is None:
            return
        key = (thread_id, message_id)
        previous = self._ack_timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._ack_timers[key] = loop.call_later(self._ack_timeout, self._ack_timed_out, key)

    def _enqueue(self, frame: Dict[str, Any]) -> None:
        if self._closed:
            return
        self._queue.append(frame)
        self._wakeup.set()

    def _ack_timed_out(self, key: Tuple[str, str]) -> None:
        self._ack_timers.pop(key, None)
        thread_id, message_id = key
        if self._drop_queued_message(thread_id, message_id):
            logger.warning("message %s in thread %s was never sent; dropped", message_id, thread_id)
        else:
            logger.warning("no delivery confirmation for message %s in thread %s", message_id, thread_id)
        self._emit_ack(thread_id, message_id, FAILED)

    def _drop_queued_message(self, thread_id: str, message_id: str) -> bool:
        for frame in list(self._queue):
            if (
                frame.get("type") == "message"
                and frame.get("threadId") == thread_id
                and message_id_of(frame.get("payload")) == message_id
            ):
                self._queue.remove(frame)
                return True
        return False

    def _settle(self, thread_id: str, message_id: str, delivery: str) -> None:
        timer = self._ack_timers.pop((thread_id, message_id), None)
        if timer is not None:
            timer.cancel()
        self._emit_ack(thread_id, message_id, delivery)

    def _shutdown(self) -> None:
        for timer in self._ack_timers.values():
            timer.cancel()
        self._ack_timers.clear()
        self._queue.clear()
        self._online.clear()
        self._cancel_tasks()

    async def _run(self) -> None:
        episode = 0
        try:
            async with aiohttp.ClientSession() as session:
                while not self._closed:
                    self._set_status("connecting")
                    try:
                        ws = await session.ws_connect(self._url, autoping=True)
                    except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                        logger.warning("relay connect to %s failed: %s", self._url, exc)
                        self._record("error", detail=f"connect: {exc}")
                    else:
                        episode = 0
                        await self._serve(ws)
                        if self._closed:
                            return
                        self._set_status("disconnected")

                    delay = self._reconnect_delays[min(episode, len(self._reconnect_delays) - 1)]
                    episode += 1
                    self._reconnects += 1
                    self._set_status("reconnecting", attempts=self._reconnects, delay=delay)
                    self._record("reconnect", attempts=self._reconnects, delay=delay)
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        prefix = [{"type": "subscribe", "threadId": thread_id} for thread_id in self._registry.threads()]
        self._queue.extendleft(reversed(prefix))
        self._online.set()
        self._set_status("online")
        self._ping()

        writer = asyncio.ensure_future(self._writer(ws))
        heartbeat = asyncio.ensure_future(self._heartbeat(ws))
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("relay connection lost: %s", exc)
            self._record("error", detail=f"runtime: {exc}")
        finally:
            self._online.clear()
            writer.cancel()
            heartbeat.cancel()
            await asyncio.gather(writer, heartbeat, return_exceptions=True)
            if not ws.closed:
                await ws.close()

    async def _writer(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while True:
                self._wakeup.clear()
                while self._queue:
                    frame = self._queue.popleft()
                    try:
                        await ws.send_json(frame)
                    except (asyncio.CancelledError, aiohttp.ClientError, ConnectionResetError, RuntimeError):
                        self._queue.appendleft(frame)
                        raise
                await self._wakeup.wait()
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            logger.warning("relay send failed, frames stay queued: %s", exc)
            await ws.close()

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                if ws.closed:
                    return
                self._ping()
        except asyncio.CancelledError:
            return

    def _ping(self) -> None:
        self._last_ping_at = self._clock()
        self._enqueue({"type": "ping", "timestamp": int(time.time() * 1000)})
        self._record("ping")

    def _handle_text(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("relay sent malformed json")
            return
        if not isinstance(frame, dict):
            return

        frame_type = frame.get("type")
        thread_id = normalize_thread_id(frame.get("threadId"))

        if frame_type in {"subscribed", "unsubscribed"}:
            logger.debug("relay %s thread %s", frame_type, short_key(thread_id))
        elif frame_type == "pong":
            rtt_ms = None
            if self._last_ping_at is not None:
                rtt_ms = (self._clock() - self._last_ping_at) * 1000
                self._rtt.add(rtt_ms)
            self._last_ping_at = None
            self._record("heartbeat", rtt_ms=rtt_ms)
        elif frame_type == "ping":
            self._enqueue({"type": "pong", "timestamp": frame.get("timestamp")})
        elif frame_type == "delivery":
            payload = frame.get("payload") if isinstance(frame.get("payload"), dict) else {}
            message_id = payload.get("messageId")
            if thread_id and message_id:
                delivery = DELIVERED if payload.get("status") == DELIVERED else FAILED
                self._settle(thread_id, str(message_id), delivery)
        elif frame_type == "error":
            logger.warning("relay error %s: %s", frame.get("code"), frame.get("message"))
            self._record("error", detail=str(frame.get("message")))
        elif thread_id:
            event = event_from_frame(str(frame_type), thread_id, frame.get("payload"))
            if event is not None:
                self._dispatch(event)
