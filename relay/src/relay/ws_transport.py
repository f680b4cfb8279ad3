from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, List

from aiohttp import WSMsgType, web

from .cache_store import HelperCacheStore, QuotaExceeded, iso_from_ms
from .hub import Subscription, ThreadHub
from .mailbox import ReaderCursors, ThreadMailbox, _now_ms, verify_envelope

logger = logging.getLogger(__name__)

FORWARDED_TYPES = {"message", "ack", "control", "typing"}
MAX_MAILBOX_PAGE = 1000


class Runtime:
    def __init__(
        self,
        *,
        hub: ThreadHub,
        mailbox: ThreadMailbox,
        cursors: ReaderCursors,
        cache: HelperCacheStore,
        sweep_interval_s: float,
    ) -> None:
        self.hub = hub
        self.mailbox = mailbox
        self.cursors = cursors
        self.cache = cache
        self.sweep_interval_s = sweep_interval_s
        self._sweeper_task: asyncio.Task | None = None

    def start_sweeper(self) -> None:
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep())

    async def stop_sweeper(self) -> None:
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None

    def sweep(self) -> int:
        pruned = self.cache.prune() + self.mailbox.expire()
        if pruned:
            logger.info("pruned %d expired entries", pruned)
        return pruned

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_s)
                self.sweep()
        except asyncio.CancelledError:
            return


async def handle_healthz(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _unauthorized(message: str) -> web.Response:
    return web.json_response({"code": "unauthorized", "message": message}, status=401)


def _is_identity_key(value: Any) -> bool:
    if not isinstance(value, str) or len(value) != 64:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


async def handle_cache_health(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    return web.json_response(
        {
            "status": "ok",
            "service": "nukenote-helper-cache",
            "uptime": runtime.cache.uptime_seconds(),
            "entries": len(runtime.cache),
        }
    )


async def handle_cache_status(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    return web.json_response(
        {
            "status": "ok",
            "uptime": runtime.cache.uptime_seconds(),
            "entries": len(runtime.cache),
            "totalBytes": runtime.cache.used_bytes(),
            "updatedAt": iso_from_ms(_now_ms()),
        }
    )


async def handle_cache_quota(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    return web.json_response(runtime.cache.quota())


async def handle_cache_put(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("Missing id or payload")

    entry_id = body.get("id")
    payload = body.get("payload")
    if not isinstance(entry_id, str) or not entry_id or not payload:
        return web.json_response({"error": "Missing id or payload"}, status=400)
    try:
        entry = runtime.cache.put(entry_id, payload)
    except QuotaExceeded as exc:
        return web.json_response({"error": str(exc)}, status=507)
    logger.info("stored cache entry %s (%d bytes)", entry_id, entry.size)
    return web.json_response(
        {"stored": True, "id": entry_id, "expiresAt": iso_from_ms(entry.expires_at_ms)},
        status=201,
    )


async def handle_cache_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    entry = runtime.cache.get(request.match_info["entry_id"])
    if entry is None:
        return web.json_response({"error": "Entry not found"}, status=404)
    return web.json_response(entry.payload)


async def handle_cache_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    entry_id = request.match_info["entry_id"]
    if not runtime.cache.delete(entry_id):
        return web.json_response({"deleted": False, "error": "Entry not found"}, status=404)
    return web.json_response({"deleted": True, "id": entry_id})


async def handle_cache_prune(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    pruned = runtime.cache.prune()
    return web.json_response({"pruned": pruned, "remaining": len(runtime.cache)})


async def handle_mailbox_send(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    thread_id = request.match_info["thread_id"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")

    envelope = body.get("envelope") if isinstance(body, dict) else None
    if not isinstance(envelope, dict):
        return _invalid_request("envelope required")
    frame_type = envelope.get("type")
    message_id = envelope.get("messageId")
    if envelope.get("threadId") != thread_id:
        return _invalid_request("envelope threadId does not match path")
    if frame_type not in FORWARDED_TYPES:
        return _invalid_request("unsupported envelope type")
    if not isinstance(message_id, str) or not message_id:
        return _invalid_request("messageId required")
    if not _is_identity_key(envelope.get("identityKey")):
        return _invalid_request("identityKey must be a 64 character hex string")
    if not verify_envelope(envelope):
        return _unauthorized("invalid signature")

    seq, event, created = runtime.mailbox.append(thread_id, message_id, envelope, envelope["identityKey"])
    if created:
        runtime.hub.broadcast(
            thread_id,
            {"type": frame_type, "threadId": thread_id, "payload": envelope.get("payload") or {}},
        )
    return web.json_response({"threadId": thread_id, "seq": seq, "created": created})


async def handle_mailbox_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    thread_id = request.match_info["thread_id"]
    reader = request.query.get("reader")
    try:
        if "after" in request.query:
            after_seq = int(request.query["after"])
        elif reader:
            after_seq = runtime.cursors.next_seq(reader, thread_id) - 1
        else:
            after_seq = 0
        limit = int(request.query.get("limit", "100"))
    except ValueError:
        return _invalid_request("after and limit must be integers")
    if after_seq < 0:
        return _invalid_request("after must be non-negative")

    events = runtime.mailbox.list_since(thread_id, after_seq, min(max(limit, 0), MAX_MAILBOX_PAGE))
    return web.json_response(
        {
            "threadId": thread_id,
            "events": [event.to_dict() for event in events],
            "lastSeq": runtime.mailbox.last_seq(thread_id),
        }
    )


async def handle_mailbox_ack(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    thread_id = request.match_info["thread_id"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    reader = body.get("reader") if isinstance(body, dict) else None
    seq = body.get("seq") if isinstance(body, dict) else None
    if not isinstance(reader, str) or not reader or not isinstance(seq, int) or seq < 0:
        return _invalid_request("reader and seq required")
    next_seq = runtime.cursors.ack(reader, thread_id, seq)
    return web.json_response({"threadId": thread_id, "nextSeq": next_seq})


def create_app(
    *,
    ping_interval_s: float = 30,
    max_msg_size: int = 1_048_576,
    cache: HelperCacheStore | None = None,
    mailbox_ttl_s: int | None = None,
    sweep_interval_s: float = 3600,
    start_sweeper: bool = True,
) -> web.Application:
    runtime = Runtime(
        hub=ThreadHub(),
        mailbox=ThreadMailbox(ttl_ms=None if mailbox_ttl_s is None else mailbox_ttl_s * 1000),
        cursors=ReaderCursors(),
        cache=cache if cache is not None else HelperCacheStore(),
        sweep_interval_s=sweep_interval_s,
    )
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {"ping_interval_s": ping_interval_s, "max_msg_size": max_msg_size}
    app.router.add_get("/healthz", handle_healthz)
    app.router.add_get("/health", handle_cache_health)
    app.router.add_get("/status", handle_cache_status)
    app.router.add_get("/quota", handle_cache_quota)
    app.router.add_post("/cache", handle_cache_put)
    app.router.add_post("/cache/prune", handle_cache_prune)
    app.router.add_get("/cache/{entry_id}", handle_cache_get)
    app.router.add_delete("/cache/{entry_id}", handle_cache_delete)
    app.router.add_post("/v1/mailbox/{thread_id}/send", handle_mailbox_send)
    app.router.add_post("/v1/mailbox/{thread_id}/ack", handle_mailbox_ack)
    app.router.add_get("/v1/mailbox/{thread_id}", handle_mailbox_list)
    app.router.add_get("/v1/ws", websocket_handler)

    async def start_background(_: web.Application) -> None:
        if start_sweeper:
            runtime.start_sweeper()

    async def stop_background(_: web.Application) -> None:
        await runtime.stop_sweeper()

    app.on_startup.append(start_background)
    app.on_cleanup.append(stop_background)
    return app


def _error_frame(code: str, message: str, *, thread_id: str | None = None) -> dict[str, Any]:
    return {"type": "error", "threadId": thread_id, "code": code, "message": message}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    client_id = f"c_{secrets.token_urlsafe(8)}"
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    subscriptions: List[Subscription] = []
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                enqueue({"type": "ping", "timestamp": _now_ms()})
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue

                frame_type = frame.get("type")
                thread_id = frame.get("threadId")

                if frame_type == "ping":
                    enqueue({"type": "pong", "timestamp": frame.get("timestamp")})
                elif frame_type == "pong":
                    continue
                elif frame_type == "subscribe":
                    if not isinstance(thread_id, str) or not thread_id:
                        enqueue(_error_frame("invalid_request", "threadId required"))
                        continue
                    if runtime.hub.find(client_id, thread_id) is None:
                        subscriptions.append(runtime.hub.subscribe(client_id, thread_id, enqueue))
                    enqueue({"type": "subscribed", "threadId": thread_id})
                elif frame_type == "unsubscribe":
                    subscription = runtime.hub.find(client_id, thread_id) if isinstance(thread_id, str) else None
                    if subscription is not None:
                        runtime.hub.unsubscribe(subscription)
                        subscriptions.remove(subscription)
                    enqueue({"type": "unsubscribed", "threadId": thread_id})
                elif frame_type in FORWARDED_TYPES:
                    payload = frame.get("payload")
                    if not isinstance(thread_id, str) or not thread_id or not isinstance(payload, dict):
                        enqueue(_error_frame("invalid_request", "threadId and payload required", thread_id=thread_id))
                        continue
                    subscribers = runtime.hub.broadcast(
                        thread_id,
                        {"type": frame_type, "threadId": thread_id, "payload": payload},
                        exclude=client_id,
                    )
                    message_id = payload.get("id")
                    if frame_type == "message" and message_id:
                        enqueue(
                            {
                                "type": "delivery",
                                "threadId": thread_id,
                                "subscribers": subscribers,
                                "payload": {
                                    "messageId": str(message_id),
                                    "status": "delivered",
                                    "timestamp": iso_from_ms(_now_ms()),
                                },
                            }
                        )
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", thread_id=thread_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions:
            runtime.hub.unsubscribe(subscription)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
