"""Store-and-forward transport over the relay's per-thread mailbox.

Outbound frames become signed envelopes posted to
``/v1/mailbox/{thread}/send``; subscribed threads are polled from the
reader's cursor so messages sent while a peer was offline arrive on its next
poll.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote, urlsplit, urlunsplit

import aiohttp

from .acks import DELIVERED, FAILED
from .errors import TransportError, ValidationError
from .helper_cache import RETRYABLE_STATUSES
from .redact import redact_mapping, redact_text, short_key
from .retry import DEFAULT_RETRY_DELAYS, retry_async
from .telemetry import TelemetrySink
from .transport import DeliveryTransport, StatusCallback, event_from_frame, message_id_of
from .wallet import WalletHandle, require_identity_key, sign_payload

logger = logging.getLogger(__name__)


class MailboxRejected(TransportError):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"mailbox rejected envelope ({status}): {message}")
        self.status = status


class MailboxPageError(TransportError):
    pass


_POLL_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError, MailboxRejected, MailboxPageError)


def mailbox_base_url(host: str) -> str:
    target = host.strip()
    if "://" not in target:
        target = f"http://{target}"
    parts = urlsplit(target)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    if scheme not in {"http", "https"} or not parts.netloc:
        raise TransportError(f"invalid mailbox host: {host}")
    return urlunsplit((scheme, parts.netloc, "", "", ""))


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, MailboxRejected):
        return exc.status in RETRYABLE_STATUSES
    return isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, OSError))


class MailboxTransport(DeliveryTransport):
    mode = "store_forward"

    def __init__(
        self,
        host: str,
        *,
        wallet: WalletHandle | None,
        identity_key: str | None,
        poll_interval: float = 2.0,
        retries: int = 2,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        request_timeout: float = 10.0,
        on_status: StatusCallback | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        if not isinstance(host, str) or not host.strip():
            raise TransportError("store_forward transport requires a relay host")
        if wallet is None or not isinstance(wallet, WalletHandle):
            raise TransportError("store_forward transport requires a wallet handle")
        try:
            self._identity_key = require_identity_key(identity_key)
        except ValidationError as exc:
            raise TransportError(f"store_forward transport requires an identity key: {exc}") from exc
        self._base_url = mailbox_base_url(host)
        super().__init__(on_status=on_status, telemetry=telemetry)
        self._wallet = wallet
        self._poll_interval = poll_interval
        self._retries = retries
        self._retry_delays = tuple(retry_delays)
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._pollers: Dict[str, asyncio.Task] = {}
        self._cursors: Dict[str, int] = {}

    @property
    def identity_key(self) -> str:
        return self._identity_key

    def _thread_url(self, thread_id: str, suffix: str = "") -> str:
        return f"{self._base_url}/v1/mailbox/{quote(thread_id, safe='')}{suffix}"

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _on_first_subscriber(self, thread_id: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        if thread_id not in self._pollers:
            self._pollers[thread_id] = self._spawn(self._poll_loop(thread_id))

    def _on_last_unsubscribe(self, thread_id: str) -> None:
        task = self._pollers.pop(thread_id, None)
        if task is not None:
            task.cancel()

    def _publish(self, frame_type: str, thread_id: str, payload: Dict[str, Any]) -> None:
        self._spawn(self._deliver(frame_type, thread_id, payload))

    def _shutdown(self) -> None:
        self._pollers.clear()
        self._cancel_tasks()
        session, self._session = self._session, None
        if session is not None and not session.closed:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return
            self._spawn(session.close())

    def build_envelope(self, frame_type: str, thread_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {
            "type": frame_type,
            "threadId": thread_id,
            "payload": payload,
            "identityKey": self._identity_key,
            "messageId": message_id_of(payload) or uuid.uuid4().hex,
            "ts": int(time.time() * 1000),
        }
        envelope["sig"] = sign_payload(self._wallet, envelope)
        logger.debug("built envelope %s", redact_mapping(envelope))
        return envelope

    async def _post_envelope(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        url = self._thread_url(envelope["threadId"], "/send")
        async with self._client().post(url, json={"envelope": envelope}) as response:
            if response.status >= 400:
                raise MailboxRejected(response.status, redact_text(await response.text()))
            return await response.json()

    async def _deliver(self, frame_type: str, thread_id: str, payload: Dict[str, Any]) -> None:
        message_id = message_id_of(payload) if frame_type == "message" else None
        envelope = self.build_envelope(frame_type, thread_id, payload)
        try:
            result = await retry_async(
                lambda: self._post_envelope(envelope),
                retries=self._retries,
                delays=self._retry_delays,
                logger=logger,
                retry_if=_should_retry,
                should_abort=lambda: self._closed,
            )
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.warning("mailbox %s for thread %s failed: %s", frame_type, short_key(thread_id), exc)
            self._record("error", detail=f"send: {exc}")
            self._mark("disconnected")
            if message_id is not None:
                self._emit_ack(thread_id, message_id, FAILED)
            return
        self._mark("online")
        logger.debug("mailbox stored %s seq=%s", frame_type, result.get("seq") if isinstance(result, dict) else None)
        if message_id is not None:
            self._emit_ack(thread_id, message_id, DELIVERED)

    async def poll_once(self, thread_id: str) -> int:
        """Fetch envelopes past the cursor, dispatch them and advance the cursor."""

        params = {"reader": self._identity_key}
        if thread_id in self._cursors:
            params["after"] = str(self._cursors[thread_id])
        async with self._client().get(self._thread_url(thread_id), params=params) as response:
            if response.status >= 400:
                raise MailboxRejected(response.status, redact_text(await response.text()))
            body = await response.json()
        events = body.get("events") if isinstance(body, dict) else None
        if not isinstance(events, list):
            raise MailboxPageError(f"malformed mailbox page for thread {short_key(thread_id)}")

        dispatched = 0
        last_seq = self._cursors.get(thread_id, 0)
        for item in events:
            if not isinstance(item, dict):
                continue
            seq = item.get("seq")
            envelope = item.get("envelope")
            if isinstance(seq, bool) or not isinstance(seq, int) or seq <= last_seq:
                continue
            last_seq = seq
            if not isinstance(envelope, dict):
                continue
            if item.get("sender") == self._identity_key:
                continue
            event = event_from_frame(str(envelope.get("type")), thread_id, envelope.get("payload"))
            if event is not None:
                self._dispatch(event)
                dispatched += 1

        if last_seq > self._cursors.get(thread_id, 0):
            self._cursors[thread_id] = last_seq
            async with self._client().post(
                self._thread_url(thread_id, "/ack"), json={"reader": self._identity_key, "seq": last_seq}
            ) as response:
                if response.status >= 400:
                    logger.warning("mailbox cursor ack rejected: %s", response.status)
        self._mark("online")
        return dispatched

    async def _poll_loop(self, thread_id: str) -> None:
        try:
            while not self._closed:
                try:
                    await self.poll_once(thread_id)
                except _POLL_ERRORS as exc:
                    logger.warning("mailbox poll for thread %s failed: %s", short_key(thread_id), exc)
                    self._record("error", detail=f"poll: {exc}")
                    self._mark("disconnected")
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            return

    def _mark(self, status: str) -> None:
        if self._closed or self._status == status:
            return
        self._set_status(status)
