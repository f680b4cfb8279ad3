"""aiohttp client for the helper cache, the relay's offline payload store."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import quote

import aiohttp

from .errors import CacheUnavailableError, CallTimeoutError, HelperCacheError
from .redact import redact_text
from .retry import retry_async
from .telemetry import utc_now_iso

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})
DEFAULT_CACHE_RETRY_DELAYS = (0.3, 1.0)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, HelperCacheError):
        return not exc.fatal
    return isinstance(exc, (CacheUnavailableError, CallTimeoutError))


class HelperCacheClient:
    """Talks to ``/health``, ``/status``, ``/quota`` and ``/cache`` on a helper cache.

    Retryable statuses and network failures are retried with ``retry_async``;
    any other non-2xx status fails at once with a fatal :class:`HelperCacheError`.
    """

    def __init__(
        self,
        base_url: str | None,
        *,
        session: aiohttp.ClientSession | None = None,
        retries: int = 2,
        retry_delays: Sequence[float] = DEFAULT_CACHE_RETRY_DELAYS,
        timeout: float = 10.0,
    ) -> None:
        base = (base_url or "").strip()
        self._base_url = base[:-1] if base.endswith("/") else base
        self._session = session
        self._owns_session = session is None
        self._retries = retries
        self._retry_delays = tuple(retry_delays)
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    async def __aenter__(self) -> "HelperCacheClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        if not self._base_url:
            raise CacheUnavailableError("Helper cache endpoint not configured")
        return f"{self._base_url}{path if path.startswith('/') else '/' + path}"

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request_once(self, method: str, url: str, json_body: Any = None) -> Any:
        try:
            async with self._client().request(method, url, json=json_body, timeout=self._timeout) as response:
                if response.content_type == "application/json":
                    body: Any = await response.json()
                else:
                    body = await response.text()
                if response.status >= 400:
                    raise HelperCacheError(
                        f"Helper cache request failed ({response.status}): {redact_text(body)}",
                        status=response.status,
                        fatal=response.status not in RETRYABLE_STATUSES,
                    )
                return body
        except asyncio.TimeoutError as exc:
            raise CallTimeoutError(f"Helper cache request timed out: {method} {url}") from exc
        except aiohttp.ClientConnectionError as exc:
            raise CacheUnavailableError(f"Helper cache unreachable: {exc}") from exc

    async def _request(self, method: str, path: str, json_body: Any = None) -> Any:
        url = self._url(path)
        return await retry_async(
            lambda: self._request_once(method, url, json_body),
            retries=self._retries,
            delays=self._retry_delays,
            logger=logger,
            retry_if=_is_retryable,
        )

    async def health(self) -> Any:
        return await self._request("GET", "/health")

    async def status(self) -> Dict[str, Any]:
        body = await self._request("GET", "/status")
        if isinstance(body, dict):
            return body
        return {"raw": body}

    async def quota(self) -> Optional[Dict[str, Any]]:
        try:
            body = await self._request("GET", "/quota")
        except HelperCacheError as exc:
            if exc.status == 404:
                return None
            raise
        return body if isinstance(body, dict) else None

    async def put(self, key: str, payload: Any) -> Dict[str, Any]:
        if not key:
            raise ValueError("key is required to store a helper cache item")
        return await self._request("POST", "/cache", {"id": key, "payload": payload})

    async def get(self, key: str) -> Any:
        if not key:
            raise ValueError("key is required to load a helper cache item")
        try:
            return await self._request("GET", f"/cache/{quote(key, safe='')}")
        except HelperCacheError as exc:
            if exc.status == 404:
                return None
            raise

    async def delete(self, key: str) -> Dict[str, Any]:
        if not key:
            raise ValueError("key is required to delete a helper cache item")
        try:
            return await self._request("DELETE", f"/cache/{quote(key, safe='')}")
        except HelperCacheError as exc:
            if exc.status == 404:
                return {"deleted": False}
            raise

    async def prune(self) -> Dict[str, Any]:
        try:
            body = await self._request("POST", "/cache/prune")
        except HelperCacheError as exc:
            if exc.status != 404:
                raise
            body = await self._request("POST", "/cache/prune-expired")
        return body if isinstance(body, dict) else {"ok": True}


def build_cache_id(ct_txid: str | None, ct_vout: Any) -> Optional[str]:
    """Cache key for a thread, derived from its CT outpoint."""

    if not ct_txid or isinstance(ct_vout, bool) or not isinstance(ct_vout, (int, float)):
        return None
    vout = int(ct_vout) if float(ct_vout).is_integer() and ct_vout >= 0 else 0
    return f"{ct_txid}:{vout}"


async def enroll_thread(
    client: HelperCacheClient,
    *,
    thread_id: str,
    ct_txid: str | None,
    ct_vout: Any,
    payload: Dict[str, Any] | None,
) -> Optional[Dict[str, Any]]:
    """Store a thread's recovery payload in the helper cache.

    Returns None when the cache is not configured or the inputs are incomplete,
    otherwise a record of the attempt. Failures are logged, not raised.
    """

    if not client.configured:
        return None
    cache_id = build_cache_id(ct_txid, ct_vout)
    if cache_id is None:
        logger.warning("missing CT outpoint for helper cache enrollment of thread %s", thread_id)
        return None
    if not isinstance(payload, dict):
        logger.warning("missing payload for helper cache enrollment of %s", cache_id)
        return None

    enrolled_at = utc_now_iso()
    try:
        await client.put(cache_id, {**payload, "threadId": thread_id, "enrolledAt": enrolled_at, "version": 1})
    except (HelperCacheError, CacheUnavailableError, CallTimeoutError) as exc:
        logger.warning("failed to enroll helper cache entry %s: %s", cache_id, exc)
        return {"cacheId": cache_id, "enrolled": False, "error": str(exc), "lastAttemptAt": enrolled_at}
    logger.info("enrolled helper cache entry %s", cache_id)
    return {"cacheId": cache_id, "enrolled": True, "enrolledAt": enrolled_at}


async def fetch_thread_payload(client: HelperCacheClient, cache_id: str | None) -> Any:
    if not cache_id or not client.configured:
        return None
    try:
        return await client.get(cache_id)
    except (HelperCacheError, CacheUnavailableError, CallTimeoutError) as exc:
        logger.warning("failed to fetch helper cache entry %s: %s", cache_id, exc)
        return None
