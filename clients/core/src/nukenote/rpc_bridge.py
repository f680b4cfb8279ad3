"""Request/response bridge to a wallet or helper living across a message boundary.

Requests are ``{id, method, params}``. Responses are ``{id, result}`` on
success and ``{id, status: "error", code, description}`` on failure. Every
call is tracked in a pending table keyed by its correlation id and carries a
timeout.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from .errors import CallTimeoutError, RpcError

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 8.0

Sender = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
RpcHandler = Callable[[Any], Any]


class RpcBridge:
    def __init__(
        self,
        send: Sender,
        *,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._send = send
        self._timeout = timeout
        self._id_factory = id_factory
        self._pending: Dict[str, asyncio.Future] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def call(self, method: str, params: Any = None, *, timeout: Optional[float] = None) -> Any:
        if self._closed:
            raise RpcError("bridge_closed", "RPC bridge is closed")
        if not method:
            raise ValueError("method is required")

        request_id = self._id_factory()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        budget = self._timeout if timeout is None else timeout

        async def round_trip() -> Any:
            sent = self._send({"id": request_id, "method": method, "params": params})
            if inspect.isawaitable(sent):
                await sent
            return await future

        # The send and the response share one deadline.
        try:
            return await asyncio.wait_for(round_trip(), timeout=budget)
        except asyncio.TimeoutError as exc:
            logger.warning("rpc call %s timed out after %.1fs", method, budget)
            raise CallTimeoutError(f"RPC timeout for {method}") from exc
        finally:
            self._pending.pop(request_id, None)

    def handle_response(self, message: Mapping[str, Any]) -> bool:
        """Settle the pending call named by ``message['id']``; False if none matches."""

        request_id = message.get("id") if isinstance(message, Mapping) else None
        future = self._pending.pop(request_id, None) if request_id is not None else None
        if future is None:
            logger.debug("dropping rpc response for unknown id %s", request_id)
            return False
        if future.done():
            return False
        if message.get("status") == "error":
            future.set_exception(
                RpcError(str(message.get("code") or "rpc_error"), str(message.get("description") or "RPC error"))
            )
        else:
            future.set_result(message.get("result"))
        return True

    def close(self) -> None:
        self._closed = True
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(RpcError("bridge_closed", "RPC bridge closed"))


class RpcResponder:
    """Dispatches bridge requests to handlers and builds the response shapes."""

    def __init__(self, handlers: Mapping[str, RpcHandler] | None = None) -> None:
        self._handlers: Dict[str, RpcHandler] = dict(handlers or {})

    def register(self, method: str, handler: RpcHandler) -> None:
        self._handlers[method] = handler

    async def handle(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        request_id = request.get("id")
        method = request.get("method")
        handler = self._handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            return _error(request_id, "method_not_found", f"unknown method {method!r}")

        try:
            result = handler(request.get("params"))
            if inspect.isawaitable(result):
                result = await result
        except RpcError as exc:
            return _error(request_id, exc.code, exc.description)
        except Exception as exc:
            logger.exception("rpc handler %s failed", method)
            return _error(request_id, "internal_error", str(exc) or exc.__class__.__name__)
        return {"id": request_id, "result": result}


def _error(request_id: Any, code: str, description: str) -> Dict[str, Any]:
    return {"id": request_id, "status": "error", "code": code, "description": description}
