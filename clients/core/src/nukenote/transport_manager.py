"""Caller-owned manager that keeps exactly one live transport per configuration."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import TransportError
from .mailbox_transport import MailboxTransport
from .relay_transport import DEFAULT_ACK_TIMEOUT, DEFAULT_HEARTBEAT_INTERVAL, DEFAULT_RECONNECT_DELAYS, RelayTransport
from .telemetry import TelemetrySink
from .transport import MODES, DeliveryTransport, LoopbackTransport, StatusCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportConfig:
    mode: str = "loopback"
    host: Optional[str] = None
    identity_key: Optional[str] = None
    wallet: Any = field(default=None, compare=False, repr=False)
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    reconnect_delays: Tuple[float, ...] = DEFAULT_RECONNECT_DELAYS
    ack_timeout: float = DEFAULT_ACK_TIMEOUT
    poll_interval: float = 2.0

    def key(self) -> str:
        """Identity of the configuration: mode, host and identity key only."""

        return json.dumps(
            {"mode": self.mode, "host": self.host, "identityKey": self.identity_key},
            sort_keys=True,
        )


TransportFactory = Callable[[TransportConfig, Optional[StatusCallback], Optional[TelemetrySink]], DeliveryTransport]


def _loopback(config: TransportConfig, on_status, telemetry) -> DeliveryTransport:
    return LoopbackTransport(on_status=on_status, telemetry=telemetry)


def _direct(config: TransportConfig, on_status, telemetry) -> DeliveryTransport:
    return RelayTransport(
        config.host or "",
        heartbeat_interval=config.heartbeat_interval,
        reconnect_delays=config.reconnect_delays,
        ack_timeout=config.ack_timeout,
        on_status=on_status,
        telemetry=telemetry,
    )


def _store_forward(config: TransportConfig, on_status, telemetry) -> DeliveryTransport:
    return MailboxTransport(
        config.host or "",
        wallet=config.wallet,
        identity_key=config.identity_key,
        poll_interval=config.poll_interval,
        on_status=on_status,
        telemetry=telemetry,
    )


DEFAULT_FACTORIES: Dict[str, TransportFactory] = {
    "loopback": _loopback,
    "direct": _direct,
    "store_forward": _store_forward,
}


def build_transport(
    config: TransportConfig,
    *,
    on_status: StatusCallback | None = None,
    telemetry: TelemetrySink | None = None,
    factories: Mapping[str, TransportFactory] | None = None,
) -> DeliveryTransport:
    table = DEFAULT_FACTORIES if factories is None else factories
    factory = table.get(config.mode)
    if factory is None:
        raise TransportError(f"unknown transport mode {config.mode!r}; expected one of {', '.join(MODES)}")
    return factory(config, on_status, telemetry)


class TransportManager:
    """Hands out one transport at a time, keyed by :meth:`TransportConfig.key`.

    Asking again with an equivalent configuration returns the live handle and
    re-points its status listener; a different configuration closes the old
    handle before the new one is built.
    """

    def __init__(
        self,
        *,
        factories: Mapping[str, TransportFactory] | None = None,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        self._factories = dict(DEFAULT_FACTORIES if factories is None else factories)
        self._telemetry = telemetry
        self._transport: Optional[DeliveryTransport] = None
        self._key: Optional[str] = None

    @property
    def current(self) -> Optional[DeliveryTransport]:
        return self._transport

    def get(self, config: TransportConfig, *, on_status: StatusCallback | None = None) -> DeliveryTransport:
        key = config.key()
        transport = self._transport
        if transport is not None and key == self._key and not transport.closed:
            transport.set_status_listener(on_status)
            if on_status is not None:
                try:
                    on_status({"status": transport.status})
                except Exception:
                    logger.exception("status listener failed")
            return transport

        self.close()
        transport = build_transport(
            config,
            on_status=on_status,
            telemetry=self._telemetry,
            factories=self._factories,
        )
        self._transport = transport
        self._key = key
        logger.info("transport ready: mode=%s", config.mode)
        return transport

    def close(self) -> None:
        transport, self._transport, self._key = self._transport, None, None
        if transport is not None:
            transport.close()

    async def aclose(self) -> None:
        transport = self._transport
        self.close()
        if transport is not None:
            await transport.wait_closed()
