"""Client settings: JSON file on disk, then ``NUKENOTE_*`` environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .relay_transport import DEFAULT_ACK_TIMEOUT, DEFAULT_HEARTBEAT_INTERVAL, DEFAULT_RECONNECT_DELAYS
from .rpc_bridge import DEFAULT_RPC_TIMEOUT
from .storage import atomic_write_json, read_json_object
from .transport import MODES
from .transport_manager import TransportConfig

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = Path.home() / ".nukenote" / "settings.json"
ENV_PREFIX = "NUKENOTE_"


@dataclass(frozen=True)
class ClientSettings:
    transport_mode: str = "loopback"
    relay_host: Optional[str] = None
    helper_cache_url: Optional[str] = None
    identity_key: Optional[str] = None
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    reconnect_delays: Tuple[float, ...] = DEFAULT_RECONNECT_DELAYS
    ack_timeout: float = DEFAULT_ACK_TIMEOUT
    poll_interval: float = 2.0
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT
    safety_check_interval: float = 60.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reconnect_delays"] = list(self.reconnect_delays)
        return data

    def to_transport_config(self, wallet: Any = None) -> TransportConfig:
        return TransportConfig(
            mode=self.transport_mode,
            host=self.relay_host,
            identity_key=self.identity_key,
            wallet=wallet,
            heartbeat_interval=self.heartbeat_interval,
            reconnect_delays=self.reconnect_delays,
            ack_timeout=self.ack_timeout,
            poll_interval=self.poll_interval,
        )


_FLOAT_FIELDS = {"heartbeat_interval", "ack_timeout", "poll_interval", "rpc_timeout", "safety_check_interval"}


def _coerce(name: str, value: Any) -> Any:
    if name == "reconnect_delays":
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        delays = tuple(float(item) for item in value)
        if not delays:
            raise ValueError("reconnect_delays must not be empty")
        return delays
    if name in _FLOAT_FIELDS:
        return float(value)
    if name == "transport_mode":
        mode = str(value).strip().lower()
        if mode not in MODES:
            raise ValueError(f"unknown transport mode {mode!r}")
        return mode
    if value is None or value == "":
        return None
    return str(value)


def _apply(settings: Dict[str, Any], source: Mapping[str, Any], origin: str) -> None:
    known = {f.name for f in fields(ClientSettings)}
    for name, value in source.items():
        if name not in known:
            continue
        try:
            settings[name] = _coerce(name, value)
        except (TypeError, ValueError) as exc:
            logger.warning("ignoring %s setting %s: %s", origin, name, exc)


def env_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, str]:
    env = os.environ if environ is None else environ
    overrides = {}
    for f in fields(ClientSettings):
        value = env.get(ENV_PREFIX + f.name.upper())
        if value is not None:
            overrides[f.name] = value
    return overrides


def load_settings(
    path: Path | str = DEFAULT_SETTINGS_FILE,
    *,
    environ: Mapping[str, str] | None = None,
) -> ClientSettings:
    """Defaults, then the JSON file at ``path``, then environment overrides.

    A missing or corrupt file reads as empty. Values that do not coerce to the
    field's type are logged and skipped.
    """

    values: Dict[str, Any] = {}
    _apply(values, read_json_object(Path(path)), "file")
    _apply(values, env_overrides(environ), "environment")
    return ClientSettings(**values)


def persist_settings(settings: ClientSettings, path: Path | str = DEFAULT_SETTINGS_FILE) -> None:
    atomic_write_json(Path(path), settings.to_dict())
