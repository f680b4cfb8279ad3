"""Client core for token-gated encrypted threads."""

from .access import AccessDecision, AccessReason, can_access_thread, validate_thread_access
from .errors import (
    AccessDeniedError,
    BackupError,
    CacheUnavailableError,
    CallTimeoutError,
    DecryptionError,
    HelperCacheError,
    NukenoteError,
    RpcError,
    TransportError,
    ValidationError,
)
from .keywrap import generate_keypair, unwrap_key, wrap_key
from .retry import retry_async
from .safety import SafetyNumberMonitor, detect_safety_number_changes, safety_number
from .transport import DeliveryTransport, LoopbackTransport
from .transport_manager import TransportConfig, TransportManager

__all__ = [
    "AccessDecision",
    "AccessReason",
    "can_access_thread",
    "validate_thread_access",
    "AccessDeniedError",
    "BackupError",
    "CacheUnavailableError",
    "CallTimeoutError",
    "DecryptionError",
    "HelperCacheError",
    "NukenoteError",
    "RpcError",
    "TransportError",
    "ValidationError",
    "generate_keypair",
    "unwrap_key",
    "wrap_key",
    "retry_async",
    "SafetyNumberMonitor",
    "detect_safety_number_changes",
    "safety_number",
    "DeliveryTransport",
    "LoopbackTransport",
    "TransportConfig",
    "TransportManager",
]
