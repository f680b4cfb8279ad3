"""Error taxonomy shared by the thread client core."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .access import AccessDecision


class NukenoteError(Exception):
    """Base class for client core failures."""


class ValidationError(NukenoteError, ValueError):
    """Raised when an input does not have the expected shape."""


class AccessDeniedError(NukenoteError):
    """Raised by callers that turn a denied access decision into an exception."""

    def __init__(self, decision: "AccessDecision") -> None:
        self.decision = decision
        super().__init__(f"{decision.reason.value}: {decision.details}")


class DecryptionError(NukenoteError):
    """Raised when a wrapped key or ciphertext fails authentication."""


class TransportError(NukenoteError):
    """Raised when a delivery transport cannot be constructed or used."""


class CallTimeoutError(NukenoteError, TimeoutError):
    """Raised when a bridge, cache or relay call exceeds its time budget."""


class CacheUnavailableError(NukenoteError):
    """Raised when the helper cache is not configured or cannot be reached."""


class HelperCacheError(NukenoteError):
    def __init__(self, message: str, *, status: int | None = None, fatal: bool = False) -> None:
        self.status = status
        self.fatal = fatal
        super().__init__(message)


class RpcError(NukenoteError):
    def __init__(self, code: str, description: str) -> None:
        self.code = code
        self.description = description
        super().__init__(f"{code}: {description}")


class BackupError(NukenoteError):
    """Raised when a backup cannot be built, stored or applied."""
