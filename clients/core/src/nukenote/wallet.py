"""Wallet handle contract and a local signing wallet.

Real wallets live outside this package; the core only needs an identity key,
detached Ed25519 signatures and a Curve25519 key for receiving wrapped keys.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, Mapping, Protocol, runtime_checkable

from nacl import exceptions as nacl_exceptions
from nacl.public import PrivateKey
from nacl.signing import SigningKey, VerifyKey

from .errors import ValidationError


@runtime_checkable
class WalletHandle(Protocol):
    def identity_key(self) -> str:
        ...

    def sign(self, message: bytes) -> bytes:
        ...

    def encryption_public_key(self) -> str:
        ...


class LocalWallet:
    """In-process wallet backed by PyNaCl keys, used for guests and tests."""

    def __init__(self, signing_seed: bytes | None = None, encryption_secret: bytes | None = None) -> None:
        self._signing_key = SigningKey(signing_seed) if signing_seed is not None else SigningKey.generate()
        self._encryption_key = (
            PrivateKey(encryption_secret) if encryption_secret is not None else PrivateKey.generate()
        )

    @classmethod
    def from_hex(cls, signing_seed_hex: str, encryption_secret_hex: str) -> "LocalWallet":
        return cls(bytes.fromhex(signing_seed_hex), bytes.fromhex(encryption_secret_hex))

    def identity_key(self) -> str:
        return self._signing_key.verify_key.encode().hex()

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def encryption_public_key(self) -> str:
        return bytes(self._encryption_key.public_key).hex()

    def encryption_private_key(self) -> str:
        return bytes(self._encryption_key).hex()

    def export_secrets(self) -> Dict[str, str]:
        return {
            "signing_seed_hex": self._signing_key.encode().hex(),
            "encryption_secret_hex": bytes(self._encryption_key).hex(),
        }


def canonical_bytes(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def sign_payload(wallet: WalletHandle, payload: Mapping[str, Any], *, exclude: str = "sig") -> str:
    unsigned = {key: value for key, value in payload.items() if key != exclude}
    return b64url(wallet.sign(canonical_bytes(unsigned)))


def verify_payload_signature(
    identity_key_hex: str,
    payload: Mapping[str, Any],
    signature_b64url: str,
    *,
    exclude: str = "sig",
) -> bool:
    """Return True when ``signature_b64url`` signs ``payload`` minus ``exclude``."""

    unsigned = {key: value for key, value in payload.items() if key != exclude}
    try:
        verify_key = VerifyKey(bytes.fromhex(identity_key_hex))
        signature = b64url_decode(signature_b64url)
        verify_key.verify(canonical_bytes(unsigned), signature)
    except (ValueError, TypeError, nacl_exceptions.BadSignatureError, nacl_exceptions.CryptoError):
        return False
    return True


def require_identity_key(value: object) -> str:
    if not isinstance(value, str) or len(value) != 64:
        raise ValidationError("identity key must be a 64 character hex string")
    try:
        bytes.fromhex(value)
    except ValueError as exc:
        raise ValidationError("identity key must be hex encoded") from exc
    return value.lower()
