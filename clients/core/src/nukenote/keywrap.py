"""Wrap a symmetric thread key for one recipient's Curve25519 public key.

Blob layout (before text encoding)::

    version (1) | ephemeral public key (32) | nonce (24) | ciphertext + tag (48)

The ephemeral key pair is fresh for every wrap, so two wraps of the same key for
the same recipient never share bytes. The encoded form is base64url without
padding unless standard base64 is requested; ``unwrap_key`` accepts both.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from nacl import exceptions as nacl_exceptions
from nacl import utils as nacl_utils
from nacl.public import Box, PrivateKey, PublicKey

from .errors import DecryptionError, ValidationError

if TYPE_CHECKING:  # pragma: no cover
    from .wallet import WalletHandle

WRAP_VERSION = 1
THREAD_KEY_SIZE = 32
_PUBLIC_KEY_SIZE = PublicKey.SIZE
_NONCE_SIZE = Box.NONCE_SIZE
_HEADER_SIZE = 1 + _PUBLIC_KEY_SIZE + _NONCE_SIZE
_TAG_SIZE = 16
_SEALED_SIZE = THREAD_KEY_SIZE + _TAG_SIZE

KeyInput = Union[str, bytes, PublicKey, PrivateKey]


@dataclass(frozen=True)
class KeyPair:
    private_key_hex: str
    public_key_hex: str


def generate_keypair() -> KeyPair:
    private_key = PrivateKey.generate()
    return KeyPair(
        private_key_hex=bytes(private_key).hex(),
        public_key_hex=bytes(private_key.public_key).hex(),
    )


def public_key_for(private_key: KeyInput) -> str:
    return bytes(_coerce_private_key(private_key).public_key).hex()


def _key_bytes(value: str | bytes, what: str) -> bytes:
    if isinstance(value, bytes):
        raw = value
    elif isinstance(value, str):
        try:
            raw = bytes.fromhex(value.strip())
        except ValueError as exc:
            raise ValidationError(f"{what} must be hex encoded") from exc
    else:
        raise ValidationError(f"{what} must be bytes or a hex string")
    if len(raw) != _PUBLIC_KEY_SIZE:
        raise ValidationError(f"{what} must be {_PUBLIC_KEY_SIZE} bytes")
    return raw


def _coerce_public_key(value: KeyInput) -> PublicKey:
    if isinstance(value, PublicKey):
        return value
    if isinstance(value, PrivateKey):
        return value.public_key
    return PublicKey(_key_bytes(value, "recipient public key"))


def _coerce_private_key(value: KeyInput) -> PrivateKey:
    if isinstance(value, PrivateKey):
        return value
    if isinstance(value, PublicKey):
        raise ValidationError("a private key is required")
    return PrivateKey(_key_bytes(value, "recipient private key"))


def encode_blob(blob: bytes, encoding: str = "base64url") -> str:
    if encoding == "base64url":
        return base64.urlsafe_b64encode(blob).decode("ascii").rstrip("=")
    if encoding == "base64":
        return base64.b64encode(blob).decode("ascii")
    raise ValidationError(f"unsupported encoding: {encoding}")


def decode_blob(encoded: str) -> bytes:
    """Decode base64 or base64url text, with or without padding."""

    if not isinstance(encoded, str) or not encoded.strip():
        raise DecryptionError("wrapped key must be a non-empty string")
    normalized = "".join(encoded.split()).replace("-", "+").replace("_", "/").rstrip("=")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("wrapped key is not valid base64") from exc


def wrap_key(symmetric_key: bytes, recipient_public_key: KeyInput, *, encoding: str = "base64url") -> str:
    if not isinstance(symmetric_key, (bytes, bytearray)) or len(symmetric_key) != THREAD_KEY_SIZE:
        raise ValidationError(f"symmetric key must be {THREAD_KEY_SIZE} bytes")
    recipient = _coerce_public_key(recipient_public_key)

    ephemeral = PrivateKey.generate()
    nonce = nacl_utils.random(_NONCE_SIZE)
    sealed = Box(ephemeral, recipient).encrypt(bytes(symmetric_key), nonce).ciphertext

    blob = bytes([WRAP_VERSION]) + bytes(ephemeral.public_key) + nonce + sealed
    return encode_blob(blob, encoding)


def unwrap_key(wrapped: str, recipient_private_key: KeyInput) -> bytes:
    private_key = _coerce_private_key(recipient_private_key)
    blob = decode_blob(wrapped)

    if len(blob) != _HEADER_SIZE + _SEALED_SIZE:
        raise DecryptionError("wrapped key has an unexpected length")
    if blob[0] != WRAP_VERSION:
        raise DecryptionError(f"unsupported wrapped key version {blob[0]}")

    ephemeral_public = PublicKey(blob[1 : 1 + _PUBLIC_KEY_SIZE])
    nonce = blob[1 + _PUBLIC_KEY_SIZE : _HEADER_SIZE]
    sealed = blob[_HEADER_SIZE:]

    try:
        key = Box(private_key, ephemeral_public).decrypt(sealed, nonce)
    except nacl_exceptions.CryptoError as exc:
        raise DecryptionError(
            "key unwrap failed: authentication tag mismatch, wrong private key or corrupted data"
        ) from exc
    if len(key) != THREAD_KEY_SIZE:
        raise DecryptionError("unwrapped key has an unexpected length")
    return key


def wrap_key_for_wallet(symmetric_key: bytes, wallet: "WalletHandle", *, encoding: str = "base64url") -> str:
    public_key = wallet.encryption_public_key()
    if not public_key:
        raise ValidationError("wallet did not return an encryption public key")
    return wrap_key(symmetric_key, public_key, encoding=encoding)
