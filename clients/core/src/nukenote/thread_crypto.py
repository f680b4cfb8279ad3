"""Symmetric encryption of thread messages under the shared thread key."""

from __future__ import annotations

from typing import Any, Dict

from nacl import exceptions as nacl_exceptions
from nacl import utils as nacl_utils
from nacl.secret import SecretBox

from .errors import DecryptionError, ValidationError
from .keywrap import THREAD_KEY_SIZE, decode_blob, encode_blob


def generate_thread_key() -> bytes:
    return nacl_utils.random(THREAD_KEY_SIZE)


def _box(thread_key: bytes) -> SecretBox:
    if not isinstance(thread_key, (bytes, bytearray)) or len(thread_key) != THREAD_KEY_SIZE:
        raise ValidationError(f"thread key must be {THREAD_KEY_SIZE} bytes")
    return SecretBox(bytes(thread_key))


def encrypt_text(thread_key: bytes, plaintext: str) -> str:
    box = _box(thread_key)
    sealed = box.encrypt(plaintext.encode("utf-8"))
    return encode_blob(bytes(sealed))


def decrypt_text(thread_key: bytes, ciphertext: str) -> str:
    box = _box(thread_key)
    raw = decode_blob(ciphertext)
    try:
        return box.decrypt(raw).decode("utf-8")
    except nacl_exceptions.CryptoError as exc:
        raise DecryptionError("thread message failed authentication") from exc
    except UnicodeDecodeError as exc:
        raise DecryptionError("thread message is not valid UTF-8") from exc


def seal_payload(thread_key: bytes, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Replace ``text`` in a message payload with ``ciphertext``."""

    sealed = {key: value for key, value in payload.items() if key != "text"}
    sealed["ciphertext"] = encrypt_text(thread_key, str(payload.get("text", "")))
    return sealed


def open_payload(thread_key: bytes, payload: Dict[str, Any]) -> Dict[str, Any]:
    ciphertext = payload.get("ciphertext")
    if not isinstance(ciphertext, str):
        raise ValidationError("payload has no ciphertext")
    opened = {key: value for key, value in payload.items() if key != "ciphertext"}
    opened["text"] = decrypt_text(thread_key, ciphertext)
    return opened
