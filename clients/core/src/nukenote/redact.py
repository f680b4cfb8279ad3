"""Keep key material out of logs: mask secrets, shorten public keys."""

from __future__ import annotations

import re
from typing import Any, Mapping

REDACTED = "[REDACTED]"

SECRET_FIELDS = frozenset(
    {
        "private_key",
        "privatekey",
        "private_key_hex",
        "thread_key",
        "threadkey",
        "wrap",
        "sig",
        "signature",
        "signing_seed_hex",
        "encryption_secret_hex",
        "token",
        "auth_token",
    }
)

# Public, but long and identifying; logged in short form only.
PUBLIC_KEY_FIELDS = frozenset({"identitykey", "inviter", "recipient_pubkey", "peer_public_key", "pubkey"})

_SECRET_ASSIGNMENT_RE = re.compile(
    r"([\"']?(?:private_?key(?:_hex)?|thread_?key|wrap|sig|signature|signing_seed_hex"
    r"|encryption_secret_hex|auth_token|token)[\"']?\s*[:=]\s*[\"']?)([^\"'\s,}&]+)",
    flags=re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(Bearer\s+)(\S+)", flags=re.IGNORECASE)


def short_key(key: object, keep: int = 8) -> str:
    """Return a truncated form of a public key suitable for logs."""

    text = "" if key is None else str(key)
    if len(text) <= keep * 2:
        return text
    return f"{text[:keep]}...{text[-4:]}"


def redact_text(text: object) -> str:
    rendered = _BEARER_RE.sub(rf"\1{REDACTED}", str(text))
    return _SECRET_ASSIGNMENT_RE.sub(rf"\1{REDACTED}", rendered)


def _redact_value(field: str, value: Any) -> Any:
    if field in SECRET_FIELDS:
        return REDACTED
    if field in PUBLIC_KEY_FIELDS and isinstance(value, str):
        return short_key(value)
    if isinstance(value, Mapping):
        return redact_mapping(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value("", item) for item in value]
    return value


def redact_mapping(obj: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``obj`` with secrets masked and public keys shortened, at any depth."""

    return {key: _redact_value(str(key).lower(), value) for key, value in obj.items()}
