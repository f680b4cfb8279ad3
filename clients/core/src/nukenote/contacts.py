"""Contact records keyed by lowercase public key."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import ValidationError
from .redact import short_key
from .storage import atomic_write_json, read_json_object
from .telemetry import utc_now_iso

logger = logging.getLogger(__name__)

_WIRE_NAMES = {
    "pubkey": "pubkey",
    "kind": "kind",
    "verified": "verified",
    "verified_safety_number": "verifiedSafetyNumber",
    "last_verified_safety_number": "lastVerifiedSafetyNumber",
    "verified_at": "verifiedAt",
    "display_name": "displayName",
    "last_seen": "lastSeen",
}
_FROM_WIRE = {wire: name for name, wire in _WIRE_NAMES.items()}


@dataclass(frozen=True)
class Contact:
    pubkey: str
    kind: str = "guest"
    verified: bool = False
    verified_safety_number: Optional[str] = None
    last_verified_safety_number: Optional[str] = None
    verified_at: Optional[str] = None
    display_name: Optional[str] = None
    last_seen: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {wire: getattr(self, name) for name, wire in _WIRE_NAMES.items()}

    @classmethod
    def from_dict(cls, pubkey: str, data: Mapping[str, Any]) -> "Contact":
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = _FROM_WIRE.get(key, key)
            if name in known and name != "pubkey":
                values[name] = value
        return cls(pubkey=pubkey, **values)


def normalize_pubkey(pubkey: str) -> str:
    if not isinstance(pubkey, str) or not pubkey.strip():
        raise ValidationError("pubkey is required")
    return pubkey.strip().lower()


ContactListener = Callable[[str], None]


class ContactStore(abc.ABC):
    """Keyed contact persistence. ``upsert`` merges camelCase patches."""

    def __init__(self) -> None:
        self._listeners: List[ContactListener] = []

    @abc.abstractmethod
    def _read(self) -> Dict[str, Contact]:
        raise NotImplementedError

    @abc.abstractmethod
    def _write(self, contacts: Dict[str, Contact]) -> None:
        raise NotImplementedError

    def add_listener(self, listener: ContactListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def all(self) -> Dict[str, Contact]:
        return dict(self._read())

    def get(self, pubkey: str) -> Optional[Contact]:
        if not pubkey:
            return None
        return self._read().get(pubkey.strip().lower())

    def upsert(self, pubkey: str, patch: Mapping[str, Any]) -> Contact:
        key = normalize_pubkey(pubkey)
        contacts = self._read()
        existing = contacts.get(key) or Contact(pubkey=key)
        merged = existing.to_dict()
        merged.update(patch)
        merged["lastSeen"] = utc_now_iso()
        contact = Contact.from_dict(key, merged)
        contacts[key] = contact
        self._write(contacts)
        logger.info("upserted contact %s verified=%s", short_key(key), contact.verified)
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                logger.exception("contact listener failed")
        return contact

    def mark_verified(self, pubkey: str, safety_number: str) -> Contact:
        return self.upsert(
            pubkey,
            {"verified": True, "verifiedSafetyNumber": safety_number, "verifiedAt": utc_now_iso()},
        )

    def delete(self, pubkey: str) -> None:
        contacts = self._read()
        if contacts.pop(pubkey.strip().lower(), None) is not None:
            self._write(contacts)


class InMemoryContactStore(ContactStore):
    def __init__(self, contacts: Mapping[str, Contact] | None = None) -> None:
        super().__init__()
        self._contacts: Dict[str, Contact] = {}
        for pubkey, contact in (contacts or {}).items():
            key = normalize_pubkey(pubkey)
            self._contacts[key] = replace(contact, pubkey=key)

    def _read(self) -> Dict[str, Contact]:
        return dict(self._contacts)

    def _write(self, contacts: Dict[str, Contact]) -> None:
        self._contacts = dict(contacts)


class JsonContactStore(ContactStore):
    """Contacts persisted as one JSON object keyed by public key."""

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self._path = Path(path).expanduser()

    def _read(self) -> Dict[str, Contact]:
        contacts: Dict[str, Contact] = {}
        for pubkey, raw in read_json_object(self._path).items():
            if not isinstance(raw, dict):
                logger.warning("skipping malformed contact %s", short_key(pubkey))
                continue
            contacts[pubkey] = Contact.from_dict(pubkey, raw)
        return contacts

    def _write(self, contacts: Dict[str, Contact]) -> None:
        payload = {pubkey: contact.to_dict() for pubkey, contact in contacts.items()}
        atomic_write_json(self._path, payload)
