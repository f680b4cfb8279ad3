"""Encrypted thread and wallet backups stored on the helper cache.

Two flavours share one sealing scheme (``SecretBox`` over canonical JSON,
base64 encoded):

* thread backups are keyed by the thread's CT outpoint (``backup:<txid>:<vout>``)
  and sealed with an Argon2id key derived from a recovery passphrase and a salt
  bound to the user's identity key;
* wallet backups bundle every live thread, guest identities, contacts and
  blocked inviters under ``wallet-backup:<hash>``, sealed with a key derived
  from a wallet signature, so only the same wallet can open them.

Thread keys are never part of a backup; burned threads are skipped.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from nacl import encoding as nacl_encoding
from nacl import exceptions as nacl_exceptions
from nacl import hash as nacl_hash
from nacl.pwhash import argon2id
from nacl.secret import SecretBox

from .blocked_inviters import BlockedInviterStore
from .contacts import ContactStore
from .errors import (
    BackupError,
    CacheUnavailableError,
    CallTimeoutError,
    DecryptionError,
    HelperCacheError,
    ValidationError,
)
from .helper_cache import HelperCacheClient, build_cache_id
from .receipts import BurnedReceipt, JoinReceipt, ReceiptStore, receipt_from_dict, receipt_to_dict
from .redact import short_key
from .telemetry import utc_now_iso
from .wallet import WalletHandle, canonical_bytes, require_identity_key

logger = logging.getLogger(__name__)

THREAD_BACKUP_VERSION = 1
WALLET_BACKUP_VERSION = 2
LOCAL_PAYLOAD_VERSION = 1
THREAD_BACKUP_PREFIX = "backup:"
WALLET_BACKUP_PREFIX = "wallet-backup:"
MIN_PASSPHRASE_LENGTH = 8
WALLET_KEY_MESSAGE = b"NukeNote.Backup/v1 encryption key"


@dataclass(frozen=True)
class PassphraseKdf:
    """Argon2id cost parameters for passphrase-derived backup keys."""

    opslimit: int = argon2id.OPSLIMIT_INTERACTIVE
    memlimit: int = argon2id.MEMLIMIT_INTERACTIVE

    def derive(self, passphrase: str, salt: bytes) -> bytes:
        return argon2id.kdf(
            SecretBox.KEY_SIZE,
            passphrase.encode("utf-8"),
            salt,
            opslimit=self.opslimit,
            memlimit=self.memlimit,
        )


DEFAULT_KDF = PassphraseKdf()


def user_salt(identity_key: str) -> bytes:
    """Deterministic Argon2id salt for ``identity_key``."""

    if not identity_key:
        raise ValidationError("identity key required to derive a backup salt")
    return nacl_hash.blake2b(
        f"nukenote-backup-salt:{identity_key}".encode("utf-8"),
        digest_size=argon2id.SALTBYTES,
        encoder=nacl_encoding.RawEncoder,
    )


def wallet_backup_key(wallet: WalletHandle) -> bytes:
    signature = wallet.sign(WALLET_KEY_MESSAGE)
    return nacl_hash.blake2b(
        signature,
        digest_size=SecretBox.KEY_SIZE,
        person=b"nukenote-backup",
        encoder=nacl_encoding.RawEncoder,
    )


def seal_json(data: Mapping[str, Any], key: bytes) -> str:
    return base64.b64encode(bytes(SecretBox(key).encrypt(canonical_bytes(data)))).decode("ascii")


def open_json(sealed: str, key: bytes) -> Dict[str, Any]:
    if not isinstance(sealed, str):
        raise DecryptionError("backup blob must be a base64 string")
    try:
        raw = base64.b64decode(sealed.encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("backup blob is not valid base64") from exc
    try:
        plaintext = SecretBox(key).decrypt(raw)
    except nacl_exceptions.CryptoError as exc:
        raise DecryptionError("backup could not be decrypted with this key") from exc
    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BackupError("decrypted backup is not JSON") from exc
    if not isinstance(data, dict):
        raise BackupError("decrypted backup is not an object")
    return data


def thread_backup_id(ct_txid: Optional[str], ct_vout: Any) -> Optional[str]:
    base = build_cache_id(ct_txid, ct_vout)
    return f"{THREAD_BACKUP_PREFIX}{base}" if base else None


def wallet_backup_id(identity_key: str) -> str:
    digest = hashlib.sha256(f"{WALLET_BACKUP_PREFIX}{identity_key}".encode("utf-8")).hexdigest()
    return f"{WALLET_BACKUP_PREFIX}{digest[:32]}"


def _require_passphrase(passphrase: str) -> None:
    if not isinstance(passphrase, str) or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise BackupError(f"passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters")


def _envelope(sealed: str, version: int) -> Dict[str, Any]:
    return {"encrypted": sealed, "version": version, "createdAt": utc_now_iso()}


@dataclass(frozen=True)
class RestoredThread:
    thread_id: str
    receipt: JoinReceipt
    guest_identity: Optional[Dict[str, Any]] = None


async def backup_thread(
    client: HelperCacheClient,
    receipt: JoinReceipt,
    *,
    passphrase: str,
    salt: bytes,
    guest_identity: Mapping[str, Any] | None = None,
    kdf: PassphraseKdf = DEFAULT_KDF,
) -> str:
    """Seal one thread's receipt (and guest identity) and store it; returns the cache id."""

    _require_passphrase(passphrase)
    return await _store_thread_backup(client, receipt, kdf.derive(passphrase, salt), guest_identity)


async def _store_thread_backup(
    client: HelperCacheClient,
    receipt: JoinReceipt,
    key: bytes,
    guest_identity: Mapping[str, Any] | None,
) -> str:
    if isinstance(receipt, BurnedReceipt):
        raise BackupError(f"thread {receipt.thread_id} is burned")
    cache_id = thread_backup_id(receipt.ct_txid, receipt.ct_vout)
    if cache_id is None:
        raise BackupError(f"thread {receipt.thread_id} has no CT outpoint")

    payload = {
        "threadId": receipt.thread_id,
        "receipt": receipt_to_dict(receipt),
        "guestIdentity": dict(guest_identity) if guest_identity else None,
        "backedUpAt": utc_now_iso(),
        "version": THREAD_BACKUP_VERSION,
    }
    await client.put(cache_id, _envelope(seal_json(payload, key), THREAD_BACKUP_VERSION))
    logger.info("backed up thread %s as %s", receipt.thread_id, cache_id)
    return cache_id


@dataclass
class BackupSummary:
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


async def backup_all_threads(
    client: HelperCacheClient,
    receipts: ReceiptStore,
    *,
    passphrase: str,
    salt: bytes,
    guest_identities: Mapping[str, Mapping[str, Any]] | None = None,
    kdf: PassphraseKdf = DEFAULT_KDF,
) -> BackupSummary:
    _require_passphrase(passphrase)
    key = kdf.derive(passphrase, salt)
    identities = guest_identities or {}
    summary = BackupSummary()
    for receipt in receipts.list():
        summary.total += 1
        if isinstance(receipt, BurnedReceipt):
            summary.skipped += 1
            continue
        try:
            await _store_thread_backup(client, receipt, key, identities.get(receipt.thread_id))
        except (BackupError, HelperCacheError, CacheUnavailableError, CallTimeoutError) as exc:
            logger.warning("thread backup for %s failed: %s", receipt.thread_id, exc)
            summary.errors.append(f"{receipt.thread_id}: {exc}")
        else:
            summary.succeeded += 1
    logger.info(
        "thread backups: %d ok, %d skipped, %d failed", summary.succeeded, summary.skipped, summary.failed
    )
    return summary


async def restore_thread(
    client: HelperCacheClient,
    *,
    ct_txid: str,
    ct_vout: int,
    passphrase: str,
    salt: bytes,
    receipts: ReceiptStore | None = None,
    kdf: PassphraseKdf = DEFAULT_KDF,
) -> Optional[RestoredThread]:
    """Fetch and open a thread backup; None when no backup exists.

    A wrong passphrase raises :class:`DecryptionError`. The restored receipt is
    saved to ``receipts`` when a store is given.
    """

    cache_id = thread_backup_id(ct_txid, ct_vout)
    if cache_id is None:
        raise ValidationError("a CT outpoint is required to restore a thread backup")
    stored = await client.get(cache_id)
    if not isinstance(stored, dict) or not stored.get("encrypted"):
        return None

    data = open_json(stored["encrypted"], kdf.derive(passphrase, salt))
    if not isinstance(data.get("receipt"), dict):
        raise BackupError("thread backup has no receipt")
    receipt = receipt_from_dict(data["receipt"])
    identity = data.get("guestIdentity")
    if receipts is not None:
        receipts.save(receipt)
    logger.info("restored thread %s from %s", receipt.thread_id, cache_id)
    return RestoredThread(
        thread_id=receipt.thread_id,
        receipt=receipt,
        guest_identity=identity if isinstance(identity, dict) else None,
    )


async def delete_thread_backup(client: HelperCacheClient, ct_txid: str, ct_vout: int) -> bool:
    """Drop a thread's backup, as done when the thread is burned."""

    cache_id = thread_backup_id(ct_txid, ct_vout)
    if cache_id is None:
        raise ValidationError("a CT outpoint is required to delete a thread backup")
    result = await client.delete(cache_id)
    return bool(result.get("deleted")) if isinstance(result, dict) else False


async def has_thread_backup(client: HelperCacheClient, ct_txid: str, ct_vout: int) -> bool:
    cache_id = thread_backup_id(ct_txid, ct_vout)
    if cache_id is None:
        return False
    stored = await client.get(cache_id)
    return isinstance(stored, dict) and bool(stored.get("encrypted"))


@dataclass(frozen=True)
class WalletRestore:
    thread_count: int
    contact_count: int
    blocked_count: int
    guest_identities: Dict[str, Dict[str, Any]]


def build_wallet_payload(
    receipts: ReceiptStore,
    *,
    guest_identities: Mapping[str, Mapping[str, Any]] | None = None,
    contacts: ContactStore | None = None,
    blocked: BlockedInviterStore | None = None,
) -> Dict[str, Any]:
    live = [receipt for receipt in receipts.list() if not isinstance(receipt, BurnedReceipt)]
    live_ids = {receipt.thread_id for receipt in live}
    known_contacts = contacts.all() if contacts is not None else {}
    blocked_entries = blocked.list() if blocked is not None else []
    return {
        "version": WALLET_BACKUP_VERSION,
        "createdAt": utc_now_iso(),
        "threads": {
            "receipts": [{"threadId": receipt.thread_id, "receipt": receipt_to_dict(receipt)} for receipt in live],
            "identities": [
                {"threadId": thread_id, "identity": dict(identity)}
                for thread_id, identity in sorted((guest_identities or {}).items())
                if thread_id in live_ids
            ],
        },
        "local": {
            "version": LOCAL_PAYLOAD_VERSION,
            "contacts": {pubkey: contact.to_dict() for pubkey, contact in known_contacts.items()},
            "blockedInviters": [entry.to_dict() for entry in blocked_entries],
        },
    }


def apply_wallet_payload(
    payload: Mapping[str, Any],
    receipts: ReceiptStore,
    *,
    contacts: ContactStore | None = None,
    blocked: BlockedInviterStore | None = None,
) -> WalletRestore:
    """Write a decrypted wallet backup into the local stores.

    Restored contacts come back unverified: safety numbers must be compared
    again on this device.
    """

    if payload.get("version") != WALLET_BACKUP_VERSION:
        raise BackupError(f"unsupported wallet backup version {payload.get('version')!r}")

    threads = payload.get("threads") if isinstance(payload.get("threads"), dict) else {}
    thread_count = 0
    for item in threads.get("receipts") or []:
        if not isinstance(item, dict) or not isinstance(item.get("receipt"), dict):
            continue
        try:
            receipts.save(receipt_from_dict(item["receipt"]))
        except ValidationError as exc:
            logger.warning("skipping invalid receipt in wallet backup: %s", exc)
            continue
        thread_count += 1

    identities: Dict[str, Dict[str, Any]] = {}
    for item in threads.get("identities") or []:
        if isinstance(item, dict) and isinstance(item.get("threadId"), str) and isinstance(item.get("identity"), dict):
            identities[item["threadId"]] = item["identity"]

    local = payload.get("local") if isinstance(payload.get("local"), dict) else {}
    if local and local.get("version") != LOCAL_PAYLOAD_VERSION:
        raise BackupError(f"unsupported local backup version {local.get('version')!r}")

    contact_count = 0
    raw_contacts = local.get("contacts")
    if contacts is not None and isinstance(raw_contacts, dict):
        for pubkey, contact in raw_contacts.items():
            if not pubkey or not isinstance(contact, dict):
                continue
            contacts.upsert(pubkey, {**contact, "verified": False})
            contact_count += 1

    blocked_count = blocked.merge(local.get("blockedInviters")) if blocked is not None else 0

    return WalletRestore(
        thread_count=thread_count,
        contact_count=contact_count,
        blocked_count=blocked_count,
        guest_identities=identities,
    )


def export_wallet_backup(
    wallet: WalletHandle,
    receipts: ReceiptStore,
    *,
    guest_identities: Mapping[str, Mapping[str, Any]] | None = None,
    contacts: ContactStore | None = None,
    blocked: BlockedInviterStore | None = None,
) -> str:
    """Seal a wallet backup without uploading it, e.g. for a local backup file."""

    payload = build_wallet_payload(receipts, guest_identities=guest_identities, contacts=contacts, blocked=blocked)
    return seal_json(payload, wallet_backup_key(wallet))


def import_wallet_backup(
    wallet: WalletHandle,
    sealed: str,
    receipts: ReceiptStore,
    *,
    contacts: ContactStore | None = None,
    blocked: BlockedInviterStore | None = None,
) -> WalletRestore:
    if not sealed:
        raise BackupError("encrypted backup data required")
    payload = open_json(sealed, wallet_backup_key(wallet))
    return apply_wallet_payload(payload, receipts, contacts=contacts, blocked=blocked)


async def create_wallet_backup(
    client: HelperCacheClient,
    wallet: WalletHandle,
    receipts: ReceiptStore,
    *,
    guest_identities: Mapping[str, Mapping[str, Any]] | None = None,
    contacts: ContactStore | None = None,
    blocked: BlockedInviterStore | None = None,
) -> Dict[str, Any]:
    identity_key = require_identity_key(wallet.identity_key())
    payload = build_wallet_payload(receipts, guest_identities=guest_identities, contacts=contacts, blocked=blocked)
    cache_id = wallet_backup_id(identity_key)
    envelope = _envelope(seal_json(payload, wallet_backup_key(wallet)), WALLET_BACKUP_VERSION)
    envelope["identityKeyHash"] = cache_id[len(WALLET_BACKUP_PREFIX):]
    await client.put(cache_id, envelope)
    threads = payload["threads"]
    logger.info(
        "wallet backup for %s stored: %d threads, %d identities",
        short_key(identity_key),
        len(threads["receipts"]),
        len(threads["identities"]),
    )
    return {
        "cacheId": cache_id,
        "threadCount": len(threads["receipts"]),
        "identityCount": len(threads["identities"]),
    }


async def restore_wallet_backup(
    client: HelperCacheClient,
    wallet: WalletHandle,
    receipts: ReceiptStore,
    *,
    contacts: ContactStore | None = None,
    blocked: BlockedInviterStore | None = None,
) -> Optional[WalletRestore]:
    """Restore the wallet's backup from the helper cache; None when there is none.

    A backup sealed by another wallet raises :class:`DecryptionError`.
    """

    identity_key = require_identity_key(wallet.identity_key())
    stored = await client.get(wallet_backup_id(identity_key))
    if not isinstance(stored, dict) or not stored.get("encrypted"):
        logger.info("no wallet backup for %s", short_key(identity_key))
        return None
    restored = import_wallet_backup(wallet, stored["encrypted"], receipts, contacts=contacts, blocked=blocked)
    logger.info("restored wallet backup for %s: %d threads", short_key(identity_key), restored.thread_count)
    return restored


async def check_wallet_backup(client: HelperCacheClient, identity_key: str) -> Optional[Dict[str, Any]]:
    stored = await client.get(wallet_backup_id(require_identity_key(identity_key)))
    if not isinstance(stored, dict) or not stored.get("encrypted"):
        return None
    return {"createdAt": stored.get("createdAt"), "version": stored.get("version")}
