import unittest

from aiohttp.test_utils import TestServer
from nacl.pwhash import argon2id

from nukenote.backup import (
    PassphraseKdf,
    apply_wallet_payload,
    backup_all_threads,
    backup_thread,
    check_wallet_backup,
    create_wallet_backup,
    delete_thread_backup,
    export_wallet_backup,
    has_thread_backup,
    import_wallet_backup,
    restore_thread,
    restore_wallet_backup,
    user_salt,
    wallet_backup_id,
)
from nukenote.blocked_inviters import InMemoryBlockedInviterStore
from nukenote.contacts import InMemoryContactStore
from nukenote.errors import BackupError, DecryptionError
from nukenote.helper_cache import HelperCacheClient
from nukenote.receipts import InMemoryReceiptStore, receipt_from_dict
from nukenote.wallet import LocalWallet
from relay.cache_store import HelperCacheStore
from relay.ws_transport import create_app

CT_TXID = "c" * 64
PEER = "ab" * 32
FAST_KDF = PassphraseKdf(opslimit=argon2id.OPSLIMIT_MIN, memlimit=argon2id.MEMLIMIT_MIN)
PASSPHRASE = "correct horse battery"


def _receipt(thread_id, *, status="ready", ct_vout=0, **extra):
    data = {"threadId": thread_id, "status": status, **extra}
    if ct_vout is not None:
        data.update({"ctTxid": CT_TXID, "ctVout": ct_vout})
    return receipt_from_dict(data)


def _burned(thread_id, ct_vout):
    return _receipt(thread_id, status="burned", ct_vout=ct_vout, burnTxid="e" * 64, burnedAt=1, burnedBy=PEER)


class SaltTests(unittest.TestCase):
    def test_user_salt_is_stable_per_identity(self):
        self.assertEqual(user_salt("a" * 64), user_salt("a" * 64))
        self.assertEqual(len(user_salt("a" * 64)), argon2id.SALTBYTES)
        self.assertNotEqual(user_salt("a" * 64), user_salt("b" * 64))
        with self.assertRaises(ValueError):
            user_salt("")

    def test_wallet_backup_id(self):
        cache_id = wallet_backup_id("a" * 64)
        self.assertTrue(cache_id.startswith("wallet-backup:"))
        self.assertEqual(len(cache_id), len("wallet-backup:") + 32)
        self.assertNotEqual(cache_id, wallet_backup_id("b" * 64))


class BackupAgainstRelayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = HelperCacheStore()
        self.server = TestServer(create_app(ping_interval_s=3600, cache=self.store, start_sweeper=False))
        await self.server.start_server()
        self.client = HelperCacheClient(str(self.server.make_url("")), retry_delays=(0.01,))
        self.wallet = LocalWallet()
        self.salt = user_salt(self.wallet.identity_key())

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_thread_backup_round_trip(self):
        guest = LocalWallet().export_secrets()
        cache_id = await backup_thread(
            self.client, _receipt("thread-1"), passphrase=PASSPHRASE, salt=self.salt, guest_identity=guest, kdf=FAST_KDF
        )

        self.assertEqual(cache_id, f"backup:{CT_TXID}:0")
        self.assertTrue(await has_thread_backup(self.client, CT_TXID, 0))
        self.assertNotIn("thread-1", str(self.store.get(cache_id).payload))

        receipts = InMemoryReceiptStore()
        restored = await restore_thread(
            self.client,
            ct_txid=CT_TXID,
            ct_vout=0,
            passphrase=PASSPHRASE,
            salt=self.salt,
            receipts=receipts,
            kdf=FAST_KDF,
        )
        self.assertEqual(restored.thread_id, "thread-1")
        self.assertEqual(restored.guest_identity, guest)
        self.assertEqual(receipts.get("thread-1"), _receipt("thread-1"))

    async def test_wrong_passphrase_cannot_open_thread_backup(self):
        await backup_thread(self.client, _receipt("thread-1"), passphrase=PASSPHRASE, salt=self.salt, kdf=FAST_KDF)

        with self.assertRaises(DecryptionError):
            await restore_thread(
                self.client, ct_txid=CT_TXID, ct_vout=0, passphrase="wrong passphrase", salt=self.salt, kdf=FAST_KDF
            )

    async def test_deleted_backup_is_gone(self):
        await backup_thread(self.client, _receipt("thread-1"), passphrase=PASSPHRASE, salt=self.salt, kdf=FAST_KDF)

        self.assertTrue(await delete_thread_backup(self.client, CT_TXID, 0))
        self.assertFalse(await delete_thread_backup(self.client, CT_TXID, 0))
        self.assertFalse(await has_thread_backup(self.client, CT_TXID, 0))
        restored = await restore_thread(
            self.client, ct_txid=CT_TXID, ct_vout=0, passphrase=PASSPHRASE, salt=self.salt, kdf=FAST_KDF
        )
        self.assertIsNone(restored)

    async def test_thread_backup_rejects_unusable_input(self):
        with self.assertRaises(BackupError):
            await backup_thread(self.client, _receipt("thread-1"), passphrase="short", salt=self.salt, kdf=FAST_KDF)
        with self.assertRaises(BackupError):
            await backup_thread(
                self.client, _burned("thread-1", 0), passphrase=PASSPHRASE, salt=self.salt, kdf=FAST_KDF
            )
        with self.assertRaises(BackupError):
            await backup_thread(
                self.client, _receipt("thread-1", ct_vout=None), passphrase=PASSPHRASE, salt=self.salt, kdf=FAST_KDF
            )
        self.assertEqual(len(self.store), 0)

    async def test_backup_all_threads_skips_burned_and_reports_failures(self):
        receipts = InMemoryReceiptStore()
        receipts.save(_receipt("live", ct_vout=0))
        receipts.save(_burned("burned", 1))
        receipts.save(_receipt("no-ct", ct_vout=None))

        summary = await backup_all_threads(
            self.client, receipts, passphrase=PASSPHRASE, salt=self.salt, kdf=FAST_KDF
        )

        self.assertEqual((summary.total, summary.succeeded, summary.skipped, summary.failed), (3, 1, 1, 1))
        self.assertTrue(summary.errors[0].startswith("no-ct:"))
        self.assertIsNotNone(self.store.get(f"backup:{CT_TXID}:0"))
        self.assertIsNone(self.store.get(f"backup:{CT_TXID}:1"))

    async def test_wallet_backup_round_trip(self):
        receipts = InMemoryReceiptStore()
        receipts.save(_receipt("live", ct_vout=0))
        receipts.save(_burned("burned", 1))
        contacts = InMemoryContactStore()
        contacts.mark_verified(PEER, "12345 67890")
        blocked = InMemoryBlockedInviterStore()
        blocked.save("cd" * 32, {"updatedAt": "2024-05-01T00:00:00Z"})
        guests = {"live": {"signing_seed_hex": "00" * 32}, "burned": {"signing_seed_hex": "11" * 32}}

        result = await create_wallet_backup(
            self.client, self.wallet, receipts, guest_identities=guests, contacts=contacts, blocked=blocked
        )

        self.assertEqual((result["threadCount"], result["identityCount"]), (1, 1))
        self.assertTrue(result["cacheId"].startswith("wallet-backup:"))
        self.assertIsNone(self.store.get(result["cacheId"]).expires_at_ms)
        self.assertEqual((await check_wallet_backup(self.client, self.wallet.identity_key()))["version"], 2)

        fresh_receipts = InMemoryReceiptStore()
        fresh_contacts = InMemoryContactStore()
        fresh_blocked = InMemoryBlockedInviterStore()
        restored = await restore_wallet_backup(
            self.client, self.wallet, fresh_receipts, contacts=fresh_contacts, blocked=fresh_blocked
        )

        self.assertEqual((restored.thread_count, restored.contact_count, restored.blocked_count), (1, 1, 1))
        self.assertEqual(restored.guest_identities, {"live": {"signing_seed_hex": "00" * 32}})
        self.assertEqual([receipt.thread_id for receipt in fresh_receipts.list()], ["live"])
        self.assertFalse(fresh_contacts.get(PEER).verified)
        self.assertEqual(fresh_contacts.get(PEER).verified_safety_number, "12345 67890")
        self.assertTrue(fresh_blocked.is_blocked("cd" * 32))

    async def test_other_wallet_has_no_backup(self):
        await create_wallet_backup(self.client, self.wallet, InMemoryReceiptStore())
        other = LocalWallet()

        self.assertIsNone(await restore_wallet_backup(self.client, other, InMemoryReceiptStore()))
        self.assertIsNone(await check_wallet_backup(self.client, other.identity_key()))


class LocalWalletBackupTests(unittest.TestCase):
    def test_sealed_backup_opens_only_with_the_same_wallet(self):
        wallet = LocalWallet()
        receipts = InMemoryReceiptStore()
        receipts.save(_receipt("live"))
        sealed = export_wallet_backup(wallet, receipts)

        restored_into = InMemoryReceiptStore()
        self.assertEqual(import_wallet_backup(wallet, sealed, restored_into).thread_count, 1)
        self.assertIsNotNone(restored_into.get("live"))

        with self.assertRaises(DecryptionError):
            import_wallet_backup(LocalWallet(), sealed, InMemoryReceiptStore())
        with self.assertRaises(DecryptionError):
            import_wallet_backup(wallet, "not base64!", InMemoryReceiptStore())
        with self.assertRaises(BackupError):
            import_wallet_backup(wallet, "", InMemoryReceiptStore())

    def test_apply_rejects_unknown_versions(self):
        with self.assertRaises(BackupError):
            apply_wallet_payload({"version": 1}, InMemoryReceiptStore())
        with self.assertRaises(BackupError):
            apply_wallet_payload({"version": 2, "local": {"version": 9}}, InMemoryReceiptStore())

    def test_apply_skips_invalid_receipts(self):
        payload = {
            "version": 2,
            "threads": {
                "receipts": [
                    {"receipt": {"status": "nope"}},
                    "junk",
                    {"receipt": {"threadId": "ok", "status": "ready"}},
                ],
            },
        }
        receipts = InMemoryReceiptStore()

        self.assertEqual(apply_wallet_payload(payload, receipts).thread_count, 1)
        self.assertIsNotNone(receipts.get("ok"))
