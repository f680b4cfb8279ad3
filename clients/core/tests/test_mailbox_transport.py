import asyncio
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from nukenote.acks import DELIVERED, FAILED
from nukenote.errors import TransportError
from nukenote.mailbox_transport import MailboxPageError, MailboxTransport, mailbox_base_url
from nukenote.transport import AckEvent, MessageEvent
from nukenote.wallet import LocalWallet, verify_payload_signature
from relay.ws_transport import create_app


async def wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _acks(events):
    return [event for event in events if isinstance(event, AckEvent)]


class MailboxConfigTests(unittest.TestCase):
    def test_base_url(self):
        self.assertEqual(mailbox_base_url("localhost:8080"), "http://localhost:8080")
        self.assertEqual(mailbox_base_url("wss://relay.example/v1/ws"), "https://relay.example")

    def test_requires_host_wallet_and_identity(self):
        wallet = LocalWallet()
        with self.assertRaises(TransportError):
            MailboxTransport("", wallet=wallet, identity_key=wallet.identity_key())
        with self.assertRaises(TransportError):
            MailboxTransport("localhost:1", wallet=None, identity_key=wallet.identity_key())
        with self.assertRaises(TransportError):
            MailboxTransport("localhost:1", wallet=wallet, identity_key="not-a-key")

    def test_envelope_is_signed_by_wallet(self):
        wallet = LocalWallet()
        transport = MailboxTransport("localhost:1", wallet=wallet, identity_key=wallet.identity_key())
        envelope = transport.build_envelope("message", "t1", {"id": "m1", "text": "hi"})

        self.assertEqual(envelope["messageId"], "m1")
        self.assertTrue(verify_payload_signature(wallet.identity_key(), envelope, envelope["sig"]))
        transport.close()


class MailboxTransportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=3600, start_sweeper=False)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.host = f"{self.server.host}:{self.server.port}"
        self.transports = []

    async def asyncTearDown(self):
        for transport in self.transports:
            transport.close()
            await transport.wait_closed()
        await self.server.close()

    def _transport(self, wallet=None, **kwargs):
        wallet = wallet or LocalWallet()
        kwargs.setdefault("identity_key", wallet.identity_key())
        transport = MailboxTransport(self.host, wallet=wallet, poll_interval=0.05, **kwargs)
        self.transports.append(transport)
        return transport

    async def test_publish_is_acked_and_polled_by_peer(self):
        alice, bob = self._transport(), self._transport()
        alice_events, bob_events = [], []
        alice.subscribe("t1", alice_events.append)
        bob.subscribe("t1", bob_events.append)

        alice.publish_message("t1", {"id": "m1", "text": "hi"})

        await wait_for(lambda: _acks(alice_events))
        await wait_for(lambda: bob_events)
        self.assertEqual([(ack.message_id, ack.delivery) for ack in _acks(alice_events)], [("m1", DELIVERED)])
        self.assertIsInstance(bob_events[0], MessageEvent)
        self.assertEqual(bob_events[0].payload["text"], "hi")

        await asyncio.sleep(0.15)
        self.assertEqual([type(event) for event in alice_events], [AckEvent])
        self.assertEqual(len(bob_events), 1)

    async def test_offline_peer_receives_on_next_subscribe(self):
        alice = self._transport()
        alice_events = []
        alice.subscribe("t1", alice_events.append)
        alice.publish_message("t1", {"id": "m1", "text": "while you were away"})
        await wait_for(lambda: _acks(alice_events))
        alice.publish_typing("t1", {"typing": False})
        await wait_for(lambda: self.app["runtime"].mailbox.last_seq("t1") == 2)

        bob = self._transport()
        bob_events = []
        bob.subscribe("t1", bob_events.append)

        await wait_for(lambda: len(bob_events) == 2)
        self.assertEqual([event.type for event in bob_events], ["message", "typing"])
        reader_next = self.app["runtime"].cursors.next_seq(bob.identity_key, "t1")
        self.assertEqual(reader_next, 3)

    async def test_rejected_signature_fails_without_retry(self):
        signer, other = LocalWallet(), LocalWallet()
        transport = self._transport(wallet=signer, identity_key=other.identity_key())
        events = []
        transport.subscribe("t1", events.append)

        transport.publish_message("t1", {"id": "m1"})

        await wait_for(lambda: _acks(events))
        self.assertEqual(_acks(events)[0].delivery, FAILED)
        self.assertEqual(self.app["runtime"].mailbox.last_seq("t1"), 0)


class MailboxUnreachableTests(unittest.IsolatedAsyncioTestCase):
    async def test_exhausted_retries_produce_failed_ack(self):
        wallet = LocalWallet()
        statuses = []
        transport = MailboxTransport(
            f"127.0.0.1:{unused_port()}",
            wallet=wallet,
            identity_key=wallet.identity_key(),
            retries=1,
            retry_delays=(0.01,),
            on_status=statuses.append,
        )
        events = []
        transport.subscribe("t1", events.append)
        transport.publish_message("t1", {"id": "m1"})

        await wait_for(lambda: _acks(events))
        self.assertEqual(_acks(events)[0].delivery, FAILED)
        self.assertIn({"status": "disconnected"}, statuses)

        transport.close()
        await transport.wait_closed()
        self.assertEqual(statuses[-1], {"status": "closed"})


class MalformedMailboxPageTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.pages = 0
        self.acked = []

        async def page(request):
            self.pages += 1
            if self.pages == 1:
                return web.json_response(["not", "a", "page"])
            return web.json_response(
                {
                    "events": [
                        "junk",
                        {"seq": 1, "envelope": "not-an-envelope"},
                        {"seq": 2, "sender": "peer", "envelope": {"type": "message", "payload": {"id": "m1"}}},
                    ]
                }
            )

        async def ack(request):
            self.acked.append((await request.json())["seq"])
            return web.json_response({"nextSeq": 3})

        app = web.Application()
        app.router.add_get("/v1/mailbox/{thread_id}", page)
        app.router.add_post("/v1/mailbox/{thread_id}/ack", ack)
        self.server = TestServer(app)
        await self.server.start_server()

    async def asyncTearDown(self):
        await self.server.close()

    async def test_poller_survives_malformed_pages(self):
        wallet = LocalWallet()
        statuses = []
        transport = MailboxTransport(
            f"{self.server.host}:{self.server.port}",
            wallet=wallet,
            identity_key=wallet.identity_key(),
            poll_interval=0.05,
            on_status=statuses.append,
        )
        events = []
        with self.assertLogs("nukenote.mailbox_transport", level="WARNING"):
            transport.subscribe("t1", events.append)
            await wait_for(lambda: events)
        await wait_for(lambda: self.pages >= 3)

        self.assertEqual([event.payload for event in events], [{"id": "m1"}])
        self.assertEqual(self.acked, [2])
        self.assertEqual(statuses[:2], [{"status": "disconnected"}, {"status": "online"}])

        transport.close()
        await transport.wait_closed()

    async def test_poll_once_rejects_a_page_without_events(self):
        wallet = LocalWallet()
        transport = MailboxTransport(
            f"{self.server.host}:{self.server.port}", wallet=wallet, identity_key=wallet.identity_key()
        )
        with self.assertRaises(MailboxPageError):
            await transport.poll_once("t1")

        transport.close()
        await transport.wait_closed()
