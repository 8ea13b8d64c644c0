#!/usr/bin/env python3
"""
Trade and Packet Store Tests

Usage:
    python -m pytest tests/test_store.py
"""

import sys
import os
import shutil
import tempfile
import unittest
from decimal import Decimal

import httpx

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from railx.core import TradeRequest, TradeStatus
from railx.errors import ValidationError, TradeStateError, TradeNotFound
from railx.events import ChangeFeed
from railx.storage import JsonStore
from railx.compliance.channel import EncryptedPacket
from railx.settlement.store import TradeStore, PacketStore, PacketUnavailable

SENDER = "0x" + "5" * 40
RECIPIENT = "0x" + "6" * 40
LP = "0x" + "7" * 40


def make_trade(trade_id="0x" + "01" * 32, status=TradeStatus.WAITING_RECIPIENT, **overrides):
    fields = dict(
        id=trade_id,
        sender_id=SENDER,
        recipient_id=RECIPIENT,
        matched_lp_id=LP,
        from_asset="KRWK",
        to_asset="USDC",
        send_amount=Decimal("1000000"),
        receive_amount=Decimal("745.5"),
        applied_rate=Decimal("1341.38"),
        status=status,
        encrypted_packet_ref="https://packets.test/1_x.json",
    )
    fields.update(overrides)
    return TradeRequest(**fields)


class TestTradeStore(unittest.TestCase):

    def setUp(self):
        self.feed = ChangeFeed()
        self.events = []
        self.feed.on("trade", lambda trade: self.events.append(trade.status))
        self.trades = TradeStore(feed=self.feed)

    def test_create_and_load(self):
        self.trades.create(make_trade())

        trade = self.trades.load("0x" + "01" * 32)
        self.assertEqual(trade.status, TradeStatus.WAITING_RECIPIENT)
        self.assertEqual(trade.receive_amount, Decimal("745.5"))
        self.assertEqual(self.events, [TradeStatus.WAITING_RECIPIENT])

    def test_quoted_never_persisted(self):
        with self.assertRaises(ValidationError):
            self.trades.create(make_trade(status=TradeStatus.QUOTED))

    def test_ids_never_reused(self):
        self.trades.create(make_trade())
        self.trades.transition("0x" + "01" * 32, TradeStatus.WAITING_RECIPIENT, TradeStatus.FAILED)

        with self.assertRaises(TradeStateError):
            self.trades.create(make_trade())

    def test_forward_transition(self):
        self.trades.create(make_trade())

        trade = self.trades.transition(
            "0x" + "01" * 32, TradeStatus.WAITING_RECIPIENT, TradeStatus.EXECUTED, tx_hash="0xabc"
        )

        self.assertEqual(trade.status, TradeStatus.EXECUTED)
        self.assertEqual(self.trades.load(trade.id).tx_hash, "0xabc")

    def test_terminal_is_final(self):
        self.trades.create(make_trade())
        self.trades.transition("0x" + "01" * 32, TradeStatus.WAITING_RECIPIENT, TradeStatus.EXECUTED)

        for new in (TradeStatus.FAILED, TradeStatus.EXECUTED, TradeStatus.WAITING_RECIPIENT):
            with self.assertRaises(TradeStateError):
                self.trades.transition("0x" + "01" * 32, TradeStatus.EXECUTED, new)
        with self.assertRaises(TradeStateError):
            self.trades.annotate("0x" + "01" * 32, last_error="late")

    def test_compare_and_set(self):
        self.trades.create(make_trade())
        self.trades.transition("0x" + "01" * 32, TradeStatus.WAITING_RECIPIENT, TradeStatus.FAILED)

        with self.assertRaises(TradeStateError):
            self.trades.transition("0x" + "01" * 32, TradeStatus.WAITING_RECIPIENT, TradeStatus.EXECUTED)
        self.assertEqual(self.trades.load("0x" + "01" * 32).status, TradeStatus.FAILED)

    def test_unknown_trade(self):
        with self.assertRaises(TradeNotFound):
            self.trades.load("0xmissing")
        with self.assertRaises(TradeNotFound):
            self.trades.transition("0xmissing", TradeStatus.WAITING_RECIPIENT, TradeStatus.FAILED)

    def test_transition_rejects_unknown_fields(self):
        self.trades.create(make_trade())
        with self.assertRaises(ValidationError):
            self.trades.transition("0x" + "01" * 32, TradeStatus.WAITING_RECIPIENT,
                                   TradeStatus.EXECUTED, receive_amounts=1)
        self.assertEqual(self.trades.load("0x" + "01" * 32).status, TradeStatus.WAITING_RECIPIENT)

    def test_annotate_pending(self):
        self.trades.create(make_trade())
        trade = self.trades.annotate("0x" + "01" * 32, record_tx_hash="0xrec")

        self.assertEqual(trade.status, TradeStatus.WAITING_RECIPIENT)
        self.assertEqual(self.trades.load(trade.id).record_tx_hash, "0xrec")
        with self.assertRaises(ValidationError):
            self.trades.annotate(trade.id, status="EXECUTED")

    def test_claim_guard(self):
        self.assertTrue(self.trades.claim("0x01"))
        self.assertFalse(self.trades.claim("0x01"))
        self.trades.release("0x01")
        self.assertTrue(self.trades.claim("0x01"))

    def test_claim_lapses_after_ttl(self):
        self.assertTrue(self.trades.claim("0x02", ttl=0))
        self.assertTrue(self.trades.claim("0x02"))
        self.assertFalse(self.trades.claim("0x02"))

    def test_pending_for_recipient(self):
        self.trades.create(make_trade("0x" + "01" * 32))
        self.trades.create(make_trade("0x" + "02" * 32, recipient_id=SENDER))
        self.trades.create(make_trade("0x" + "03" * 32, status=TradeStatus.EXECUTED))

        pending = self.trades.pending_for(RECIPIENT.upper().replace("0X", "0x"))

        self.assertEqual([t.id for t in pending], ["0x" + "01" * 32])
        self.assertEqual(len(self.trades.list_trades(sender=SENDER)), 3)
        self.assertEqual(len(self.trades.list_trades(status=TradeStatus.EXECUTED)), 1)


class TestTradeStorePersistence(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="railx_trades_")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_reload(self):
        path = os.path.join(self.tmpdir, "trades.json")
        TradeStore(JsonStore(path)).create(make_trade())

        trade = TradeStore(JsonStore(path)).load("0x" + "01" * 32)

        self.assertEqual(trade.matched_lp_id, LP)
        self.assertEqual(trade.applied_rate, Decimal("1341.38"))


class TestPacketStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="railx_packets_")
        self.remote = {}

        def handler(request):
            body = self.remote.get(str(request.url))
            if body is None:
                return httpx.Response(404)
            return httpx.Response(200, json=body)

        self.packets = PacketStore(
            self.tmpdir, "https://railx.test/packets/",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        self.packet = EncryptedPacket(iv="aXY=", key="a2V5", content="Y29udGVudA==")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_publish_names_by_time_and_sender(self):
        locator = self.packets.publish(self.packet, SENDER.upper().replace("0X", "0x"))

        self.assertTrue(locator.startswith("https://railx.test/packets/"))
        name = locator.rsplit("/", 1)[1]
        stamp, _, rest = name.partition("_")
        self.assertTrue(stamp.isdigit())
        self.assertEqual(rest, f"{SENDER}.json")
        self.assertEqual(self.packets.fetch(locator), self.packet.to_dict())

    def test_publish_twice_gives_distinct_locators(self):
        first = self.packets.publish(self.packet, SENDER)
        second = self.packets.publish(self.packet, SENDER)
        self.assertNotEqual(first, second)

    def test_rejects_path_tricks(self):
        for name in ("../secret.json", "a/../../b.json", "packet.txt", ".hidden.json", ""):
            with self.assertRaises(ValidationError):
                self.packets.read(name)

    def test_missing_packet(self):
        with self.assertRaises(PacketUnavailable):
            self.packets.read("123_nobody.json")

    def test_foreign_locator_fetched_over_http(self):
        self.remote["https://other.test/p/1.json"] = {"iv": "a", "key": "b", "content": "c"}

        self.assertEqual(self.packets.fetch("https://other.test/p/1.json")["key"], "b")
        with self.assertRaises(PacketUnavailable):
            self.packets.fetch("https://other.test/p/2.json")


if __name__ == "__main__":
    unittest.main()
