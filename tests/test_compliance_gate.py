#!/usr/bin/env python3
"""
Compliance Gate Tests

KYC -> KYT -> SOURCE_OF_FUNDS, first failure aborts.

Usage:
    python -m pytest tests/test_compliance_gate.py
"""

import sys
import os
import json
import shutil
import tempfile
import unittest

import httpx

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from railx.errors import ComplianceError
from railx.compliance.gate import (
    ComplianceGate,
    RiskRegistry,
    ScreeningClient,
    normalize_name,
    ENTITY_MATCH,
    ADDRESS_MATCH,
    SCAN_FAILED,
)

CLEAN = "0x" + "c" * 40
FLAGGED = "0xDeadBeef00000000000000000000000000000001"


def _fixed_clock():
    return "2026-01-01T00:00:00Z"


def _registry() -> RiskRegistry:
    registry = RiskRegistry()
    registry.add_entity("Kim, Jong Un", "SANCTIONS")
    registry.add_address(FLAGGED, "MIXER")
    return registry


class TestNormalizeName(unittest.TestCase):

    def test_strips_case_spaces_commas(self):
        self.assertEqual(normalize_name("Kim, Jong Un"), "kimjongun")
        self.assertEqual(normalize_name("  ACME\tTrading,  Ltd "), "acmetradingltd")


class TestGate(unittest.TestCase):

    def setUp(self):
        self.gate = ComplianceGate(_registry(), clock=_fixed_clock)

    def test_clean_subject_passes_all_stages(self):
        logs = self.gate.run_compliance_scan(CLEAN, "Acme Trading")

        self.assertEqual([entry.step for entry in logs], ["KYC", "KYT", "SOURCE_OF_FUNDS"])
        self.assertTrue(all(entry.status == "PASS" for entry in logs))
        self.assertEqual(logs[1].details, "TranSight Clean Asset (Score: 0)")
        self.assertEqual(logs[0].timestamp, "2026-01-01T00:00:00Z")

    def test_entity_match_blocks_at_kyc(self):
        with self.assertRaises(ComplianceError) as ctx:
            self.gate.run_compliance_scan(CLEAN, "kim jong")

        self.assertEqual(ctx.exception.stage, "KYC")
        self.assertEqual(ctx.exception.reason, ENTITY_MATCH)
        self.assertEqual(ctx.exception.category, "SANCTIONS")
        # the list entry itself never leaves the gate
        self.assertNotIn("Kim", str(ctx.exception))

    def test_address_match_blocks_at_kyt(self):
        with self.assertRaises(ComplianceError) as ctx:
            self.gate.run_compliance_scan(FLAGGED.lower(), "Acme Trading")

        self.assertEqual(ctx.exception.stage, "KYT")
        self.assertEqual(ctx.exception.reason, ADDRESS_MATCH)

    def test_address_match_is_case_insensitive(self):
        with self.assertRaises(ComplianceError):
            self.gate.run_compliance_scan(FLAGGED.upper().replace("0X", "0x"))

    def test_kyc_skipped_without_name(self):
        source = _registry()
        source.match_entity = lambda normalized: self.fail("KYC lookup without a name")
        gate = ComplianceGate(source, clock=_fixed_clock)

        logs = gate.run_compliance_scan(CLEAN)
        self.assertEqual(len(logs), 3)

        logs = gate.run_compliance_scan(CLEAN, " , ")
        self.assertEqual(logs[0].step, "KYC")

    def test_entity_match_wins_over_address_match(self):
        with self.assertRaises(ComplianceError) as ctx:
            self.gate.run_compliance_scan(FLAGGED, "Kim Jong Un")
        self.assertEqual(ctx.exception.stage, "KYC")


class TestRiskRegistryFile(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="railx_risk_")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_from_file(self):
        path = os.path.join(self.tmpdir, "risk.json")
        with open(path, "w") as f:
            json.dump({
                "entities": [{"name": "Shadow Holdings, Inc", "risk_category": "PEP"}],
                "addresses": [{"address": FLAGGED, "risk_category": "HACK"}],
            }, f)

        registry = RiskRegistry.from_file(path)

        self.assertEqual(registry.match_entity("shadowholdings")["risk_category"], "PEP")
        self.assertEqual(registry.match_address(FLAGGED.lower())["risk_category"], "HACK")
        self.assertIsNone(registry.match_entity("acme"))


class TestScreeningClient(unittest.TestCase):

    def setUp(self):
        self.requests = []
        self.status = 200

        def handler(request):
            self.requests.append(request)
            if self.status != 200:
                return httpx.Response(self.status)
            if request.url.path == "/entities":
                name = request.url.params["normalized_name"]
                match = {"risk_category": "SANCTIONS"} if name == "badactor" else None
                return httpx.Response(200, json={"match": match})
            if request.url.path == f"/addresses/{FLAGGED.lower()}":
                return httpx.Response(200, json={"match": {"risk_category": "MIXER"}})
            return httpx.Response(200, json={"match": None})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        self.gate = ComplianceGate(
            ScreeningClient("https://screening.test/", client=client), clock=_fixed_clock
        )

    def test_remote_clean(self):
        logs = self.gate.run_compliance_scan(CLEAN, "Acme")

        self.assertEqual(len(logs), 3)
        self.assertEqual(self.requests[0].url.params["normalized_name"], "acme")
        self.assertEqual(self.requests[1].url.path, f"/addresses/{CLEAN}")

    def test_remote_entity_match(self):
        with self.assertRaises(ComplianceError) as ctx:
            self.gate.run_compliance_scan(CLEAN, "Bad Actor")
        self.assertEqual(ctx.exception.reason, ENTITY_MATCH)

    def test_remote_address_match(self):
        with self.assertRaises(ComplianceError) as ctx:
            self.gate.run_compliance_scan(FLAGGED)
        self.assertEqual(ctx.exception.reason, ADDRESS_MATCH)

    def test_unreachable_source_fails_closed(self):
        self.status = 500
        with self.assertRaises(ComplianceError) as ctx:
            self.gate.run_compliance_scan(CLEAN, "Acme")

        self.assertEqual(ctx.exception.stage, "KYC")
        self.assertEqual(ctx.exception.reason, SCAN_FAILED)


if __name__ == "__main__":
    unittest.main()
