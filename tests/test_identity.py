#!/usr/bin/env python3
"""
Identity Onboarding Tests

Wallet-signature unlock of sealed RSA identity keys.

Usage:
    python -m pytest tests/test_identity.py
"""

import sys
import os
import json
import shutil
import tempfile
import time
import unittest

from eth_account import Account

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from railx.core import UserType
from railx.errors import ValidationError, UnknownIdentity, UnlockFailed, CryptoError, Unauthorized
from railx.storage import JsonStore
from railx.compliance.channel import encrypt_packet, decrypt_packet
from railx.compliance.identity import (
    KeyStore,
    IdentityService,
    UserIdentity,
    signing_message,
    sign_challenge,
    recover_signer,
    action_message,
    sign_action,
    check_action,
)

FAST_ROUNDS = 1000


class TestChallenge(unittest.TestCase):

    def test_message_uses_lowercase_address(self):
        message = signing_message("0xABCDEF0000000000000000000000000000000001")
        self.assertEqual(
            message,
            "Welcome to RailX! Sign this message to unlock your secure keys.\n"
            "Wallet: 0xabcdef0000000000000000000000000000000001",
        )

    def test_sign_and_recover(self):
        account = Account.create()
        signature = sign_challenge(account.key)

        self.assertTrue(signature.startswith("0x"))
        self.assertEqual(recover_signer(account.address, signature), account.address.lower())

    def test_garbage_signature(self):
        with self.assertRaises(ValidationError):
            recover_signer("0x" + "1" * 40, "0x1234")
        with self.assertRaises(ValidationError):
            recover_signer("0x" + "1" * 40, "")


class TestSignedActions(unittest.TestCase):

    def setUp(self):
        self.account = Account.create()
        self.owner = self.account.address.lower()
        self.fields = {
            "owner": self.owner,
            "asset": "USDC",
            "quantity": "250",
            "issued_at": int(time.time()),
        }

    def sign(self, fields, account=None):
        return sign_action((account or self.account).key, "lp.quantity", fields)

    def test_message_sorted_and_canonical(self):
        message = action_message("lp.strategy", {"to_asset": "USDC", "active": True, "note": None})
        self.assertEqual(message, "RailX action: lp.strategy\nactive: true\nnote: \nto_asset: USDC")

    def test_valid_signature_returns_signer(self):
        signature = self.sign(self.fields)
        self.assertEqual(check_action(self.owner, "lp.quantity", self.fields, signature), self.owner)

    def test_any_listed_signer_accepted(self):
        other = Account.create()
        signature = self.sign(self.fields, other)
        signer = check_action((self.owner, other.address), "lp.quantity", self.fields, signature)
        self.assertEqual(signer, other.address.lower())

    def test_foreign_signer_rejected(self):
        signature = self.sign(self.fields, Account.create())
        with self.assertRaises(Unauthorized):
            check_action(self.owner, "lp.quantity", self.fields, signature)

    def test_tampered_field_rejected(self):
        signature = self.sign(self.fields)
        tampered = dict(self.fields, quantity="250000")
        with self.assertRaises(Unauthorized):
            check_action(self.owner, "lp.quantity", tampered, signature)

    def test_other_action_rejected(self):
        signature = self.sign(self.fields)
        with self.assertRaises(Unauthorized):
            check_action(self.owner, "lp.strategy", self.fields, signature)

    def test_stale_signature_rejected(self):
        fields = dict(self.fields, issued_at=int(time.time()) - 3600)
        signature = self.sign(fields)
        with self.assertRaises(Unauthorized):
            check_action(self.owner, "lp.quantity", fields, signature)

    def test_issued_at_required(self):
        fields = dict(self.fields)
        del fields["issued_at"]
        with self.assertRaises(Unauthorized):
            check_action(self.owner, "lp.quantity", fields, self.sign(fields))

    def test_missing_signature_rejected(self):
        with self.assertRaises(Unauthorized):
            check_action(self.owner, "lp.quantity", self.fields, "")


class TestIdentityService(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="railx_identity_")
        self.path = os.path.join(self.tmpdir, "identities.json")
        self.keystore = KeyStore(JsonStore(self.path))
        self.service = IdentityService(self.keystore, iterations=FAST_ROUNDS)
        self.account = Account.create()
        self.signature = sign_challenge(self.account.key)

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_onboard_then_unlock(self):
        identity, private_key = self.service.onboard(
            self.account.address, self.signature,
            user_type=UserType.CORPORATE,
            kyc_data={"name": "Acme Trading"},
        )

        self.assertEqual(identity.principal_id, self.account.address.lower())
        self.assertEqual(identity.display_name, "Acme Trading")

        unlocked = self.service.unlock(self.account.address, self.signature)
        self.assertEqual(unlocked.private_numbers(), private_key.private_numbers())

        # packets addressed via the directory open with the unlocked key
        packet = encrypt_packet({"hello": "world"}, self.service.resolve_public_key(self.account.address))
        self.assertEqual(decrypt_packet(packet, unlocked), {"hello": "world"})

    def test_private_key_never_stored_in_clear(self):
        self.service.onboard(self.account.address, self.signature)

        with open(self.path) as f:
            text = f.read()
        self.assertNotIn("PRIVATE KEY", text)
        record = json.loads(text)[self.account.address.lower()]
        self.assertIn("BEGIN PUBLIC KEY", record["public_key_pem"])

    def test_unlock_with_wrong_signature(self):
        self.service.onboard(self.account.address, self.signature)
        other = sign_challenge(Account.create().key, self.account.address)

        with self.assertRaises(UnlockFailed):
            self.service.unlock(self.account.address, other)

    def test_onboard_rejects_foreign_signature(self):
        intruder = Account.create()
        signature = sign_challenge(intruder.key, self.account.address)

        with self.assertRaises(ValidationError):
            self.service.onboard(self.account.address, signature)
        self.assertIsNone(self.keystore.get(self.account.address))

    def test_unknown_principal(self):
        with self.assertRaises(UnknownIdentity):
            self.service.unlock(self.account.address, self.signature)
        with self.assertRaises(UnknownIdentity):
            self.service.resolve_public_key(self.account.address)

    def test_reonboarding_rotates_keys(self):
        first, _ = self.service.onboard(self.account.address, self.signature)
        second, _ = self.service.onboard(self.account.address, self.signature)

        self.assertNotEqual(first.public_key_pem, second.public_key_pem)
        self.assertEqual(self.keystore.list_principals(), [self.account.address.lower()])

    def test_register_public_requires_valid_key(self):
        identity = UserIdentity(
            principal_id=self.account.address,
            public_key_pem="not a key",
            sealed_private_key="c2VhbGVk",
        )
        with self.assertRaises(CryptoError):
            self.service.register_public(identity, self.signature)
        self.assertIsNone(self.keystore.get(self.account.address))

    def test_public_dict_hides_kyc(self):
        identity, _ = self.service.onboard(
            self.account.address, self.signature, kyc_data={"name": "Acme", "dob": "1990-01-01"}
        )
        public = identity.public_dict()

        self.assertNotIn("kyc_data", public)
        self.assertIn("sealed_private_key", public)


if __name__ == "__main__":
    unittest.main()
