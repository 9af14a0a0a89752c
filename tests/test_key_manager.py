"""
Unit tests for the key ring and X-Pay-Token key rotation.

Tests the KeyRing class for holding several key pairs during rotation.
"""

import threading
import unittest

from paysec_lib.key_manager import KeyRing, KeyState
from paysec_lib.xpay_token import SigningKeyPair

PATH = "/v1/pushfundstransactions"
BODY = '{"amount":100}'


class TestKeyRingBasic(unittest.TestCase):
    """Test basic KeyRing operations."""

    @classmethod
    def setUpClass(cls):
        cls.initial = SigningKeyPair.generate(key_id="v1")

    def test_initial_key_is_active(self):
        ring = KeyRing(self.initial)

        self.assertIs(ring.get_active_key(), self.initial)
        self.assertEqual(ring.list_keys()["v1"]["state"], "active")

    def test_initial_key_must_sign(self):
        with self.assertRaises(ValueError):
            KeyRing(SigningKeyPair(public_key=self.initial.public_key, key_id="pub"))

    def test_add_duplicate_key_id(self):
        ring = KeyRing(self.initial)
        with self.assertRaises(ValueError):
            ring.add_key(SigningKeyPair(public_key=self.initial.public_key, key_id="v1"))

    def test_cannot_add_active_directly(self):
        ring = KeyRing(self.initial)
        other = SigningKeyPair(public_key=self.initial.public_key, key_id="v2")
        with self.assertRaises(ValueError):
            ring.add_key(other, KeyState.ACTIVE)

    def test_confirm_nonexistent_key(self):
        ring = KeyRing(self.initial)
        with self.assertRaises(ValueError):
            ring.confirm_registration("missing")

    def test_confirm_public_only_key(self):
        ring = KeyRing(self.initial)
        ring.add_key(SigningKeyPair(public_key=self.initial.public_key, key_id="pub"), KeyState.VALID)
        with self.assertRaises(ValueError):
            ring.confirm_registration("pub")

    def test_cannot_retire_active_key(self):
        ring = KeyRing(self.initial)
        with self.assertRaises(ValueError):
            ring.retire_key("v1")

    def test_get_unknown_key(self):
        self.assertIsNone(KeyRing(self.initial).get_key("nope"))


class TestKeyRotation(unittest.TestCase):
    """Test the pending -> active -> retired rotation flow."""

    def setUp(self):
        self.ring = KeyRing(SigningKeyPair.generate(key_id="v1"))

    def test_pending_key_not_used_for_signing(self):
        new_key = self.ring.rotate("v2")

        self.assertEqual(self.ring.get_active_key().key_id, "v1")
        self.assertEqual(self.ring.list_keys()["v2"]["state"], "pending")
        self.assertIn("BEGIN PUBLIC KEY", new_key.public_key_pem().decode("ascii"))

    def test_full_rotation(self):
        old_token = self.ring.signer().generate_token(PATH, "", BODY)

        self.ring.rotate("v2")
        self.ring.confirm_registration("v2")

        keys = self.ring.list_keys()
        self.assertTrue(keys["v2"]["is_active"])
        self.assertEqual(keys["v1"]["state"], "valid")

        # Tokens signed before the switch still verify during the overlap
        signer = self.ring.signer()
        self.assertTrue(signer.verify_token(old_token, PATH, "", BODY)[0])

        new_token = signer.generate_token(PATH, "", BODY)
        self.ring.retire_key("v1")
        signer = self.ring.signer()

        self.assertIsNone(self.ring.get_key("v1"))
        self.assertFalse(signer.verify_token(old_token, PATH, "", BODY)[0])
        self.assertTrue(signer.verify_token(new_token, PATH, "", BODY)[0])

    def test_verification_keys_active_first(self):
        self.ring.rotate("v2")
        self.ring.confirm_registration("v2")

        ids = [key.key_id for key in self.ring.verification_keys()]
        self.assertEqual(ids, ["v2", "v1"])


class TestKeyRingThreadSafety(unittest.TestCase):
    """Test concurrent use of signers built from the ring."""

    def test_concurrent_signing_and_verification(self):
        ring = KeyRing(SigningKeyPair.generate(key_id="v1"))
        signer = ring.signer()

        results = []
        errors = []

        def sign_and_verify(index):
            try:
                body = f'{{"index":{index}}}'
                token = signer.generate_token(PATH, "", body)
                is_valid, error = signer.verify_token(token, PATH, "", body)
                results.append(is_valid)
                if not is_valid:
                    errors.append(error)
            except Exception as e:
                errors.append(str(e))

        threads = [threading.Thread(target=sign_and_verify, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(errors), 0, f"Errors occurred: {errors}")
        self.assertEqual(len(results), 10)
        self.assertTrue(all(results))


if __name__ == "__main__":
    unittest.main()
