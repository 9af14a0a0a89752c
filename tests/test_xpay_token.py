"""
Unit tests for X-Pay-Token request signing.

Tests canonicalization, signing, verification, the replay window and the
key bootstrap.
"""

import hashlib
import os
import stat
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import pytest

from paysec_lib.config import Settings
from paysec_lib.errors import ConfigurationError
from paysec_lib.xpay_token import (
    CLIENT_TRANSACTION_ID_HEADER,
    XPAY_TOKEN_HEADER,
    SigningKeyPair,
    XPayTokenSigner,
    build_canonical_string,
    create_xpay_token,
    generate_key_pair,
    load_or_create_key_pair,
    parse_xpay_token,
    verify_xpay_token,
)

from certutils import new_rsa_key, private_pem, public_pem

PATH = "/v1/pushfundstransactions"


class TestKeyGeneration(unittest.TestCase):
    """Test RSA key pair generation."""

    def test_generate_rsa_key_pair(self):
        private_key, public_key = generate_key_pair()

        self.assertIsInstance(private_key, bytes)
        self.assertIsInstance(public_key, bytes)
        self.assertIn(b"PRIVATE KEY", private_key)
        self.assertIn(b"PUBLIC KEY", public_key)

    def test_generate_rsa_invalid_size(self):
        with self.assertRaises(ValueError):
            generate_key_pair(key_size=1024)

    def test_small_keys_rejected(self):
        """Keys under 2048 bits are a configuration error."""
        weak = new_rsa_key(1024)
        with self.assertRaises(ConfigurationError):
            SigningKeyPair.from_pem(public_pem(weak), private_pem(weak))

    def test_private_key_not_in_repr(self):
        key_pair = SigningKeyPair.generate(key_id="k1")
        self.assertNotIn("private_key", repr(key_pair))

    def test_invalid_pem_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            SigningKeyPair.from_pem(b"not a key")


class TestCanonicalString(unittest.TestCase):
    """Test the pre-hash string construction."""

    def test_fields_concatenated_without_separators(self):
        canonical = build_canonical_string("1700000000", PATH, "apikey=abc", '{"amount":100}')
        self.assertEqual(canonical, b'1700000000/v1/pushfundstransactionsapikey=abc{"amount":100}')

    def test_missing_query_and_body_are_empty(self):
        self.assertEqual(build_canonical_string("1700000000", PATH, None, None), b"1700000000" + PATH.encode())

    def test_bytes_body_used_verbatim(self):
        canonical = build_canonical_string("1", "/p", "", b'{"a": 1}\xff')
        self.assertEqual(canonical, b'1/p{"a": 1}\xff')

    def test_path_not_normalized(self):
        self.assertNotEqual(
            build_canonical_string("1", "/v1/x/", "", ""),
            build_canonical_string("1", "/v1/x", "", ""),
        )


class TestTokenSigning(unittest.TestCase):
    """Test token generation and verification."""

    @classmethod
    def setUpClass(cls):
        cls.key_pair = SigningKeyPair.generate()
        cls.signer = XPayTokenSigner(cls.key_pair)

    def test_token_format(self):
        """Token is xv2:{timestamp}:{hex signature}."""
        token = self.signer.generate_token(PATH, "", '{"amount":100}', timestamp=1700000000)
        version, timestamp, signature = parse_xpay_token(token)

        self.assertEqual(version, "xv2")
        self.assertEqual(timestamp, "1700000000")
        # RSA-2048 signature is 256 bytes
        self.assertEqual(len(bytes.fromhex(signature)), 256)

    def test_signature_covers_hex_digest(self):
        """The RSA signature is over the hex SHA-256 digest of the canonical string."""
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.asymmetric import padding

        token = self.signer.generate_token(PATH, "", '{"amount":100}', timestamp=1700000000)
        signature = bytes.fromhex(token.split(":")[2])
        digest = hashlib.sha256(b'1700000000/v1/pushfundstransactions{"amount":100}').hexdigest()

        # Raises InvalidSignature on mismatch
        self.key_pair.public_key.verify(signature, digest.encode("ascii"), padding.PKCS1v15(), hashes.SHA256())

    def test_round_trip(self):
        for query, body in [("", ""), ("a=1&b=2", ""), ("", '{"amount":100}'), ("x=y", '{"k":"v"}')]:
            token = self.signer.generate_token(PATH, query, body)
            is_valid, error = self.signer.verify_token(token, PATH, query, body)
            self.assertTrue(is_valid, (query, body, error))
            self.assertIsNone(error)

    def test_concrete_scenario(self):
        now = int(time.time())
        token = self.signer.generate_token(PATH, "", '{"amount":100}', timestamp=now)

        self.assertTrue(token.startswith(f"xv2:{now}:"))
        self.assertTrue(self.signer.verify_token(token, PATH, "", '{"amount":100}')[0])
        self.assertFalse(self.signer.verify_token(token, PATH, "", '{"amount":101}')[0])

    def test_tamper_any_body_byte(self):
        body = '{"amount":100,"currency":"USD"}'
        token = self.signer.generate_token(PATH, "", body)
        for i in range(len(body)):
            tampered = body[:i] + chr(ord(body[i]) ^ 1) + body[i + 1 :]
            is_valid, _ = self.signer.verify_token(token, PATH, "", tampered)
            self.assertFalse(is_valid, f"byte {i} flip was not detected")

    def test_tamper_bytes_body_high_bit(self):
        body = b'{"amount":100}'
        token = self.signer.generate_token(PATH, "", body)
        self.assertTrue(self.signer.verify_token(token, PATH, "", body)[0])
        for i in range(len(body)):
            tampered = body[:i] + bytes([body[i] ^ 0x80]) + body[i + 1 :]
            is_valid, error = self.signer.verify_token(token, PATH, "", tampered)
            self.assertFalse(is_valid, f"byte {i} flip was not detected")
            self.assertEqual(error, "Signature mismatch")

    def test_tamper_any_path_byte(self):
        token = self.signer.generate_token(PATH, "", "")
        for i in range(len(PATH)):
            tampered = PATH[:i] + chr(ord(PATH[i]) ^ 1) + PATH[i + 1 :]
            self.assertFalse(self.signer.verify_token(token, tampered, "", "")[0])

    def test_tamper_query(self):
        query = "apikey=abc123"
        token = self.signer.generate_token(PATH, query, "")
        for i in range(len(query)):
            tampered = query[:i] + chr(ord(query[i]) ^ 1) + query[i + 1 :]
            self.assertFalse(self.signer.verify_token(token, PATH, tampered, "")[0])

    def test_tampered_signature(self):
        token = self.signer.generate_token(PATH, "", "body")
        last = token[-1]
        tampered = token[:-1] + ("0" if last != "0" else "1")
        is_valid, error = self.signer.verify_token(tampered, PATH, "", "body")
        self.assertFalse(is_valid)
        self.assertEqual(error, "Signature mismatch")

    def test_fresh_token_per_request(self):
        with patch("paysec_lib.xpay_token.uuid.uuid4", side_effect=["id-1", "id-2"]):
            first = self.signer.get_headers(PATH, "", '{"amount":1}')
            second = self.signer.get_headers(PATH, "", '{"amount":2}')
        self.assertNotEqual(first[XPAY_TOKEN_HEADER], second[XPAY_TOKEN_HEADER])
        self.assertEqual(first[CLIENT_TRANSACTION_ID_HEADER], "id-1")
        self.assertEqual(second[CLIENT_TRANSACTION_ID_HEADER], "id-2")

    def test_public_key_pem(self):
        self.assertIn("BEGIN PUBLIC KEY", self.signer.get_public_key_pem())

    def test_signer_requires_private_key(self):
        verify_only = SigningKeyPair(public_key=self.key_pair.public_key)
        with self.assertRaises(ConfigurationError):
            XPayTokenSigner(verify_only)


class TestReplayWindow(unittest.TestCase):
    """Test the 300 second freshness window."""

    @classmethod
    def setUpClass(cls):
        cls.signer = XPayTokenSigner(SigningKeyPair.generate())
        cls.now = 1_700_000_000

    def _verify_at_age(self, age):
        token = self.signer.generate_token(PATH, "", "{}", timestamp=self.now - age)
        return self.signer.verify_token(token, PATH, "", "{}", now=self.now)

    def test_299_seconds_old_accepted(self):
        self.assertTrue(self._verify_at_age(299)[0])

    def test_300_seconds_old_accepted(self):
        """Boundary is inclusive."""
        self.assertTrue(self._verify_at_age(300)[0])

    def test_301_seconds_old_rejected(self):
        is_valid, error = self._verify_at_age(301)
        self.assertFalse(is_valid)
        self.assertIn("window", error)

    def test_future_timestamp_rejected(self):
        self.assertFalse(self._verify_at_age(-301)[0])
        self.assertTrue(self._verify_at_age(-300)[0])


class TestMalformedTokens(unittest.TestCase):
    """Malformed tokens are rejected without raising."""

    @classmethod
    def setUpClass(cls):
        cls.key_pair = SigningKeyPair.generate()

    def _verify(self, token):
        return verify_xpay_token(token, [self.key_pair.public_key], PATH, "", "")

    def test_wrong_version(self):
        token = create_xpay_token(self.key_pair.private_key, PATH).replace("xv2:", "xv1:", 1)
        is_valid, error = self._verify(token)
        self.assertFalse(is_valid)
        self.assertIn("version", error)

    def test_structural_garbage(self):
        now = int(time.time())
        garbage = [
            "",
            "xv2",
            "xv2:123",
            "xv2::abcd",
            "xv2:123:abcd:extra",
            "xv2:abc:abcd",
            "xv2:0123:ab",
            f"xv2:{now}:abc\n",
            f"xv2:{now}:abcd\n",
            "xv2:" + "9" * 5000 + ":abcd",
            f"xv2:{now}\n:abcd",
        ]
        for token in garbage:
            is_valid, error = self._verify(token)
            self.assertFalse(is_valid, token)
            self.assertIsNotNone(error)

    def test_non_hex_signature(self):
        is_valid, error = self._verify(f"xv2:{int(time.time())}:zzzz")
        self.assertFalse(is_valid)
        self.assertIn("encoding", error)

    def test_parse_raises_on_bad_structure(self):
        with pytest.raises(ValueError):
            parse_xpay_token("xv2:only-two")


class TestSignerFromSettings(unittest.TestCase):
    """Test building a signer from environment settings."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.private_path = os.path.join(self.tmp.name, "keys", "private.pem")
        self.public_path = os.path.join(self.tmp.name, "keys", "public.pem")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_api_key_fails_before_key_bootstrap(self):
        with patch.dict("os.environ", {}, clear=True):
            settings = Settings(
                xpay_private_key_path=self.private_path, xpay_public_key_path=self.public_path, _env_file=None
            )
        with pytest.raises(ConfigurationError, match="XPAY_API_KEY"):
            XPayTokenSigner.from_settings(settings)
        self.assertFalse(os.path.exists(self.private_path))

    def test_api_key_carried_on_signer(self):
        settings = Settings(
            xpay_api_key="api-key-123",
            xpay_private_key_path=self.private_path,
            xpay_public_key_path=self.public_path,
            _env_file=None,
        )
        with self.assertLogs("paysec_lib.xpay_token", level="WARNING"):
            signer = XPayTokenSigner.from_settings(settings)

        self.assertEqual(signer.api_key, "api-key-123")
        self.assertTrue(os.path.exists(self.private_path))


class TestCounterpartyVerification(unittest.TestCase):
    """Verification uses the counterparty's public keys when given."""

    def test_other_key_rejected(self):
        ours = SigningKeyPair.generate(key_id="ours")
        theirs = SigningKeyPair.generate(key_id="theirs")
        signer = XPayTokenSigner(ours, verification_keys=[SigningKeyPair(public_key=theirs.public_key)])

        our_token = signer.generate_token(PATH)
        their_token = XPayTokenSigner(theirs).generate_token(PATH)

        self.assertFalse(signer.verify_token(our_token, PATH)[0])
        self.assertTrue(signer.verify_token(their_token, PATH)[0])


class TestKeyBootstrap(unittest.TestCase):
    """Test loading or generating the key pair on disk."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.private_path = os.path.join(self.tmp.name, "keys", "xpay_private.pem")
        self.public_path = os.path.join(self.tmp.name, "keys", "xpay_public.pem")

    def tearDown(self):
        self.tmp.cleanup()

    def test_generates_when_missing(self):
        key_pair, generated = load_or_create_key_pair(self.private_path, self.public_path)

        self.assertTrue(generated)
        self.assertTrue(Path(self.private_path).exists())
        self.assertTrue(Path(self.public_path).exists())
        self.assertEqual(Path(self.public_path).read_bytes(), key_pair.public_key_pem())

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
    def test_private_key_written_owner_only(self):
        load_or_create_key_pair(self.private_path, self.public_path)
        mode = stat.S_IMODE(os.stat(self.private_path).st_mode)
        self.assertEqual(mode & 0o077, 0)

    def test_loads_existing_pair(self):
        first, _ = load_or_create_key_pair(self.private_path, self.public_path)
        second, generated = load_or_create_key_pair(self.private_path, self.public_path)

        self.assertFalse(generated)
        self.assertEqual(first.public_key_pem(), second.public_key_pem())

        token = XPayTokenSigner(first).generate_token(PATH)
        self.assertTrue(XPayTokenSigner(second).verify_token(token, PATH)[0])

    def test_public_key_logged_private_key_not(self):
        with self.assertLogs("paysec_lib.xpay_token", level="INFO") as logs:
            key_pair, _ = load_or_create_key_pair(self.private_path, self.public_path)

        output = "\n".join(logs.output)
        self.assertIn("BEGIN PUBLIC KEY", output)
        self.assertNotIn("PRIVATE KEY", output)

    def test_missing_public_key_is_configuration_error(self):
        load_or_create_key_pair(self.private_path, self.public_path)
        os.remove(self.public_path)
        with self.assertRaises(ConfigurationError):
            load_or_create_key_pair(self.private_path, self.public_path)


if __name__ == "__main__":
    unittest.main()
