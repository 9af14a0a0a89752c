"""
Message level encryption of sensitive payload fields.

Payloads are JSON serialized and wrapped in a compact JWE: the content key
is wrapped with RSA-OAEP-256 under the counterparty's public key and the
content is encrypted with A256GCM. The protected header names the key id
and both algorithms; decryption refuses any header that does not match
exactly, so a token cannot be downgraded to a weaker algorithm.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from authlib.jose import JsonWebEncryption
from authlib.jose.errors import JoseError
from cryptography import x509
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from paysec_lib.config import Settings
from paysec_lib.errors import ConfigurationError, DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

KEY_WRAP_ALGORITHM = "RSA-OAEP-256"
CONTENT_ENCRYPTION_ALGORITHM = "A256GCM"
ENCRYPTED_DATA_FIELD = "encryptedData"

ENCRYPTION_KEY_ID_HEADER = "x-encryption-key-id"
JOSE_CONTENT_TYPE = "application/jose+json"


def _load_encryption_key(pem: bytes) -> rsa.RSAPublicKey:
    if b"CERTIFICATE" in pem:
        public_key = x509.load_pem_x509_certificate(pem).public_key()
    else:
        public_key = serialization.load_pem_public_key(pem)
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ConfigurationError("Encryption key must be an RSA public key")
    return public_key


def _load_decryption_key(pem: bytes) -> rsa.RSAPrivateKey:
    private_key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ConfigurationError("Decryption key must be an RSA private key")
    return private_key


@dataclass(frozen=True)
class EncryptionKeyMaterial:
    """
    Keys for message level encryption.

    ``encryption_key`` is the counterparty's public key (from its
    certificate), ``decryption_key`` is our private key. Either may be
    missing; operations that need it fail loudly.
    """

    key_id: str
    encryption_key: Optional[rsa.RSAPublicKey] = None
    decryption_key: Optional[rsa.RSAPrivateKey] = field(default=None, repr=False)

    @classmethod
    def load(
        cls,
        key_id: str,
        encryption_cert_path: Optional[str] = None,
        decryption_key_path: Optional[str] = None,
    ) -> "EncryptionKeyMaterial":
        """
        Read key material from PEM files.

        Missing files leave the corresponding half empty (with a warning).
        Files that exist but cannot be parsed are a configuration error.
        """
        if not key_id:
            raise ConfigurationError("Missing required configuration: ENCRYPTION_KEY_ID")

        encryption_key = None
        decryption_key = None
        try:
            if encryption_cert_path and Path(encryption_cert_path).exists():
                encryption_key = _load_encryption_key(Path(encryption_cert_path).read_bytes())
                logger.info("Encryption certificate loaded for key id %s", key_id)
            else:
                logger.warning("Encryption certificate not found: %s", encryption_cert_path)

            if decryption_key_path and Path(decryption_key_path).exists():
                decryption_key = _load_decryption_key(Path(decryption_key_path).read_bytes())
                logger.info("Decryption key loaded for key id %s", key_id)
            else:
                logger.warning("Decryption key not found: %s", decryption_key_path)
        except (OSError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Failed to load encryption keys: {e}") from e

        return cls(key_id=key_id, encryption_key=encryption_key, decryption_key=decryption_key)


@dataclass(frozen=True)
class EncryptionResult:
    """
    Result of ``EnvelopeEncryptor.encrypt``.

    ``payload`` is the compact JWE string when ``encrypted`` is True, and
    the untouched input when pass-through was explicitly allowed.
    """

    payload: Any
    encrypted: bool
    key_id: Optional[str] = None


def _decode_protected_header(token: str) -> dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 5:
        raise DecryptionError("Malformed JWE: expected 5 compact segments")
    segment = parts[0]
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        header = json.loads(raw)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"Malformed JWE header: {e}") from e
    if not isinstance(header, dict):
        raise DecryptionError("Malformed JWE header")
    return header


class EnvelopeEncryptor:
    """
    Wraps and unwraps JSON payloads as compact JWE tokens.

    Usage:
        keys = EncryptionKeyMaterial.load("key-1", "certs/enc_cert.pem", "certs/dec_key.pem")
        encryptor = EnvelopeEncryptor(keys)

        token = encryptor.encrypt({"cardNumber": "4111111111111111"}).payload
        payload = encryptor.decrypt(token)

        request = encryptor.encrypt_sensitive_fields(request, ["cardNumber", "cvv"])

    Without an encryption key, ``encrypt`` raises EncryptionError unless
    ``allow_passthrough`` is set, in which case payloads are returned in the
    clear and flagged ``encrypted=False``.
    """

    def __init__(self, key_material: EncryptionKeyMaterial, allow_passthrough: bool = False):
        self.key_material = key_material
        self.allow_passthrough = allow_passthrough
        self._jwe = JsonWebEncryption()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EnvelopeEncryptor":
        settings.require("encryption_key_id")
        key_material = EncryptionKeyMaterial.load(
            settings.encryption_key_id,
            settings.jwe_encryption_cert_path,
            settings.jwe_decryption_key_path,
        )
        return cls(key_material, allow_passthrough=settings.allow_unencrypted_passthrough)

    @property
    def key_id(self) -> str:
        return self.key_material.key_id

    @property
    def can_encrypt(self) -> bool:
        return self.key_material.encryption_key is not None

    @property
    def can_decrypt(self) -> bool:
        return self.key_material.decryption_key is not None

    def encrypt(self, payload: Any) -> EncryptionResult:
        """
        Encrypt a JSON-serializable payload.

        Raises:
            EncryptionError: If no encryption key is loaded (and pass-through
                is not allowed) or the payload cannot be serialized
        """
        if not self.can_encrypt:
            if not self.allow_passthrough:
                raise EncryptionError("Encryption key not available")
            logger.warning("Encryption key not available, sending payload unencrypted")
            return EncryptionResult(payload=payload, encrypted=False)

        try:
            plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Failed to serialize payload: {e}") from e

        protected = {
            "alg": KEY_WRAP_ALGORITHM,
            "enc": CONTENT_ENCRYPTION_ALGORITHM,
            "kid": self.key_id,
        }
        try:
            token = self._jwe.serialize_compact(protected, plaintext, self.key_material.encryption_key)
        except JoseError as e:
            raise EncryptionError(f"Failed to encrypt payload: {e}") from e

        if isinstance(token, bytes):
            token = token.decode("ascii")
        logger.debug("Payload encrypted (%d -> %d bytes)", len(plaintext), len(token))
        return EncryptionResult(payload=token, encrypted=True, key_id=self.key_id)

    def decrypt(self, token: str) -> Any:
        """
        Decrypt a compact JWE produced for our key id.

        Raises:
            DecryptionError: If the token is malformed, names another key id
                or algorithm, fails its integrity check, or no decryption key
                is loaded
        """
        if not self.can_decrypt:
            raise DecryptionError("Decryption key not available")
        if not isinstance(token, str):
            raise DecryptionError("Encrypted payload must be a compact JWE string")

        header = _decode_protected_header(token)
        if header.get("alg") != KEY_WRAP_ALGORITHM or header.get("enc") != CONTENT_ENCRYPTION_ALGORITHM:
            raise DecryptionError(
                f"Unexpected JWE algorithms: alg={header.get('alg')!r}, enc={header.get('enc')!r}"
            )
        if header.get("kid") != self.key_id:
            raise DecryptionError(f"Unknown encryption key id: {header.get('kid')!r}")

        try:
            data = self._jwe.deserialize_compact(token, self.key_material.decryption_key)
            return json.loads(data["payload"])
        except (JoseError, InvalidTag, ValueError) as e:
            raise DecryptionError(f"Failed to decrypt payload: {e.__class__.__name__}") from e

    def encrypt_sensitive_fields(self, request: dict[str, Any], sensitive_fields: Iterable[str]) -> dict[str, Any]:
        """
        Move the listed fields into one encrypted ``encryptedData`` field.

        Fields not present in the request are skipped. The input dict is not
        modified. Under pass-through the request is returned unchanged.
        """
        to_encrypt = {name: request[name] for name in sensitive_fields if name in request}
        if not to_encrypt:
            logger.debug("No sensitive fields found to encrypt")
            return dict(request)

        result = self.encrypt(to_encrypt)
        if not result.encrypted:
            return dict(request)

        remaining = {name: value for name, value in request.items() if name not in to_encrypt}
        remaining[ENCRYPTED_DATA_FIELD] = result.payload
        logger.info("Sensitive fields encrypted: %s", sorted(to_encrypt))
        return remaining

    def decrypt_sensitive_fields(self, message: dict[str, Any]) -> dict[str, Any]:
        """Reverse ``encrypt_sensitive_fields``."""
        if ENCRYPTED_DATA_FIELD not in message:
            return dict(message)
        fields = self.decrypt(message[ENCRYPTED_DATA_FIELD])
        if not isinstance(fields, dict):
            raise DecryptionError("Encrypted field block must decode to an object")
        restored = {name: value for name, value in message.items() if name != ENCRYPTED_DATA_FIELD}
        restored.update(fields)
        return restored

    def get_encryption_headers(self) -> dict[str, str]:
        return {
            ENCRYPTION_KEY_ID_HEADER: self.key_id,
            "content-type": JOSE_CONTENT_TYPE,
        }
