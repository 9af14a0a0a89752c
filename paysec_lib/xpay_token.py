"""
X-Pay-Token request signing and verification.

Every outbound API call carries a token binding the request timestamp,
resource path, query string and body to an RSA signature:

    xv2:{timestamp}:{signature}

The signature is computed over the hex SHA-256 digest of the canonical
string ``{timestamp}{resource_path}{query_string}{request_body}``, with no
separators and no normalization. Any byte that differs between what was
signed and what is transmitted makes verification fail.
"""

import hashlib
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from paysec_lib.config import Settings
from paysec_lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

TOKEN_VERSION = "xv2"
MIN_KEY_SIZE = 2048
DEFAULT_TOLERANCE_SECONDS = 300

XPAY_TOKEN_HEADER = "x-pay-token"
CLIENT_TRANSACTION_ID_HEADER = "x-client-transaction-id"

_TIMESTAMP_PATTERN = re.compile(r"0|[1-9][0-9]{0,11}")
_HEX_PATTERN = re.compile(r"[0-9a-fA-F]+")

Body = Union[str, bytes]


def _to_bytes(value: Optional[Body]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def generate_key_pair(key_size: int = MIN_KEY_SIZE) -> tuple[bytes, bytes]:
    """
    Generate an RSA key pair for X-Pay-Token signing.

    Args:
        key_size: Modulus size (2048, 3072, 4096)

    Returns:
        Tuple of (private_key_pem, public_key_pem) as bytes

    Raises:
        ValueError: If the key size is not supported
    """
    if key_size not in (2048, 3072, 4096):
        raise ValueError(f"Invalid RSA key size: {key_size}. Use 2048, 3072, or 4096.")

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_key_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_key_pem, public_key_pem


def _check_key_size(key: Union[rsa.RSAPrivateKey, rsa.RSAPublicKey]) -> None:
    if key.key_size < MIN_KEY_SIZE:
        raise ConfigurationError(f"RSA key too small: {key.key_size} bits (minimum {MIN_KEY_SIZE})")


def load_public_key(public_key_pem: bytes) -> rsa.RSAPublicKey:
    """Load an RSA public key from PEM bytes."""
    try:
        public_key = serialization.load_pem_public_key(public_key_pem)
    except ValueError as e:
        raise ConfigurationError(f"Invalid public key: {e}") from e
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ConfigurationError("Key type mismatch: expected RSA public key")
    _check_key_size(public_key)
    return public_key


def load_private_key(private_key_pem: bytes) -> rsa.RSAPrivateKey:
    """Load an unencrypted RSA private key from PEM bytes."""
    try:
        private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid private key: {e}") from e
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ConfigurationError("Key type mismatch: expected RSA private key")
    _check_key_size(private_key)
    return private_key


@dataclass(frozen=True)
class SigningKeyPair:
    """
    RSA key material for X-Pay-Token.

    The private half is optional so the same type can carry a counterparty's
    public key for verification only. It is excluded from ``repr``.
    """

    public_key: rsa.RSAPublicKey
    private_key: Optional[rsa.RSAPrivateKey] = field(default=None, repr=False)
    key_id: str = "default"

    def __post_init__(self):
        _check_key_size(self.public_key)
        if self.private_key is not None:
            _check_key_size(self.private_key)

    @classmethod
    def from_pem(
        cls,
        public_key_pem: bytes,
        private_key_pem: Optional[bytes] = None,
        key_id: str = "default",
    ) -> "SigningKeyPair":
        private_key = load_private_key(private_key_pem) if private_key_pem else None
        return cls(public_key=load_public_key(public_key_pem), private_key=private_key, key_id=key_id)

    @classmethod
    def generate(cls, key_size: int = MIN_KEY_SIZE, key_id: str = "default") -> "SigningKeyPair":
        private_pem, public_pem = generate_key_pair(key_size)
        return cls.from_pem(public_pem, private_pem, key_id=key_id)

    @property
    def can_sign(self) -> bool:
        return self.private_key is not None

    def public_key_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def load_or_create_key_pair(
    private_key_path: str,
    public_key_path: str,
    key_id: str = "default",
    key_size: int = MIN_KEY_SIZE,
) -> tuple[SigningKeyPair, bool]:
    """
    Load the signing key pair from disk, generating it on first run.

    A freshly generated pair is written to disk (private key with 0600
    permissions) and its public half is logged so the operator can register
    it with the counterparty.

    Args:
        private_key_path: Path of the PEM private key
        public_key_path: Path of the PEM public key
        key_id: Identifier attached to the pair
        key_size: Modulus size used when a new pair is generated

    Returns:
        Tuple of (key_pair, generated)

    Raises:
        ConfigurationError: If existing key files cannot be read or parsed
    """
    private_path = Path(private_key_path)
    public_path = Path(public_key_path)

    if private_path.exists():
        try:
            private_pem = private_path.read_bytes()
            public_pem = public_path.read_bytes()
        except OSError as e:
            raise ConfigurationError(f"Failed to read X-Pay-Token keys: {e}") from e
        key_pair = SigningKeyPair.from_pem(public_pem, private_pem, key_id=key_id)
        logger.info("X-Pay-Token keys loaded from %s", private_path.parent)
        return key_pair, False

    logger.info("Private key not found at %s, generating new RSA key pair", private_path)
    private_pem, public_pem = generate_key_pair(key_size)

    for path in (private_path, public_path):
        path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(private_pem)
    public_path.write_bytes(public_pem)

    logger.warning(
        "Generated new X-Pay-Token key pair. Register this public key with the counterparty:\n%s",
        public_pem.decode("ascii"),
    )
    return SigningKeyPair.from_pem(public_pem, private_pem, key_id=key_id), True


def build_canonical_string(
    timestamp: str,
    resource_path: str,
    query_string: Optional[Body] = "",
    request_body: Optional[Body] = "",
) -> bytes:
    """
    Concatenate the signed fields with no separators and no normalization.

    Bytes fields are used as given and text fields are UTF-8 encoded.
    """
    return b"".join(_to_bytes(part) for part in (timestamp, resource_path, query_string, request_body))


def _digest(canonical_string: bytes) -> bytes:
    return hashlib.sha256(canonical_string).hexdigest().encode("ascii")


def compute_xpay_signature(private_key: rsa.RSAPrivateKey, canonical_string: bytes) -> str:
    """Hex RSA-SHA256 (PKCS#1 v1.5) signature over the digest of the canonical string."""
    signature = private_key.sign(_digest(canonical_string), padding.PKCS1v15(), hashes.SHA256())
    return signature.hex()


def _verify_with_key(public_key: rsa.RSAPublicKey, signature: bytes, canonical_string: bytes) -> bool:
    try:
        public_key.verify(signature, _digest(canonical_string), padding.PKCS1v15(), hashes.SHA256())
        return True
    except InvalidSignature:
        return False


def parse_xpay_token(token: str) -> tuple[str, str, str]:
    """
    Split a token into (version, timestamp, signature).

    Raises:
        ValueError: If the token does not have exactly three non-empty parts
    """
    if not token:
        raise ValueError("Empty X-Pay-Token")
    parts = token.split(":")
    if len(parts) != 3 or not all(parts):
        raise ValueError("Invalid X-Pay-Token format")
    return parts[0], parts[1], parts[2]


def create_xpay_token(
    private_key: rsa.RSAPrivateKey,
    resource_path: str,
    query_string: Optional[Body] = "",
    request_body: Optional[Body] = "",
    timestamp: Optional[int] = None,
) -> str:
    """
    Build a token for one request.

    Args:
        private_key: RSA private key of the signer
        resource_path: Exact API path, including the leading slash
        query_string: Raw query string as transmitted (empty if none)
        request_body: Raw body as transmitted (empty if none)
        timestamp: Unix seconds (default: now)

    Returns:
        Token string ``xv2:{timestamp}:{hex_signature}``
    """
    ts = str(int(time.time()) if timestamp is None else int(timestamp))
    canonical_string = build_canonical_string(ts, resource_path, query_string, request_body)
    signature = compute_xpay_signature(private_key, canonical_string)
    return f"{TOKEN_VERSION}:{ts}:{signature}"


def verify_xpay_token(
    token: str,
    public_keys: Iterable[rsa.RSAPublicKey],
    resource_path: str,
    query_string: Optional[Body] = "",
    request_body: Optional[Body] = "",
    max_age_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> tuple[bool, Optional[str]]:
    """
    Verify a token against the request the verifier actually received.

    The canonical string is rebuilt from the verifier's own view of the
    path, query string and body. A token is accepted when its version is
    known, ``abs(now - timestamp) <= max_age_seconds`` and the signature
    verifies under any of ``public_keys``.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        version, timestamp, signature_hex = parse_xpay_token(token)
    except ValueError as e:
        return False, str(e)

    if version != TOKEN_VERSION:
        return False, f"Unsupported token version: {version}"

    if not _TIMESTAMP_PATTERN.fullmatch(timestamp):
        return False, "Invalid token timestamp"

    current = int(time.time()) if now is None else int(now)
    skew = abs(current - int(timestamp))
    if skew > max_age_seconds:
        return False, f"Token timestamp outside allowed window: {skew} seconds (max: {max_age_seconds})"

    if not _HEX_PATTERN.fullmatch(signature_hex) or len(signature_hex) % 2:
        return False, "Invalid token signature encoding"
    signature = bytes.fromhex(signature_hex)

    canonical_string = build_canonical_string(timestamp, resource_path, query_string, request_body)
    for public_key in public_keys:
        if _verify_with_key(public_key, signature, canonical_string):
            return True, None
    return False, "Signature mismatch"


class XPayTokenSigner:
    """
    Signs outbound requests and verifies tokens with injected key material.

    Usage:
        key_pair, _ = load_or_create_key_pair("keys/xpay_private.pem", "keys/xpay_public.pem")
        signer = XPayTokenSigner(key_pair)

        headers = signer.get_headers("/v1/pushfundstransactions", "", body)
        is_valid, error = signer.verify_token(headers["x-pay-token"], "/v1/pushfundstransactions", "", body)

    Verification uses ``verification_keys`` when given (the counterparty's
    public keys), otherwise the signer's own public key.

    ``api_key`` is the XPAY_API_KEY credential issued with the key
    registration; it is held for callers and never logged.
    """

    def __init__(
        self,
        signing_key: SigningKeyPair,
        verification_keys: Optional[Iterable[SigningKeyPair]] = None,
        max_age_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        api_key: Optional[str] = None,
    ):
        if not signing_key.can_sign:
            raise ConfigurationError("X-Pay-Token signing requires a private key")
        self.signing_key = signing_key
        self.verification_keys = list(verification_keys) if verification_keys else [signing_key]
        self.max_age_seconds = max_age_seconds
        self.api_key = api_key

    @classmethod
    def from_settings(cls, settings: Settings) -> "XPayTokenSigner":
        settings.require("xpay_api_key")
        signing_key, _ = load_or_create_key_pair(
            settings.xpay_private_key_path,
            settings.xpay_public_key_path,
        )
        verification_keys = None
        if settings.xpay_counterparty_public_key_path:
            try:
                counterparty_pem = Path(settings.xpay_counterparty_public_key_path).read_bytes()
            except OSError as e:
                raise ConfigurationError(f"Failed to read counterparty public key: {e}") from e
            verification_keys = [SigningKeyPair.from_pem(counterparty_pem, key_id="counterparty")]
        return cls(signing_key, verification_keys, api_key=settings.xpay_api_key.get_secret_value())

    def generate_token(
        self,
        resource_path: str,
        query_string: Optional[Body] = "",
        request_body: Optional[Body] = "",
        timestamp: Optional[int] = None,
    ) -> str:
        token = create_xpay_token(
            self.signing_key.private_key,
            resource_path,
            query_string,
            request_body,
            timestamp=timestamp,
        )
        logger.debug("X-Pay-Token generated for %s", resource_path)
        return token

    def verify_token(
        self,
        token: str,
        resource_path: str,
        query_string: Optional[Body] = "",
        request_body: Optional[Body] = "",
        now: Optional[float] = None,
    ) -> tuple[bool, Optional[str]]:
        is_valid, error = verify_xpay_token(
            token,
            [key.public_key for key in self.verification_keys],
            resource_path,
            query_string,
            request_body,
            max_age_seconds=self.max_age_seconds,
            now=now,
        )
        if is_valid:
            logger.info("X-Pay-Token validated for %s", resource_path)
        else:
            logger.warning("X-Pay-Token rejected for %s: %s", resource_path, error)
        return is_valid, error

    def get_headers(
        self,
        resource_path: str,
        query_string: Optional[Body] = "",
        request_body: Optional[Body] = "",
    ) -> dict[str, str]:
        """Token header plus a fresh client transaction id for one request."""
        client_transaction_id = str(uuid.uuid4())
        logger.debug("X-Pay headers generated (transaction id %s)", client_transaction_id)
        return {
            XPAY_TOKEN_HEADER: self.generate_token(resource_path, query_string, request_body),
            CLIENT_TRANSACTION_ID_HEADER: client_transaction_id,
        }

    def get_public_key_pem(self) -> str:
        """Public key to register with the counterparty."""
        return self.signing_key.public_key_pem().decode("ascii")
