"""
Two-way SSL (mTLS) and Basic authentication for outbound API calls.

The authenticator validates its certificate material once at construction
and then hands out credentials: a Basic ``Authorization`` header and an
``ssl.SSLContext`` that presents the client certificate and only trusts the
configured CA.
"""

import base64
import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from paysec_lib.config import Settings
from paysec_lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

EXPIRY_WARNING_DAYS = 30


@dataclass(frozen=True)
class CertificateExpiry:
    """Validity window of the client certificate."""

    not_before: datetime
    not_after: datetime
    days_remaining: int
    is_expired: bool
    expiring_soon: bool


def _read_file(path: str, label: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Failed to read {label} at {path}: {e.strerror or e}") from e


class TransportAuthenticator:
    """
    Holds client certificate material and produces channel credentials.

    Usage:
        auth = TransportAuthenticator(
            user_id="user", password="pass",
            cert_path="certs/cert.pem", key_path="certs/key.pem", ca_path="certs/ca.pem",
        )
        headers = {"Authorization": auth.get_auth_header()}
        context = auth.create_ssl_context()
    """

    def __init__(
        self,
        user_id: str,
        password: str,
        cert_path: str,
        key_path: str,
        ca_path: str,
        timeout: float = 30.0,
    ):
        required = {
            "user_id": user_id,
            "password": password,
            "cert_path": cert_path,
            "key_path": key_path,
            "ca_path": ca_path,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(f"Missing required SSL configuration: {', '.join(missing)}")

        self.user_id = user_id
        self._password = password
        self.cert_path = cert_path
        self.key_path = key_path
        self.ca_path = ca_path
        self.timeout = timeout

        cert_pem = _read_file(cert_path, "client certificate")
        key_pem = _read_file(key_path, "client private key")
        ca_pem = _read_file(ca_path, "CA certificate")

        try:
            self.certificate = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as e:
            raise ConfigurationError(f"Invalid client certificate at {cert_path}: {e}") from e
        try:
            serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid client private key at {key_path}: {e}") from e
        try:
            self.ca_certificates = x509.load_pem_x509_certificates(ca_pem)
        except ValueError as e:
            raise ConfigurationError(f"Invalid CA certificate at {ca_path}: {e}") from e

        self._ca_pem = ca_pem.decode("ascii")

        logger.info(
            "SSL certificates loaded (cert=%d bytes, key=%d bytes, ca=%d bytes)",
            len(cert_pem),
            len(key_pem),
            len(ca_pem),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "TransportAuthenticator":
        settings.require("visa_user_id", "visa_password", "visa_cert_path", "visa_key_path", "visa_ca_path")
        return cls(
            user_id=settings.visa_user_id,
            password=settings.visa_password.get_secret_value(),
            cert_path=settings.visa_cert_path,
            key_path=settings.visa_key_path,
            ca_path=settings.visa_ca_path,
            timeout=settings.request_timeout,
        )

    def __repr__(self) -> str:
        return f"TransportAuthenticator(user_id={self.user_id!r}, cert_path={self.cert_path!r})"

    def get_auth_header(self) -> str:
        """Basic credential header value for the configured user."""
        credentials = base64.b64encode(f"{self.user_id}:{self._password}".encode("utf-8"))
        return f"Basic {credentials.decode('ascii')}"

    def create_ssl_context(self) -> ssl.SSLContext:
        """
        Build a client SSL context for mutual TLS.

        Peer verification and hostname checking are always on and the only
        trust anchor is the configured CA.
        """
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cadata=self._ca_pem)
        context.verify_mode = ssl.CERT_REQUIRED
        context.check_hostname = True
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        try:
            context.load_cert_chain(certfile=self.cert_path, keyfile=self.key_path)
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(f"Failed to load client certificate chain: {e}") from e
        return context

    def get_client_config(self) -> dict[str, Any]:
        """Keyword arguments for ``httpx.Client`` carrying mTLS and Basic auth."""
        return {
            "verify": self.create_ssl_context(),
            "headers": {
                "Authorization": self.get_auth_header(),
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            "timeout": self.timeout,
        }

    def check_certificate_expiry(self, now: Optional[datetime] = None) -> CertificateExpiry:
        """
        Report how long the client certificate remains valid.

        Advisory only; the TLS handshake itself rejects expired certificates.

        Args:
            now: Reference time (default: current UTC time)

        Returns:
            CertificateExpiry read from the certificate's validity field
        """
        now = now or datetime.now(timezone.utc)
        not_before = self.certificate.not_valid_before_utc
        not_after = self.certificate.not_valid_after_utc
        days_remaining = (not_after - now).days

        result = CertificateExpiry(
            not_before=not_before,
            not_after=not_after,
            days_remaining=days_remaining,
            is_expired=now > not_after,
            expiring_soon=days_remaining < EXPIRY_WARNING_DAYS,
        )

        if result.is_expired:
            logger.error("SSL certificate expired on %s", not_after.isoformat())
        elif result.expiring_soon:
            logger.warning("SSL certificate expires in %d days", days_remaining)
        else:
            logger.info("SSL certificate valid for %d days", days_remaining)
        return result
