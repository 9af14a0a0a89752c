"""
Outbound API client composing the request security layers.

Each call serializes the body once, signs exactly those bytes with an
X-Pay-Token, optionally moves sensitive fields into an encrypted block
beforehand, and sends the request over the mTLS channel with Basic auth.
"""

import json
import logging
from typing import Any, Iterable, Optional

import httpx

from paysec_lib.config import Settings
from paysec_lib.encryption import ENCRYPTED_DATA_FIELD, ENCRYPTION_KEY_ID_HEADER, EnvelopeEncryptor
from paysec_lib.logging_utils import mask_sensitive_data
from paysec_lib.transport import TransportAuthenticator
from paysec_lib.xpay_token import XPayTokenSigner

logger = logging.getLogger(__name__)


def _serialize_body(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"))


class PaymentNetworkClient:
    """
    Signed, authenticated HTTP client for the payment network API.

    Usage:
        client = PaymentNetworkClient(transport_auth, signer, base_url="https://sandbox.api.visa.com")
        response = client.post("/visadirect/fundstransfer/v1/pushfundstransactions", payload)

    ``http_transport`` replaces the network layer (e.g. ``httpx.MockTransport``
    in tests); certificate verification still comes from ``transport_auth``.
    """

    def __init__(
        self,
        transport_auth: TransportAuthenticator,
        signer: XPayTokenSigner,
        base_url: str,
        encryptor: Optional[EnvelopeEncryptor] = None,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.transport_auth = transport_auth
        self.signer = signer
        self.encryptor = encryptor
        self._client = httpx.Client(
            base_url=base_url,
            transport=http_transport,
            **transport_auth.get_client_config(),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentNetworkClient":
        encryptor = EnvelopeEncryptor.from_settings(settings) if settings.enable_message_encryption else None
        return cls(
            TransportAuthenticator.from_settings(settings),
            XPayTokenSigner.from_settings(settings),
            base_url=settings.visa_base_url,
            encryptor=encryptor,
        )

    def __enter__(self) -> "PaymentNetworkClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        query_string: str = "",
        sensitive_fields: Optional[Iterable[str]] = None,
    ) -> httpx.Response:
        """
        Send one signed request.

        Args:
            method: HTTP method
            path: Resource path, including the leading slash
            payload: JSON-serializable body, a pre-serialized string, or None
            query_string: Raw query string without the leading ``?``
            sensitive_fields: Fields to move into ``encryptedData`` (requires an encryptor)

        Returns:
            The httpx.Response; status handling is left to the caller
        """
        headers: dict[str, str] = {}
        if sensitive_fields and isinstance(payload, dict):
            if self.encryptor is None:
                raise ValueError("sensitive_fields given but no encryptor is configured")
            encrypted = self.encryptor.encrypt_sensitive_fields(payload, sensitive_fields)
            if ENCRYPTED_DATA_FIELD in encrypted and ENCRYPTED_DATA_FIELD not in payload:
                headers[ENCRYPTION_KEY_ID_HEADER] = self.encryptor.key_id
            payload = encrypted

        body = _serialize_body(payload)
        headers.update(self.signer.get_headers(path, query_string, body))

        url = f"{path}?{query_string}" if query_string else path
        logger.info("API request %s %s (%s)", method.upper(), path, mask_sensitive_data(headers))
        response = self._client.request(
            method.upper(),
            url,
            content=body.encode("utf-8") if body else None,
            headers=headers,
        )
        logger.info("API response %s %s [%d]", method.upper(), path, response.status_code)
        return response

    def get(self, path: str, query_string: str = "") -> httpx.Response:
        return self.request("GET", path, query_string=query_string)

    def post(
        self,
        path: str,
        payload: Any,
        query_string: str = "",
        sensitive_fields: Optional[Iterable[str]] = None,
    ) -> httpx.Response:
        return self.request("POST", path, payload, query_string, sensitive_fields)
