"""
Authentication and message security for payment network API calls.

Covers the four artifacts each call needs: the mTLS channel with Basic
auth, an X-Pay-Token bound to the exact request, HMAC-verified webhook
callbacks, and optional JWE encryption of sensitive fields.

Request signing:
    from paysec_lib import XPayTokenSigner, load_or_create_key_pair

    key_pair, _ = load_or_create_key_pair("keys/xpay_private.pem", "keys/xpay_public.pem")
    signer = XPayTokenSigner(key_pair)
    headers = signer.get_headers("/v1/pushfundstransactions", "", '{"amount":100}')

Webhook validation:
    from paysec_lib import WebhookValidator, handle_webhook_request

    validator = WebhookValidator(shared_secret="shared-secret")
    response = handle_webhook_request(validator, request_headers, raw_body)
    # response.status_code is 200, 401 or 500

Field encryption:
    from paysec_lib import EncryptionKeyMaterial, EnvelopeEncryptor

    keys = EncryptionKeyMaterial.load("key-1", "certs/enc_cert.pem", "certs/dec_key.pem")
    encryptor = EnvelopeEncryptor(keys)
    request = encryptor.encrypt_sensitive_fields(request, ["cardNumber", "cvv"])
"""

from paysec_lib.errors import (
    ConfigurationError,
    DecryptionError,
    EncryptionError,
    PaySecError,
)

from paysec_lib.config import Settings

from paysec_lib.logging_utils import (
    SensitiveDataFilter,
    configure_logging,
    mask_secret,
    mask_sensitive_data,
)

from paysec_lib.transport import (
    CertificateExpiry,
    TransportAuthenticator,
)

from paysec_lib.xpay_token import (
    SigningKeyPair,
    XPayTokenSigner,
    build_canonical_string,
    create_xpay_token,
    generate_key_pair,
    load_or_create_key_pair,
    verify_xpay_token,
)

from paysec_lib.key_manager import (
    KeyRing,
    KeyState,
)

from paysec_lib.webhook import (
    EventType,
    RejectReason,
    WebhookDispatcher,
    WebhookEnvelope,
    WebhookEvent,
    WebhookResponse,
    WebhookValidation,
    WebhookValidator,
    handle_api_gateway_event,
    handle_webhook_request,
)

from paysec_lib.encryption import (
    EncryptionKeyMaterial,
    EncryptionResult,
    EnvelopeEncryptor,
)

from paysec_lib.client import PaymentNetworkClient

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Errors
    "ConfigurationError",
    "DecryptionError",
    "EncryptionError",
    "PaySecError",
    # Configuration and logging
    "Settings",
    "SensitiveDataFilter",
    "configure_logging",
    "mask_secret",
    "mask_sensitive_data",
    # Transport
    "CertificateExpiry",
    "TransportAuthenticator",
    # X-Pay-Token
    "SigningKeyPair",
    "XPayTokenSigner",
    "build_canonical_string",
    "create_xpay_token",
    "generate_key_pair",
    "load_or_create_key_pair",
    "verify_xpay_token",
    # Key rotation
    "KeyRing",
    "KeyState",
    # Webhooks
    "EventType",
    "RejectReason",
    "WebhookDispatcher",
    "WebhookEnvelope",
    "WebhookEvent",
    "WebhookResponse",
    "WebhookValidation",
    "WebhookValidator",
    "handle_api_gateway_event",
    "handle_webhook_request",
    # Encryption
    "EncryptionKeyMaterial",
    "EncryptionResult",
    "EnvelopeEncryptor",
    # Client
    "PaymentNetworkClient",
]
