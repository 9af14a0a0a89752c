"""
Webhook callback validation and dispatch.

Inbound callbacks carry two headers: a Unix timestamp and a base64
HMAC-SHA256 signature over ``"{timestamp}.{raw_body}"`` keyed with the
shared secret. A callback is accepted when both headers are present, the
timestamp is within the replay window (past or future) and the signature
matches under a constant-time comparison. Accepted events are dispatched
synchronously to exactly one handler per event type.

Callers outside this module only ever learn accept/reject. The specific
reason a callback was rejected is logged but never returned to the sender.
"""

import base64
import hashlib
import hmac
import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from paysec_lib.config import Settings
from paysec_lib.errors import ConfigurationError
from paysec_lib.logging_utils import mask_sensitive_data

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-visa-signature"
TIMESTAMP_HEADER = "x-visa-timestamp"
DEFAULT_TOLERANCE_SECONDS = 300
MIN_RECOMMENDED_SECRET_LENGTH = 32

REJECTION_MESSAGE = "Invalid webhook signature"

_TIMESTAMP_PATTERN = re.compile(r"[0-9]{1,12}")

Payload = Union[str, bytes, Mapping[str, Any], list]


def serialize_payload(payload: Payload) -> bytes:
    """
    Bytes covered by the signature.

    Raw strings and bytes are used exactly as given. Anything else is
    serialized as compact JSON, which only matches the sender's signature if
    the sender serialized it the same way.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class EventType(str, Enum):
    """Event kinds sent by the payment network."""

    TRANSACTION_COMPLETED = "TRANSACTION_COMPLETED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    TRANSACTION_REVERSED = "TRANSACTION_REVERSED"
    TRANSACTION_PENDING = "TRANSACTION_PENDING"
    AUTHORIZATION_APPROVED = "AUTHORIZATION_APPROVED"
    AUTHORIZATION_DECLINED = "AUTHORIZATION_DECLINED"


@dataclass(frozen=True)
class TransactionCompleted:
    transaction_id: Optional[str]
    amount: Any = None
    currency: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransactionCompleted":
        return cls(data.get("transactionId"), data.get("amount"), data.get("currency"))


@dataclass(frozen=True)
class TransactionFailed:
    transaction_id: Optional[str]
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransactionFailed":
        return cls(data.get("transactionId"), data.get("failureReason"), data.get("failureCode"))


@dataclass(frozen=True)
class TransactionReversed:
    transaction_id: Optional[str]
    amount: Any = None
    reversal_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransactionReversed":
        return cls(data.get("transactionId"), data.get("amount"), data.get("reversalReason"))


@dataclass(frozen=True)
class TransactionPending:
    transaction_id: Optional[str]
    pending_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransactionPending":
        return cls(data.get("transactionId"), data.get("pendingReason"))


@dataclass(frozen=True)
class AuthorizationApproved:
    authorization_id: Optional[str]
    authorized_amount: Any = None
    approval_code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorizationApproved":
        return cls(data.get("authorizationId"), data.get("authorizedAmount"), data.get("approvalCode"))


@dataclass(frozen=True)
class AuthorizationDeclined:
    authorization_id: Optional[str]
    decline_reason: Optional[str] = None
    decline_code: Optional[str] = None
    attempted_amount: Any = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorizationDeclined":
        return cls(
            data.get("authorizationId"),
            data.get("declineReason"),
            data.get("declineCode"),
            data.get("attemptedAmount"),
        )


EVENT_DATA_TYPES = {
    EventType.TRANSACTION_COMPLETED: TransactionCompleted,
    EventType.TRANSACTION_FAILED: TransactionFailed,
    EventType.TRANSACTION_REVERSED: TransactionReversed,
    EventType.TRANSACTION_PENDING: TransactionPending,
    EventType.AUTHORIZATION_APPROVED: AuthorizationApproved,
    EventType.AUTHORIZATION_DECLINED: AuthorizationDeclined,
}


@dataclass(frozen=True)
class WebhookEvent:
    """
    A parsed callback body ``{"eventType": ..., "data": {...}}``.

    ``event_type`` is None for kinds this library does not know; ``data``
    then holds the raw dict instead of a typed payload.
    """

    event_type: Optional[EventType]
    raw_event_type: Optional[str]
    data: Any

    @classmethod
    def from_dict(cls, body: Mapping[str, Any]) -> "WebhookEvent":
        """
        Raises:
            ValueError: If ``data`` is present but not an object
        """
        raw_type = body.get("eventType")
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("Webhook event data must be an object")

        try:
            event_type = EventType(raw_type)
        except ValueError:
            return cls(None, raw_type, data)
        return cls(event_type, raw_type, EVENT_DATA_TYPES[event_type].from_dict(data))

    @property
    def is_known(self) -> bool:
        return self.event_type is not None


class RejectReason(Enum):
    """Internal reasons for rejecting a callback. Diagnostics only."""

    MISSING_HEADERS = "missing_headers"
    INVALID_TIMESTAMP = "invalid_timestamp"
    TIMESTAMP_OUT_OF_WINDOW = "timestamp_out_of_window"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED_PAYLOAD = "malformed_payload"


@dataclass(frozen=True)
class WebhookEnvelope:
    """Raw inbound callback: body as received plus the two auth headers."""

    payload: Payload
    signature: Optional[str]
    timestamp: Optional[str]

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        body: Payload,
        signature_header: str = SIGNATURE_HEADER,
        timestamp_header: str = TIMESTAMP_HEADER,
    ) -> "WebhookEnvelope":
        signature = None
        timestamp = None
        for name, value in (headers or {}).items():
            lowered = name.lower()
            if lowered == signature_header:
                signature = value
            elif lowered == timestamp_header:
                timestamp = value
        return cls(payload=body, signature=signature, timestamp=timestamp)


@dataclass(frozen=True)
class WebhookValidation:
    """Outcome of ``WebhookValidator.validate``: an event or a reject reason."""

    event: Optional[WebhookEvent] = None
    reason: Optional[RejectReason] = None

    @property
    def is_valid(self) -> bool:
        return self.event is not None


Handler = Callable[[Any], dict[str, Any]]


def handle_transaction_completed(data: TransactionCompleted) -> dict[str, Any]:
    logger.info(
        "Transaction completed: %s",
        {"transactionId": data.transaction_id, "amount": data.amount, "currency": data.currency},
    )
    return {
        "status": "processed",
        "message": "Transaction completed successfully",
        "transactionId": data.transaction_id,
    }


def handle_transaction_failed(data: TransactionFailed) -> dict[str, Any]:
    logger.error(
        "Transaction failed: %s",
        {"transactionId": data.transaction_id, "reason": data.failure_reason, "code": data.failure_code},
    )
    return {
        "status": "processed",
        "message": "Transaction failure recorded",
        "transactionId": data.transaction_id,
        "reason": data.failure_reason,
    }


def handle_transaction_reversed(data: TransactionReversed) -> dict[str, Any]:
    logger.warning(
        "Transaction reversed: %s",
        {"transactionId": data.transaction_id, "reason": data.reversal_reason, "amount": data.amount},
    )
    return {
        "status": "processed",
        "message": "Transaction reversal processed",
        "transactionId": data.transaction_id,
    }


def handle_transaction_pending(data: TransactionPending) -> dict[str, Any]:
    logger.info(
        "Transaction pending: %s",
        {"transactionId": data.transaction_id, "reason": data.pending_reason},
    )
    return {
        "status": "processed",
        "message": "Transaction marked as pending",
        "transactionId": data.transaction_id,
    }


def handle_authorization_approved(data: AuthorizationApproved) -> dict[str, Any]:
    logger.info(
        "Authorization approved: %s",
        {
            "authorizationId": data.authorization_id,
            "amount": data.authorized_amount,
            "approvalCode": data.approval_code,
        },
    )
    return {
        "status": "processed",
        "message": "Authorization approved",
        "authorizationId": data.authorization_id,
    }


def handle_authorization_declined(data: AuthorizationDeclined) -> dict[str, Any]:
    logger.warning(
        "Authorization declined: %s",
        {
            "authorizationId": data.authorization_id,
            "reason": data.decline_reason,
            "code": data.decline_code,
            "attemptedAmount": data.attempted_amount,
        },
    )
    return {
        "status": "processed",
        "message": "Authorization decline recorded",
        "authorizationId": data.authorization_id,
        "reason": data.decline_reason,
    }


DEFAULT_HANDLERS: dict[EventType, Handler] = {
    EventType.TRANSACTION_COMPLETED: handle_transaction_completed,
    EventType.TRANSACTION_FAILED: handle_transaction_failed,
    EventType.TRANSACTION_REVERSED: handle_transaction_reversed,
    EventType.TRANSACTION_PENDING: handle_transaction_pending,
    EventType.AUTHORIZATION_APPROVED: handle_authorization_approved,
    EventType.AUTHORIZATION_DECLINED: handle_authorization_declined,
}


class WebhookDispatcher:
    """
    Routes validated events to one handler per event type.

    Handlers passed in override the defaults for their event types; every
    known event type always has a handler. Unknown types are ignored.
    """

    def __init__(self, handlers: Optional[Mapping[EventType, Handler]] = None):
        self._handlers = dict(DEFAULT_HANDLERS)
        if handlers:
            for event_type, handler in handlers.items():
                self._handlers[EventType(event_type)] = handler

        missing = set(EventType) - set(self._handlers)
        if missing:
            raise ConfigurationError(f"No handler for event types: {sorted(t.value for t in missing)}")

    def dispatch(self, event: WebhookEvent) -> dict[str, Any]:
        if not event.is_known:
            logger.warning("Unknown webhook event type: %s", event.raw_event_type)
            return {"status": "ignored", "message": "Unknown event type", "eventType": event.raw_event_type}

        result = self._handlers[event.event_type](event.data)
        logger.info("Webhook event processed: %s", event.event_type.value)
        return result


class WebhookValidator:
    """
    Validates inbound callbacks against the shared secret.

    Usage:
        validator = WebhookValidator(shared_secret="...")

        validation = validator.validate(WebhookEnvelope.from_headers(headers, raw_body))
        if validation.is_valid:
            result = validator.dispatch(validation.event)
    """

    def __init__(
        self,
        shared_secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        dispatcher: Optional[WebhookDispatcher] = None,
    ):
        if not shared_secret:
            raise ConfigurationError("WEBHOOK_SECRET is not configured")
        if len(shared_secret) < MIN_RECOMMENDED_SECRET_LENGTH:
            logger.warning(
                "Webhook secret is shorter than %d characters", MIN_RECOMMENDED_SECRET_LENGTH
            )
        self._secret = shared_secret.encode("utf-8")
        self.tolerance_seconds = tolerance_seconds
        self.dispatcher = dispatcher or WebhookDispatcher()

    @classmethod
    def from_settings(
        cls, settings: Settings, dispatcher: Optional[WebhookDispatcher] = None
    ) -> "WebhookValidator":
        settings.require("webhook_secret")
        return cls(
            settings.webhook_secret.get_secret_value(),
            tolerance_seconds=settings.webhook_tolerance_seconds,
            dispatcher=dispatcher,
        )

    def __repr__(self) -> str:
        return f"WebhookValidator(tolerance_seconds={self.tolerance_seconds})"

    def _compute_signature(self, payload: Payload, timestamp: str) -> str:
        message = timestamp.encode("ascii") + b"." + serialize_payload(payload)
        digest = hmac.new(self._secret, message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def generate_signature(
        self, payload: Payload, timestamp: Optional[Union[int, str]] = None
    ) -> tuple[str, str]:
        """
        Sign a payload the way the counterparty does. Used by tests and simulators.

        Returns:
            Tuple of (signature, timestamp)
        """
        ts = str(int(time.time())) if timestamp is None else str(timestamp)
        return self._compute_signature(payload, ts), ts

    def _check(
        self,
        payload: Payload,
        signature: Optional[str],
        timestamp: Optional[Union[int, str]],
        now: Optional[float],
    ) -> Optional[RejectReason]:
        if not signature or timestamp is None or timestamp == "":
            return RejectReason.MISSING_HEADERS

        # Signed as received, so surrounding whitespace is an invalid timestamp
        timestamp = str(timestamp)
        if not _TIMESTAMP_PATTERN.fullmatch(timestamp):
            return RejectReason.INVALID_TIMESTAMP

        current = int(time.time()) if now is None else int(now)
        skew = abs(current - int(timestamp))
        if skew > self.tolerance_seconds:
            logger.warning(
                "Webhook timestamp outside window: %d seconds (max: %d)", skew, self.tolerance_seconds
            )
            return RejectReason.TIMESTAMP_OUT_OF_WINDOW

        expected = self._compute_signature(payload, timestamp)
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            return RejectReason.INVALID_SIGNATURE
        return None

    def validate_signature(
        self,
        payload: Payload,
        signature: Optional[str],
        timestamp: Optional[Union[int, str]],
        now: Optional[float] = None,
    ) -> bool:
        """True if the signature is valid for the payload and the timestamp is fresh."""
        reason = self._check(payload, signature, timestamp, now)
        if reason is not None:
            logger.warning("Webhook signature rejected: %s", reason.value)
            return False
        return True

    def validate(self, envelope: WebhookEnvelope, now: Optional[float] = None) -> WebhookValidation:
        """
        Check an envelope and parse its event.

        Returns:
            WebhookValidation carrying the event, or the reason it was rejected
        """
        reason = self._check(envelope.payload, envelope.signature, envelope.timestamp, now)
        if reason is not None:
            logger.warning("Webhook rejected: %s", reason.value)
            return WebhookValidation(reason=reason)

        try:
            if isinstance(envelope.payload, (str, bytes)):
                body = json.loads(envelope.payload)
            else:
                body = envelope.payload
            if not isinstance(body, Mapping):
                raise ValueError("Webhook body must be a JSON object")
            event = WebhookEvent.from_dict(body)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("Webhook rejected: %s (%s)", RejectReason.MALFORMED_PAYLOAD.value, e)
            return WebhookValidation(reason=RejectReason.MALFORMED_PAYLOAD)

        logger.info("Webhook signature validated for event %s", event.raw_event_type)
        return WebhookValidation(event=event)

    def dispatch(self, event: WebhookEvent) -> dict[str, Any]:
        return self.dispatcher.dispatch(event)


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any]


def handle_webhook_request(
    validator: WebhookValidator,
    headers: Mapping[str, str],
    body: Payload,
    now: Optional[float] = None,
) -> WebhookResponse:
    """
    Framework-agnostic HTTP boundary for webhook callbacks.

    Returns 200 with the handler result, 401 for any validation failure
    (always the same message) and 500 for unexpected errors.
    """
    try:
        validation = validator.validate(WebhookEnvelope.from_headers(headers, body), now=now)
        if not validation.is_valid:
            return WebhookResponse(401, {"error": REJECTION_MESSAGE})

        result = validator.dispatch(validation.event)
        logger.info("Webhook processed successfully: %s", mask_sensitive_data(result))
        return WebhookResponse(200, {"received": True, "result": result})
    except Exception:
        logger.exception("Unexpected error while processing webhook")
        return WebhookResponse(500, {"error": "Internal server error"})


def handle_api_gateway_event(event: dict[str, Any], validator: WebhookValidator) -> dict[str, Any]:
    """
    Validate and dispatch a webhook delivered as an AWS API Gateway event.

    Args:
        event: API Gateway event with headers and body
        validator: Configured WebhookValidator

    Returns:
        Dict with statusCode, headers and a JSON body
    """
    body = event.get("body", "") or ""
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body)

    response = handle_webhook_request(validator, event.get("headers", {}) or {}, body)
    return {
        "statusCode": response.status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(response.body),
    }
