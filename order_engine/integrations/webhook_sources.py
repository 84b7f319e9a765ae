"""
Webhook sources.

Each inbound webhook endpoint is backed by a ``WebhookSource`` that knows
how to authenticate the raw body and how to turn it into a
``ProviderEvent``. Nothing in the payload is trusted before ``verify``
returns.

Variants:
- PaymentProviderSource: Stripe's signed-timestamp scheme
- ShippingCarrierSource, EmailProviderSource, CustomSource: hex HMAC-SHA256
  of the raw body in a source-specific header
"""
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, NoReturn, Optional

import stripe
import structlog

from order_engine.config import Settings
from order_engine.domain.events import ProviderEvent
from order_engine.domain.exceptions import SignatureInvalidError, ValidationError
from order_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _decode_json(payload: bytes, source: str) -> Dict[str, Any]:
    try:
        body = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Malformed {source} webhook payload", source=source) from e
    if not isinstance(body, dict):
        raise ValidationError(f"Malformed {source} webhook payload", source=source)
    return body


class WebhookSource(ABC):
    """An authenticated origin of webhook events."""

    name: str
    signature_header: str

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate the raw body and decode it.

        Raises:
            SignatureInvalidError: If the signature is missing, stale or wrong
            ValidationError: If an authentic body is not a JSON object
        """
        if not signature:
            self._reject("missing signature header")
        self._check_signature(payload, signature)
        return _decode_json(payload, self.name)

    def _reject(self, reason: str) -> NoReturn:
        metrics.record_signature_failure(self.name)
        logger.warning("webhook_signature_rejected", source=self.name, reason=reason)
        raise SignatureInvalidError(f"Invalid {self.name} webhook signature: {reason}", source=self.name)

    @abstractmethod
    def _check_signature(self, payload: bytes, signature: str) -> None:
        """Raise SignatureInvalidError unless ``signature`` authenticates ``payload``."""

    @abstractmethod
    def to_domain_event(self, body: Dict[str, Any]) -> ProviderEvent:
        """Normalise a verified body."""


class PaymentProviderSource(WebhookSource):
    """Stripe webhooks."""

    name = "stripe"
    signature_header = "Stripe-Signature"

    def __init__(self, secret: Optional[str], tolerance_seconds: int = 300):
        self._secret = secret
        self._tolerance = tolerance_seconds

    def _check_signature(self, payload: bytes, signature: str) -> None:
        if not self._secret:
            self._reject("webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self._secret, self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            self._reject(str(e))
        except UnicodeDecodeError:
            self._reject("payload is not valid UTF-8")

    def to_domain_event(self, body: Dict[str, Any]) -> ProviderEvent:
        try:
            event_id, event_type, obj = body["id"], body["type"], body["data"]["object"]
        except (KeyError, TypeError) as e:
            raise ValidationError("Stripe event is missing id, type or data.object") from e
        if not isinstance(obj, dict):
            raise ValidationError("Stripe event data.object must be an object")
        created = body.get("created")
        return ProviderEvent(
            id=str(event_id),
            type=str(event_type),
            source=self.name,
            data=obj,
            created=created if isinstance(created, int) else None,
        )


class HmacWebhookSource(WebhookSource):
    """Sources that sign the raw body with a shared HMAC-SHA256 secret."""

    signature_header = "X-Webhook-Signature"

    def __init__(self, secret: Optional[str]):
        self._secret = secret

    def sign(self, payload: bytes) -> str:
        if not self._secret:
            raise SignatureInvalidError(f"{self.name} webhook secret not configured")
        return hmac.new(self._secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def _check_signature(self, payload: bytes, signature: str) -> None:
        if not self._secret:
            self._reject("webhook secret not configured")
        expected = hmac.new(self._secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]
        if not hmac.compare_digest(expected, provided):
            self._reject("signature mismatch")

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        body = super().verify(payload, signature)
        # Carriers do not always send an event id; redeliveries of the same
        # body must still collapse onto one claim.
        body.setdefault("_digest", hashlib.sha256(payload).hexdigest())
        return body

    def to_domain_event(self, body: Dict[str, Any]) -> ProviderEvent:
        event_type = body.get("type") or body.get("event")
        if not event_type:
            raise ValidationError(f"{self.name} event has no type")
        data = body.get("data")
        if data is None:
            data = {k: v for k, v in body.items() if k not in ("id", "type", "event", "_digest")}
        if not isinstance(data, dict):
            raise ValidationError(f"{self.name} event data must be an object")
        created = body.get("created")
        return ProviderEvent(
            id=str(body.get("id") or body.get("event_id") or body["_digest"]),
            type=str(event_type),
            source=self.name,
            data=data,
            created=created if isinstance(created, int) else None,
        )


class ShippingCarrierSource(HmacWebhookSource):
    name = "shipping"
    signature_header = "X-Shipping-Signature"


class EmailProviderSource(HmacWebhookSource):
    name = "email"
    signature_header = "X-Email-Signature"


class CustomSource(HmacWebhookSource):
    """Any other integration, registered under its own name."""

    def __init__(self, name: str, secret: Optional[str]):
        super().__init__(secret)
        self.name = name


def build_sources(settings: Settings) -> Dict[str, WebhookSource]:
    """The webhook sources this deployment accepts, keyed by name."""
    sources: Dict[str, WebhookSource] = {
        "stripe": PaymentProviderSource(
            settings.stripe_webhook_secret, settings.webhook_tolerance_seconds
        ),
        "shipping": ShippingCarrierSource(settings.shipping_webhook_secret),
        "email": EmailProviderSource(settings.email_webhook_secret),
        "custom": CustomSource("custom", settings.custom_webhook_secret),
    }
    return sources
