"""
Stripe implementation of the payment gateway.

Implements:
- Bounded per-call timeout (the SDK is synchronous and runs in a worker thread)
- Exponential backoff for transient errors
- Circuit breaker pattern
- Idempotency keys on every mutating call
"""
import asyncio
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from order_engine.config import Settings
from order_engine.config.settings import GATEWAY_RETRY_MAX_WAIT_SECONDS
from order_engine.domain.exceptions import GatewayError
from order_engine.monitoring.metrics import metrics

from .gateway import (
    GatewayIntent,
    GatewayRefund,
    PaymentGateway,
    payment_status_from_gateway,
    refund_status_from_gateway,
)

logger = structlog.get_logger(__name__)

# Stripe only accepts these values for Refund.reason; anything else goes in metadata.
STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def before_call(self) -> None:
        """
        Raise if the circuit is open and the recovery window has not passed.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self._set_state("half_open")
            self.success_count = 0
            logger.info("circuit_breaker_half_open")
            return
        metrics.record_gateway_error("circuit_open")
        raise GatewayError("Circuit breaker is open", error_type="circuit_open")

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def classify_error(error: stripe.StripeError) -> StripeErrorType:
    """Classify a Stripe error for retry logic."""
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
        return StripeErrorType.TRANSIENT
    if isinstance(
        error,
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.AuthenticationError,
            stripe.PermissionError,
            stripe.IdempotencyError,
        ),
    ):
        return StripeErrorType.PERMANENT
    # Unknown errors are treated as transient
    return StripeErrorType.TRANSIENT


def _is_retryable(error: BaseException) -> bool:
    return (
        isinstance(error, GatewayError)
        and error.retryable
        and error.error_type != "circuit_open"
    )


def _intent_from_stripe(intent: Any) -> GatewayIntent:
    last_error = intent.get("last_payment_error") or None
    failure_reason = last_error.get("message") if last_error else None
    latest_charge = intent.get("latest_charge")
    refunded = 0
    if isinstance(latest_charge, dict):
        refunded = int(latest_charge.get("amount_refunded") or 0)
    return GatewayIntent(
        id=intent["id"],
        amount_cents=int(intent["amount"]),
        currency=str(intent["currency"]).lower(),
        status=payment_status_from_gateway(intent["status"], has_error=last_error is not None),
        raw_status=intent["status"],
        client_secret=intent.get("client_secret"),
        failure_reason=failure_reason,
        amount_refunded_cents=refunded,
        metadata=dict(intent.get("metadata") or {}),
    )


def _refund_from_stripe(refund: Any) -> GatewayRefund:
    return GatewayRefund(
        id=refund["id"],
        payment_intent_id=refund.get("payment_intent") or "",
        amount_cents=int(refund["amount"]),
        status=refund_status_from_gateway(refund.get("status")),
        metadata=dict(refund.get("metadata") or {}),
    )


class StripeGateway(PaymentGateway):
    """
    Stripe PaymentIntents behind the gateway interface.

    The API key and version are passed per request rather than set on the
    ``stripe`` module, so several gateways can coexist in one process.
    """

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self._api_key = settings.stripe_secret_key
        self._api_version = settings.stripe_api_version
        self.timeout_seconds = settings.gateway_timeout_seconds
        self.max_attempts = settings.gateway_retry_max_attempts
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_recovery_seconds,
        )

        logger.info(
            "stripe_gateway_initialized",
            api_version=self._api_version,
            test_mode=settings.is_test_mode,
        )

    async def _call_once(self, operation: str, func: Callable[..., Any], *args: Any, **params: Any) -> Any:
        self.circuit_breaker.before_call()
        params.update(api_key=self._api_key, stripe_version=self._api_version)
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, *args, **params), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self.circuit_breaker.on_failure()
            metrics.record_gateway_error("timeout")
            metrics.record_gateway_call(operation, "timeout", time.perf_counter() - start)
            logger.error("stripe_api_timeout", operation=operation, timeout=self.timeout_seconds)
            raise GatewayError(
                f"Stripe {operation} timed out after {self.timeout_seconds}s",
                error_type="timeout",
                operation=operation,
            ) from e
        except stripe.StripeError as e:
            error_type = classify_error(e)
            if error_type != StripeErrorType.PERMANENT:
                self.circuit_breaker.on_failure()
            metrics.record_gateway_error(error_type.value)
            metrics.record_gateway_call(operation, "error", time.perf_counter() - start)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise GatewayError(
                getattr(e, "user_message", None) or str(e),
                error_type=error_type.value,
                retryable=error_type != StripeErrorType.PERMANENT,
                original_error=e,
                operation=operation,
                code=getattr(e, "code", None),
            ) from e

        self.circuit_breaker.on_success()
        metrics.record_gateway_call(operation, "success", time.perf_counter() - start)
        return result

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **params: Any) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=GATEWAY_RETRY_MAX_WAIT_SECONDS),
            reraise=True,
        ):
            with attempt:
                result = await self._call_once(operation, func, *args, **dict(params))
        return result

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        order_id: str,
        customer_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        The order id always travels in metadata so webhooks can be matched
        back to the order even before the intent is stored locally.
        """
        logger.info(
            "creating_payment_intent",
            order_id=order_id,
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
        )
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": {**(metadata or {}), "order_id": order_id},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_ref:
            params["customer"] = customer_ref
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = await self._call("create_intent", stripe.PaymentIntent.create, **params)
        logger.info("payment_intent_created", payment_intent_id=intent["id"], status=intent["status"])
        return _intent_from_stripe(intent)

    async def confirm_intent(
        self, intent_id: str, method_ref: Optional[str] = None
    ) -> GatewayIntent:
        logger.info("confirming_payment_intent", payment_intent_id=intent_id)
        params: Dict[str, Any] = {}
        if method_ref:
            params["payment_method"] = method_ref
        intent = await self._call("confirm_intent", stripe.PaymentIntent.confirm, intent_id, **params)
        logger.info("payment_intent_confirmed", payment_intent_id=intent_id, status=intent["status"])
        return _intent_from_stripe(intent)

    async def cancel_intent(self, intent_id: str) -> GatewayIntent:
        logger.info("cancelling_payment_intent", payment_intent_id=intent_id)
        intent = await self._call("cancel_intent", stripe.PaymentIntent.cancel, intent_id)
        return _intent_from_stripe(intent)

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self._call(
            "retrieve_intent", stripe.PaymentIntent.retrieve, intent_id, expand=["latest_charge"]
        )
        return _intent_from_stripe(intent)

    async def refund(
        self,
        intent_id: str,
        amount_cents: Optional[int],
        reason: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayRefund:
        logger.info("creating_refund", payment_intent_id=intent_id, amount_cents=amount_cents)
        params: Dict[str, Any] = {
            "payment_intent": intent_id,
            "metadata": {**(metadata or {}), "reason": reason},
        }
        if amount_cents:
            params["amount"] = amount_cents
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        refund = await self._call("refund", stripe.Refund.create, **params)
        logger.info("refund_created", refund_id=refund["id"], status=refund.get("status"))
        return _refund_from_stripe(refund)
