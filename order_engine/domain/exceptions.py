"""
Typed errors raised by the order engine.

Every error carries:
- Error code (for client handling)
- HTTP status (for the API boundary)
- Retryable flag (whether the caller, or the provider redelivering a
  webhook, should try again)

Errors raised inside the state machine and the reconciliation engine
propagate unchanged to the API layer, which renders ``to_dict()``.
"""
from typing import Any, Dict, Optional


class OrderEngineError(Exception):
    """Base exception for all order engine errors."""

    error_code = "order_engine_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "type": self.__class__.__name__,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ValidationError(OrderEngineError):
    """Malformed or inconsistent input. Never retried internally."""

    error_code = "validation_error"
    http_status = 422


class NotFoundError(OrderEngineError):
    """A referenced entity does not exist."""

    error_code = "not_found"
    http_status = 404

    def __init__(self, entity: str, identifier: str, **details: Any):
        super().__init__(f"{entity} not found: {identifier}", entity=entity, id=identifier, **details)
        self.entity = entity
        self.identifier = identifier


class InvalidTransitionError(OrderEngineError):
    """A state machine precondition was violated."""

    error_code = "invalid_transition"
    http_status = 409

    def __init__(
        self,
        from_status: str,
        to_status: str,
        message: Optional[str] = None,
        **details: Any,
    ):
        super().__init__(
            message or f"Cannot transition from {from_status} to {to_status}",
            from_status=from_status,
            to_status=to_status,
            **details,
        )
        self.from_status = from_status
        self.to_status = to_status


class ConflictError(OrderEngineError):
    """
    A concurrent mutation won the race, or a lock could not be acquired in time.

    Callers should refetch and retry.
    """

    error_code = "conflict"
    http_status = 409


class SignatureInvalidError(OrderEngineError):
    """A webhook could not be authenticated. Rejected without processing."""

    error_code = "signature_invalid"
    http_status = 400


class GatewayError(OrderEngineError):
    """The upstream payment processor failed."""

    error_code = "gateway_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        error_type: str = "transient",
        retryable: bool = True,
        original_error: Optional[Exception] = None,
        **details: Any,
    ):
        super().__init__(message, error_type=error_type, **details)
        self.error_type = error_type
        self.retryable = retryable
        self.original_error = original_error


class RetryableError(OrderEngineError):
    """A transient persistence failure. The provider should redeliver."""

    error_code = "temporarily_unavailable"
    http_status = 503
    retryable = True
