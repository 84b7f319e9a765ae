"""
Commands accepted by the order state machine.

Update commands whitelist the fields a caller may change. Unknown fields
are rejected instead of being silently dropped.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError


class OrderItemRequest(BaseModel):
    """One requested line. Price and tax come from the catalog, never from the caller."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    product_id: str = Field(..., min_length=1)
    variant_id: str | None = None
    quantity: int = Field(..., gt=0)
    discount_cents: int = Field(default=0, ge=0)


class OrderUpdateCommand(BaseModel):
    """Fields staff may edit on an existing order."""

    model_config = ConfigDict(extra="forbid")

    shipping_address: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    note: str | None = Field(default=None, max_length=2000)

    @field_validator("note")
    @classmethod
    def strip_note(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def require_change(self) -> OrderUpdateCommand:
        if self.shipping_address is None and self.metadata is None and self.note is None:
            raise ValueError("update must change at least one field")
        return self


def _validation_errors(exc: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]


def parse_order_update(data: dict[str, Any]) -> OrderUpdateCommand:
    """Build an update command from raw input, raising the engine's ValidationError."""
    try:
        return OrderUpdateCommand.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid order update", errors=_validation_errors(exc)) from exc


def parse_order_items(items: list[OrderItemRequest | dict[str, Any]]) -> list[OrderItemRequest]:
    parsed = []
    for position, item in enumerate(items):
        if isinstance(item, OrderItemRequest):
            parsed.append(item)
            continue
        try:
            parsed.append(OrderItemRequest.model_validate(item))
        except PydanticValidationError as exc:
            raise ValidationError(
                f"Invalid order item at position {position}",
                errors=_validation_errors(exc),
            ) from exc
    return parsed
