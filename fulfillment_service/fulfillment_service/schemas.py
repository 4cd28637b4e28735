"""Pydantic models for orders, stock levels, reservations and events."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    """Return the current timezone-aware UTC time."""
    return datetime.now(timezone.utc)


def normalize_sku(v: str) -> str:
    """Validate and normalize a SKU.

    Args:
        v (str): SKU value to validate.

    Returns:
        str: Uppercase normalized SKU.

    Raises:
        ValueError: If SKU contains invalid characters.
    """
    v = v.strip()
    if not v or not v.replace("-", "").isalnum():
        raise ValueError("SKU must be alphanumeric with optional hyphens")
    return v.upper()


class OrderStatus(str, Enum):
    """Lifecycle states of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.FAILED)


class ReservationState(str, Enum):
    """Lifecycle states of an inventory reservation."""

    HELD = "held"
    RELEASED = "released"
    COMMITTED = "committed"


class OrderItem(BaseModel):
    """Represents an individual line of an order.

    Attributes:
        sku (str): Stock Keeping Unit identifier, alphanumeric with optional hyphens.
        quantity (int): Number of units ordered, between 1 and 1000.
    """

    sku: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(..., ge=1, le=1000)

    @field_validator("sku")
    def validate_sku(cls, v):
        """Normalize the SKU to uppercase."""
        return normalize_sku(v)

    model_config = ConfigDict(
        json_schema_extra={
            "properties": {
                "sku": {"example": "PROD-001"},
                "quantity": {"example": 2},
            }
        }
    )


class CreateOrderRequest(BaseModel):
    """Body of an order creation request."""

    items: list[OrderItem] = Field(..., min_length=1, description="At least one item required")

    @field_validator("items")
    def validate_unique_skus(cls, v):
        """Reject orders listing the same SKU on two lines."""
        seen = set()
        for item in v:
            if item.sku in seen:
                raise ValueError(f"SKU {item.sku} appears more than once")
            seen.add(item.sku)
        return v


class Order(BaseModel):
    """Represents an order owned by the order service.

    Attributes:
        order_id (str): Unique order identifier, auto-generated if not provided.
        user_id (str): Identifier of the owning user.
        items (list[OrderItem]): Ordered line items.
        status (OrderStatus): Current lifecycle state.
        created_at (datetime): When the order was created.
        updated_at (datetime): When the status last changed.
    """

    order_id: str = Field(default_factory=lambda: f"ord-{uuid.uuid4().hex[:8]}")
    user_id: str = Field(..., min_length=1)
    items: list[OrderItem] = Field(..., min_length=1)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def quantities(self) -> dict[str, int]:
        """Return the ordered quantity per SKU."""
        return {item.sku: item.quantity for item in self.items}


class StockLevel(BaseModel):
    """Per-SKU stock record.

    Attributes:
        sku (str): SKU identifier.
        available (int): Units that can still be reserved.
        reserved (int): Units held by open reservations.
    """

    sku: str
    available: int = Field(0, ge=0)
    reserved: int = Field(0, ge=0)

    @computed_field
    @property
    def total(self) -> int:
        return self.available + self.reserved


class RestockRequest(BaseModel):
    """Body of a restock request."""

    sku: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(..., ge=0)

    @field_validator("sku")
    def validate_sku(cls, v):
        """Normalize the SKU to uppercase."""
        return normalize_sku(v)


class Reservation(BaseModel):
    """A hold on SKU quantity on behalf of an order."""

    reservation_id: str = Field(default_factory=lambda: f"res-{uuid.uuid4().hex[:12]}")
    order_id: Optional[str] = None
    sku: str
    quantity: int = Field(..., ge=1)
    state: ReservationState = ReservationState.HELD
    created_at: datetime = Field(default_factory=utcnow)


class OrderStatusChanged(BaseModel):
    """Event emitted whenever an order changes status.

    ``old_status`` is None for the creation event.
    """

    order_id: str
    user_id: str
    old_status: Optional[OrderStatus] = None
    new_status: OrderStatus
    occurred_at: datetime = Field(default_factory=utcnow)


class ErrorResponse(BaseModel):
    """JSON body returned for every error response."""

    message: str
    error_code: str
    retry_after: Optional[int] = None


class ChannelAuthRequest(BaseModel):
    """Body of a broadcast channel authorization request."""

    channel_name: str = Field(..., min_length=1)
