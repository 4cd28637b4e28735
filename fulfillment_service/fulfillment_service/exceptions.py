"""Error vocabulary of the fulfillment core.

Domain errors carry an explicit ``ErrorKind`` so the HTTP boundary can map
them to a status and error code through a single table. Programming errors
(broken reservation or lock lifecycles) do not derive from
``FulfillmentError`` and surface as internal errors.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of expected, caller-recoverable failures."""

    INSUFFICIENT_STOCK = "insufficient_stock"
    LOCK_CONFLICT = "lock_conflict"
    ORDER_NOT_FOUND = "order_not_found"
    UNKNOWN_SKU = "unknown_sku"
    ORDER_NOT_CANCELLABLE = "order_not_cancellable"
    INVALID_TRANSITION = "invalid_transition"


class FulfillmentError(Exception):
    """Base class for domain errors raised by the fulfillment core."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InsufficientStockException(FulfillmentError):
    """Requested quantity exceeds what is available for a SKU."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, sku: str, requested: int, available: int):
        super().__init__(f"Insufficient stock for SKU {sku} (requested={requested}, available={available})")
        self.sku = sku
        self.requested = requested
        self.available = available


class LockAcquisitionException(FulfillmentError):
    """A SKU lock could not be acquired within the timeout."""

    kind = ErrorKind.LOCK_CONFLICT

    def __init__(self, sku: str, timeout: float):
        super().__init__(f"Could not acquire lock for SKU {sku} within {timeout:g}s")
        self.sku = sku
        self.timeout = timeout


class OrderNotFoundException(FulfillmentError):
    """The order does not exist or is not visible to the caller."""

    kind = ErrorKind.ORDER_NOT_FOUND

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class UnknownSkuException(FulfillmentError):
    """The SKU has never been stocked."""

    kind = ErrorKind.UNKNOWN_SKU

    def __init__(self, sku: str):
        super().__init__(f"Unknown SKU {sku}")
        self.sku = sku


class InvalidOrderTransitionException(FulfillmentError):
    """The requested status change is not in the transition table."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, order_id: str, current: str, target: str):
        super().__init__(f"Order {order_id} cannot transition from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target


class OrderNotCancellableException(FulfillmentError):
    """The order is past the point where it can be cancelled."""

    kind = ErrorKind.ORDER_NOT_CANCELLABLE

    def __init__(self, order_id: str, status: str):
        super().__init__(f"Order {order_id} cannot be cancelled in status {status}")
        self.order_id = order_id
        self.status = status


class LockNotHeldError(RuntimeError):
    """A ledger mutation was attempted without holding the SKU lock."""

    def __init__(self, sku: str):
        super().__init__(f"Lock for SKU {sku} is not held by the calling thread")
        self.sku = sku


class ReservationStateError(RuntimeError):
    """A reservation was released or committed more than once."""

    def __init__(self, reservation_id: str, state: str, action: Optional[str] = None):
        verb = action or "use"
        super().__init__(f"Cannot {verb} reservation {reservation_id}: already {state}")
        self.reservation_id = reservation_id
        self.state = state
