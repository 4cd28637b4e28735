"""Order status transitions."""

from typing import Optional

from .exceptions import InvalidOrderTransitionException, OrderNotCancellableException
from .logger import logger
from .schemas import Order, OrderStatus, utcnow

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.FAILED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.FAILED}),
    OrderStatus.SHIPPED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


class OrderStateMachine:
    """Validates and applies order status changes."""

    def __init__(self, transitions: Optional[dict[OrderStatus, frozenset[OrderStatus]]] = None):
        self.transitions = transitions if transitions is not None else TRANSITIONS

    def can_transition(self, current: OrderStatus, target: OrderStatus) -> bool:
        """Check whether ``current -> target`` is in the transition table."""
        return target in self.transitions.get(current, frozenset())

    def transition(self, order: Order, target: OrderStatus) -> OrderStatus:
        """Move an order to ``target``.

        Args:
            order: The order to update in place.
            target: The requested status.

        Returns:
            OrderStatus: The status the order had before the change.

        Raises:
            InvalidOrderTransitionException: If the table forbids the change.
        """
        current = order.status
        if not self.can_transition(current, target):
            raise InvalidOrderTransitionException(order.order_id, current.value, target.value)
        order.status = target
        order.updated_at = utcnow()
        logger.info(f"Order transitioned | order_id={order.order_id} | {current.value} -> {target.value}")
        return current

    def ensure_cancellable(self, order: Order) -> None:
        """Raise when it is too late to cancel the order.

        Raises:
            OrderNotCancellableException: If the order is shipped, cancelled or failed.
        """
        if order.status.is_terminal:
            raise OrderNotCancellableException(order.order_id, order.status.value)

    def cancel(self, order: Order) -> OrderStatus:
        """Cancel an order after the cancellability guard.

        Returns:
            OrderStatus: The status the order had before cancellation.
        """
        self.ensure_cancellable(order)
        return self.transition(order, OrderStatus.CANCELLED)
