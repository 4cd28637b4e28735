"""Order orchestration: stock reservation, status changes and notifications."""

import threading
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Union

from .channels import can_receive
from .exceptions import InvalidOrderTransitionException, OrderNotFoundException, ReservationStateError
from .inventory import InventoryLedger
from .logger import logger
from .notifications import InMemoryNotifier, NotificationPort
from .schemas import (
    CreateOrderRequest,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusChanged,
    Reservation,
    ReservationState,
)
from .state_machine import OrderStateMachine

ItemsInput = Union[Mapping[str, int], list[OrderItem], list[dict]]


def _coerce_items(items: ItemsInput) -> list[OrderItem]:
    if isinstance(items, Mapping):
        items = [{"sku": sku, "quantity": quantity} for sku, quantity in items.items()]
    return CreateOrderRequest(items=items).items


class OrderService:
    """Coordinates the ledger, the state machine and the notification port.

    Every order has its own lock serializing status changes; SKU locks are
    always taken after it, never before.
    """

    def __init__(
        self,
        ledger: InventoryLedger,
        state_machine: Optional[OrderStateMachine] = None,
        notifier: Optional[NotificationPort] = None,
        lock_timeout: Optional[float] = None,
    ):
        """Initialize the service.

        Args:
            ledger: Inventory ledger holding the stock.
            state_machine: Transition rules, defaults to the standard table.
            notifier: Port receiving status changes, defaults to an in-memory recorder.
            lock_timeout: SKU lock wait, defaults to the coordinator's.
        """
        self.ledger = ledger
        self.locks = ledger.locks
        self.state_machine = state_machine or OrderStateMachine()
        self.notifier = notifier if notifier is not None else InMemoryNotifier()
        self.lock_timeout = lock_timeout
        self._orders: dict[str, Order] = {}
        self._reservations: dict[str, list[Reservation]] = {}
        self._order_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _locked_order(self, order_id: str, user_id: Optional[str] = None) -> Iterator[Order]:
        with self._registry_lock:
            order_lock = self._order_locks.get(order_id)
        if order_lock is None:
            raise OrderNotFoundException(order_id)
        with order_lock:
            yield self._load(order_id, user_id)

    def _load(self, order_id: str, user_id: Optional[str]) -> Order:
        with self._registry_lock:
            order = self._orders.get(order_id)
        if order is None or (user_id is not None and not can_receive(user_id, order.user_id)):
            raise OrderNotFoundException(order_id)
        return order

    def _emit(self, order: Order, old_status: Optional[OrderStatus]) -> None:
        event = OrderStatusChanged(
            order_id=order.order_id,
            user_id=order.user_id,
            old_status=old_status,
            new_status=order.status,
        )
        try:
            self.notifier.publish(event)
        except Exception:
            logger.exception(f"Failed to publish status change for order {order.order_id}")

    def _require_transition(self, order: Order, target: OrderStatus) -> None:
        if not self.state_machine.can_transition(order.status, target):
            raise InvalidOrderTransitionException(order.order_id, order.status.value, target.value)

    def _settle(self, order: Order, action: Callable[[Reservation], None]) -> None:
        """Apply ``action`` to every held reservation of an order under its SKU locks."""
        held = [r for r in self._reservations.get(order.order_id, []) if r.state is ReservationState.HELD]
        if not held:
            return
        with self.locks.hold([r.sku for r in held], self.lock_timeout):
            for reservation in held:
                action(reservation)

    def create_order(self, user_id: str, items: ItemsInput) -> Order:
        """Reserve stock for every line and create a pending order.

        Reservation is all-or-nothing: the first line that cannot be served
        releases the reservations already made by this call.

        Args:
            user_id: Owner of the new order.
            items: Line items, as ``OrderItem`` objects, dicts, or a SKU to quantity mapping.

        Returns:
            Order: Copy of the created order.

        Raises:
            pydantic.ValidationError: If the items are empty, malformed or repeat a SKU.
            InsufficientStockException: If a line exceeds the available stock.
            UnknownSkuException: If a line references a SKU never stocked.
            LockAcquisitionException: If a SKU lock cannot be taken in time.
        """
        order = Order(user_id=user_id, items=_coerce_items(items))
        reservations: list[Reservation] = []
        with self.locks.hold(order.quantities(), self.lock_timeout):
            try:
                for item in order.items:
                    reservations.append(self.ledger.reserve(item.sku, item.quantity, order.order_id))
            except Exception:
                for reservation in reversed(reservations):
                    self.ledger.release(reservation)
                logger.warning(
                    f"Order creation aborted | user_id={user_id} | rolled_back={len(reservations)} reservation(s)"
                )
                raise
            with self._registry_lock:
                self._orders[order.order_id] = order
                self._reservations[order.order_id] = reservations
                self._order_locks[order.order_id] = threading.Lock()
        logger.info(f"Order created | order_id={order.order_id} | user_id={user_id} | lines={len(order.items)}")
        self._emit(order, None)
        return order.model_copy(deep=True)

    def cancel_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """Cancel an order and return its reserved stock.

        Args:
            order_id: Order to cancel.
            user_id: When given, only the owner may cancel.

        Raises:
            OrderNotFoundException: If the order is absent or not owned by ``user_id``.
            OrderNotCancellableException: If the order is shipped, cancelled or failed.
        """
        with self._locked_order(order_id, user_id) as order:
            self.state_machine.ensure_cancellable(order)
            self._require_transition(order, OrderStatus.CANCELLED)
            self._settle(order, self.ledger.release)
            old_status = self.state_machine.cancel(order)
            snapshot = order.model_copy(deep=True)
        self._emit(snapshot, old_status)
        return snapshot

    def confirm_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """Move a pending order to confirmed.

        Raises:
            OrderNotFoundException: If the order is absent or not owned by ``user_id``.
            InvalidOrderTransitionException: If the order is not pending.
        """
        with self._locked_order(order_id, user_id) as order:
            old_status = self.state_machine.transition(order, OrderStatus.CONFIRMED)
            snapshot = order.model_copy(deep=True)
        self._emit(snapshot, old_status)
        return snapshot

    def ship_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """Ship a confirmed order, permanently deducting its stock.

        Raises:
            OrderNotFoundException: If the order is absent or not owned by ``user_id``.
            InvalidOrderTransitionException: If the order is not confirmed.
            ReservationStateError: If a reservation cannot be committed. The order
                is moved to failed and its remaining reservations are released.
        """
        with self._locked_order(order_id, user_id) as order:
            self._require_transition(order, OrderStatus.SHIPPED)
            try:
                self._settle(order, self.ledger.commit)
            except ReservationStateError as exc:
                logger.opt(exception=exc).error(f"Shipment could not commit stock | order_id={order_id}")
                old_status, snapshot = self._fail_locked(order)
                failure = exc
            else:
                old_status = self.state_machine.transition(order, OrderStatus.SHIPPED)
                snapshot = order.model_copy(deep=True)
                failure = None
        self._emit(snapshot, old_status)
        if failure is not None:
            raise failure
        return snapshot

    def _fail_locked(self, order: Order) -> tuple[OrderStatus, Order]:
        self._settle(order, self.ledger.release)
        old_status = self.state_machine.transition(order, OrderStatus.FAILED)
        return old_status, order.model_copy(deep=True)

    def fail_order(self, order_id: str, reason: str = "") -> Order:
        """Mark an open order as failed and return its reserved stock.

        Shipment calls the same path when stock cannot be committed; this entry
        point lets operators fail an order for reasons outside the service.

        Raises:
            OrderNotFoundException: If the order is absent.
            InvalidOrderTransitionException: If the order is already shipped, cancelled or failed.
        """
        with self._locked_order(order_id) as order:
            self._require_transition(order, OrderStatus.FAILED)
            old_status, snapshot = self._fail_locked(order)
        logger.error(f"Order failed | order_id={order_id} | reason={reason or 'unspecified'}")
        self._emit(snapshot, old_status)
        return snapshot

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """Return a copy of an order.

        Raises:
            OrderNotFoundException: If the order is absent or not owned by ``user_id``.
        """
        with self._locked_order(order_id, user_id) as order:
            return order.model_copy(deep=True)

    def list_orders(self, user_id: str) -> list[Order]:
        """Return copies of a user's orders, oldest first."""
        with self._registry_lock:
            orders = [order for order in self._orders.values() if can_receive(user_id, order.user_id)]
        return [order.model_copy(deep=True) for order in sorted(orders, key=lambda o: o.created_at)]

    def reservations_for(self, order_id: str) -> list[Reservation]:
        """Return copies of the reservations made for an order."""
        with self._registry_lock:
            reservations = list(self._reservations.get(order_id, []))
        return [reservation.model_copy() for reservation in reservations]
