"""Inventory ledger tracking available and reserved quantities per SKU."""

import threading
from typing import Optional

from .exceptions import (
    InsufficientStockException,
    LockNotHeldError,
    ReservationStateError,
    UnknownSkuException,
)
from .locks import LockCoordinator
from .logger import logger
from .schemas import Reservation, ReservationState, StockLevel


class InventoryLedger:
    """Per-SKU stock book.

    ``reserve``, ``release`` and ``commit`` require the caller to hold the SKU
    lock from the shared :class:`LockCoordinator`; the ledger checks this but
    never takes SKU locks on the caller's behalf.
    """

    def __init__(self, locks: LockCoordinator):
        self.locks = locks
        self._stock: dict[str, StockLevel] = {}
        self._reservations: dict[str, Reservation] = {}
        self._registry_lock = threading.Lock()

    def _require_lock(self, sku: str) -> None:
        if not self.locks.is_held(sku):
            raise LockNotHeldError(sku)

    def _record(self, sku: str) -> StockLevel:
        with self._registry_lock:
            record = self._stock.get(sku)
        if record is None:
            raise UnknownSkuException(sku)
        return record

    def add_stock(self, sku: str, quantity: int, timeout: Optional[float] = None) -> StockLevel:
        """Add units to a SKU, creating it when unknown.

        Args:
            sku: SKU to restock.
            quantity: Units to add, zero registers the SKU without stock.
            timeout: Lock wait, defaults to the coordinator's.

        Returns:
            StockLevel: Copy of the record after the restock.

        Raises:
            ValueError: If ``quantity`` is negative.
            LockAcquisitionException: If the SKU lock is not available in time.
        """
        if quantity < 0:
            raise ValueError("Restock quantity must not be negative")
        with self._registry_lock:
            self._stock.setdefault(sku, StockLevel(sku=sku))
        with self.locks.hold([sku], timeout):
            record = self._stock[sku]
            record.available += quantity
            logger.info(f"Restocked {sku} | added={quantity} | available={record.available}")
            return record.model_copy()

    def get(self, sku: str) -> StockLevel:
        """Return a copy of the stock record of a SKU.

        Raises:
            UnknownSkuException: If the SKU has never been stocked.
        """
        return self._record(sku).model_copy()

    def snapshot(self) -> list[StockLevel]:
        """Return copies of every stock record, sorted by SKU."""
        with self._registry_lock:
            records = [self._stock[sku] for sku in sorted(self._stock)]
        return [record.model_copy() for record in records]

    def reserve(self, sku: str, quantity: int, order_id: Optional[str] = None) -> Reservation:
        """Move ``quantity`` units from available to reserved.

        Args:
            sku: SKU to reserve from; its lock must be held by the caller.
            quantity: Units to reserve, at least 1.
            order_id: Order the reservation belongs to.

        Returns:
            Reservation: Token to pass to :meth:`release` or :meth:`commit`.

        Raises:
            LockNotHeldError: If the caller does not hold the SKU lock.
            UnknownSkuException: If the SKU has never been stocked.
            InsufficientStockException: If fewer than ``quantity`` units are available.
        """
        self._require_lock(sku)
        if quantity < 1:
            raise ValueError("Reservation quantity must be positive")
        record = self._record(sku)
        if record.available < quantity:
            raise InsufficientStockException(sku, quantity, record.available)
        record.available -= quantity
        record.reserved += quantity
        reservation = Reservation(order_id=order_id, sku=sku, quantity=quantity)
        with self._registry_lock:
            self._reservations[reservation.reservation_id] = reservation
        logger.info(
            f"Reserved {quantity}x {sku} | order_id={order_id} | "
            f"available={record.available} | reserved={record.reserved}"
        )
        return reservation

    def _close(self, reservation: Reservation, state: ReservationState) -> StockLevel:
        self._require_lock(reservation.sku)
        with self._registry_lock:
            held = self._reservations.pop(reservation.reservation_id, None)
            if held is None:
                action = "release" if state is ReservationState.RELEASED else "commit"
                current = reservation.state.value if reservation.state is not ReservationState.HELD else "unknown"
                raise ReservationStateError(reservation.reservation_id, current, action)
        held.state = state
        reservation.state = state
        record = self._record(reservation.sku)
        record.reserved -= held.quantity
        return record

    def release(self, reservation: Reservation) -> None:
        """Return a reservation's units to available stock.

        Raises:
            LockNotHeldError: If the caller does not hold the SKU lock.
            ReservationStateError: If the reservation was already released or committed.
        """
        record = self._close(reservation, ReservationState.RELEASED)
        record.available += reservation.quantity
        logger.info(
            f"Released {reservation.quantity}x {reservation.sku} | order_id={reservation.order_id} | "
            f"available={record.available}"
        )

    def commit(self, reservation: Reservation) -> None:
        """Permanently remove a reservation's units from stock.

        Raises:
            LockNotHeldError: If the caller does not hold the SKU lock.
            ReservationStateError: If the reservation was already released or committed.
        """
        record = self._close(reservation, ReservationState.COMMITTED)
        logger.info(
            f"Committed {reservation.quantity}x {reservation.sku} | order_id={reservation.order_id} | "
            f"remaining_total={record.total}"
        )
