"""Tests for the order service orchestration."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from pydantic import ValidationError

from fulfillment_service.exceptions import (
    InsufficientStockException,
    InvalidOrderTransitionException,
    LockAcquisitionException,
    OrderNotCancellableException,
    OrderNotFoundException,
    ReservationStateError,
    UnknownSkuException,
)
from fulfillment_service.inventory import InventoryLedger
from fulfillment_service.locks import LockCoordinator
from fulfillment_service.schemas import OrderItem, OrderStatus, ReservationState
from fulfillment_service.service import OrderService


def test_create_order_reserves_stock(service, ledger, notifier):
    order = service.create_order("42", [OrderItem(sku="A", quantity=2), OrderItem(sku="B", quantity=1)])

    assert order.status is OrderStatus.PENDING
    assert order.user_id == "42"
    assert ledger.get("A").available == 3
    assert ledger.get("B").available == 1
    assert [r.state for r in service.reservations_for(order.order_id)] == [ReservationState.HELD] * 2

    events = notifier.events_for(order.order_id)
    assert len(events) == 1
    assert events[0].old_status is None
    assert events[0].new_status is OrderStatus.PENDING


def test_create_order_accepts_mapping_and_dicts(service):
    first = service.create_order("42", {"a": 1})
    second = service.create_order("42", [{"sku": "c", "quantity": 2}])
    assert first.items[0].sku == "A"
    assert second.items[0].sku == "C"


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"sku": "A", "quantity": 0}],
        [{"sku": "A", "quantity": 1}, {"sku": "a", "quantity": 2}],
        [{"sku": "bad sku!", "quantity": 1}],
    ],
)
def test_create_order_rejects_invalid_items(service, ledger, items):
    with pytest.raises(ValidationError):
        service.create_order("42", items)
    assert ledger.get("A").available == 5


def test_sequential_scenario(service, ledger):
    """A=5: take 3, fail to take 3 more, cancel the first, back to 5."""
    first = service.create_order("1", {"A": 3})
    assert ledger.get("A").available == 2

    with pytest.raises(InsufficientStockException):
        service.create_order("2", {"A": 3})
    assert ledger.get("A").available == 2
    assert service.list_orders("2") == []

    service.cancel_order(first.order_id)
    assert ledger.get("A").available == 5
    assert ledger.get("A").reserved == 0


def test_create_order_is_all_or_nothing(service, ledger):
    """A later insufficient line rolls back the earlier reservations."""
    with pytest.raises(InsufficientStockException) as exc_info:
        service.create_order("42", [OrderItem(sku="A", quantity=2), OrderItem(sku="B", quantity=3)])

    assert exc_info.value.sku == "B"
    assert ledger.get("A").available == 5
    assert ledger.get("A").reserved == 0
    assert ledger.get("B").available == 2


def test_create_order_unknown_sku_rolls_back(service, ledger):
    with pytest.raises(UnknownSkuException):
        service.create_order("42", {"A": 1, "MISSING": 1})
    assert ledger.get("A").available == 5


def test_create_order_lock_timeout_unwinds(ledger, notifier):
    """A lock held elsewhere aborts creation without leftovers."""
    service = OrderService(ledger, notifier=notifier, lock_timeout=0.05)
    taken, done = threading.Event(), threading.Event()

    def hold_b():
        handle = ledger.locks.acquire("B")
        taken.set()
        done.wait(2)
        ledger.locks.release(handle)

    thread = threading.Thread(target=hold_b)
    thread.start()
    taken.wait(2)
    try:
        with pytest.raises(LockAcquisitionException):
            service.create_order("42", {"A": 1, "B": 1})
    finally:
        done.set()
        thread.join()

    assert ledger.get("A").available == 5
    assert notifier.events == []
    assert service.create_order("42", {"A": 1, "B": 1}).status is OrderStatus.PENDING


def test_cancel_pending_order(service, ledger, notifier):
    order = service.create_order("42", {"A": 2, "C": 5})

    cancelled = service.cancel_order(order.order_id, user_id="42")

    assert cancelled.status is OrderStatus.CANCELLED
    assert ledger.get("A").available == 5
    assert ledger.get("C").available == 10
    assert all(r.state is ReservationState.RELEASED for r in service.reservations_for(order.order_id))
    last = notifier.events_for(order.order_id)[-1]
    assert (last.old_status, last.new_status) == (OrderStatus.PENDING, OrderStatus.CANCELLED)


def test_cancel_confirmed_order(service, ledger):
    order = service.create_order("42", {"A": 2})
    service.confirm_order(order.order_id)
    assert service.cancel_order(order.order_id).status is OrderStatus.CANCELLED
    assert ledger.get("A").available == 5


def test_cancel_twice_is_not_cancellable(service, ledger):
    order = service.create_order("42", {"A": 2})
    service.cancel_order(order.order_id)

    with pytest.raises(OrderNotCancellableException):
        service.cancel_order(order.order_id)
    assert ledger.get("A").available == 5


def test_cancel_shipped_order_fails(service, ledger):
    order = service.create_order("42", {"A": 2})
    service.confirm_order(order.order_id)
    service.ship_order(order.order_id)

    with pytest.raises(OrderNotCancellableException):
        service.cancel_order(order.order_id)
    assert service.get_order(order.order_id).status is OrderStatus.SHIPPED
    assert ledger.get("A").total == 3


def test_cancel_unknown_or_foreign_order(service):
    order = service.create_order("42", {"A": 1})
    with pytest.raises(OrderNotFoundException):
        service.cancel_order("ord-missing")
    with pytest.raises(OrderNotFoundException):
        service.cancel_order(order.order_id, user_id="7")
    assert service.get_order(order.order_id).status is OrderStatus.PENDING


def test_ship_commits_reservations(service, ledger, notifier):
    order = service.create_order("42", {"A": 3})
    service.confirm_order(order.order_id)

    shipped = service.ship_order(order.order_id)

    level = ledger.get("A")
    assert shipped.status is OrderStatus.SHIPPED
    assert (level.available, level.reserved, level.total) == (2, 0, 2)
    assert all(r.state is ReservationState.COMMITTED for r in service.reservations_for(order.order_id))
    statuses = [e.new_status for e in notifier.events_for(order.order_id)]
    assert statuses == [OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.SHIPPED]


def test_ship_pending_order_is_invalid(service, ledger):
    order = service.create_order("42", {"A": 3})
    with pytest.raises(InvalidOrderTransitionException):
        service.ship_order(order.order_id)
    assert ledger.get("A").reserved == 3


def test_shipped_to_confirmed_is_invalid(service):
    order = service.create_order("42", {"A": 1})
    service.confirm_order(order.order_id)
    service.ship_order(order.order_id)
    with pytest.raises(InvalidOrderTransitionException):
        service.confirm_order(order.order_id)


def test_fail_order_releases_stock(service, ledger):
    order = service.create_order("42", {"B": 2})
    failed = service.fail_order(order.order_id, reason="payment declined")

    assert failed.status is OrderStatus.FAILED
    assert ledger.get("B").available == 2
    with pytest.raises(InvalidOrderTransitionException):
        service.fail_order(order.order_id)
    with pytest.raises(OrderNotCancellableException):
        service.cancel_order(order.order_id)


def test_ship_that_cannot_commit_fails_the_order(service, ledger, notifier, mocker):
    """A commit error during shipment fails the order and returns its stock."""
    order = service.create_order("42", {"A": 2, "B": 1})
    service.confirm_order(order.order_id)
    mocker.patch.object(ledger, "commit", side_effect=ReservationStateError("res-x", "committed", "commit"))

    with pytest.raises(ReservationStateError):
        service.ship_order(order.order_id)

    assert service.get_order(order.order_id).status is OrderStatus.FAILED
    assert (ledger.get("A").available, ledger.get("A").reserved) == (5, 0)
    assert (ledger.get("B").available, ledger.get("B").reserved) == (2, 0)
    assert all(r.state is ReservationState.RELEASED for r in service.reservations_for(order.order_id))
    assert notifier.events_for(order.order_id)[-1].new_status is OrderStatus.FAILED


def test_get_order_waits_for_order_lock(service):
    """Reads see an order only between whole transitions."""
    order = service.create_order("42", {"A": 1})
    order_lock = service._order_locks[order.order_id]
    results = []

    order_lock.acquire()
    reader = threading.Thread(target=lambda: results.append(service.get_order(order.order_id)))
    reader.start()
    reader.join(0.2)
    assert reader.is_alive()
    assert results == []

    order_lock.release()
    reader.join(2)
    assert not reader.is_alive()
    assert results[0].order_id == order.order_id


def test_get_and_list_orders(service):
    first = service.create_order("42", {"A": 1})
    second = service.create_order("42", {"C": 1})
    service.create_order("7", {"C": 1})

    assert [o.order_id for o in service.list_orders("42")] == [first.order_id, second.order_id]
    assert service.get_order(first.order_id, user_id="42").order_id == first.order_id
    with pytest.raises(OrderNotFoundException):
        service.get_order(first.order_id, user_id="7")


def test_returned_orders_are_copies(service):
    order = service.create_order("42", {"A": 1})
    order.status = OrderStatus.SHIPPED
    assert service.get_order(order.order_id).status is OrderStatus.PENDING


def test_notifier_failure_does_not_undo_transition(ledger, mocker):
    notifier = mocker.Mock()
    notifier.publish.side_effect = RuntimeError("broker down")
    service = OrderService(ledger, notifier=notifier)

    order = service.create_order("42", {"A": 2})

    assert service.get_order(order.order_id).status is OrderStatus.PENDING
    assert ledger.get("A").available == 3
    notifier.publish.assert_called_once()


def test_concurrent_oversubscription():
    """Only the reservations that fit succeed; the rest see insufficient stock."""
    ledger = InventoryLedger(LockCoordinator(default_timeout=5.0))
    ledger.add_stock("A", 10)
    service = OrderService(ledger)

    def attempt(i):
        try:
            service.create_order(f"user-{i}", {"A": 3})
            return True
        except InsufficientStockException:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(10)))

    assert results.count(True) == 3
    assert results.count(False) == 7
    level = ledger.get("A")
    assert level.available == 1
    assert level.reserved == 9


def test_overlapping_orders_do_not_deadlock():
    """Orders over {A,B} and {B,A} from two threads all finish."""
    ledger = InventoryLedger(LockCoordinator(default_timeout=5.0))
    ledger.add_stock("A", 1000)
    ledger.add_stock("B", 1000)
    service = OrderService(ledger)
    errors = []

    def place(items):
        try:
            for _ in range(50):
                order = service.create_order("42", items)
                service.cancel_order(order.order_id)
        except Exception as e:
            errors.append(e)

    threads = [
        threading.Thread(target=place, args=([{"sku": "A", "quantity": 1}, {"sku": "B", "quantity": 1}],)),
        threading.Thread(target=place, args=([{"sku": "B", "quantity": 1}, {"sku": "A", "quantity": 1}],)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert not any(thread.is_alive() for thread in threads)
    assert errors == []
    assert ledger.get("A").available == 1000
    assert ledger.get("B").available == 1000


def test_concurrent_cancels_release_once(service, ledger):
    """Racing cancels of one order release its stock exactly once."""
    order = service.create_order("42", {"C": 4})
    outcomes = []

    def cancel():
        try:
            service.cancel_order(order.order_id)
            outcomes.append("ok")
        except OrderNotCancellableException:
            outcomes.append("late")

    threads = [threading.Thread(target=cancel) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["late"] * 4 + ["ok"]
    assert ledger.get("C").available == 10
