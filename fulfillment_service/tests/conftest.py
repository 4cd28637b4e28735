"""Test fixtures for the fulfillment service tests."""

import pytest
from fastapi.testclient import TestClient

from fulfillment_service.config import Settings
from fulfillment_service.inventory import InventoryLedger
from fulfillment_service.locks import LockCoordinator
from fulfillment_service.notifications import InMemoryNotifier
from fulfillment_service.server import app, state
from fulfillment_service.service import OrderService


@pytest.fixture
def locks():
    """A lock coordinator with a short default wait."""
    return LockCoordinator(default_timeout=0.5)


@pytest.fixture
def ledger(locks):
    """A ledger stocked with A=5, B=2 and C=10."""
    book = InventoryLedger(locks)
    book.add_stock("A", 5)
    book.add_stock("B", 2)
    book.add_stock("C", 10)
    return book


@pytest.fixture
def notifier():
    """An in-memory notification recorder."""
    return InMemoryNotifier()


@pytest.fixture
def service(ledger, notifier):
    """An order service over the stocked ledger."""
    return OrderService(ledger, notifier=notifier, lock_timeout=0.5)


@pytest.fixture
def api_settings():
    """Settings used by the HTTP tests."""
    return Settings(initial_stock={"A": 5, "B": 2}, lock_timeout_seconds=0.2)


@pytest.fixture
def test_client(api_settings):
    """Create a test client over a freshly configured service state."""
    state.configure(api_settings)
    return TestClient(app, raise_server_exceptions=False)
