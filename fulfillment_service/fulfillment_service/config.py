"""Environment-driven settings for the Fulfillment Service."""

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def parse_stock_seed(raw: Optional[str]) -> dict[str, int]:
    """Parse an ``SKU=qty,SKU=qty`` seed string.

    Args:
        raw: The raw seed string, possibly empty or None.

    Returns:
        dict[str, int]: Uppercase SKU to initial quantity.

    Raises:
        ValueError: If an entry is malformed or a quantity is negative.
    """
    seed: dict[str, int] = {}
    if not raw:
        return seed
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        sku, sep, qty = entry.partition("=")
        if not sep or not sku.strip():
            raise ValueError(f"Malformed stock seed entry: {entry!r}")
        quantity = int(qty)
        if quantity < 0:
            raise ValueError(f"Negative stock seed for {sku.strip()}")
        seed[sku.strip().upper()] = quantity
    return seed


class Settings(BaseModel):
    """Runtime configuration of the service.

    Attributes:
        log_level: loguru level for the console sink.
        log_file: Optional path of a rotating log file.
        debug: Expose unclassified error messages in responses.
        lock_timeout_seconds: Default wait for a SKU lock.
        rate_limit_requests: Requests allowed per client per window.
        rate_limit_window_seconds: Length of the rate limit window.
        kafka_bootstrap_servers: Enables the Kafka notifier when set.
        order_events_topic: Topic receiving order status changes.
        initial_stock: Ledger seed applied at startup.
    """

    log_level: str = "INFO"
    log_file: Optional[str] = None
    debug: bool = False
    lock_timeout_seconds: float = Field(3.0, gt=0)
    rate_limit_requests: int = Field(60, ge=1)
    rate_limit_window_seconds: float = Field(60.0, gt=0)
    kafka_bootstrap_servers: Optional[str] = None
    order_events_topic: str = "orders.status_changed"
    initial_stock: dict[str, int] = Field(default_factory=dict)

    @field_validator("log_level")
    def validate_log_level(cls, v):
        """Normalize the log level name."""
        return v.upper()

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables.

        Returns:
            Settings: The populated settings.
        """
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            debug=_env_flag("APP_DEBUG"),
            lock_timeout_seconds=float(os.getenv("LOCK_TIMEOUT_SECONDS", "3.0")),
            rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "60")),
            rate_limit_window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            kafka_bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS") or None,
            order_events_topic=os.getenv("ORDER_EVENTS_TOPIC", "orders.status_changed"),
            initial_stock=parse_stock_seed(os.getenv("INITIAL_STOCK")),
        )
