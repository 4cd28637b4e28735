"""Outbound ports for order status change events."""

import threading
from typing import Protocol

from confluent_kafka import Producer
from logging_utils.config import get_component_logger

from .channels import order_channel
from .logger import SERVICE_NAME
from .schemas import OrderStatusChanged

logger = get_component_logger(SERVICE_NAME, "kafka")


class NotificationPort(Protocol):
    """Protocol defining where order status changes are sent."""

    def publish(self, event: OrderStatusChanged) -> None:
        """Publish one status change.

        Args:
            event: The status change to publish
        """
        ...


class InMemoryNotifier:
    """Keeps published events in memory."""

    def __init__(self):
        self._events: list[OrderStatusChanged] = []
        self._lock = threading.Lock()

    def publish(self, event: OrderStatusChanged) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[OrderStatusChanged]:
        with self._lock:
            return list(self._events)

    def events_for(self, order_id: str) -> list[OrderStatusChanged]:
        return [event for event in self.events if event.order_id == order_id]


class KafkaNotifier:
    """Kafka producer for publishing order status changes.

    Events are keyed by order id so that every change of one order lands on
    the same partition and is delivered in order.

    Attributes:
        topic: Topic receiving the events.
    """

    def __init__(self, bootstrap_servers: str, topic: str = "orders.status_changed"):
        """Initialize the Kafka producer with the given bootstrap servers.

        Args:
            bootstrap_servers (str): Comma-separated list of Kafka broker addresses.
            topic (str): Topic receiving the events.
        """
        self.topic = topic
        self._producer = Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "message.timeout.ms": 5000,
                "partitioner": "consistent_random",  # Same key → same partition
            }
        )

    @property
    def producer(self):
        """Get the underlying Kafka producer instance."""
        return self._producer

    def _delivery_callback(self, err, msg):
        """Callback function for message delivery reports.

        Args:
            err: Error that occurred during message delivery, if any.
            msg: Message that was delivered or failed.
        """
        if err:
            logger.error(f"Message failed delivery: {err} | topic={msg.topic()} | key={msg.key()}")
        else:
            logger.debug(f"Message delivered to {msg.topic()} [p:{msg.partition()}] offset={msg.offset()}")

    def publish(self, event: OrderStatusChanged) -> None:
        """Publish a status change to the Kafka topic.

        Args:
            event (OrderStatusChanged): The status change to publish.

        Raises:
            BufferError: If the producer's internal buffer is full.
        """
        try:
            self._producer.produce(
                topic=self.topic,
                key=event.order_id.encode("utf-8"),
                value=event.model_dump_json(),
                headers={"channel": order_channel(event.user_id)},
                on_delivery=self._delivery_callback,
            )
            self._producer.poll(0)  # Trigger delivery callbacks
        except BufferError:
            logger.warning("Producer buffer full, flushing...")
            self._producer.flush()
            raise

    def flush(self, timeout: float = 10.0) -> None:
        """Wait for all messages to be delivered.

        Args:
            timeout: Maximum time to wait in seconds
        """
        remaining = self._producer.flush(timeout)
        if remaining > 0:
            logger.warning(f"{remaining} messages still pending delivery")

    def close(self) -> None:
        """Flush pending messages before shutdown."""
        self.flush()
