from __future__ import annotations

import datetime as dt
import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor

import pika

from .config import EVENTS_EXCHANGE, RABBITMQ_URL
from .schemas import OrderOut

logger = logging.getLogger(__name__)


def _connect() -> pika.BlockingConnection:
    params = pika.URLParameters(RABBITMQ_URL)
    params.heartbeat = 30
    params.blocked_connection_timeout = 30
    params.socket_timeout = 5
    return pika.BlockingConnection(params)


def publish_event(routing_key: str, payload: dict) -> None:
    connection = _connect()
    try:
        ch = connection.channel()
        ch.exchange_declare(exchange=EVENTS_EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        ch.basic_publish(
            exchange=EVENTS_EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=2,  # persistent
            ),
        )
    finally:
        connection.close()


def order_changed_payload(order: OrderOut) -> dict:
    return {
        "event": "order.changed",
        "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        "order_id": order.id,
        "customer_id": order.customer_id,
        "status": order.status.value,
        "tracking_number": order.tracking_number,
        "total_amount": str(order.total_amount),
        "items": [{"product_id": i.product_id, "quantity": i.quantity} for i in order.items],
    }


# One worker keeps events in commit order
_publisher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="order-events")


def _publish_order_change(payload: dict) -> None:
    try:
        publish_event("order.changed", payload)
    except Exception:
        # broker down, network issues, etc. The change itself is already committed.
        logger.warning("Could not publish order.changed for order %s", payload.get("order_id"), exc_info=True)


def forward_order_change(order: OrderOut) -> Future:
    """Order feed subscriber that republishes changes on the broker.

    The publish runs on a background worker so a slow or unreachable broker
    never holds up the request that changed the order.
    """
    return _publisher.submit(_publish_order_change, order_changed_payload(order))