"""Order Message handler for fulfillment.

High-level flow (per delivery):
    validate schema -> build completed order -> insert (idempotent) -> return

The broker client acks after we return. What we raise decides the rest:
- ConsumerPermanentError (schema violation): dead-lettered, never retried.
- ConsumerTransientError (storage hiccup): requeued up to the attempt bound.

Delivery is at-least-once, so the same message may arrive again after a
crash, a rebalance or a requeue. The unique `_id` turns a repeat into a no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Protocol

from pydantic import ValidationError

from messaging.errors import ConsumerPermanentError
from messaging.events import OrderMessage, utcnow
from messaging.orders import Order, OrderStatus, transition

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    def insert(self, document: dict[str, Any]) -> bool: ...

    def for_user(self, username: str) -> list[dict[str, Any]]: ...


class OrderConsumer:
    def __init__(self, store: OrderStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._now = clock

    def on_order_message(self, payload: dict[str, Any]) -> None:
        try:
            message = OrderMessage.from_payload(payload)
        except ValidationError as e:
            logger.error("[Consumer] Bad order schema: %s. data=%s", e, payload)
            raise ConsumerPermanentError(f"invalid Order Message: {e}") from e

        order = Order(
            order_id=message.order_id,
            username=message.username,
            line_items=message.line_items,
            status=transition(OrderStatus.PENDING, OrderStatus.COMPLETED),
            created_at=message.emitted_at,
        )
        document = order.to_document()
        document["processed_at"] = self._now()

        if self.store.insert(document):
            logger.info("[Consumer] Stored order %s for %s", order.order_id, order.username)
        else:
            logger.info("[Consumer] Duplicate delivery ignored: %s", order.order_id)

    def get_orders_for_user(self, username: str) -> list[Order]:
        """Orders already processed for `username`, newest first.

        This lags behind intake: an order accepted there shows up here only
        once its message has been consumed.
        """
        return [Order.from_document(doc) for doc in self.store.for_user(username)]
