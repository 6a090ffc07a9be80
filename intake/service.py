"""Order intake: turn a buy request into a pending order plus an Order Message.

Steps, in order:

1. Validate the request (no side effects on failure).
2. Resolve every product id against the catalog; one unknown id fails the
   whole request (no partial orders).
3. Snapshot name/price per line, assign a fresh order id.
4. Record the order locally as `pending`.
5. Publish the Order Message.

If step 5 fails the request still succeeds. The pending record stays, and
the message is either still being retried inside the broker client or can
be re-published later from `list_pending()`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Protocol
from uuid import uuid4

from messaging.broker import BrokerClient
from messaging.config import ORDERS_QUEUE
from messaging.errors import BrokerError
from messaging.events import LineItem, utcnow
from messaging.orders import Order, OrderStatus

from .errors import AuthError, NotFound
from .models import Product, parse_buy_request

logger = logging.getLogger(__name__)


class Catalog(Protocol):
    def get_many(self, product_ids) -> dict[str, Product]: ...


class OrderStore(Protocol):
    def insert(self, order: Order) -> None: ...

    def update_status(self, order_id: str, target: OrderStatus) -> Order: ...


def new_order_id() -> str:
    return str(uuid4())


class OrderIntake:
    def __init__(
        self,
        catalog: Catalog,
        orders: OrderStore,
        broker: BrokerClient,
        queue_name: str = ORDERS_QUEUE,
        id_factory: Callable[[], str] = new_order_id,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.orders = orders
        self.broker = broker
        self.queue_name = queue_name
        self._new_id = id_factory
        self._now = clock

    def create_order(self, line_requests: Any, username: str | None) -> Order:
        """Create a pending order for `username`.

        Args:
            line_requests: Raw buy body, a list of `{"_id", "quantity"}`.
            username: Authenticated caller.

        Raises:
            ValidationError: empty/malformed body or bad quantity.
            AuthError: no username.
            NotFound: a product id doesn't exist.
        """
        lines = parse_buy_request(line_requests)
        if not username:
            raise AuthError("Invalid user data")

        products = self.catalog.get_many(line.product_id for line in lines)
        missing = [line.product_id for line in lines if line.product_id not in products]
        if missing:
            raise NotFound(f"Product not found: {', '.join(dict.fromkeys(missing))}")

        items = tuple(
            LineItem(
                product_id=line.product_id,
                name=products[line.product_id].name,
                unit_price=products[line.product_id].price,
                quantity=line.quantity,
            )
            for line in lines
        )
        order = Order(
            order_id=self._new_id(),
            username=username,
            line_items=items,
            status=OrderStatus.PENDING,
            created_at=self._now(),
        )

        self.orders.insert(order)

        try:
            self.broker.publish(self.queue_name, order.to_message(emitted_at=self._now()), key=username)
        except BrokerError as e:
            logger.warning("Order %s stays pending, publish failed: %s", order.order_id, e)
        else:
            logger.info("Order %s published to %s", order.order_id, self.queue_name)

        return order

    def mark_failed(self, order_id: str) -> Order:
        """Move a pending order to `failed` (downstream rejection reported out of band)."""
        order = self.orders.update_status(order_id, OrderStatus.FAILED)
        logger.warning("Order %s marked failed", order_id)
        return order
