"""HTTP client for the fulfillment service, and the polling contract.

A 201 from `POST /products/buy` does NOT mean the order is queryable yet:
it becomes visible only after fulfillment has consumed its message. Callers
that need confirmation use `wait_for_order()`, which polls with a bounded
number of attempts and treats "not visible yet" as normal until the budget
runs out.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from .config import FULFILLMENT_URL, POLL_ATTEMPTS, POLL_DELAY_SECONDS

logger = logging.getLogger(__name__)


class OrderNotVisible(Exception):
    """Polling budget exhausted. A timeout, not a failed order."""

    def __init__(self, order_id: str, attempts: int):
        super().__init__(f"order {order_id} not visible after {attempts} attempt(s)")
        self.order_id = order_id
        self.attempts = attempts


class FulfillmentClient:
    """Wraps one reusable httpx.Client (connection pooling, keep-alive).

    Pass `client` to use a preconfigured httpx.Client, e.g. a TestClient.
    """

    def __init__(
        self,
        base_url: str = FULFILLMENT_URL,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def get_orders(self, username: str) -> list[dict[str, Any]]:
        """Orders fulfillment has processed for `username`, newest first.

        Raises:
            httpx.HTTPError on connection failures, timeouts, or non-2xx status.
        """
        resp = self._client.get("/orders", params={"username": username})
        resp.raise_for_status()
        return resp.json()["orders"]

    def wait_for_order(
        self,
        username: str,
        order_id: str,
        attempts: int = POLL_ATTEMPTS,
        delay: float = POLL_DELAY_SECONDS,
    ) -> dict[str, Any]:
        """Poll until `order_id` is visible and completed.

        Raises:
            OrderNotVisible once `attempts` polls came back without it.
        """
        for attempt in range(1, attempts + 1):
            for order in self.get_orders(username):
                if order["order_id"] == order_id and order["status"] == "completed":
                    return order
            logger.info("Order %s not visible yet (attempt %s/%s)", order_id, attempt, attempts)
            if attempt < attempts:
                self._sleep(delay)
        raise OrderNotVisible(order_id, attempts)
