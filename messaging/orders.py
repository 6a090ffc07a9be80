"""Orders and their status state machine.

    pending --> completed   (set by the fulfillment consumer)
    pending --> failed      (set by intake only)

`completed` and `failed` are terminal.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .events import LineItem, OrderMessage, utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class InvalidStatusTransition(Exception):
    def __init__(self, current: OrderStatus, target: OrderStatus):
        super().__init__(f"cannot move order from {current.value} to {target.value}")
        self.current = current
        self.target = target


_ALLOWED: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


def transition(current: OrderStatus | str, target: OrderStatus | str) -> OrderStatus:
    """Return `target` if moving there from `current` is allowed.

    Raises:
        InvalidStatusTransition for anything other than pending -> terminal.
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if target not in _ALLOWED[current]:
        raise InvalidStatusTransition(current, target)
    return target


class Order(BaseModel):
    """An order as stored by intake (pending) or fulfillment (completed).

    Line items are snapshots; nothing here ever re-reads the catalog.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    order_id: str
    username: str
    line_items: tuple[LineItem, ...] = Field(min_length=1)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime

    def with_status(self, target: OrderStatus) -> "Order":
        """Return a copy in `target` status, if the transition is allowed."""
        return self.model_copy(update={"status": transition(self.status, target)})

    def to_message(self, emitted_at: datetime | None = None) -> OrderMessage:
        return OrderMessage(
            order_id=self.order_id,
            username=self.username,
            line_items=self.line_items,
            emitted_at=emitted_at or utcnow(),
        )

    def to_document(self) -> dict[str, Any]:
        """MongoDB document. `order_id` is stored as `_id` (unique)."""
        doc = self.model_dump(mode="python", exclude={"order_id"})
        doc["_id"] = self.order_id
        doc["line_items"] = list(doc["line_items"])
        doc["status"] = self.status.value
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Order":
        data = dict(doc)
        data["order_id"] = str(data.pop("_id"))
        return cls.model_validate(data)

    def to_response(self) -> dict[str, Any]:
        """JSON body returned to HTTP callers (`_id` kept for older clients)."""
        body = self.model_dump(mode="json")
        body["_id"] = self.order_id
        return body
