"""Order Message: the wire contract between intake and fulfillment.

Why validate messages on the consuming side?
- The queue is durable: it can hold messages produced by an older intake.
- Validation turns "unexpected payload" into one clear, permanent failure
  instead of a KeyError somewhere in the consumer.

The contract is stable across versions:

    { order_id: str, username: str,
      line_items: [ {product_id: str, name: str, unit_price: number, quantity: int} ],
      emitted_at: ISO-8601 timestamp }

Unknown fields are ignored so newer producers don't break older consumers.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LineItem(BaseModel):
    """A frozen snapshot of one product at order-creation time.

    `name` and `unit_price` are copied from the catalog when the order is
    created and never re-read afterwards.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    product_id: str = Field(min_length=1)
    name: str
    unit_price: float = Field(ge=0)
    quantity: int = Field(ge=1, strict=True)

    @field_validator("unit_price", mode="before")
    @classmethod
    def _price_is_a_number(cls, value: Any) -> Any:
        # JSON numbers only: no booleans (an int subclass) and no numeric strings.
        if isinstance(value, (bool, str)):
            raise ValueError("unit_price must be a number")
        return value


class OrderMessage(BaseModel):
    """Broker payload announcing a created order.

    It is a value: immutable once published, possibly delivered more than
    once. `order_id` doubles as the idempotency key on the consuming side.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    order_id: str = Field(min_length=1)
    username: str = Field(min_length=1)
    line_items: tuple[LineItem, ...] = Field(min_length=1)
    emitted_at: datetime

    @field_validator("emitted_at", mode="before")
    @classmethod
    def _emitted_at_is_iso(cls, value: Any) -> Any:
        # Only ISO-8601 text on the wire, never Unix epoch numbers.
        if not isinstance(value, (str, datetime)):
            raise ValueError("emitted_at must be an ISO-8601 timestamp")
        return value

    def to_json(self) -> bytes:
        """Serialize to UTF-8 JSON bytes (what goes on the wire)."""
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OrderMessage":
        """Validate a decoded payload. Raises pydantic.ValidationError."""
        return cls.model_validate(payload)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode(message: BaseModel | dict[str, Any]) -> bytes:
    """Encode a pydantic model or a plain dict as UTF-8 JSON."""
    if isinstance(message, BaseModel):
        return message.model_dump_json().encode("utf-8")
    return json.dumps(message, default=str).encode("utf-8")


def decode(raw: bytes | str | None) -> dict[str, Any]:
    """Decode UTF-8 JSON bytes into a dict.

    Raises:
        ValueError (UnicodeDecodeError / json.JSONDecodeError) on bad bytes,
        or when the payload is empty or the JSON document is not an object.
    """
    if raw is None:
        raise ValueError("empty payload")
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data
