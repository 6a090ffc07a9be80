"""Pydantic models for intake.

We validate input at the HTTP boundary so that:
- bad requests fail fast with a clear error
- the broker only receives valid Order Messages
- the order contract stays consistent across services

FastAPI would answer body validation errors with 422; buy requests are
parsed here instead so they fail with a 400 and our own message.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class BuyLine(BaseModel):
    """One entry of a `POST /products/buy` body: `{"_id": ..., "quantity": ...}`."""

    product_id: str = Field(validation_alias=AliasChoices("_id", "product_id"), min_length=1)
    quantity: int = Field(ge=1, strict=True)


class NewProduct(BaseModel):
    """Request body for `POST /products`."""

    name: str = Field(min_length=1)
    price: float = Field(ge=0)
    description: str | None = None


class Product(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    price: float
    description: str | None = None

    def to_response(self) -> dict[str, Any]:
        body = self.model_dump(mode="json")
        body["_id"] = self.product_id
        return body


_BUY_LINES = TypeAdapter(list[BuyLine])


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    field = err["loc"][-1] if err["loc"] else "body"
    if field == "quantity" and err["type"] == "greater_than_equal":
        return "Product quantity must be > 0"
    if err["type"] == "missing" or isinstance(field, int):
        return "Each product must have an id and quantity"
    return f"Invalid {field}: {err['msg']}"


def parse_buy_request(body: Any) -> list[BuyLine]:
    """Validate a buy body. Raises ValidationError (400)."""
    if not isinstance(body, list) or not body:
        raise ValidationError("Invalid products data")
    try:
        return _BUY_LINES.validate_python(body)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e)) from e


def parse_new_product(body: Any) -> NewProduct:
    """Validate a product body. Raises ValidationError (400)."""
    if not isinstance(body, dict):
        raise ValidationError("Invalid product data")
    if not body.get("name"):
        raise ValidationError("Product name is required")
    if body.get("price") is None:
        raise ValidationError("Product price is required")
    try:
        return NewProduct.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(_first_error(e)) from e
