"""MongoDB access for intake: the product catalog and local pending orders.

The local order record is written BEFORE the Order Message is published. It
is the evidence that a sale happened even if the broker is down, and what a
reconciliation pass would re-publish from (`list_pending`).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient

from messaging.events import utcnow
from messaging.orders import InvalidStatusTransition, Order, OrderStatus, transition

from .config import MONGO_DB, MONGO_URI, ORDERS_COLLECTION, PRODUCTS_COLLECTION
from .errors import NotFound
from .models import NewProduct, Product

logger = logging.getLogger(__name__)


def get_database(uri: str = MONGO_URI, name: str = MONGO_DB):
    """Connect to MongoDB and return the intake database."""
    client = MongoClient(uri)
    return client[name]


def _to_product(doc: dict) -> Product:
    return Product(
        product_id=str(doc["_id"]),
        name=doc["name"],
        price=doc["price"],
        description=doc.get("description"),
    )


class MongoCatalog:
    """Products keyed by Mongo ObjectId."""

    def __init__(self, collection):
        self.collection = collection

    @classmethod
    def from_database(cls, db, name: str = PRODUCTS_COLLECTION) -> "MongoCatalog":
        return cls(db[name])

    def create(self, product: NewProduct) -> Product:
        doc = product.model_dump()
        result = self.collection.insert_one(doc)
        logger.info("[Catalog] Created product %s", result.inserted_id)
        return _to_product({**doc, "_id": result.inserted_id})

    def list(self) -> list[Product]:
        return [_to_product(doc) for doc in self.collection.find()]

    def get(self, product_id: str) -> Product | None:
        return self.get_many([product_id]).get(product_id)

    def get_many(self, product_ids: Iterable[str]) -> dict[str, Product]:
        """Resolve ids in one query. Ids that aren't ObjectIds can't exist."""
        oids = []
        for pid in set(product_ids):
            try:
                oids.append(ObjectId(pid))
            except (InvalidId, TypeError):
                continue
        if not oids:
            return {}
        return {str(doc["_id"]): _to_product(doc) for doc in self.collection.find({"_id": {"$in": oids}})}


class MongoOrderStore:
    """Intake's local order records (`_id` = order_id)."""

    def __init__(self, collection):
        self.collection = collection

    @classmethod
    def from_database(cls, db, name: str = ORDERS_COLLECTION) -> "MongoOrderStore":
        collection = db[name]
        # Supports list_pending(): find({status}).sort(created_at)
        collection.create_index([("status", ASCENDING), ("created_at", ASCENDING)])
        return cls(collection)

    def insert(self, order: Order) -> None:
        self.collection.insert_one(order.to_document())
        logger.info("[Orders] Recorded %s order %s", order.status.value, order.order_id)

    def get(self, order_id: str) -> Order | None:
        doc = self.collection.find_one({"_id": order_id})
        return Order.from_document(doc) if doc else None

    def update_status(self, order_id: str, target: OrderStatus) -> Order:
        """Apply a status transition atomically.

        The update is conditional on the status we validated against, so two
        concurrent transitions can't both win.
        """
        order = self.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        transition(order.status, target)

        result = self.collection.update_one(
            {"_id": order_id, "status": order.status.value},
            {"$set": {"status": target.value, "updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            current = self.get(order_id)
            raise InvalidStatusTransition(current.status if current else order.status, target)
        return order.with_status(target)

    def list_pending(self) -> list[Order]:
        """Pending orders, oldest first."""
        cursor = self.collection.find({"status": OrderStatus.PENDING.value}).sort("created_at", ASCENDING)
        return [Order.from_document(doc) for doc in cursor]
