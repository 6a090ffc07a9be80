"""MongoDB access for fulfillment.

Key design choice (important):
- We store the order id as MongoDB `_id` (primary key).
- That makes writes idempotent:
    If the same Order Message is processed twice, Mongo rejects the duplicate,
    and we treat it as "already processed".
- The existence check and the insert are one atomic operation, so two
  concurrent deliveries of the same order can't both insert.
"""

from __future__ import annotations

import logging
from typing import Any

from pymongo import ASCENDING, DESCENDING, MongoClient, errors

from messaging.errors import ConsumerTransientError

from .config import MONGO_DB, MONGO_URI, ORDERS_COLLECTION

logger = logging.getLogger(__name__)


def get_collection(uri: str = MONGO_URI, db: str = MONGO_DB, name: str = ORDERS_COLLECTION):
    """Connect to MongoDB and return the orders collection.

    The index supports the read API:
        find({username}).sort(created_at desc)
    """
    client = MongoClient(uri)
    collection = client[db][name]
    collection.create_index([("username", ASCENDING), ("created_at", DESCENDING)])
    return collection


class MongoOrderStore:
    def __init__(self, collection):
        self.collection = collection

    def insert(self, document: dict[str, Any]) -> bool:
        """Insert an order document.

        Returns:
            True  -> inserted
            False -> duplicate `_id`, the order was already processed

        Raises:
            ConsumerTransientError on any other storage failure, so the
            delivery is requeued.
        """
        try:
            self.collection.insert_one(document)
        except errors.DuplicateKeyError:
            return False
        except errors.PyMongoError as e:
            raise ConsumerTransientError(f"insert failed for order {document.get('_id')}: {e}") from e
        return True

    def for_user(self, username: str) -> list[dict[str, Any]]:
        """Orders for a user, newest first; ties broken by order id (descending)."""
        cursor = self.collection.find({"username": username}).sort(
            [("created_at", DESCENDING), ("_id", DESCENDING)]
        )
        return list(cursor)
