"""fulfillment configuration.

Only environment variables are read here; broker settings live in
messaging.config.
"""

from __future__ import annotations

import os

# --- Kafka -------------------------------------------------------------------
# Consumer group id:
# - Offsets in Kafka are tracked per consumer group.
# - If you change this value to something new, the consumer will behave like
#   "a brand new group" and (depending on auto.offset.reset) may re-read old
#   orders. That is safe: the consumer is idempotent.
KAFKA_GROUP_ID: str = os.getenv("KAFKA_GROUP_ID", "order-fulfillment")

# --- MongoDB -----------------------------------------------------------------
# Mongo connection string. Example: "mongodb://172.31.2.197:27017"
MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")

# Database name
MONGO_DB: str = os.getenv("MONGO_DB", "orders_db")

# Collection name
ORDERS_COLLECTION: str = os.getenv("ORDERS_COLLECTION", "orders")
