"""intake configuration.

The intake service is the client-facing side of the pipeline:
- It owns the product catalog.
- It accepts buy requests, records them as pending and publishes an
  Order Message.
- It proxies order reads to the fulfillment service.

Everything is controlled by environment variables so this service can run
anywhere (local, EC2, Docker) without code changes. Broker settings live in
messaging.config.
"""

from __future__ import annotations

import os

# MongoDB (catalog + local pending orders)
MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB: str = os.getenv("MONGO_DB", "catalog_db")
PRODUCTS_COLLECTION: str = os.getenv("PRODUCTS_COLLECTION", "products")
ORDERS_COLLECTION: str = os.getenv("ORDERS_COLLECTION", "orders")

# Shared secret of the auth service's HS256 tokens.
JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me")

# fulfillment base URL (internal VPC IP or DNS)
FULFILLMENT_URL: str = os.getenv("FULFILLMENT_URL", "http://localhost:8001")

# Polling budget for callers waiting on an order to become visible.
POLL_ATTEMPTS: int = int(os.getenv("POLL_ATTEMPTS", "5"))
POLL_DELAY_SECONDS: float = float(os.getenv("POLL_DELAY_SECONDS", "3"))
