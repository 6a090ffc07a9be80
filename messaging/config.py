"""Broker configuration shared by intake and fulfillment.

Only environment variables are read here. Defaults are fine for local
development; deployments override them.
"""

from __future__ import annotations

import os

# --- Kafka -------------------------------------------------------------------
# Bootstrap servers (broker addresses). Example: "172.31.0.202:9092"
KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")

# The single durable queue (Kafka topic) carrying Order Messages.
ORDERS_QUEUE: str = os.getenv("ORDERS_QUEUE", "orders")

# Dead-lettered messages go to "<queue><suffix>", e.g. "orders.dlq".
DEAD_LETTER_SUFFIX: str = os.getenv("DEAD_LETTER_SUFFIX", ".dlq")

# --- Delivery policy ---------------------------------------------------------
# How long publish() waits for the broker to confirm persistence.
PUBLISH_TIMEOUT_SECONDS: float = float(os.getenv("PUBLISH_TIMEOUT_SECONDS", "5"))

# A message whose handler keeps failing is dead-lettered after this many attempts.
MAX_DELIVERY_ATTEMPTS: int = int(os.getenv("MAX_DELIVERY_ATTEMPTS", "5"))

# Ceiling on unacknowledged messages being handled at once.
MAX_IN_FLIGHT: int = int(os.getenv("MAX_IN_FLIGHT", "10"))

# Exponential reconnect backoff (seconds): initial delay, doubled up to max.
RECONNECT_BACKOFF_INITIAL: float = float(os.getenv("RECONNECT_BACKOFF_INITIAL", "1"))
RECONNECT_BACKOFF_MAX: float = float(os.getenv("RECONNECT_BACKOFF_MAX", "30"))

# --- Logging -----------------------------------------------------------------
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
