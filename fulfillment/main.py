"""fulfillment FastAPI application.

Responsibilities:
- Serve a read endpoint: `GET /orders?username=<name>`
- Subscribe the order consumer to the orders queue for the app's lifetime

Why run the consumer inside this process?
- One service both consumes and serves the orders it stored.
- The broker client runs its consume loop in a background thread, so the
  HTTP side is never blocked by it.

Run with:  uvicorn fulfillment.main:app_factory --factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, HTTPException

from messaging.broker import BrokerClient
from messaging.config import ORDERS_QUEUE
from messaging.kafka_broker import KafkaBrokerClient
from messaging.log import configure_logging

from .config import KAFKA_GROUP_ID
from .consumer import OrderConsumer
from .mongo import MongoOrderStore, get_collection


@dataclass
class FulfillmentServices:
    consumer: OrderConsumer
    broker: BrokerClient
    queue_name: str = ORDERS_QUEUE


def build_services() -> FulfillmentServices:
    return FulfillmentServices(
        consumer=OrderConsumer(MongoOrderStore(get_collection())),
        broker=KafkaBrokerClient(group_id=KAFKA_GROUP_ID),
    )


def create_app(services: FulfillmentServices) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the broker and start consuming; close it on shutdown."""
        services.broker.open()
        services.broker.subscribe(services.queue_name, services.consumer.on_order_message)
        yield
        services.broker.close()

    app = FastAPI(title="Order Fulfillment", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic liveness endpoint."""
        return {"status": "ok"}

    @app.get("/orders")
    def get_orders(username: str = ""):
        """Return all processed orders for a user, newest first.

        Returns:
            {
              "username": "...",
              "orders": [ ...orders... ]
            }
        """
        if not username:
            raise HTTPException(status_code=400, detail="username is required")

        orders = services.consumer.get_orders_for_user(username)
        return {"username": username, "orders": [o.to_response() for o in orders]}

    return app


def app_factory() -> FastAPI:
    configure_logging()
    return create_app(build_services())
