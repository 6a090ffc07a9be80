"""intake FastAPI application.

Responsibilities:
- Product create/list/get.
- Accept buy requests: record a pending order and publish an Order Message.
- Proxy order reads to the fulfillment service.

Important note:
This service does NOT write the authoritative order. That happens
asynchronously in fulfillment's consumer, so `GET /orders` can lag behind a
successful `POST /products/buy` (see intake.api_client.wait_for_order).

Run with:  uvicorn intake.main:app_factory --factory
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from messaging.broker import BrokerClient
from messaging.kafka_broker import KafkaBrokerClient
from messaging.log import configure_logging

from .api_client import FulfillmentClient
from .auth import TokenVerifier
from .errors import AuthError, IntakeError, ValidationError
from .models import parse_new_product
from .mongo import MongoCatalog, MongoOrderStore, get_database
from .service import OrderIntake

logger = logging.getLogger(__name__)


@dataclass
class IntakeServices:
    """Everything the routes need, built once per process."""

    catalog: MongoCatalog
    intake: OrderIntake
    broker: BrokerClient
    fulfillment: FulfillmentClient
    verifier: TokenVerifier


def build_services() -> IntakeServices:
    db = get_database()
    catalog = MongoCatalog.from_database(db)
    broker = KafkaBrokerClient()
    return IntakeServices(
        catalog=catalog,
        intake=OrderIntake(catalog, MongoOrderStore.from_database(db), broker),
        broker=broker,
        fulfillment=FulfillmentClient(),
        verifier=TokenVerifier(),
    )


async def _read_json(request: Request):
    try:
        return json.loads(await request.body() or b"null")
    except ValueError as e:
        raise ValidationError("Request body must be JSON") from e


def create_app(services: IntakeServices) -> FastAPI:
    """Build the app around explicitly constructed collaborators."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.broker.open()
        yield
        services.broker.close()
        services.fulfillment.close()

    app = FastAPI(title="Order Intake", lifespan=lifespan)
    bearer = HTTPBearer(auto_error=False)

    @app.exception_handler(IntakeError)
    async def intake_error(_request: Request, exc: IntakeError) -> JSONResponse:
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
        return JSONResponse({"detail": exc.message}, status_code=exc.status_code, headers=headers)

    def current_username(credentials: HTTPAuthorizationCredentials | None = Depends(bearer)) -> str:
        """Resolved before the request body is looked at."""
        if credentials is None:
            raise AuthError("Missing bearer token")
        return services.verifier(credentials.credentials)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic liveness endpoint."""
        return {"status": "ok"}

    @app.post("/products", status_code=201)
    async def create_product(request: Request, username: str = Depends(current_username)):
        product = parse_new_product(await _read_json(request))
        created = await run_in_threadpool(services.catalog.create, product)
        return created.to_response()

    @app.get("/products")
    def list_products(username: str = Depends(current_username)):
        return [p.to_response() for p in services.catalog.list()]

    @app.get("/products/{product_id}")
    def get_product(product_id: str, username: str = Depends(current_username)):
        product = services.catalog.get(product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return product.to_response()

    @app.post("/products/buy", status_code=201)
    async def buy(request: Request, username: str = Depends(current_username)):
        """Create a pending order and publish its Order Message.

        "201" here means: the order is recorded as pending, not that
        fulfillment has processed it.
        """
        body = await _read_json(request)
        try:
            order = await run_in_threadpool(services.intake.create_order, body, username)
        except IntakeError:
            raise
        except Exception as e:
            logger.exception("Order creation failed for %s", username)
            raise HTTPException(status_code=500, detail="Server error") from e
        return order.to_response()

    @app.get("/orders")
    def get_orders(username: str = Depends(current_username)):
        """Orders for the caller as fulfillment currently sees them (may lag)."""
        try:
            orders = services.fulfillment.get_orders(username)
        except httpx.HTTPError as e:
            # 502 means our upstream dependency (fulfillment) failed.
            raise HTTPException(status_code=502, detail=f"Fulfillment service error: {e}")
        return {"username": username, "orders": orders}

    return app


def app_factory() -> FastAPI:
    configure_logging()
    return create_app(build_services())

