import pytest
from fastapi.testclient import TestClient

from fulfillment.consumer import OrderConsumer
from fulfillment.main import FulfillmentServices
from fulfillment.main import create_app as create_fulfillment_app
from intake.api_client import FulfillmentClient
from intake.auth import TokenVerifier
from intake.main import IntakeServices
from intake.main import create_app as create_intake_app
from intake.service import OrderIntake
from messaging.broker import InMemoryBroker
from support import SECRET, InMemoryCatalog, InMemoryFulfillmentStore, InMemoryIntakeOrders


@pytest.fixture
def broker():
    b = InMemoryBroker(max_attempts=3)
    b.open()
    yield b
    b.close()


@pytest.fixture
def catalog():
    return InMemoryCatalog()


@pytest.fixture
def webcam(catalog):
    return catalog.add("Webcam", 50, "HD Webcam")


@pytest.fixture
def intake_orders():
    return InMemoryIntakeOrders()


@pytest.fixture
def intake(catalog, intake_orders, broker):
    return OrderIntake(catalog, intake_orders, broker)


@pytest.fixture
def fulfillment_store():
    return InMemoryFulfillmentStore()


@pytest.fixture
def consumer(fulfillment_store):
    return OrderConsumer(fulfillment_store)


@pytest.fixture
def fulfillment_app(consumer, broker):
    return create_fulfillment_app(FulfillmentServices(consumer=consumer, broker=broker))


@pytest.fixture
def fulfillment_http(fulfillment_app):
    """Runs the fulfillment lifespan, so the consumer is subscribed."""
    with TestClient(fulfillment_app) as client:
        yield client


@pytest.fixture
def fulfillment_client(fulfillment_http, broker):
    # Each "wait" between polls lets the broker deliver what is queued.
    return FulfillmentClient(client=fulfillment_http, sleep=lambda _delay: broker.drain())


@pytest.fixture
def intake_services(catalog, intake, broker, fulfillment_client):
    return IntakeServices(
        catalog=catalog,
        intake=intake,
        broker=broker,
        fulfillment=fulfillment_client,
        verifier=TokenVerifier(SECRET),
    )


@pytest.fixture
def intake_http(intake_services):
    # No lifespan: the broker fixture is already open.
    return TestClient(create_intake_app(intake_services))
