"""Fakes and helpers shared by the test modules."""

import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
import jwt

from intake.api_client import FulfillmentClient
from intake.errors import NotFound
from intake.models import NewProduct, Product
from messaging.errors import ConsumerTransientError

SECRET = "test-secret"


def make_token(username="alice", secret=SECRET, expires_in=timedelta(minutes=5)):
    claims = {"exp": datetime.now(timezone.utc) + expires_in}
    if username is not None:
        claims["username"] = username
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(username="alice"):
    return {"Authorization": f"Bearer {make_token(username)}"}


class InMemoryCatalog:
    def __init__(self):
        self.products = {}

    def add(self, name, price, description=None):
        product = Product(product_id=uuid4().hex[:24], name=name, price=price, description=description)
        self.products[product.product_id] = product
        return product

    def set_price(self, product_id, price):
        self.products[product_id] = self.products[product_id].model_copy(update={"price": price})

    def create(self, new: NewProduct):
        return self.add(new.name, new.price, new.description)

    def list(self):
        return list(self.products.values())

    def get(self, product_id):
        return self.products.get(product_id)

    def get_many(self, product_ids):
        return {pid: self.products[pid] for pid in set(product_ids) if pid in self.products}


class InMemoryIntakeOrders:
    def __init__(self):
        self.orders = {}

    def insert(self, order):
        assert order.order_id not in self.orders, "order id reused"
        self.orders[order.order_id] = order

    def get(self, order_id):
        return self.orders.get(order_id)

    def update_status(self, order_id, target):
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        updated = order.with_status(target)
        self.orders[order_id] = updated
        return updated

    def list_pending(self):
        return [o for o in self.orders.values() if o.status.value == "pending"]


class InMemoryFulfillmentStore:
    """Dict keyed by `_id`; the lock plays the part of the unique index."""

    def __init__(self):
        self.documents = {}
        self.failures_left = 0
        self._lock = threading.Lock()

    def insert(self, document):
        with self._lock:
            if self.failures_left:
                self.failures_left -= 1
                raise ConsumerTransientError("storage unavailable")
            if document["_id"] in self.documents:
                return False
            self.documents[document["_id"]] = dict(document)
            return True

    def for_user(self, username):
        docs = [d for d in self.documents.values() if d["username"] == username]
        return sorted(docs, key=lambda d: (d["created_at"], d["_id"]), reverse=True)


def mock_fulfillment(handler, sleep=None):
    """FulfillmentClient whose HTTP calls are answered by `handler(request)`."""
    transport = httpx.MockTransport(handler)
    http = httpx.Client(base_url="http://fulfillment", transport=transport)
    if sleep is None:
        return FulfillmentClient(client=http)
    return FulfillmentClient(client=http, sleep=sleep)
