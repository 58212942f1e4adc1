"""Pytest fixtures for storefront tests."""

import copy
import hmac
import hashlib
import itertools
from decimal import Decimal

import pytest

from storefront.address_service import AddressService
from storefront.cart_service import CartAggregator, CartService
from storefront.catalog import ProductCatalog
from storefront.checkout_service import CheckoutOrchestrator
from storefront.document_store import PRODUCTS, USERS
from storefront.exceptions import (
    DocumentNotFoundError,
    StoreUnavailableError,
)
from storefront.models import AddressRequest, CurrentUser, GatewayOrder, PaymentOutcome
from storefront.order_service import OrderService
from storefront.totals_cache import TotalsCache

EPSILON = Decimal("0.01")
GATEWAY_SECRET = "test_secret"


def assert_money(actual, expected):
    assert abs(Decimal(str(actual)) - Decimal(str(expected))) <= EPSILON, f"{actual} != {expected}"


class InMemoryDocumentStore:
    """Dict-backed DocumentStore with failure injection."""

    def __init__(self):
        self.collections = {}
        self.fail_on = set()
        self._ids = itertools.count(1)

    def _check(self, operation):
        if operation in self.fail_on:
            raise StoreUnavailableError(f"injected failure: {operation}")

    def _collection(self, name):
        return self.collections.setdefault(name, {})

    def get(self, collection, doc_id):
        self._check("get")
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            return None
        return {**copy.deepcopy(doc), "id": doc_id}

    def list_all(self, collection):
        self._check("list_all")
        return [{**copy.deepcopy(doc), "id": doc_id} for doc_id, doc in self._collection(collection).items()]

    def query(self, collection, field, value):
        self._check("query")
        return [doc for doc in self.list_all(collection) if doc.get(field) == value]

    def insert(self, collection, data):
        self._check("insert")
        doc_id = f"{collection.split('/')[-1]}-{next(self._ids)}"
        self._collection(collection)[doc_id] = copy.deepcopy({k: v for k, v in data.items() if k != "id"})
        return doc_id

    def put(self, collection, doc_id, data):
        """Seed a document with a known id."""
        self._collection(collection)[doc_id] = copy.deepcopy(data)

    def update(self, collection, doc_id, fields):
        self._check("update")
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(collection, doc_id)
        for path, value in fields.items():
            node = doc
            parts = path.split(".")
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = copy.deepcopy(value)

    def delete(self, collection, doc_id):
        self._check("delete")
        return self._collection(collection).pop(doc_id, None) is not None

    def delete_many(self, collection, doc_ids):
        self._check("delete_many")
        return sum(1 for doc_id in list(doc_ids) if self._collection(collection).pop(doc_id, None) is not None)


class FakeCacheClient:
    """Key/value client with the get/set/delete calls TotalsCache uses."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, *keys):
        return sum(1 for key in keys if self.values.pop(key, None) is not None)


def sign(gateway_order_id, payment_id, secret=GATEWAY_SECRET):
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class FakeGateway:
    """Scriptable PaymentGateway."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.orders = []
        self.create_error = None

    def create_order(self, amount, currency, receipt, notes=None):
        if self.create_error is not None:
            raise self.create_error
        gateway_order = GatewayOrder(
            id=f"order_gw{len(self.orders) + 1}",
            amount=amount,
            currency=currency,
            receipt=receipt,
            status="created"
        )
        self.orders.append({"order": gateway_order, "notes": notes})
        return gateway_order

    def verify_signature(self, payment_id, gateway_order_id, signature):
        return hmac.compare_digest(sign(gateway_order_id, payment_id), signature)


class ScriptedCheckoutUI:
    """CheckoutUI that returns or raises a preset result."""

    def __init__(self, outcome=None, error=None):
        self.outcome = outcome
        self.error = error
        self.handoffs = []

    def open(self, handoff):
        self.handoffs.append(handoff)
        if self.error is not None:
            raise self.error
        if self.outcome is not None:
            return self.outcome
        payment_id = "pay_001"
        return PaymentOutcome(
            status="success",
            payment_id=payment_id,
            signature=sign(handoff.gateway_order_id, payment_id)
        )


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def cache_client():
    return FakeCacheClient()


@pytest.fixture
def totals_cache(cache_client):
    return TotalsCache(cache_client, ttl_seconds=60)


@pytest.fixture
def products(store):
    """Product A (500, no offer) and product B (200 with offer 150)."""
    store.put(PRODUCTS, "prod-a", {
        "name": "Cotton Tee",
        "price": 500,
        "images": ["https://img.example/a.jpg"],
        "stock_by_size": {"M": 10, "L": 2},
    })
    store.put(PRODUCTS, "prod-b", {
        "name": "Canvas Cap",
        "price": 200,
        "offer_price": 150,
        "images": [],
        "stock_by_size": {},
    })
    return store


@pytest.fixture
def user():
    return CurrentUser(uid="user-1", email="asha@example.com")


@pytest.fixture
def catalog(store):
    return ProductCatalog(store)


@pytest.fixture
def cart_service(store, catalog, totals_cache):
    return CartService(store, catalog, totals_cache)


@pytest.fixture
def aggregator(cart_service, catalog):
    return CartAggregator(cart_service, catalog)


@pytest.fixture
def address_service(store):
    return AddressService(store)


@pytest.fixture
def orchestrator(address_service, aggregator, totals_cache):
    return CheckoutOrchestrator(address_service, aggregator, totals_cache)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def order_service(store, gateway):
    return OrderService(store, gateway, currency="INR")


@pytest.fixture
def address(address_service, user):
    return address_service.add_address(user.uid, AddressRequest(
        name="Asha Rao",
        phone="9876543210",
        street="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        pincode="560001",
    ))


@pytest.fixture
def scenario_cart(products, cart_service, user):
    """Two units of A at 500 and one of B at offer price 150."""
    first = cart_service.add_entry(user.uid, "prod-a", 2, "M")
    second = cart_service.add_entry(user.uid, "prod-b", 1)
    return [first, second]


@pytest.fixture
def ready_session(orchestrator, user, address, scenario_cart):
    """Returns a factory producing a PaymentMethodChosen session, ready to be drafted."""
    def _make(method):
        session = orchestrator.start(user)
        orchestrator.select_address(session, address.id)
        orchestrator.confirm_totals(session)
        orchestrator.select_payment_method(session, method)
        return session
    return _make


@pytest.fixture
def admin(store):
    store.put(USERS, "admin-1", {"email": "ops@example.com", "role": "admin"})
    return CurrentUser(uid="admin-1", email="ops@example.com")


