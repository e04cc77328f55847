import threading
import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import update

from ordering.auth import Principal
from ordering.config import Settings
from ordering.database import make_session_factory, session_scope
from ordering.main import create_app
from ordering.models import (
    CatalogItem,
    Customer,
    DeviceToken,
    Order,
    Role,
    STORE_OPEN_KEY,
    StoreSetting,
)
from ordering.push import PushGateway
from ordering.schemas import CreateOrderRequest

JWT_SECRET = "test-secret"

ALICE = Principal(user_id="alice", name="Alice")
BOB = Principal(user_id="bob", name="Bob")
STAFF = Principal(user_id="staff-1", role=Role.STAFF, name="Sari")
STAFF_2 = Principal(user_id="staff-2", role=Role.STAFF, name="Dimas")


class FakePushGateway(PushGateway):
    """Records sends; tokens in ``failing`` raise like an unregistered FCM token.

    ``delay`` applies to every send, or only to the tokens in ``slow`` when given.
    """

    def __init__(self, failing=(), delay=0.0, slow=()):
        self.failing = set(failing)
        self.delay = delay
        self.slow = set(slow)
        self.sent = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def send(self, token, message):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay and (not self.slow or token in self.slow):
                time.sleep(self.delay)
            with self._lock:
                self.sent.append((token, message))
            if token in self.failing:
                raise RuntimeError("Requested entity was not found.")
        finally:
            with self._lock:
                self.in_flight -= 1

    @property
    def tokens(self):
        return [token for token, _ in self.sent]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret=JWT_SECRET,
        proof_storage_dir=tmp_path / "proofs",
        upload_timeout=2.0,
        push_timeout=2.0,
        log_level="DEBUG",
    )


@pytest.fixture
def push_gateway():
    return FakePushGateway()


@pytest.fixture
def app(settings, push_gateway):
    application = create_app(settings, push_gateway=push_gateway)
    yield application
    application.state.engine.dispose()


@pytest.fixture
def session_factory(app):
    return make_session_factory(app.state.engine)


@pytest.fixture(autouse=True)
def seed(session_factory):
    # Setup: customers, staff, catalog and an open store
    with session_scope(session_factory) as db:
        db.add_all([
            Customer(id=ALICE.user_id, name="Alice", role=Role.CUSTOMER.value),
            Customer(id=BOB.user_id, name="Bob", role=Role.CUSTOMER.value),
            Customer(id=STAFF.user_id, name="Sari", role=Role.STAFF.value),
            Customer(id=STAFF_2.user_id, name="Dimas", role=Role.STAFF.value),
            CatalogItem(id="latte", name="Iced Latte", price=25000, is_available=True),
            CatalogItem(id="espresso", name="Espresso", price=18000, is_available=True),
            CatalogItem(id="seasonal", name="Pumpkin Latte", price=30000, is_available=False),
            StoreSetting(key=STORE_OPEN_KEY, value="true"),
        ])


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def store(app):
    return app.state.store


@pytest.fixture
def machine(app):
    return app.state.machine


@pytest.fixture
def headers_for():
    def make(principal_or_id):
        user_id = getattr(principal_or_id, "user_id", principal_or_id)
        token = jwt.encode({"sub": user_id}, JWT_SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}
    return make


@pytest.fixture
def place_order(machine):
    def make(method="cod", customer=ALICE, items=None):
        request = CreateOrderRequest(
            items=items or [{"catalog_item_id": "latte", "quantity": 2}],
            payment_method=method,
            delivery_address="Jl. Melati No. 5, Bandung",
            postage=10000,
        )
        return machine.create_order(customer, request)
    return make


@pytest.fixture
def force_status(session_factory):
    def apply(order_id, status):
        with session_scope(session_factory) as db:
            db.execute(update(Order).where(Order.id == order_id).values(order_status=status.value))
    return apply


@pytest.fixture
def add_tokens(session_factory):
    def add(user_id, *tokens):
        with session_scope(session_factory) as db:
            db.add_all([DeviceToken(user_id=user_id, token=t, platform="web") for t in tokens])
    return add
