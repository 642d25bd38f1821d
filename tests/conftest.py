# tests/conftest.py
# ---------------------------------------------------------------------
# Ground rules:
# - Every test gets a fresh in-memory MongoDB (mongomock), no transactions
# - OWNER is the authenticated user most tests act as
# - Read-model factories live in tests/factories.py
# ---------------------------------------------------------------------
import mongomock
import pytest

from auth import SessionContext
from repository import Store
from schemas import Customer, Product
from tests.factories import OWNER


@pytest.fixture
def mongo_db():
    return mongomock.MongoClient()["commerce_test"]


@pytest.fixture
def store(mongo_db):
    return Store(mongo_db, use_transactions=False)


@pytest.fixture
def session():
    return SessionContext(user_id=OWNER, email="owner@example.com", approved=True, role="admin")


@pytest.fixture
def add_product(store):
    def _add(name="Stylo", stock=5, sale_price=10.0, purchase_price=6.0, ref=""):
        return store.upsert_product(OWNER, Product(
            ref=ref, name=name, sale_price=sale_price, purchase_price=purchase_price, stock=stock))
    return _add


@pytest.fixture
def customer(store):
    return store.upsert_customer(OWNER, Customer(name="Alami SARL", email="contact@alami.ma", phone="0600000000",
                                                 address="Rabat", ice="001122334455667"))
