"""Pytest fixtures for store tests."""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["PASSWORD_SCHEMES"] = "pbkdf2_sha256"
os.environ["ADMIN_EMAILS"] = "admin@example.com"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from carts import CartStore
from catalog import ProductCatalog
from database import ensure_indexes, get_db
from schemas import ProductCreate


@pytest.fixture
def db():
    """A fresh in-memory database with the production indexes."""
    database = mongomock.MongoClient()["store_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    """Create a product and return its id."""

    def _make(name="Widget", price=10.0, stock=5, category="general", is_active=True):
        catalog = ProductCatalog(db)
        product = catalog.create(ProductCreate(name=name, price=price, stock=stock, category=category))
        if not is_active:
            catalog.deactivate(product["id"])
        return product["id"]

    return _make


@pytest.fixture
def fill_cart(db):
    """Put line items straight into an owner's cart, skipping cart validation."""

    def _fill(owner_id, items):
        store = CartStore(db)
        cart = store.get_or_create(owner_id)
        line_items = [{"product_id": pid, "quantity": qty} for pid, qty in items]
        return store.replace_line_items(cart["id"], line_items)

    return _fill


def signup(client, name="Ada", email="ada@example.com", password="secret123"):
    response = client.post("/auth/signup", json={"name": name, "email": email, "password": password})
    assert response.status_code == 201, response.text
    body = response.json()
    return body["user_id"], {"Authorization": f"Bearer {body['token']}"}


@pytest.fixture
def user(client):
    return signup(client)


@pytest.fixture
def admin(client):
    return signup(client, name="Root", email="admin@example.com")


@pytest.fixture
def signup_user(client):
    def _signup(**kwargs):
        return signup(client, **kwargs)

    return _signup
