import asyncio
import os

# Settings are read at import time
os.environ.setdefault("SEED_CATALOG", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "admin123")

import pytest
from fastapi.testclient import TestClient

from storefront.main import app
from storefront.orders import OrderPipeline
from storefront.storage import MemoryStorage


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def pipeline(storage):
    return OrderPipeline(storage)


@pytest.fixture
def make_product(storage):
    def _make(name="Smart LED Bulb", price=500, stock=10, **extra):
        data = {"name": name, "slug": extra.pop("slug", name.lower().replace(" ", "-")),
                "price": price, "stock": stock, **extra}
        return run(storage.products.create(data))
    return _make


@pytest.fixture
def customer():
    return {
        "customer_name": "Asha Verma",
        "customer_email": "asha@example.com",
        "customer_phone": "9876543210",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "pin_code": "560001",
        "payment_method": "upi",
    }


@pytest.fixture
def client(storage):
    app.state.storage = storage
    with TestClient(app) as test_client:
        yield test_client
    app.state.storage = None


@pytest.fixture
def admin_headers(client):
    resp = client.post("/api/auth/login", json={"username": "admin", "password": "admin123"})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['data']['access_token']}"}
