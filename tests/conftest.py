import os

os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

import main
from notifications import NotificationRelay
from storage import MemoryStorage

PASSWORD = "secret123"


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def relay():
    return NotificationRelay()


@pytest.fixture
def client(storage, relay):
    main.app.state.storage = storage
    main.app.state.relay = relay
    with TestClient(main.app) as c:
        yield c


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, role, email, name=None, **extra):
    body = {
        "name": name or email.split("@")[0],
        "email": email,
        "phone": "9876543210",
        "password": PASSWORD,
        "role": role,
        **extra,
    }
    return client.post("/api/auth/register", json=body)


def login(client, email, password=PASSWORD):
    res = client.post("/api/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return auth(res.json()["token"])


def pending_approval(client, admin_headers, **match):
    for approval in client.get("/api/admin/pending-approvals", headers=admin_headers).json():
        if all(approval.get(k) == v for k, v in match.items()):
            return approval
    raise AssertionError(f"no pending approval matching {match}")


def decide(client, admin_headers, approval_id, action="approve", notes=None):
    body = {"notes": notes} if notes is not None else None
    return client.post(f"/api/admin/approvals/{approval_id}/{action}", headers=admin_headers, json=body)


class Marketplace:
    """Builds approved actors through the public API."""

    def __init__(self, client):
        self.client = client
        self.admin = auth(register(client, "admin", "admin@example.com").json()["token"])

    def customer(self, email="customer@example.com"):
        return auth(register(self.client, "customer", email).json()["token"])

    def courier(self, email):
        register(self.client, "courier", email, drivingLicense="DL-0420110012345")
        approval = pending_approval(self.client, self.admin, user_email=email)
        assert decide(self.client, self.admin, approval["id"]).status_code == 200
        return login(self.client, email)

    def shopkeeper(self, email="owner@example.com", shop_name="Sharma General Store"):
        register(self.client, "shopkeeper", email)
        approval = pending_approval(self.client, self.admin, user_email=email, type="user_registration")
        assert decide(self.client, self.admin, approval["id"]).status_code == 200
        headers = login(self.client, email)
        res = self.client.post("/api/shop", headers=headers, json={"name": shop_name, "address": "12 MG Road"})
        assert res.status_code == 200, res.text
        shop = res.json()["shop"]
        approval = pending_approval(self.client, self.admin, shop_id=shop["id"])
        assert decide(self.client, self.admin, approval["id"]).status_code == 200
        return headers, shop

    def product(self, headers, name="Atta 1kg", price="50.00", stock=10, category="grocery"):
        res = self.client.post(
            "/api/products",
            headers=headers,
            json={"name": name, "price": price, "stock": stock, "category": category},
        )
        assert res.status_code == 200, res.text
        return res.json()

    def order(self, headers, product, quantity=2, **extra):
        body = {
            "items": [{"productId": product["id"], "quantity": quantity, "price": product["price"]}],
            "customerAddress": "221B Lajpat Nagar",
            **extra,
        }
        return self.client.post("/api/orders", headers=headers, json=body)


@pytest.fixture
def market(client):
    return Marketplace(client)


@pytest.fixture
def shop_setup(market):
    """An approved shop with one product, and a customer."""
    owner, shop = market.shopkeeper()
    product = market.product(owner)
    customer = market.customer()
    return {"owner": owner, "shop": shop, "product": product, "customer": customer}
