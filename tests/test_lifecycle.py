from decimal import Decimal
from itertools import product as pairs

import pytest

from errors import InvalidTransition, TooLateToCancel
from lifecycle import CANCELLABLE, TERMINAL, TRANSITIONS, OrderService, check_transition
from schemas import OrderStatus as S, ShopStatus

FORWARD = [S.PENDING, S.ACCEPTED, S.PREPARING, S.READY, S.PICKED_UP, S.DELIVERED]


# --------------------- State machine ---------------------

@pytest.mark.parametrize("current, target", list(pairs(S, S)))
def test_only_forward_single_steps_or_early_cancel_are_edges(current, target):
    forward_step = (
        current in FORWARD and target in FORWARD
        and FORWARD.index(target) == FORWARD.index(current) + 1
    )
    early_cancel = target == S.CANCELLED and current in (S.PENDING, S.ACCEPTED, S.PREPARING)

    if forward_step or early_cancel:
        check_transition(current, target)
    else:
        with pytest.raises(InvalidTransition):
            check_transition(current, target)


def test_terminal_states_have_no_way_out():
    assert TERMINAL == {S.DELIVERED, S.CANCELLED}
    assert not [edge for edge in TRANSITIONS if edge[0] in TERMINAL]


@pytest.mark.parametrize("current", [S.READY, S.PICKED_UP, S.DELIVERED])
def test_cancelling_late_is_too_late(current):
    assert current not in CANCELLABLE
    with pytest.raises(TooLateToCancel):
        check_transition(current, S.CANCELLED)


# --------------------- Through the API ---------------------

def status_of(client, headers, order_id):
    return client.get(f"/api/orders/{order_id}", headers=headers).json()["status"]


def patch(client, headers, order_id, status):
    return client.patch(f"/api/orders/{order_id}/status", headers=headers, json={"status": status})


def to_ready(client, owner, order_id):
    assert client.post(f"/api/orders/{order_id}/accept", headers=owner).status_code == 200
    assert patch(client, owner, order_id, "preparing").status_code == 200
    assert patch(client, owner, order_id, "ready").status_code == 200


def test_delivery_scenario(client, market, shop_setup):
    owner, customer, product = shop_setup["owner"], shop_setup["customer"], shop_setup["product"]
    courier_a = market.courier("a@example.com")
    courier_b = market.courier("b@example.com")

    res = market.order(customer, product, quantity=2, notes="handle with care")
    assert res.status_code == 201
    order = res.json()
    assert order["status"] == "pending"
    assert order["courier_id"] is None
    assert Decimal(order["subtotal"]) == Decimal("100")
    assert Decimal(order["total_amount"]) == Decimal("145")
    assert order["items"][0]["quantity"] == 2

    to_ready(client, owner, order["id"])
    available = client.get("/api/orders/available", headers=courier_a).json()
    assert [o["id"] for o in available] == [order["id"]]
    assert available[0]["shop_name"] == shop_setup["shop"]["name"]
    assert available[0]["shop_address"] == shop_setup["shop"]["address"]

    won = client.post(f"/api/orders/{order['id']}/accept-delivery", headers=courier_a)
    lost = client.post(f"/api/orders/{order['id']}/accept-delivery", headers=courier_b)
    assert won.status_code == 200
    assert won.json()["order"]["status"] == "picked_up"
    assert lost.status_code == 409
    assert lost.json()["error"] == "already_claimed"
    assert lost.json()["current"] == "picked_up"
    assert "courier_id" not in lost.json()

    assert client.get("/api/orders/available", headers=courier_b).json() == []
    res = client.post(f"/api/orders/{order['id']}/deliver", headers=courier_a)
    assert res.status_code == 200

    final = client.get(f"/api/orders/{order['id']}", headers=customer).json()
    assert final["status"] == "delivered"
    assert final["courier_id"] == won.json()["order"]["courier_id"]
    assert [o["id"] for o in client.get("/api/orders", headers=courier_a).json()] == [order["id"]]
    assert client.get("/api/orders", headers=courier_b).json() == []
    assert Decimal(final["total_amount"]) == Decimal("145")


def test_generic_endpoint_cannot_skip_or_reverse(client, shop_setup):
    owner = shop_setup["owner"]
    order = client.post("/api/orders", headers=shop_setup["customer"], json={
        "items": [{"product_id": shop_setup["product"]["id"], "quantity": 1}],
        "delivery_address": "Flat 4, Green Park",
    }).json()

    res = patch(client, owner, order["id"], "ready")
    assert res.status_code == 409
    assert res.json() == {
        "detail": "Cannot move order from 'pending' to 'ready'",
        "error": "invalid_transition",
        "current": "pending",
        "attempted": "ready",
    }

    assert patch(client, owner, order["id"], "accepted").status_code == 200
    assert patch(client, owner, order["id"], "pending").status_code == 409
    assert patch(client, owner, order["id"], "accepted").status_code == 409
    assert patch(client, owner, order["id"], "teleported").status_code == 400
    assert status_of(client, owner, order["id"]) == "accepted"


def test_roles_are_held_to_their_own_steps(client, market, shop_setup):
    owner, customer = shop_setup["owner"], shop_setup["customer"]
    courier = market.courier("a@example.com")
    order = market.order(customer, shop_setup["product"]).json()

    # shopkeepers do not pick up, couriers do not prepare, customers cannot use the generic endpoint
    assert client.post(f"/api/orders/{order['id']}/accept", headers=courier).status_code == 403
    assert patch(client, courier, order["id"], "accepted").status_code == 403
    assert patch(client, customer, order["id"], "cancelled").status_code == 403

    to_ready(client, owner, order["id"])
    assert patch(client, owner, order["id"], "picked_up").status_code == 403
    assert client.post(f"/api/orders/{order['id']}/deliver", headers=courier).status_code == 403

    assert patch(client, courier, order["id"], "picked_up").status_code == 200
    assert patch(client, owner, order["id"], "delivered").status_code == 403
    assert patch(client, courier, order["id"], "delivered").status_code == 200
    assert patch(client, courier, order["id"], "delivered").status_code == 409


def test_other_shops_cannot_touch_the_order(client, market, shop_setup):
    rival, _ = market.shopkeeper(email="rival@example.com", shop_name="Rival Mart")
    order = market.order(shop_setup["customer"], shop_setup["product"]).json()

    assert client.post(f"/api/orders/{order['id']}/accept", headers=rival).status_code == 403
    assert client.post(f"/api/orders/{order['id']}/cancel", headers=rival).status_code == 403
    assert client.get(f"/api/orders/{order['id']}", headers=rival).status_code == 403
    assert client.get("/api/orders", headers=rival).json() == []
    assert [o["id"] for o in client.get("/api/orders", headers=shop_setup["owner"]).json()] == [order["id"]]


def test_unknown_order(client, shop_setup):
    res = client.post("/api/orders/64b7f0c2a1b2c3d4e5f60718/accept", headers=shop_setup["owner"])
    assert res.status_code == 404
    assert res.json()["entity"] == "order"


@pytest.mark.parametrize("steps", [0, 1, 2])
@pytest.mark.parametrize("actor", ["customer", "owner"])
def test_cancel_before_ready_succeeds_and_restocks(client, shop_setup, steps, actor):
    owner, customer, product = shop_setup["owner"], shop_setup["customer"], shop_setup["product"]
    order = client.post("/api/orders", headers=customer, json={
        "items": [{"productId": product["id"], "quantity": 3}],
        "customerAddress": "Flat 4, Green Park",
    }).json()
    for target in ["accepted", "preparing"][:steps]:
        assert patch(client, owner, order["id"], target).status_code == 200

    def stock():
        return client.get(f"/api/shops/{shop_setup['shop']['id']}/products", headers=owner).json()[0]["stock"]

    assert stock() == 7

    res = client.post(f"/api/orders/{order['id']}/cancel", headers=shop_setup[actor])
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "cancelled"
    assert stock() == 10

    # cancelled is terminal
    assert patch(client, owner, order["id"], "accepted").status_code == 409
    assert client.post(f"/api/orders/{order['id']}/cancel", headers=customer).status_code == 409
    assert stock() == 10


@pytest.mark.parametrize("late_state", ["ready", "picked_up", "delivered"])
def test_cancel_from_ready_onwards_is_too_late(client, market, shop_setup, late_state):
    owner, customer = shop_setup["owner"], shop_setup["customer"]
    courier = market.courier("a@example.com")
    order = market.order(customer, shop_setup["product"]).json()
    to_ready(client, owner, order["id"])
    if late_state in ("picked_up", "delivered"):
        client.post(f"/api/orders/{order['id']}/accept-delivery", headers=courier)
    if late_state == "delivered":
        client.post(f"/api/orders/{order['id']}/deliver", headers=courier)

    for who in (customer, owner):
        res = client.post(f"/api/orders/{order['id']}/cancel", headers=who)
        assert res.status_code == 409
        assert res.json()["error"] == "too_late_to_cancel"
        assert res.json()["current"] == late_state
    assert status_of(client, owner, order["id"]) == late_state


def test_customer_can_only_cancel_own_orders(client, market, shop_setup):
    order = market.order(shop_setup["customer"], shop_setup["product"]).json()
    stranger = market.customer("stranger@example.com")
    assert client.post(f"/api/orders/{order['id']}/cancel", headers=stranger).status_code == 403
    assert client.get(f"/api/orders/{order['id']}", headers=stranger).status_code == 403


# --------------------- Placement rules ---------------------

def test_stock_is_reserved_at_placement(client, market, shop_setup):
    res = market.order(shop_setup["customer"], shop_setup["product"], quantity=11)
    assert res.status_code == 409
    assert res.json()["error"] == "insufficient_stock"
    assert res.json()["available"] == 10

    assert market.order(shop_setup["customer"], shop_setup["product"], quantity=10).status_code == 201
    public = client.get(f"/api/shops/{shop_setup['shop']['id']}/products/public").json()
    assert public[0]["stock"] == 0
    assert market.order(shop_setup["customer"], shop_setup["product"], quantity=1).status_code == 409


def test_stale_client_price_is_rejected(client, market, shop_setup):
    product = dict(shop_setup["product"], price="45.00")
    res = market.order(shop_setup["customer"], product)
    assert res.status_code == 400
    assert res.json()["field"] == "items.0.price"


def test_server_prices_the_order(client, shop_setup):
    res = client.post("/api/orders", headers=shop_setup["customer"], json={
        "items": [{"productId": shop_setup["product"]["id"], "quantity": 2}],
        "customerAddress": "Flat 4, Green Park",
        "totalAmount": 1,
    })
    assert res.status_code == 201
    body = res.json()
    assert Decimal(body["items"][0]["price"]) == Decimal("50")
    assert Decimal(body["delivery_fee"]) == Decimal("40")
    assert Decimal(body["service_fee"]) == Decimal("5")
    assert Decimal(body["total_amount"]) == Decimal("145")


def test_inactive_and_foreign_products_cannot_be_ordered(client, market, shop_setup):
    owner, customer, product = shop_setup["owner"], shop_setup["customer"], shop_setup["product"]
    rival, rival_shop = market.shopkeeper(email="rival@example.com", shop_name="Rival Mart")
    rival_product = market.product(rival, name="Sugar")

    res = client.post("/api/orders", headers=customer, json={
        "items": [{"productId": product["id"], "quantity": 1}, {"productId": rival_product["id"], "quantity": 1}],
        "customerAddress": "Flat 4",
    })
    assert res.status_code == 400
    assert res.json()["field"] == "items.1.product_id"

    res = market.order(customer, product, shopId=rival_shop["id"])
    assert res.status_code == 400
    assert res.json()["field"] == "items.0.product_id"

    client.patch(f"/api/products/{product['id']}/status", headers=owner, json={"status": "inactive"})
    res = market.order(customer, product)
    assert res.status_code == 400
    assert res.json()["field"] == "items.0.product_id"


def test_order_needs_items_and_address(client, shop_setup):
    customer = shop_setup["customer"]
    res = client.post("/api/orders", headers=customer, json={"items": [], "customerAddress": "Flat 4"})
    assert res.status_code == 400
    assert res.json()["field"] == "items"

    res = client.post("/api/orders", headers=customer, json={
        "items": [{"productId": shop_setup["product"]["id"], "quantity": 0}],
        "customerAddress": "Flat 4",
    })
    assert res.status_code == 400

    res = client.post("/api/orders", headers=customer, json={
        "items": [{"productId": shop_setup["product"]["id"], "quantity": 1}],
        "customerAddress": "   ",
    })
    assert res.status_code == 400
    assert res.json()["field"] == "delivery_address"


def test_only_customers_place_orders(client, shop_setup):
    res = client.post("/api/orders", headers=shop_setup["owner"], json={
        "items": [{"productId": shop_setup["product"]["id"], "quantity": 1}],
        "customerAddress": "Flat 4",
    })
    assert res.status_code == 403


def test_unapproved_shop_takes_no_orders(client, market, storage, shop_setup):
    storage._set("shop", shop_setup["shop"]["id"], status=ShopStatus.SUSPENDED)
    res = market.order(shop_setup["customer"], shop_setup["product"])
    assert res.status_code == 400
    assert res.json()["field"] == "shop_id"


def test_advance_only_drives_preparation_steps(storage, shop_setup, market):
    order = market.order(shop_setup["customer"], shop_setup["product"]).json()
    owner = storage.get_user_by_email("owner@example.com")
    orders = OrderService(storage)

    orders.accept_order(owner, order["id"])
    with pytest.raises(InvalidTransition) as excinfo:
        orders.advance(owner, order["id"], S.DELIVERED)
    assert excinfo.value.current == "accepted"

    assert orders.advance(owner, order["id"], S.PREPARING).status == S.PREPARING
    assert orders.advance(owner, order["id"], S.READY).status == S.READY
