"""
Order lifecycle engine.

    pending -> accepted -> preparing -> ready -> picked_up -> delivered
    pending | accepted | preparing -> cancelled

Every entry point (explicit endpoints and the generic status PATCH) goes
through `OrderService.transition`, which checks who may act, validates
the edge, and then writes with a conditional update keyed on the status
it validated against. Two couriers claiming the same ready order race on
that write; the store lets exactly one through.
"""

import logging
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple

from config import DELIVERY_FEE, SERVICE_FEE
from errors import AlreadyClaimed, Forbidden, InvalidTransition, NotFound, TooLateToCancel, ValidationError
from notifications import (
    COURIERS_ROOM,
    ORDER_ASSIGNED,
    ORDER_CREATED,
    ORDER_READY,
    ORDER_STATUS_UPDATED,
    NotificationRelay,
    order_room,
    shop_room,
)
from schemas import Order, OrderItem, OrderStatus, ProductStatus, Role, ShopStatus, User
from storage import Storage

logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[Role]] = {
    (S.PENDING, S.ACCEPTED): frozenset({Role.SHOPKEEPER}),
    (S.ACCEPTED, S.PREPARING): frozenset({Role.SHOPKEEPER}),
    (S.PREPARING, S.READY): frozenset({Role.SHOPKEEPER}),
    (S.READY, S.PICKED_UP): frozenset({Role.COURIER}),
    (S.PICKED_UP, S.DELIVERED): frozenset({Role.COURIER}),
    (S.PENDING, S.CANCELLED): frozenset({Role.CUSTOMER, Role.SHOPKEEPER}),
    (S.ACCEPTED, S.CANCELLED): frozenset({Role.CUSTOMER, Role.SHOPKEEPER}),
    (S.PREPARING, S.CANCELLED): frozenset({Role.CUSTOMER, Role.SHOPKEEPER}),
}

TERMINAL = frozenset({S.DELIVERED, S.CANCELLED})
CANCELLABLE = frozenset(current for current, target in TRANSITIONS if target == S.CANCELLED)
# Statuses some role can move an order into
REACHABLE = frozenset(target for _, target in TRANSITIONS)

# Steps a shopkeeper drives through `advance`
PREPARATION_STEPS = frozenset({S.PREPARING, S.READY})


def allowed_targets(role: Role) -> FrozenSet[OrderStatus]:
    return frozenset(target for (_, target), roles in TRANSITIONS.items() if role in roles)


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    """Raise unless `current -> target` is an edge of the lifecycle graph."""
    if target == S.CANCELLED and current not in CANCELLABLE and current != S.CANCELLED:
        raise TooLateToCancel(current.value)
    if (current, target) not in TRANSITIONS:
        raise InvalidTransition(current.value, target.value)


def parse_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("status", f"Unknown order status '{value}'")


class OrderService:
    def __init__(self, storage: Storage, relay: Optional[NotificationRelay] = None):
        self.storage = storage
        self.relay = relay

    # Placement

    def place_order(
        self,
        customer: User,
        items: List[dict],
        delivery_address: str,
        shop_id: Optional[str] = None,
        notes: Optional[str] = None,
        submitted_total: Optional[Decimal] = None,
    ) -> Order:
        """Price the cart from the catalog, reserve stock and create the order.

        `items` are dicts with `product_id`, `quantity` and optionally the
        `price` the client saw; a stale price rejects the order.
        """
        if customer.role != Role.CUSTOMER:
            raise Forbidden("Only customers can place orders")
        if not items:
            raise ValidationError("items", "At least one item is required")
        if not delivery_address or not delivery_address.strip():
            raise ValidationError("delivery_address", "Delivery address is required")

        lines: List[OrderItem] = []
        for n, item in enumerate(items):
            product = self.storage.get_product(item["product_id"])
            if product is None:
                raise ValidationError(f"items.{n}.product_id", "Unknown product")
            shop_id = shop_id or product.shop_id
            if product.shop_id != shop_id:
                raise ValidationError(f"items.{n}.product_id", "All items must come from the same shop")
            if product.status != ProductStatus.ACTIVE:
                raise ValidationError(f"items.{n}.product_id", f"{product.name} is not available")
            quantity = item["quantity"]
            if quantity < 1:
                raise ValidationError(f"items.{n}.quantity", "Quantity must be at least 1")
            seen_price = item.get("price")
            if seen_price is not None and Decimal(str(seen_price)) != product.price:
                raise ValidationError(f"items.{n}.price", f"Price of {product.name} has changed")
            lines.append(OrderItem(product_id=product.id, name=product.name, price=product.price, quantity=quantity))

        shop = self.storage.get_shop(shop_id)
        if shop is None:
            raise NotFound("shop")
        if shop.status != ShopStatus.APPROVED:
            raise ValidationError("shop_id", "Shop is not accepting orders")

        subtotal = sum((line.price * line.quantity for line in lines), Decimal("0"))
        total = subtotal + DELIVERY_FEE + SERVICE_FEE
        if submitted_total is not None and Decimal(str(submitted_total)) != total:
            logger.warning(f"client total {submitted_total} differs from computed {total} for {customer.id}")

        order = self.storage.place_order(Order(
            customer_id=customer.id,
            shop_id=shop.id,
            items=lines,
            subtotal=subtotal,
            delivery_fee=DELIVERY_FEE,
            service_fee=SERVICE_FEE,
            total_amount=total,
            delivery_address=delivery_address.strip(),
            notes=notes,
            status=S.PENDING,
        ))
        logger.info(f"order {order.id} placed by {customer.id} at shop {shop.id}, total {total}")
        self._publish(shop_room(shop.id), ORDER_CREATED, {
            "orderId": order.id,
            "shopId": shop.id,
            "totalAmount": str(order.total_amount),
            "deliveryAddress": order.delivery_address,
            "status": order.status.value,
        })
        return order

    # Transitions

    def _load(self, order_id: str) -> Order:
        order = self.storage.get_order(order_id)
        if order is None:
            raise NotFound("order")
        return order

    def _authorize(self, actor: User, order: Order, target: OrderStatus) -> None:
        if target not in REACHABLE:
            raise InvalidTransition(order.status.value, target.value)
        if target not in allowed_targets(actor.role):
            raise Forbidden(f"A {actor.role.value} cannot set an order to '{target.value}'")
        if actor.role == Role.SHOPKEEPER:
            shop = self.storage.get_shop_by_owner(actor.id)
            if shop is None or shop.id != order.shop_id:
                raise Forbidden()
        elif actor.role == Role.CUSTOMER:
            if order.customer_id != actor.id:
                raise Forbidden()
        elif actor.role == Role.COURIER:
            # Ready orders are open to every courier; afterwards only the assignee
            if target != S.PICKED_UP and order.courier_id != actor.id:
                raise Forbidden()

    def transition(self, actor: User, order_id: str, target: OrderStatus) -> Order:
        """The one path by which an order's status changes."""
        order = self._load(order_id)
        self._authorize(actor, order, target)

        claim = target == S.PICKED_UP
        if claim and order.courier_id is not None:
            raise AlreadyClaimed(order.status.value)
        check_transition(order.status, target)

        updated = self.storage.transition_order(
            order.id,
            order.status,
            target,
            courier_id=actor.id if actor.role == Role.COURIER else None,
            claim=claim,
            restock=target == S.CANCELLED,
        )
        if updated is None:
            # The order moved between our read and the conditional write
            fresh = self._load(order_id)
            if claim and fresh.courier_id is not None:
                logger.info(f"courier {actor.id} lost the claim on order {order_id}")
                raise AlreadyClaimed(fresh.status.value)
            raise InvalidTransition(fresh.status.value, target.value)

        logger.info(
            f"order {order_id}: {order.status.value} -> {target.value} by {actor.role.value} {actor.id}"
        )
        self._announce(updated)
        return updated

    def accept_order(self, shopkeeper: User, order_id: str) -> Order:
        return self.transition(shopkeeper, order_id, S.ACCEPTED)

    def advance(self, shopkeeper: User, order_id: str, target: OrderStatus) -> Order:
        if target not in PREPARATION_STEPS:
            order = self._load(order_id)
            raise InvalidTransition(order.status.value, target.value)
        return self.transition(shopkeeper, order_id, target)

    def claim_delivery(self, courier: User, order_id: str) -> Order:
        return self.transition(courier, order_id, S.PICKED_UP)

    def mark_delivered(self, courier: User, order_id: str) -> Order:
        return self.transition(courier, order_id, S.DELIVERED)

    def cancel_order(self, actor: User, order_id: str) -> Order:
        return self.transition(actor, order_id, S.CANCELLED)

    def set_status(self, actor: User, order_id: str, status: str) -> Order:
        """Generic status change, held to the same rules as the explicit calls."""
        return self.transition(actor, order_id, parse_status(status))

    # Queries

    def list_for_shop(self, shopkeeper: User) -> List[Order]:
        shop = self.storage.get_shop_by_owner(shopkeeper.id)
        return self.storage.list_orders(shop_id=shop.id) if shop else []

    def list_for_customer(self, customer: User) -> List[Order]:
        return self.storage.list_orders(customer_id=customer.id)

    def list_for_courier(self, courier: User) -> List[Order]:
        return self.storage.list_orders(courier_id=courier.id)

    def list_for(self, user: User) -> List[Order]:
        if user.role == Role.SHOPKEEPER:
            return self.list_for_shop(user)
        if user.role == Role.CUSTOMER:
            return self.list_for_customer(user)
        if user.role == Role.COURIER:
            return self.list_for_courier(user)
        raise Forbidden("Orders are listed for customers, shopkeepers and couriers")

    def list_available_for_couriers(self) -> List[dict]:
        """Ready, unassigned orders with the pickup shop's name and address."""
        orders = self.storage.list_orders(status=S.READY, unassigned=True)
        shops = {}
        out = []
        for order in orders:
            if order.shop_id not in shops:
                shops[order.shop_id] = self.storage.get_shop(order.shop_id)
            shop = shops[order.shop_id]
            d = order.model_dump(mode="json")
            d["shop_name"] = shop.name if shop else None
            d["shop_address"] = shop.address if shop else None
            out.append(d)
        return out

    def get_order(self, viewer: User, order_id: str) -> Order:
        order = self._load(order_id)
        if viewer.role == Role.ADMIN or viewer.id in (order.customer_id, order.courier_id):
            return order
        if viewer.role == Role.COURIER and order.status == S.READY and order.courier_id is None:
            return order
        if viewer.role == Role.SHOPKEEPER:
            shop = self.storage.get_shop_by_owner(viewer.id)
            if shop is not None and shop.id == order.shop_id:
                return order
        raise Forbidden()

    # Events

    def _publish(self, room: str, event: str, payload: dict) -> None:
        if self.relay is not None:
            self.relay.publish(room, event, payload)

    def _announce(self, order: Order) -> None:
        payload = {"orderId": order.id, "status": order.status.value}
        if order.courier_id:
            payload["courierId"] = order.courier_id
        self._publish(order_room(order.id), ORDER_STATUS_UPDATED, payload)
        self._publish(shop_room(order.shop_id), ORDER_STATUS_UPDATED, payload)
        if order.status == S.READY:
            self._publish(COURIERS_ROOM, ORDER_READY, {"orderId": order.id, "shopId": order.shop_id})
        elif order.status == S.PICKED_UP:
            assigned = {"orderId": order.id, "courierId": order.courier_id}
            self._publish(order_room(order.id), ORDER_ASSIGNED, assigned)
            self._publish(COURIERS_ROOM, ORDER_ASSIGNED, assigned)
