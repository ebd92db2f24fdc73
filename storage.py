"""
Storage backends

`Storage` is the contract the services talk to. Every compound or
contended write is a single method here so each backend can make it
atomic: a transaction in MongoDB (database.MongoStorage), one lock in
the in-memory store used for development and tests.

No backend caches records between calls; every read goes to the store.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

from schemas import (
    Approval,
    ApprovalStatus,
    ApprovalType,
    Order,
    OrderStatus,
    Product,
    ProductStatus,
    Record,
    Shop,
    ShopStatus,
    User,
    UserStatus,
    utcnow,
)
from errors import AlreadyDecided, DuplicateEmail, DuplicateShop, InsufficientStock, NotFound

logger = logging.getLogger(__name__)

# What an approval decision does to the record it gates
CASCADE = {
    (ApprovalType.USER_REGISTRATION, ApprovalStatus.APPROVED): ("user", UserStatus.ACTIVE),
    (ApprovalType.USER_REGISTRATION, ApprovalStatus.REJECTED): ("user", UserStatus.REJECTED),
    (ApprovalType.SHOP_APPROVAL, ApprovalStatus.APPROVED): ("shop", ShopStatus.APPROVED),
    (ApprovalType.SHOP_APPROVAL, ApprovalStatus.REJECTED): ("shop", ShopStatus.REJECTED),
}


def cascade_target(approval: Approval, decision: ApprovalStatus) -> Tuple[str, Optional[str], Any]:
    kind, status = CASCADE[(approval.type, decision)]
    target_id = approval.user_id if kind == "user" else approval.shop_id
    return kind, target_id, status


def reserved_quantities(order: Order) -> Dict[str, int]:
    """Units per product held by an order."""
    wanted: Dict[str, int] = {}
    for item in order.items:
        wanted[item.product_id] = wanted.get(item.product_id, 0) + item.quantity
    return wanted


def new_id() -> str:
    return str(ObjectId())


class Storage(ABC):
    """Persistence contract shared by every backend."""

    name = "storage"

    # Users
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, user: User, approval: Optional[Approval] = None) -> User:
        """Insert the user and, when given, its approval request atomically.
        Raises DuplicateEmail."""

    @abstractmethod
    def list_users(self) -> List[User]: ...

    # Shops
    @abstractmethod
    def get_shop(self, shop_id: str) -> Optional[Shop]: ...

    @abstractmethod
    def get_shop_by_owner(self, owner_id: str) -> Optional[Shop]: ...

    @abstractmethod
    def create_shop(self, shop: Shop, approval: Approval) -> Shop:
        """Insert the shop with its approval request. Raises DuplicateShop
        when the owner already has one."""

    @abstractmethod
    def list_shops(self, status: Optional[ShopStatus] = None) -> List[Shop]: ...

    # Products
    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    def list_products(self, shop_id: str, active_only: bool = False) -> List[Product]: ...

    @abstractmethod
    def create_product(self, product: Product) -> Product: ...

    @abstractmethod
    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Optional[Product]: ...

    @abstractmethod
    def delete_product(self, product_id: str) -> bool: ...

    # Orders
    @abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    def list_orders(
        self,
        customer_id: Optional[str] = None,
        shop_id: Optional[str] = None,
        courier_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        unassigned: bool = False,
    ) -> List[Order]:
        """Newest first."""

    @abstractmethod
    def place_order(self, order: Order) -> Order:
        """Reserve stock for every line and insert the order, all or nothing.
        Raises InsufficientStock."""

    @abstractmethod
    def transition_order(
        self,
        order_id: str,
        current: OrderStatus,
        target: OrderStatus,
        courier_id: Optional[str] = None,
        claim: bool = False,
        restock: bool = False,
    ) -> Optional[Order]:
        """Conditional status write.

        Applies only while the stored status still equals `current`. With
        `claim` the order must also be unassigned and gets `courier_id`;
        otherwise a given `courier_id` must match the assigned courier.
        `restock` returns the reserved quantities to the products.
        Returns the updated order, or None when the condition no longer holds.
        """

    # Approvals
    @abstractmethod
    def get_approval(self, approval_id: str) -> Optional[Approval]: ...

    @abstractmethod
    def list_approvals(self, status: Optional[ApprovalStatus] = None) -> List[Approval]: ...

    @abstractmethod
    def decide_approval(
        self, approval_id: str, decision: ApprovalStatus, admin_id: str, notes: Optional[str] = None
    ) -> Approval:
        """Record the decision and cascade it to the linked user or shop in
        one atomic step. Raises NotFound or AlreadyDecided."""

    # Aggregates
    @abstractmethod
    def count(self, kind: str, **filters: Any) -> int: ...

    def status(self) -> Dict[str, Any]:
        return {"database": self.name, "connection_status": "Connected"}


class MemoryStorage(Storage):
    """Process-local store guarded by a single lock."""

    name = "memory"
    kinds = ("user", "shop", "product", "order", "approval")

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = {k: {} for k in self.kinds}
        self._lock = threading.RLock()

    # internals

    def _insert(self, kind: str, record: Record) -> Record:
        record = record.model_copy(deep=True)
        record.id = record.id or new_id()
        self._tables[kind][record.id] = record
        return record.model_copy(deep=True)

    def _get(self, kind: str, record_id: Optional[str]):
        with self._lock:
            record = self._tables[kind].get(record_id) if record_id else None
            return record.model_copy(deep=True) if record else None

    def _find(self, kind: str, **filters: Any) -> List[Record]:
        with self._lock:
            rows = [
                r for r in self._tables[kind].values()
                if all(getattr(r, k) == v for k, v in filters.items())
            ]
            rows.sort(key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in rows]

    def _set(self, kind: str, record_id: str, **fields: Any) -> None:
        record = self._tables[kind][record_id]
        for k, v in fields.items():
            setattr(record, k, v)
        record.updated_at = utcnow()

    # Users

    def get_user(self, user_id):
        return self._get("user", user_id)

    def get_user_by_email(self, email):
        rows = self._find("user", email=email.lower())
        return rows[0] if rows else None

    def create_user(self, user, approval=None):
        with self._lock:
            if self._find("user", email=user.email.lower()):
                raise DuplicateEmail()
            user = user.model_copy(update={"email": user.email.lower()})
            created = self._insert("user", user)
            if approval is not None:
                self._insert("approval", approval.model_copy(update={"user_id": created.id}))
            return created

    def list_users(self):
        return self._find("user")

    # Shops

    def get_shop(self, shop_id):
        return self._get("shop", shop_id)

    def get_shop_by_owner(self, owner_id):
        rows = self._find("shop", owner_id=owner_id)
        return rows[0] if rows else None

    def create_shop(self, shop, approval):
        with self._lock:
            if self._find("shop", owner_id=shop.owner_id):
                raise DuplicateShop()
            created = self._insert("shop", shop)
            self._insert("approval", approval.model_copy(update={"shop_id": created.id}))
            return created

    def list_shops(self, status=None):
        return self._find("shop", status=status) if status else self._find("shop")

    # Products

    def get_product(self, product_id):
        return self._get("product", product_id)

    def list_products(self, shop_id, active_only=False):
        if active_only:
            return self._find("product", shop_id=shop_id, status=ProductStatus.ACTIVE)
        return self._find("product", shop_id=shop_id)

    def create_product(self, product):
        with self._lock:
            return self._insert("product", product)

    def update_product(self, product_id, fields):
        with self._lock:
            if product_id not in self._tables["product"]:
                return None
            self._set("product", product_id, **fields)
            return self._get("product", product_id)

    def delete_product(self, product_id):
        with self._lock:
            return self._tables["product"].pop(product_id, None) is not None

    # Orders

    def get_order(self, order_id):
        return self._get("order", order_id)

    def list_orders(self, customer_id=None, shop_id=None, courier_id=None, status=None, unassigned=False):
        filters = {"customer_id": customer_id, "shop_id": shop_id, "courier_id": courier_id, "status": status}
        rows = self._find("order", **{k: v for k, v in filters.items() if v is not None})
        if unassigned:
            rows = [o for o in rows if o.courier_id is None]
        return rows

    def place_order(self, order):
        with self._lock:
            products = self._tables["product"]
            wanted = reserved_quantities(order)
            for product_id, quantity in wanted.items():
                p = products.get(product_id)
                if p is None or p.shop_id != order.shop_id or p.status != ProductStatus.ACTIVE or p.stock < quantity:
                    raise InsufficientStock(product_id, p.stock if p else 0)
            for product_id, quantity in wanted.items():
                self._set("product", product_id, stock=products[product_id].stock - quantity)
            return self._insert("order", order)

    def transition_order(self, order_id, current, target, courier_id=None, claim=False, restock=False):
        with self._lock:
            order = self._tables["order"].get(order_id)
            if order is None or order.status != current:
                return None
            if claim:
                if order.courier_id is not None:
                    return None
                self._set("order", order_id, status=target, courier_id=courier_id)
            else:
                if courier_id is not None and order.courier_id != courier_id:
                    return None
                self._set("order", order_id, status=target)
            if restock:
                for product_id, quantity in reserved_quantities(order).items():
                    p = self._tables["product"].get(product_id)
                    if p is not None:
                        self._set("product", product_id, stock=p.stock + quantity)
            return self._get("order", order_id)

    # Approvals

    def get_approval(self, approval_id):
        return self._get("approval", approval_id)

    def list_approvals(self, status=None):
        return self._find("approval", status=status) if status else self._find("approval")

    def decide_approval(self, approval_id, decision, admin_id, notes=None):
        with self._lock:
            approval = self._tables["approval"].get(approval_id)
            if approval is None:
                raise NotFound("approval")
            if approval.status != ApprovalStatus.PENDING:
                raise AlreadyDecided(approval.status.value)
            kind, target_id, status = cascade_target(approval, decision)
            if target_id not in self._tables[kind]:
                raise NotFound(kind)
            self._set("approval", approval_id, status=decision, approved_by=admin_id, notes=notes)
            self._set(kind, target_id, status=status)
            return self._get("approval", approval_id)

    # Aggregates

    def count(self, kind, **filters):
        return len(self._find(kind, **filters))


def build_storage() -> Storage:
    """Mongo when DATABASE_URL is configured, in-memory otherwise."""
    from database import db, client

    if db is None:
        logger.warning("DATABASE_URL not set, using in-memory storage")
        return MemoryStorage()
    from database import MongoStorage

    return MongoStorage(client, db)
