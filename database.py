"""
MongoDB connection and the Mongo-backed store.

`db` is None when DATABASE_URL is not configured; callers fall back to
the in-memory store in that case (see storage.build_storage).

Compound writes run inside multi-document transactions, which MongoDB
only offers on a replica set or sharded cluster.
"""

import functools
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from bson import Decimal128, ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import DATABASE_NAME, DATABASE_URL
from errors import AlreadyDecided, DuplicateEmail, DuplicateShop, InsufficientStock, NotFound, StorageUnavailable
from schemas import Approval, ApprovalStatus, Order, Product, ProductStatus, Shop, User, utcnow
from storage import Storage, cascade_target, reserved_quantities

logger = logging.getLogger(__name__)

client = MongoClient(DATABASE_URL, tz_aware=True) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(str(value))
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _oid(value: Optional[str]) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _load(model, doc: Optional[dict]):
    if not doc:
        return None
    data = _decode(doc)
    data["id"] = str(data.pop("_id"))
    return model(**data)


def create_document(database, collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document and return its id as string"""
    if database is None:
        raise StorageUnavailable()
    if isinstance(data, BaseModel):
        data = _encode(data.model_dump(exclude={"id"}))
    else:
        data = dict(data)
    data.setdefault("created_at", utcnow())
    data.setdefault("updated_at", utcnow())
    result = database[collection_name].insert_one(data, session=session)
    return str(result.inserted_id)


def get_documents(
    database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None
) -> List[dict]:
    """Newest first"""
    if database is None:
        raise StorageUnavailable()
    cursor = database[collection_name].find(_encode(filter_dict or {})).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def guarded(fn):
    """Turn driver failures into StorageUnavailable."""
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PyMongoError as e:
            logger.exception(f"storage failure in {fn.__name__}")
            raise StorageUnavailable() from e
    return wrapper


class MongoStorage(Storage):
    name = "mongodb"

    def __init__(self, mongo_client: MongoClient, database):
        self.client = mongo_client
        self.db = database
        self.ensure_indexes()

    @guarded
    def ensure_indexes(self):
        self.db["user"].create_index("email", unique=True)
        self.db["shop"].create_index("owner_id", unique=True)
        self.db["product"].create_index("shop_id")
        self.db["order"].create_index([("status", 1), ("courier_id", 1)])
        self.db["approval"].create_index("status")

    def _transaction(self, callback):
        with self.client.start_session() as session:
            return session.with_transaction(callback)

    def _insert(self, kind: str, record: BaseModel, session=None):
        record_id = create_document(self.db, kind, record, session=session)
        return record.model_copy(update={"id": record_id})

    def _find_one(self, model, kind: str, record_id: Optional[str]):
        oid = _oid(record_id)
        if oid is None:
            return None
        return _load(model, self.db[kind].find_one({"_id": oid}))

    def _find(self, model, kind: str, filters: Optional[dict] = None):
        return [_load(model, d) for d in get_documents(self.db, kind, filters)]

    # Users

    @guarded
    def get_user(self, user_id):
        return self._find_one(User, "user", user_id)

    @guarded
    def get_user_by_email(self, email):
        return _load(User, self.db["user"].find_one({"email": email.lower()}))

    @guarded
    def create_user(self, user, approval=None):
        user = user.model_copy(update={"email": user.email.lower()})

        def txn(session):
            created = self._insert("user", user, session)
            if approval is not None:
                self._insert("approval", approval.model_copy(update={"user_id": created.id}), session)
            return created

        try:
            return self._transaction(txn)
        except DuplicateKeyError:
            raise DuplicateEmail()

    @guarded
    def list_users(self):
        return self._find(User, "user")

    # Shops

    @guarded
    def get_shop(self, shop_id):
        return self._find_one(Shop, "shop", shop_id)

    @guarded
    def get_shop_by_owner(self, owner_id):
        return _load(Shop, self.db["shop"].find_one({"owner_id": owner_id}))

    @guarded
    def create_shop(self, shop, approval):
        def txn(session):
            created = self._insert("shop", shop, session)
            self._insert("approval", approval.model_copy(update={"shop_id": created.id}), session)
            return created

        try:
            return self._transaction(txn)
        except DuplicateKeyError:
            raise DuplicateShop()

    @guarded
    def list_shops(self, status=None):
        return self._find(Shop, "shop", {"status": status} if status else None)

    # Products

    @guarded
    def get_product(self, product_id):
        return self._find_one(Product, "product", product_id)

    @guarded
    def list_products(self, shop_id, active_only=False):
        filters = {"shop_id": shop_id}
        if active_only:
            filters["status"] = ProductStatus.ACTIVE
        return self._find(Product, "product", filters)

    @guarded
    def create_product(self, product):
        return self._insert("product", product)

    @guarded
    def update_product(self, product_id, fields):
        oid = _oid(product_id)
        if oid is None:
            return None
        doc = self.db["product"].find_one_and_update(
            {"_id": oid},
            {"$set": _encode({**fields, "updated_at": utcnow()})},
            return_document=ReturnDocument.AFTER,
        )
        return _load(Product, doc)

    @guarded
    def delete_product(self, product_id):
        oid = _oid(product_id)
        return oid is not None and self.db["product"].delete_one({"_id": oid}).deleted_count == 1

    # Orders

    @guarded
    def get_order(self, order_id):
        return self._find_one(Order, "order", order_id)

    @guarded
    def list_orders(self, customer_id=None, shop_id=None, courier_id=None, status=None, unassigned=False):
        filters: Dict[str, Any] = {
            k: v for k, v in
            {"customer_id": customer_id, "shop_id": shop_id, "courier_id": courier_id, "status": status}.items()
            if v is not None
        }
        if unassigned:
            filters["courier_id"] = None
        return self._find(Order, "order", filters)

    @guarded
    def place_order(self, order):
        def txn(session):
            for product_id, quantity in reserved_quantities(order).items():
                oid = _oid(product_id)
                result = self.db["product"].update_one(
                    {"_id": oid, "shop_id": order.shop_id, "status": ProductStatus.ACTIVE.value, "stock": {"$gte": quantity}},
                    {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
                    session=session,
                )
                if result.modified_count == 0:
                    current = self.db["product"].find_one({"_id": oid}, session=session) if oid else None
                    raise InsufficientStock(product_id, current["stock"] if current else 0)
            return self._insert("order", order, session)

        return self._transaction(txn)

    @guarded
    def transition_order(self, order_id, current, target, courier_id=None, claim=False, restock=False):
        oid = _oid(order_id)
        if oid is None:
            return None
        query: Dict[str, Any] = {"_id": oid, "status": current.value}
        changes: Dict[str, Any] = {"status": target.value, "updated_at": utcnow()}
        if claim:
            query["courier_id"] = None
            changes["courier_id"] = courier_id
        elif courier_id is not None:
            query["courier_id"] = courier_id

        def txn(session):
            doc = self.db["order"].find_one_and_update(
                query, {"$set": changes}, return_document=ReturnDocument.AFTER, session=session
            )
            order = _load(Order, doc)
            if order is not None and restock:
                for product_id, quantity in reserved_quantities(order).items():
                    self.db["product"].update_one(
                        {"_id": _oid(product_id)},
                        {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
                        session=session,
                    )
            return order

        if restock:
            return self._transaction(txn)
        return txn(None)

    # Approvals

    @guarded
    def get_approval(self, approval_id):
        return self._find_one(Approval, "approval", approval_id)

    @guarded
    def list_approvals(self, status=None):
        return self._find(Approval, "approval", {"status": status} if status else None)

    @guarded
    def decide_approval(self, approval_id, decision, admin_id, notes=None):
        oid = _oid(approval_id)
        if oid is None:
            raise NotFound("approval")

        def txn(session):
            doc = self.db["approval"].find_one_and_update(
                {"_id": oid, "status": ApprovalStatus.PENDING.value},
                {"$set": {"status": decision.value, "approved_by": admin_id, "notes": notes, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if doc is None:
                existing = self.db["approval"].find_one({"_id": oid}, session=session)
                if existing is None:
                    raise NotFound("approval")
                raise AlreadyDecided(existing["status"])
            approval = _load(Approval, doc)
            kind, target_id, status = cascade_target(approval, decision)
            result = self.db[kind].update_one(
                {"_id": _oid(target_id)},
                {"$set": {"status": status.value, "updated_at": utcnow()}},
                session=session,
            )
            if result.matched_count == 0:
                raise NotFound(kind)
            return approval

        return self._transaction(txn)

    # Aggregates

    @guarded
    def count(self, kind, **filters):
        return self.db[kind].count_documents(_encode(filters))

    def status(self):
        response = {"database": self.name, "database_name": self.db.name, "connection_status": "Not Connected"}
        try:
            response["collections"] = self.db.list_collection_names()[:10]
            response["connection_status"] = "Connected"
        except PyMongoError as e:
            response["error"] = str(e)[:80]
        return response
