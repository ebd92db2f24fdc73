"""
Database Schemas

Marketplace records as Pydantic models. Both storage backends read and
write these; in MongoDB each top-level record has its own collection,
named after the lowercased model:
- User -> "user" collection
- Shop -> "shop" collection
- Product -> "product" collection
- Order -> "order" collection; OrderItem lines are stored inside the order document
- Approval -> "approval" collection
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "customer"
    SHOPKEEPER = "shopkeeper"
    COURIER = "courier"
    ADMIN = "admin"


# Roles whose accounts wait for an admin before they can log in
APPROVAL_ROLES = (Role.SHOPKEEPER, Role.COURIER)


class UserStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


class ShopStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ApprovalType(str, Enum):
    USER_REGISTRATION = "user_registration"
    SHOP_APPROVAL = "shop_approval"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Record(BaseModel):
    id: Optional[str] = Field(None, description="Document id as string")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(Record):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    phone: str = Field(..., description="Contact phone")
    password_hash: str = Field(..., description="Password hash (server-side)")
    role: Role = Field(..., description="customer | shopkeeper | courier | admin")
    status: UserStatus = Field(UserStatus.ACTIVE, description="active | pending | suspended | rejected")
    driving_license: Optional[str] = Field(None, description="Couriers only")

    def public(self) -> dict:
        return self.model_dump(mode="json", exclude={"password_hash"})


class Shop(Record):
    """
    Shops collection schema
    Collection name: "shop"
    """
    name: str
    owner_id: str = Field(..., description="Owning shopkeeper, one shop per owner")
    address: str
    phone: str
    latitude: Optional[Decimal] = None
    longitude: Optional[Decimal] = None
    status: ShopStatus = ShopStatus.PENDING


class Product(Record):
    """
    Products collection schema
    Collection name: "product"
    """
    shop_id: str
    name: str
    description: Optional[str] = None
    price: Decimal = Field(..., gt=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units in stock")
    category: str
    barcode: Optional[str] = None
    image_url: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Product id as string")
    name: str
    price: Decimal = Field(..., description="Unit price at order time")
    quantity: int = Field(..., ge=1)


class Order(Record):
    """
    Orders collection schema
    Collection name: "order"
    """
    customer_id: str
    shop_id: str
    courier_id: Optional[str] = Field(None, description="Set when a courier claims the order")
    items: List[OrderItem]
    subtotal: Decimal = Field(..., ge=0)
    delivery_fee: Decimal = Field(Decimal("0"), ge=0)
    service_fee: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Decimal = Field(..., ge=0, description="Snapshot, never recomputed")
    delivery_address: str
    notes: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING


class Approval(Record):
    """
    Approvals collection schema
    Collection name: "approval"
    """
    type: ApprovalType
    user_id: Optional[str] = None
    shop_id: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: Optional[str] = None
    notes: Optional[str] = None
