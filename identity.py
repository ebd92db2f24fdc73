"""
Identity & approval gate.

Accounts, sessions, shop registration and the admin approval queue that
activates shopkeepers, couriers and shops.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from config import DEFAULT_SHOP_PHONE
from errors import (
    AccountPending,
    AccountRejected,
    AccountSuspended,
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    NotFound,
    ValidationError,
)
from schemas import (
    APPROVAL_ROLES,
    Approval,
    ApprovalStatus,
    ApprovalType,
    Role,
    Shop,
    ShopStatus,
    User,
    UserStatus,
)
from security import create_token, decode_token, hash_password, verify_password
from storage import Storage

logger = logging.getLogger(__name__)

ACTIONS = {"approve": ApprovalStatus.APPROVED, "reject": ApprovalStatus.REJECTED}

_STATUS_ERRORS = {
    UserStatus.PENDING: AccountPending,
    UserStatus.SUSPENDED: AccountSuspended,
    UserStatus.REJECTED: AccountRejected,
}


def ensure_active(user: User) -> None:
    error = _STATUS_ERRORS.get(user.status)
    if error is not None:
        raise error()


def session_payload(user: User) -> dict:
    return {
        "token": create_token(user.id),
        "user": {"id": user.id, "name": user.name, "email": user.email, "role": user.role.value},
    }


class IdentityService:
    def __init__(self, storage: Storage):
        self.storage = storage

    # Accounts

    def register(
        self,
        name: str,
        email: str,
        phone: str,
        password: str,
        role: Role,
        driving_license: Optional[str] = None,
    ) -> dict:
        needs_approval = role in APPROVAL_ROLES
        user = User(
            name=name,
            email=email,
            phone=phone,
            password_hash=hash_password(password),
            role=role,
            status=UserStatus.PENDING if needs_approval else UserStatus.ACTIVE,
            driving_license=driving_license or None,
        )
        approval = Approval(type=ApprovalType.USER_REGISTRATION) if needs_approval else None
        user = self.storage.create_user(user, approval)
        logger.info(f"registered {user.role.value} {user.id} ({user.status.value})")

        if needs_approval:
            return {"message": "Registration successful. Awaiting admin approval.", "requiresApproval": True}
        return session_payload(user)

    def login(self, email: str, password: str) -> dict:
        user = self.storage.get_user_by_email(email)
        if not verify_password(password, user.password_hash if user else None):
            raise InvalidCredentials()
        try:
            ensure_active(user)
        except (AccountPending, AccountSuspended, AccountRejected) as e:
            logger.info(f"login refused for {user.id}: {e.code}")
            raise
        return session_payload(user)

    def resolve_session(self, token: str) -> User:
        """Fresh read of the user a credential belongs to."""
        user = self.storage.get_user(decode_token(token))
        if user is None:
            raise InvalidToken()
        ensure_active(user)
        return user

    # Shops

    def create_shop(
        self,
        owner: User,
        name: str,
        address: str,
        phone: Optional[str] = None,
        latitude: Optional[Decimal] = None,
        longitude: Optional[Decimal] = None,
    ) -> Shop:
        if owner.role != Role.SHOPKEEPER:
            raise Forbidden("Only shopkeepers can create shops")
        if not name or not name.strip():
            raise ValidationError("name", "Shop name and address are required")
        if not address or not address.strip():
            raise ValidationError("address", "Shop name and address are required")
        shop = Shop(
            name=name.strip(),
            owner_id=owner.id,
            address=address.strip(),
            phone=phone or DEFAULT_SHOP_PHONE,
            latitude=latitude,
            longitude=longitude,
            status=ShopStatus.PENDING,
        )
        shop = self.storage.create_shop(shop, Approval(type=ApprovalType.SHOP_APPROVAL))
        logger.info(f"shop {shop.id} registered by {owner.id}, awaiting approval")
        return shop

    def my_shop(self, owner: User) -> Shop:
        shop = self.storage.get_shop_by_owner(owner.id)
        if shop is None:
            raise NotFound("shop")
        return shop

    def nearby_shops(self, lat: float = 0, lng: float = 0, radius: float = 10) -> List[Shop]:
        # No geographic filtering yet: every approved shop is "nearby"
        return self.storage.list_shops(ShopStatus.APPROVED)

    # Approvals

    def decide_approval(self, approval_id: str, action: str, admin: User, notes: Optional[str] = None) -> Approval:
        if admin.role != Role.ADMIN:
            raise Forbidden("Admin access required")
        decision = ACTIONS.get(action)
        if decision is None:
            raise ValidationError("action", "Invalid action")
        approval = self.storage.decide_approval(approval_id, decision, admin.id, notes)
        logger.info(f"approval {approval.id} ({approval.type.value}) {decision.value} by {admin.id}")
        return approval
