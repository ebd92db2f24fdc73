from typing import List

from schemas import ApprovalStatus, ShopStatus, UserStatus
from storage import Storage


class AdminAggregator:
    """Read-only rollups over the stores. Decisions go through IdentityService."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def stats(self) -> dict:
        return {
            "totalUsers": self.storage.count("user"),
            "totalShops": self.storage.count("shop"),
            "totalProducts": self.storage.count("product"),
            "totalOrders": self.storage.count("order"),
            "pendingApprovals": self.storage.count("approval", status=ApprovalStatus.PENDING),
            "activeShops": self.storage.count("shop", status=ShopStatus.APPROVED),
            "pendingUsers": self.storage.count("user", status=UserStatus.PENDING),
        }

    def users(self) -> List[dict]:
        return [u.public() for u in self.storage.list_users()]

    def shops(self) -> List[dict]:
        owners = {u.id: u for u in self.storage.list_users()}
        out = []
        for shop in self.storage.list_shops():
            d = shop.model_dump(mode="json")
            owner = owners.get(shop.owner_id)
            d["owner_name"] = owner.name if owner else None
            d["owner_email"] = owner.email if owner else None
            out.append(d)
        return out

    def pending_approvals(self) -> List[dict]:
        """Open approval requests with the requester's and shop's display fields."""
        out = []
        for approval in self.storage.list_approvals(ApprovalStatus.PENDING):
            user = self.storage.get_user(approval.user_id) if approval.user_id else None
            shop = self.storage.get_shop(approval.shop_id) if approval.shop_id else None
            if user is None and shop is not None:
                # shop requests are made by the owner
                user = self.storage.get_user(shop.owner_id)
            d = approval.model_dump(mode="json")
            d.update({
                "user_name": user.name if user else None,
                "user_email": user.email if user else None,
                "user_role": user.role.value if user else None,
                "shop_name": shop.name if shop else None,
                "shop_address": shop.address if shop else None,
            })
            out.append(d)
        return out
