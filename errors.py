"""
Domain errors

Every failure the service reports to a client is one of these classes.
They carry the HTTP status they map to, a stable machine code and any
context fields worth showing (current state, offending field, ...).
The single exception handler in main.py renders them as JSON.
"""

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "error"
    message = "Request failed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.code, **self.context}


class ValidationError(MarketplaceError):
    status_code = 400
    code = "validation_error"
    message = "Invalid request"

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"Invalid value for '{field}'", field=field)
        self.field = field


class InvalidCredentials(MarketplaceError):
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid credentials"


class InvalidToken(MarketplaceError):
    status_code = 401
    code = "invalid_token"
    message = "Invalid or expired token"


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"
    message = "Access denied"


class AccountPending(MarketplaceError):
    status_code = 403
    code = "account_pending"
    message = "Account pending approval"


class AccountSuspended(MarketplaceError):
    status_code = 403
    code = "account_suspended"
    message = "Account suspended"


class AccountRejected(MarketplaceError):
    status_code = 403
    code = "account_rejected"
    message = "Account registration was rejected"


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, message: Optional[str] = None):
        super().__init__(message or f"{entity.capitalize()} not found", entity=entity)
        self.entity = entity


class Conflict(MarketplaceError):
    status_code = 409
    code = "conflict"
    message = "Conflict"


class DuplicateEmail(Conflict):
    code = "duplicate_email"
    message = "Email already registered. Please use a different email or login."


class DuplicateShop(Conflict):
    code = "duplicate_shop"
    message = "You already have a shop registered"


class InvalidTransition(Conflict):
    code = "invalid_transition"

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move order from '{current}' to '{attempted}'",
            current=current,
            attempted=attempted,
        )
        self.current = current
        self.attempted = attempted


class TooLateToCancel(InvalidTransition):
    code = "too_late_to_cancel"

    def __init__(self, current: str):
        super().__init__(current, "cancelled", f"Order can no longer be cancelled once '{current}'")


class AlreadyClaimed(Conflict):
    code = "already_claimed"
    message = "Order already taken by another courier"

    def __init__(self, current: str):
        super().__init__(current=current)
        self.current = current


class AlreadyDecided(Conflict):
    code = "already_decided"

    def __init__(self, current: str):
        super().__init__(f"Approval already {current}", current=current)
        self.current = current


class InsufficientStock(Conflict):
    code = "insufficient_stock"

    def __init__(self, product_id: str, available: Optional[int] = None):
        super().__init__(f"Not enough stock for product {product_id}", product_id=product_id, available=available)
        self.product_id = product_id
        self.available = available


class StorageUnavailable(MarketplaceError):
    status_code = 503
    code = "storage_unavailable"
    message = "Database not available"
