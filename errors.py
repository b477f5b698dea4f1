"""
Error taxonomy for the marketplace.

Every error raised by the service modules derives from MarketplaceError and
carries the HTTP status the API layer answers with.
"""
from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    status_code = 500
    message = "Something went wrong"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def payload(self) -> Dict[str, Any]:
        return {"detail": self.message}


class ValidationError(MarketplaceError):
    status_code = 400
    message = "Invalid input"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "field": self.field}


class EmptyCartError(MarketplaceError):
    # informational; the client goes back to the cart view
    status_code = 409
    message = "Your cart is empty"


class ConflictError(MarketplaceError):
    status_code = 409
    message = "Already exists"


class InvalidTransitionError(MarketplaceError):
    status_code = 400
    message = "Failed to update order status"


class NotFoundError(MarketplaceError):
    status_code = 404
    message = "Not found"


class AuthError(MarketplaceError):
    status_code = 401
    message = "Not authenticated"


class PermissionDeniedError(MarketplaceError):
    status_code = 403
    message = "Not allowed"


class ProfileUpdateError(MarketplaceError):
    status_code = 401
    message = "Failed to update profile"


class RemoteError(MarketplaceError):
    status_code = 502
    message = "Backend request failed"


class CheckoutFailedError(RemoteError):
    """Some seller groups of a checkout could not be written; the rest stay placed."""
    message = "Failed to place order. Please try again."

    def __init__(self, placed_orders, failed_sellers, message: Optional[str] = None):
        super().__init__(message)
        self.placed_orders = placed_orders
        self.failed_sellers = failed_sellers

    def payload(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "placed_orders": self.placed_orders,
            "failed_sellers": self.failed_sellers,
        }
