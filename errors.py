"""
Order Errors
============
Domain error taxonomy for checkout and order lifecycle.

Every error carries a user-presentable message (str(error)) and a
details dict for diagnostics. Details are only logged in development.
"""

from typing import Dict, Any, Optional


GENERIC_RETRY_MESSAGE = "Something went wrong. Please try again later."


class OrderError(Exception):
    """Base class for checkout and order workflow errors."""

    default_message = GENERIC_RETRY_MESSAGE

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.user_message = message or self.default_message
        self.details = details or {}
        super().__init__(self.user_message)


class EmptyCartError(OrderError):
    """Checkout attempted with no line items."""
    default_message = "Your cart is empty."


class ProductLookupError(OrderError):
    """A cart line references a product that no longer resolves."""
    default_message = "One or more referenced products no longer exist."


class ProductNotFoundError(OrderError):
    """Requested product does not exist or is not on sale."""
    default_message = "Product not found."


class TotalMismatchError(OrderError):
    """Client-supplied total disagrees with the recomputed total."""

    def __init__(self, calculated: int, provided: int):
        self.calculated = calculated
        self.provided = provided
        super().__init__(
            f"Order total does not match. Calculated: {calculated}, "
            f"provided: {provided}",
            details={"calculated": calculated, "provided": provided}
        )


class OrderPersistError(OrderError):
    """Order row could not be written."""
    default_message = "Failed to place your order. Please try again later."


class LineItemPersistError(OrderError):
    """Order line items could not be written."""
    default_message = "Failed to place your order. Please try again later."


class OrderNotFoundError(OrderError):
    """Order does not exist or is not visible to the caller."""
    default_message = "Order not found."


class AuthorizationError(OrderError):
    """Caller is not the owner of the order."""
    default_message = "You do not have permission for this order."


class InvalidOrderStatusError(OrderError):
    """Unknown order status value."""
    default_message = "Invalid order status."


class CartError(OrderError):
    """Cart read or write failed."""
    default_message = "Failed to update your cart. Please try again later."


class CartClearError(OrderError):
    """Clearing the cart after checkout failed. Logged, never raised."""
    default_message = "Failed to clear cart."


class OrderNotPayableError(OrderError):
    """Order is in a state that cannot be paid (cancelled)."""
    default_message = "This order has been cancelled."


class CatalogError(OrderError):
    """Product or category read failed."""
    default_message = "Failed to load products. Please try again later."
