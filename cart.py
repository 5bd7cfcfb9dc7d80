"""
Cart Module
===========
Per-user cart lines (product reference + quantity).

Every read and write is scoped by user_id. Cart rows are also edited by
the storefront UI with no arbitration; last write wins.
"""

import logging
from typing import Dict, List, Any, Optional
from dataclasses import dataclass

from db import StoreError, eq, row_str, row_int, utc_now, get_store
from errors import CartError, CartClearError


logger = logging.getLogger(__name__)


MAX_QUANTITY_PER_ITEM = 99


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass(frozen=True)
class CartLineItem:
    """One cart line. Quantity is always >= 1."""
    product_id: str
    quantity: int
    id: Optional[str] = None

    def __post_init__(self):
        if not self.product_id:
            raise ValueError("product_id is required")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"quantity must be an integer: {self.quantity!r}")
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1: {self.quantity}")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CartLineItem":
        return cls(
            product_id=row_str(row, "product_id", "cart_items"),
            quantity=row_int(row, "quantity", "cart_items", minimum=1),
            id=row_str(row, "id", "cart_items", required=False),
        )


@dataclass(frozen=True)
class CartClearResult:
    """Outcome of the post-checkout cart clear."""
    ok: bool
    error: Optional[CartClearError] = None


# ============================================================================
# READS
# ============================================================================

async def get_cart(user_id: str, store=None) -> List[CartLineItem]:
    """Get the user's cart, newest first."""
    store = store or get_store()

    try:
        rows = await store.select(
            "cart_items",
            filters=[eq("user_id", user_id)],
            order_by="created_at",
            descending=True
        )
    except StoreError as e:
        logger.error(f"Cart fetch failed for {user_id}: {e}")
        raise CartError("Failed to load your cart.") from e

    return [CartLineItem.from_row(row) for row in rows]


async def count_items(user_id: str, store=None) -> int:
    """Number of distinct lines in the user's cart."""
    store = store or get_store()

    try:
        rows = await store.select(
            "cart_items",
            columns="id",
            filters=[eq("user_id", user_id)]
        )
    except StoreError as e:
        logger.error(f"Cart count failed for {user_id}: {e}")
        raise CartError("Failed to load your cart.") from e

    return len(rows)


# ============================================================================
# WRITES
# ============================================================================

def _check_quantity(quantity: int):
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise CartError(f"Invalid quantity: {quantity!r}")
    if not 1 <= quantity <= MAX_QUANTITY_PER_ITEM:
        raise CartError(
            f"Quantity must be between 1 and {MAX_QUANTITY_PER_ITEM}."
        )


async def add_to_cart(
    user_id: str,
    product_id: str,
    quantity: int = 1,
    store=None
) -> CartLineItem:
    """
    Add a product to the cart.

    An existing line for the same product has its quantity increased
    instead of a second line being created.
    """
    store = store or get_store()
    _check_quantity(quantity)

    try:
        existing = await store.select(
            "cart_items",
            filters=[eq("user_id", user_id), eq("product_id", product_id)],
            limit=1
        )

        if existing:
            item = CartLineItem.from_row(existing[0])
            new_quantity = min(item.quantity + quantity, MAX_QUANTITY_PER_ITEM)
            rows = await store.update(
                "cart_items",
                {"quantity": new_quantity, "updated_at": utc_now().isoformat()},
                [eq("id", item.id), eq("user_id", user_id)]
            )
        else:
            rows = await store.insert(
                "cart_items",
                {
                    "user_id": user_id,
                    "product_id": product_id,
                    "quantity": quantity,
                }
            )

    except StoreError as e:
        logger.error(f"Add to cart failed ({user_id}, {product_id}): {e}")
        raise CartError() from e

    if not rows:
        raise CartError()

    logger.info(f"Cart updated: user={user_id} product={product_id} +{quantity}")
    return CartLineItem.from_row(rows[0])


async def update_quantity(
    user_id: str,
    cart_item_id: str,
    quantity: int,
    store=None
) -> CartLineItem:
    """Set a cart line's quantity (must be >= 1; use remove_item to delete)."""
    store = store or get_store()
    _check_quantity(quantity)

    try:
        rows = await store.update(
            "cart_items",
            {"quantity": quantity, "updated_at": utc_now().isoformat()},
            [eq("id", cart_item_id), eq("user_id", user_id)]
        )
    except StoreError as e:
        logger.error(f"Quantity update failed for {cart_item_id}: {e}")
        raise CartError() from e

    if not rows:
        raise CartError("Cart item not found.")

    return CartLineItem.from_row(rows[0])


async def remove_item(user_id: str, cart_item_id: str, store=None) -> bool:
    """
    Remove a cart line.

    Returns:
        True if a line was removed
    """
    store = store or get_store()

    try:
        rows = await store.delete(
            "cart_items",
            [eq("id", cart_item_id), eq("user_id", user_id)]
        )
    except StoreError as e:
        logger.error(f"Remove failed for {cart_item_id}: {e}")
        raise CartError() from e

    return len(rows) > 0


async def clear_cart(user_id: str, store=None) -> CartClearResult:
    """
    Delete every cart line for the user.

    Never raises: failure comes back as a CartClearResult carrying a
    CartClearError for the caller to log.
    """
    store = store or get_store()

    try:
        await store.delete("cart_items", [eq("user_id", user_id)])
    except StoreError as e:
        return CartClearResult(
            ok=False,
            error=CartClearError(
                details={"user_id": user_id, "reason": str(e), "code": e.code}
            )
        )

    return CartClearResult(ok=True)
