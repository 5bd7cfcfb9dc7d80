"""
Order Module (Production)
=========================
Order creation and status lifecycle.

create_order:
    reconcile prices -> insert order (pending) -> insert line items
    -> best-effort cart clear

update_order_status:
    ownership check -> conditional update (idempotent for "paid")

Orders are keyed by their system id. The order number is a display
label only and may collide.
"""

import random
from typing import Dict, List, Any, Optional, Sequence, Tuple
from datetime import datetime
from dataclasses import dataclass
from enum import Enum

import structlog
from prometheus_client import Counter, Histogram

from db import (
    StoreError,
    RecordMappingError,
    AnyOf,
    eq,
    neq,
    is_null,
    row_str,
    row_int,
    row_datetime,
    utc_now,
    get_store,
)
from cart import CartLineItem, get_cart, clear_cart
from pricing import reconcile
from config import is_development, is_metrics_enabled, get_order_number_prefix
from errors import (
    OrderError,
    AuthorizationError,
    InvalidOrderStatusError,
    LineItemPersistError,
    OrderNotFoundError,
    OrderPersistError,
)


logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

orders_created = Counter(
    'orders_created_total',
    'Order creation attempts',
    ['result']
)
order_value = Histogram(
    'order_value',
    'Order total in the smallest currency unit',
    buckets=(10000, 30000, 50000, 100000, 200000, 500000, 1000000)
)
order_status_transitions = Counter(
    'order_status_transitions_total',
    'Order status transitions',
    ['from_status', 'to_status']
)
order_idempotent_skips = Counter(
    'order_idempotent_skips_total',
    'Repeated paid callbacks ignored'
)
order_compensations = Counter(
    'order_compensations_total',
    'Orders deleted after a later creation step failed',
    ['result']
)
cart_clear_failures = Counter(
    'cart_clear_failures_total',
    'Post-checkout cart clear failures'
)


# ============================================================================
# ENTITIES
# ============================================================================

class OrderStatus(Enum):
    """
    Order lifecycle status.

    Intended flow:
        pending -> paid -> completed
        pending -> cancelled

    Only the paid/payment_id combination is guarded; other moves are
    applied as requested.
    """
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


def _parse_status(status: Any) -> OrderStatus:
    if isinstance(status, OrderStatus):
        return status
    try:
        return OrderStatus(status)
    except ValueError:
        raise InvalidOrderStatusError(details={"status": status})


@dataclass(frozen=True)
class ShippingInfo:
    name: str
    phone: str
    address: str

    def __post_init__(self):
        for field_name in ("name", "phone", "address"):
            value = getattr(self, field_name)
            if not value or not str(value).strip():
                raise ValueError(f"shipping {field_name} is required")


@dataclass(frozen=True)
class Order:
    id: str
    user_id: str
    order_number: str
    total_amount: int
    status: OrderStatus
    shipping_name: Optional[str] = None
    shipping_phone: Optional[str] = None
    shipping_address: Optional[str] = None
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        try:
            status = OrderStatus(row.get("status"))
        except ValueError:
            raise RecordMappingError(
                f"orders: unknown status {row.get('status')!r}",
                operation="map",
                table="orders"
            )

        return cls(
            id=row_str(row, "id", "orders"),
            user_id=row_str(row, "user_id", "orders"),
            order_number=row_str(row, "order_number", "orders"),
            total_amount=row_int(row, "total_amount", "orders", minimum=0),
            status=status,
            shipping_name=row_str(row, "shipping_name", "orders", required=False),
            shipping_phone=row_str(row, "shipping_phone", "orders", required=False),
            shipping_address=row_str(row, "shipping_address", "orders", required=False),
            payment_id=row_str(row, "payment_id", "orders", required=False),
            payment_method=row_str(row, "payment_method", "orders", required=False),
            created_at=row_datetime(row, "created_at", "orders"),
            updated_at=row_datetime(row, "updated_at", "orders"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_number": self.order_number,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "shipping_name": self.shipping_name,
            "shipping_phone": self.shipping_phone,
            "shipping_address": self.shipping_address,
            "payment_id": self.payment_id,
            "payment_method": self.payment_method,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class OrderLineItem:
    """
    Immutable price/name snapshot of one ordered product.

    Later product price changes never reach these rows.
    """
    id: str
    order_id: str
    product_id: str
    product_name: str
    product_price: int
    quantity: int
    subtotal: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OrderLineItem":
        return cls(
            id=row_str(row, "id", "order_items"),
            order_id=row_str(row, "order_id", "order_items"),
            product_id=row_str(row, "product_id", "order_items"),
            product_name=row_str(row, "product_name", "order_items"),
            product_price=row_int(row, "product_price", "order_items", minimum=0),
            quantity=row_int(row, "quantity", "order_items", minimum=1),
            subtotal=row_int(row, "subtotal", "order_items", minimum=0),
            created_at=row_datetime(row, "created_at", "order_items"),
        )


@dataclass(frozen=True)
class OrderWithItems:
    order: Order
    items: Tuple[OrderLineItem, ...]


# ============================================================================
# ORDER NUMBERS
# ============================================================================

def generate_order_number(now: Optional[datetime] = None, rng=None) -> str:
    """
    Build a display order number: <PREFIX>-YYYYMMDD-NNN.

    The date is the UTC creation date; NNN is pseudo-random in [0, 999].
    Not unique.
    """
    now = now or utc_now()
    suffix = (rng or random).randint(0, 999)
    return f"{get_order_number_prefix()}-{now:%Y%m%d}-{suffix:03d}"


# ============================================================================
# HELPERS
# ============================================================================

def _log_failure(event: str, error: Exception, **context):
    """Full diagnostics in development, a one-line summary otherwise."""
    if is_development():
        details = getattr(error, "details", {})
        logger.error(
            event,
            error=str(error),
            error_type=type(error).__name__,
            details=details,
            exc_info=True,
            **context
        )
    else:
        logger.warning(event, error_type=type(error).__name__)


async def _fetch_order(store, order_id: str) -> Order:
    """Read an order by id. Raises OrderNotFoundError if absent."""
    rows = await store.select("orders", filters=[eq("id", order_id)], limit=1)

    if not rows:
        raise OrderNotFoundError(details={"order_id": order_id})

    return Order.from_row(rows[0])


async def _discard_order(store, order_id: str) -> bool:
    """Compensating delete for an order that could not be completed."""
    try:
        await store.delete("orders", [eq("id", order_id)])
    except StoreError as e:
        logger.error("order_compensation_failed", order_id=order_id, error=str(e))
        if is_metrics_enabled():
            order_compensations.labels(result="failed").inc()
        return False

    logger.warning("order_compensated", order_id=order_id)
    if is_metrics_enabled():
        order_compensations.labels(result="deleted").inc()
    return True


# ============================================================================
# CREATE
# ============================================================================

async def create_order(
    user_id: str,
    line_items: Sequence[CartLineItem],
    client_total: int,
    shipping: ShippingInfo,
    store=None
) -> Order:
    """
    Create a pending order from cart lines.

    Args:
        user_id: Authenticated user (required)
        line_items: Cart lines to order
        client_total: Total the client displayed (advisory)
        shipping: Recipient details
        store: Record store (defaults to the global client)

    Returns:
        The created Order (status pending, server-computed total)

    Raises:
        AuthorizationError: No user identity
        EmptyCartError, ProductLookupError, TotalMismatchError: Pricing failed
        OrderPersistError: Order row could not be written or read back
        LineItemPersistError: Line items could not be written; the order
            row has been deleted again (see details["compensated"])
    """
    store = store or get_store()

    if not user_id:
        raise AuthorizationError("Please sign in to place an order.")

    try:
        order = await _create_order(store, user_id, line_items, client_total, shipping)

    except OrderError as e:
        if is_metrics_enabled():
            orders_created.labels(result=type(e).__name__).inc()
        _log_failure(
            "order_create_failed", e,
            user_id=user_id,
            line_count=len(line_items)
        )
        raise

    except Exception as e:
        if is_metrics_enabled():
            orders_created.labels(result="unexpected").inc()
        _log_failure(
            "order_create_failed", e,
            user_id=user_id,
            line_count=len(line_items)
        )
        raise OrderPersistError(details={"reason": str(e)}) from e

    if is_metrics_enabled():
        orders_created.labels(result="success").inc()
        order_value.observe(order.total_amount)

    return order


async def _create_order(
    store,
    user_id: str,
    line_items: Sequence[CartLineItem],
    client_total: int,
    shipping: ShippingInfo
) -> Order:
    result = await reconcile(line_items, client_total, store=store)

    order_number = generate_order_number()

    try:
        rows = await store.insert("orders", {
            "user_id": user_id,
            "order_number": order_number,
            "total_amount": result.total,
            "status": OrderStatus.PENDING.value,
            "shipping_name": shipping.name,
            "shipping_phone": shipping.phone,
            "shipping_address": shipping.address,
        })
    except StoreError as e:
        raise OrderPersistError(
            details={"reason": str(e), "code": e.code, "order_number": order_number}
        ) from e

    if not rows:
        # The write may have landed without being returned
        logger.error(
            "order_insert_unreadable",
            order_number=order_number,
            user_id=user_id,
            possible_orphan=True
        )
        raise OrderPersistError(
            details={
                "reason": "insert returned no row",
                "order_number": order_number,
                "possible_orphan": True,
            }
        )

    try:
        order = Order.from_row(rows[0])
    except StoreError as e:
        order_id = rows[0].get("id")
        compensated = await _discard_order(store, str(order_id)) if order_id else False
        raise OrderPersistError(
            details={
                "reason": str(e),
                "order_id": order_id,
                "order_number": order_number,
                "compensated": compensated,
                "possible_orphan": not compensated,
            }
        ) from e

    try:
        await store.insert(
            "order_items",
            [item.to_row(order.id) for item in result.priced_items]
        )
    except StoreError as e:
        compensated = await _discard_order(store, order.id)
        raise LineItemPersistError(
            details={
                "order_id": order.id,
                "compensated": compensated,
                "reason": str(e),
                "code": e.code,
            }
        ) from e

    logger.info(
        "order_created",
        order_id=order.id,
        order_number=order.order_number,
        user_id=user_id,
        total_amount=order.total_amount,
        line_count=len(result.priced_items)
    )

    cleared = await clear_cart(user_id, store=store)
    if not cleared.ok:
        if is_metrics_enabled():
            cart_clear_failures.inc()
        logger.warning(
            "cart_clear_failed",
            order_id=order.id,
            user_id=user_id,
            reason=cleared.error.details.get("reason"),
            code=cleared.error.details.get("code")
        )

    return order


async def checkout(
    user_id: str,
    client_total: int,
    shipping: ShippingInfo,
    store=None
) -> Order:
    """Create an order from the user's current cart."""
    store = store or get_store()
    line_items = await get_cart(user_id, store=store)
    return await create_order(user_id, line_items, client_total, shipping, store=store)


# ============================================================================
# STATUS TRANSITIONS
# ============================================================================

async def update_order_status(
    order_id: str,
    status: Any,
    payment_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    requesting_user_id: Optional[str] = None,
    store=None
) -> Order:
    """
    Apply a status change.

    Payment fields are written only when given. When requesting_user_id
    is given the order must belong to that user. A "paid" update with a
    payment_id is a no-op if the order is already paid with a payment_id
    stored; the stored order is returned unchanged.

    Raises:
        InvalidOrderStatusError: Unknown status
        OrderNotFoundError: No such order
        AuthorizationError: Order belongs to someone else
        OrderPersistError: Store failure
    """
    store = store or get_store()
    new_status = _parse_status(status)

    try:
        return await _update_order_status(
            store, order_id, new_status, payment_id, payment_method, requesting_user_id
        )

    except OrderError as e:
        _log_failure(
            "order_status_update_failed", e,
            order_id=order_id,
            status=new_status.value,
            user_id=requesting_user_id
        )
        raise

    except StoreError as e:
        _log_failure(
            "order_status_update_failed", e,
            order_id=order_id,
            status=new_status.value,
            user_id=requesting_user_id
        )
        raise OrderPersistError(
            "Failed to update the order. Please try again later.",
            details={"reason": str(e), "code": e.code}
        ) from e


def _check_owner(order: Order, requesting_user_id: Optional[str]):
    if requesting_user_id is not None and order.user_id != requesting_user_id:
        raise AuthorizationError(details={"order_id": order.id})


def _already_paid(order: Order) -> bool:
    return order.status is OrderStatus.PAID and bool(order.payment_id)


async def _update_order_status(
    store,
    order_id: str,
    new_status: OrderStatus,
    payment_id: Optional[str],
    payment_method: Optional[str],
    requesting_user_id: Optional[str]
) -> Order:
    existing = await _fetch_order(store, order_id)
    _check_owner(existing, requesting_user_id)

    guarded = new_status is OrderStatus.PAID and bool(payment_id)

    if guarded and _already_paid(existing):
        return _skip_repeat_payment(existing, payment_id)

    patch: Dict[str, Any] = {
        "status": new_status.value,
        "updated_at": utc_now().isoformat(),
    }
    if payment_id:
        patch["payment_id"] = payment_id
    if payment_method:
        patch["payment_method"] = payment_method

    filters: List[Any] = [eq("id", order_id)]
    if requesting_user_id is not None:
        filters.append(eq("user_id", requesting_user_id))
    if guarded:
        # Compare-and-swap: never overwrite a payment already recorded
        filters.append(AnyOf(
            neq("status", OrderStatus.PAID.value),
            is_null("payment_id")
        ))

    rows = await store.update("orders", patch, filters)

    if not rows:
        # Lost a race with another writer, or the row vanished
        current = await _fetch_order(store, order_id)
        _check_owner(current, requesting_user_id)
        if guarded and _already_paid(current):
            return _skip_repeat_payment(current, payment_id)
        raise OrderPersistError(
            "Failed to update the order. Please try again later.",
            details={"order_id": order_id, "reason": "no row updated"}
        )

    updated = Order.from_row(rows[0])

    if is_metrics_enabled():
        order_status_transitions.labels(
            from_status=existing.status.value,
            to_status=updated.status.value
        ).inc()

    logger.info(
        "order_status_updated",
        order_id=order_id,
        from_status=existing.status.value,
        to_status=updated.status.value,
        payment_method=updated.payment_method
    )

    return updated


def _skip_repeat_payment(order: Order, payment_id: str) -> Order:
    if is_metrics_enabled():
        order_idempotent_skips.inc()
    logger.info(
        "order_payment_already_recorded",
        order_id=order.id,
        stored_payment_id=order.payment_id,
        repeated_payment_id=payment_id
    )
    return order


# ============================================================================
# QUERIES
# ============================================================================

async def list_orders(user_id: str, store=None) -> List[Order]:
    """List the user's orders, newest first."""
    store = store or get_store()

    if not user_id:
        raise AuthorizationError("Please sign in to view your orders.")

    try:
        rows = await store.select(
            "orders",
            filters=[eq("user_id", user_id)],
            order_by="created_at",
            descending=True
        )
    except StoreError as e:
        _log_failure("order_list_failed", e, user_id=user_id)
        raise OrderPersistError(
            "Failed to load your orders. Please try again later."
        ) from e

    return [Order.from_row(row) for row in rows]


async def get_order(order_id: str, user_id: str, store=None) -> OrderWithItems:
    """
    Get one of the user's orders with its line items.

    Raises:
        OrderNotFoundError: Missing, or owned by another user
    """
    store = store or get_store()

    if not user_id:
        raise AuthorizationError("Please sign in to view your orders.")

    try:
        rows = await store.select(
            "orders",
            filters=[eq("id", order_id), eq("user_id", user_id)],
            limit=1
        )
        if not rows:
            raise OrderNotFoundError(details={"order_id": order_id})

        order = Order.from_row(rows[0])

        item_rows = await store.select(
            "order_items",
            filters=[eq("order_id", order.id)],
            order_by="created_at"
        )

    except StoreError as e:
        _log_failure("order_fetch_failed", e, order_id=order_id, user_id=user_id)
        raise OrderPersistError(
            "Failed to load the order. Please try again later."
        ) from e

    return OrderWithItems(
        order=order,
        items=tuple(OrderLineItem.from_row(row) for row in item_rows)
    )
