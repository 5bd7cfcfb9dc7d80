"""
Pricing Module
==============
Recomputes an order's total from authoritative product prices.

The client total is advisory: it is only compared against the
server-side total, never used for money-bearing decisions.
"""

import logging
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass

from prometheus_client import Counter

from db import StoreError
from catalog import fetch_products
from cart import CartLineItem
from config import get_total_tolerance, is_metrics_enabled
from errors import EmptyCartError, ProductLookupError, TotalMismatchError


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

reconciliation_failures = Counter(
    'pricing_reconciliation_failures_total',
    'Checkout reconciliation failures',
    ['reason']
)


def _record_failure(reason: str):
    if is_metrics_enabled():
        reconciliation_failures.labels(reason=reason).inc()


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass(frozen=True)
class PricedLineItem:
    """
    Price/name snapshot for one line, taken at reconciliation time.

    Becomes an order_items row once the order id is known.
    """
    product_id: str
    product_name: str
    product_price: int
    quantity: int
    subtotal: int

    def to_row(self, order_id: str) -> dict:
        return {
            "order_id": order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_price": self.product_price,
            "quantity": self.quantity,
            "subtotal": self.subtotal,
        }


@dataclass(frozen=True)
class ReconciliationResult:
    total: int
    priced_items: Tuple[PricedLineItem, ...]


# ============================================================================
# RECONCILIATION
# ============================================================================

async def reconcile(
    line_items: Sequence[CartLineItem],
    client_total: int,
    store=None,
    tolerance: Optional[int] = None
) -> ReconciliationResult:
    """
    Re-price cart lines from current product prices.

    Args:
        line_items: Cart lines to price
        client_total: Total the client displayed (advisory)
        store: Record store
        tolerance: Allowed |total - client_total| (default from config, 1)

    Returns:
        ReconciliationResult with the server total and per-line snapshots

    Raises:
        EmptyCartError: No line items
        ProductLookupError: A product no longer exists or prices could not be loaded
        TotalMismatchError: Totals differ by more than the tolerance
    """
    if not line_items:
        _record_failure("empty_cart")
        raise EmptyCartError()

    if tolerance is None:
        tolerance = get_total_tolerance()

    requested_ids = {item.product_id for item in line_items}

    try:
        products = await fetch_products(requested_ids, store=store)
    except StoreError as e:
        _record_failure("lookup_failed")
        raise ProductLookupError(
            "Failed to load product information.",
            details={"reason": str(e), "code": e.code}
        ) from e

    missing = requested_ids - set(products)
    if missing:
        _record_failure("missing_product")
        logger.warning(f"Products no longer exist: {sorted(missing)}")
        raise ProductLookupError(details={"missing": sorted(missing)})

    priced_items: List[PricedLineItem] = []
    total = 0

    for item in line_items:
        product = products[item.product_id]
        subtotal = product.price * item.quantity
        total += subtotal

        priced_items.append(PricedLineItem(
            product_id=product.id,
            product_name=product.name,
            product_price=product.price,
            quantity=item.quantity,
            subtotal=subtotal
        ))

    if abs(total - client_total) > tolerance:
        _record_failure("total_mismatch")
        logger.warning(
            f"Total mismatch: calculated={total} provided={client_total}"
        )
        raise TotalMismatchError(calculated=total, provided=client_total)

    logger.debug(f"Reconciled {len(priced_items)} lines, total={total}")

    return ReconciliationResult(total=total, priced_items=tuple(priced_items))
