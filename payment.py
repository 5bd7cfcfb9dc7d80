"""
Payment Callbacks
=================
Entry points for the payment page and the widget's redirect callbacks.

Success redirects may fire more than once (back button, provider
retries); recording the payment is idempotent.
Failure and cancellation never change order status.
"""

import logging
from typing import Optional
from dataclasses import dataclass

from config import get_payment_method
from errors import OrderNotPayableError
from order import (
    Order,
    OrderStatus,
    OrderWithItems,
    get_order,
    update_order_status,
)


logger = logging.getLogger(__name__)


CART_PATH = "/cart"
ORDER_DETAIL_PATH = "/my/orders/{order_id}"
GENERIC_FAILURE_MESSAGE = (
    "An error occurred while processing your payment. Please try again."
)


@dataclass(frozen=True)
class PaymentFailure:
    """What to show the user after a failed payment."""
    order_id: str
    code: Optional[str]
    message: str


@dataclass(frozen=True)
class PaymentEntry:
    """
    Result of opening the payment page.

    redirect_to is set when the order is already settled and the user
    should be sent to its detail page instead of the widget.
    """
    order: OrderWithItems
    redirect_to: Optional[str] = None


def order_detail_path(order_id: str) -> str:
    return ORDER_DETAIL_PATH.format(order_id=order_id)


async def prepare_payment(order_id: str, user_id: str, store=None) -> PaymentEntry:
    """
    Load an order for the payment widget.

    Only pending orders are payable. Paid and completed orders redirect
    to the order detail page.

    Raises:
        AuthorizationError: No user identity
        OrderNotFoundError: Missing, or owned by another user
        OrderNotPayableError: Order was cancelled
        OrderPersistError: Store failure
    """
    detail = await get_order(order_id, user_id, store=store)
    status = detail.order.status

    if status is OrderStatus.PENDING:
        return PaymentEntry(order=detail)

    if status in (OrderStatus.PAID, OrderStatus.COMPLETED):
        logger.info(f"Order {order_id} already {status.value}, redirecting to detail")
        return PaymentEntry(order=detail, redirect_to=order_detail_path(order_id))

    logger.warning(f"Payment page opened for {status.value} order {order_id}")
    raise OrderNotPayableError(details={"order_id": order_id, "status": status.value})


async def handle_payment_success(
    order_id: str,
    payment_key: str,
    user_id: str,
    store=None
) -> Order:
    """
    Record a completed payment.

    Args:
        order_id: Order the widget was opened for
        payment_key: Provider payment key (stored as payment_id)
        user_id: Authenticated user; must own the order

    Returns:
        The paid order (unchanged if this payment was already recorded)
    """
    logger.info(f"Payment success callback for order {order_id}")

    return await update_order_status(
        order_id,
        OrderStatus.PAID,
        payment_id=payment_key,
        payment_method=get_payment_method(),
        requesting_user_id=user_id,
        store=store
    )


def handle_payment_failure(
    order_id: str,
    code: Optional[str] = None,
    message: Optional[str] = None
) -> PaymentFailure:
    """Build the failure message; the order stays pending."""
    if message:
        display = message
    elif code:
        display = f"An error occurred while processing your payment. (code: {code})"
    else:
        display = GENERIC_FAILURE_MESSAGE

    logger.warning(f"Payment failed for order {order_id} (code={code})")

    return PaymentFailure(order_id=order_id, code=code, message=display)


def handle_payment_cancel(order_id: str) -> str:
    """
    User closed the payment widget.

    Returns:
        Path to send the user back to
    """
    logger.info(f"Payment cancelled for order {order_id}")
    return CART_PATH
