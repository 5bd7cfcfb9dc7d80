"""Order creation: pricing authority, persistence, compensation, cart clear."""

import random
import re
from datetime import datetime, timezone

import pytest

from cart import CartLineItem, add_to_cart
from errors import (
    AuthorizationError,
    EmptyCartError,
    LineItemPersistError,
    OrderPersistError,
    ProductLookupError,
    TotalMismatchError,
)
from order import (
    OrderStatus,
    ShippingInfo,
    checkout,
    create_order,
    generate_order_number,
    get_order,
)


ORDER_NUMBER = re.compile(r"^ORD-\d{8}-\d{3}$")


@pytest.fixture
def shipping():
    return ShippingInfo(name="Kim Minji", phone="010-1234-5678", address="Seoul, Mapo-gu 1")


@pytest.fixture
async def cart(store, user_id):
    await add_to_cart(user_id, "p1", 2, store=store)
    return [CartLineItem("p1", 2)]


async def test_creates_pending_order_with_server_total(store, user_id, cart, shipping):
    order = await create_order(user_id, cart, 30001, shipping, store=store)

    assert order.status is OrderStatus.PENDING
    assert order.total_amount == 30000
    assert order.user_id == user_id
    assert order.shipping_name == "Kim Minji"
    assert order.payment_id is None
    assert ORDER_NUMBER.match(order.order_number)

    [item] = store.rows("order_items", order_id=order.id)
    assert item["product_id"] == "p1"
    assert item["product_name"] == "Linen Shirt"
    assert item["product_price"] == 15000
    assert item["quantity"] == 2
    assert item["subtotal"] == 30000


async def test_clears_cart_after_order(store, user_id, cart, shipping):
    await create_order(user_id, cart, 30000, shipping, store=store)

    assert store.rows("cart_items", user_id=user_id) == []


async def test_only_own_cart_is_cleared(store, user_id, other_user_id, cart, shipping):
    await add_to_cart(other_user_id, "p2", 1, store=store)

    await create_order(user_id, cart, 30000, shipping, store=store)

    assert len(store.rows("cart_items", user_id=other_user_id)) == 1


async def test_total_is_sum_of_line_subtotals(store, user_id, shipping):
    items = [CartLineItem("p1", 1), CartLineItem("p2", 2), CartLineItem("p3", 1)]

    order = await create_order(user_id, items, 73000, shipping, store=store)

    rows = store.rows("order_items", order_id=order.id)
    assert order.total_amount == sum(r["subtotal"] for r in rows) == 73000


async def test_tampered_total_persists_nothing(store, user_id, cart, shipping):
    with pytest.raises(TotalMismatchError) as exc_info:
        await create_order(user_id, cart, 25000, shipping, store=store)

    assert exc_info.value.calculated == 30000
    assert exc_info.value.provided == 25000
    assert store.rows("orders") == []
    assert store.rows("order_items") == []
    assert len(store.rows("cart_items", user_id=user_id)) == 1


async def test_missing_product_persists_nothing(store, user_id, shipping):
    with pytest.raises(ProductLookupError):
        await create_order(user_id, [CartLineItem("deleted", 1)], 1000, shipping, store=store)

    assert store.rows("orders") == []
    assert store.rows("order_items") == []


async def test_empty_cart_is_rejected(store, user_id, shipping):
    with pytest.raises(EmptyCartError):
        await create_order(user_id, [], 0, shipping, store=store)


async def test_identity_is_required(store, cart, shipping):
    with pytest.raises(AuthorizationError):
        await create_order("", cart, 30000, shipping, store=store)


async def test_snapshot_survives_price_change(store, user_id, cart, shipping):
    order = await create_order(user_id, cart, 30000, shipping, store=store)

    store.tables["products"][0]["price"] = 19000

    detail = await get_order(order.id, user_id, store=store)
    [item] = detail.items
    assert item.product_price == 15000
    assert item.subtotal == 30000
    assert detail.order.total_amount == 30000


async def test_order_insert_failure(store, user_id, cart, shipping):
    store.fail_on.add(("insert", "orders"))

    with pytest.raises(OrderPersistError) as exc_info:
        await create_order(user_id, cart, 30000, shipping, store=store)

    assert "try again" in str(exc_info.value)
    assert store.rows("order_items") == []
    assert len(store.rows("cart_items", user_id=user_id)) == 1


async def test_unmappable_order_row_is_deleted(store, user_id, cart, shipping, monkeypatch):
    real_insert = store.insert

    async def insert(table, records):
        rows = await real_insert(table, records)
        if table == "orders":
            rows[0]["status"] = None
        return rows

    monkeypatch.setattr(store, "insert", insert)

    with pytest.raises(OrderPersistError) as exc_info:
        await create_order(user_id, cart, 30000, shipping, store=store)

    assert exc_info.value.details["compensated"] is True
    assert store.rows("orders") == []
    assert store.rows("order_items") == []
    assert len(store.rows("cart_items", user_id=user_id)) == 1


async def test_order_insert_returning_nothing_is_flagged(store, user_id, cart, shipping, monkeypatch):
    real_insert = store.insert

    async def insert(table, records):
        rows = await real_insert(table, records)
        return [] if table == "orders" else rows

    monkeypatch.setattr(store, "insert", insert)

    with pytest.raises(OrderPersistError) as exc_info:
        await create_order(user_id, cart, 30000, shipping, store=store)

    assert exc_info.value.details["possible_orphan"] is True
    assert store.rows("order_items") == []
    assert len(store.rows("cart_items", user_id=user_id)) == 1


async def test_line_item_failure_deletes_order(store, user_id, cart, shipping):
    store.fail_on.add(("insert", "order_items"))

    with pytest.raises(LineItemPersistError) as exc_info:
        await create_order(user_id, cart, 30000, shipping, store=store)

    assert exc_info.value.details["compensated"] is True
    assert store.rows("orders") == []
    assert len(store.rows("cart_items", user_id=user_id)) == 1


async def test_line_item_failure_with_failed_compensation(store, user_id, cart, shipping):
    store.fail_on.update({("insert", "order_items"), ("delete", "orders")})

    with pytest.raises(LineItemPersistError) as exc_info:
        await create_order(user_id, cart, 30000, shipping, store=store)

    assert exc_info.value.details["compensated"] is False
    assert len(store.rows("orders")) == 1


async def test_cart_clear_failure_does_not_fail_order(store, user_id, cart, shipping):
    store.fail_on.add(("delete", "cart_items"))

    order = await create_order(user_id, cart, 30000, shipping, store=store)

    assert order.total_amount == 30000
    assert len(store.rows("orders")) == 1
    assert len(store.rows("order_items", order_id=order.id)) == 1
    assert len(store.rows("cart_items", user_id=user_id)) == 1


async def test_errors_propagate_in_production_mode(store, user_id, cart, shipping, monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")

    with pytest.raises(TotalMismatchError):
        await create_order(user_id, cart, 1, shipping, store=store)


async def test_checkout_uses_current_cart(store, user_id, shipping):
    await add_to_cart(user_id, "p2", 1, store=store)
    await add_to_cart(user_id, "p2", 2, store=store)

    order = await checkout(user_id, 24000, shipping, store=store)

    assert order.total_amount == 24000
    [item] = store.rows("order_items", order_id=order.id)
    assert item["quantity"] == 3
    assert store.rows("cart_items", user_id=user_id) == []


def test_shipping_fields_required():
    with pytest.raises(ValueError):
        ShippingInfo(name="Kim", phone="", address="Seoul")


def test_order_number_format():
    for _ in range(200):
        assert ORDER_NUMBER.match(generate_order_number())


def test_order_number_uses_utc_date_and_padding():
    now = datetime(2025, 3, 9, 23, 59, tzinfo=timezone.utc)

    class Fixed:
        def randint(self, low, high):
            assert (low, high) == (0, 999)
            return 7

    assert generate_order_number(now, rng=Fixed()) == "ORD-20250309-007"


def test_order_number_seeded_rng_is_deterministic():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    first = generate_order_number(now, rng=random.Random(42))
    second = generate_order_number(now, rng=random.Random(42))

    assert first == second


def test_order_number_prefix_from_environment(monkeypatch):
    monkeypatch.setenv("ORDER_NUMBER_PREFIX", "SHOP")

    assert generate_order_number().startswith("SHOP-")
