"""
Catalog Module
==============
Read-only access to categories and products.

Product prices are integers in the smallest currency unit and are the
only prices checkout trusts.
"""

import logging
from typing import Dict, List, Any, Optional, Iterable
from datetime import datetime
from dataclasses import dataclass, field

from db import (
    StoreError,
    eq,
    in_,
    row_str,
    row_int,
    row_datetime,
    get_store,
)
from errors import CatalogError, ProductNotFoundError
from config import get_products_per_page


logger = logging.getLogger(__name__)


# Sort options: name -> (column, descending)
SORT_OPTIONS = {
    "latest": ("created_at", True),
    "price_asc": ("price", False),
    "price_desc": ("price", True),
    "name": ("name", False),
}
DEFAULT_SORT = "latest"


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass(frozen=True)
class Category:
    id: str
    name: str
    slug: str
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Category":
        return cls(
            id=row_str(row, "id", "categories"),
            name=row_str(row, "name", "categories"),
            slug=row_str(row, "slug", "categories"),
            description=row_str(row, "description", "categories", required=False),
        )


@dataclass(frozen=True)
class Product:
    """
    Catalog product.

    Only id, name and price are needed for pricing; the rest is filled
    when the full row is selected.
    """
    id: str
    name: str
    price: int
    description: Optional[str] = None
    category_id: Optional[str] = None
    image_url: Optional[str] = None
    stock: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Product":
        return cls(
            id=row_str(row, "id", "products"),
            name=row_str(row, "name", "products"),
            price=row_int(row, "price", "products", minimum=0),
            description=row_str(row, "description", "products", required=False),
            category_id=row_str(row, "category_id", "products", required=False),
            image_url=row_str(row, "image_url", "products", required=False),
            stock=row_int(row, "stock", "products", default=0),
            is_active=bool(row.get("is_active", True)),
            created_at=row_datetime(row, "created_at", "products"),
        )


@dataclass(frozen=True)
class ProductPage:
    """One page of a product listing."""
    items: List[Product] = field(default_factory=list)
    page: int = 1
    page_size: int = 12
    has_next: bool = False


# ============================================================================
# PRICING LOOKUPS
# ============================================================================

async def fetch_products(product_ids: Iterable[str], store=None) -> Dict[str, Product]:
    """
    Fetch current id/name/price for a set of products in one query.

    Args:
        product_ids: Product identifiers (duplicates ignored)
        store: Record store (defaults to the global client)

    Returns:
        Mapping of product id to Product; missing ids are simply absent

    Raises:
        StoreError: If the lookup fails
    """
    store = store or get_store()
    ids = sorted(set(product_ids))

    if not ids:
        return {}

    rows = await store.select(
        "products",
        columns="id, name, price",
        filters=[in_("id", ids)]
    )

    products = {}
    for row in rows:
        product = Product.from_row(row)
        products[product.id] = product

    logger.debug(f"Fetched {len(products)}/{len(ids)} products")
    return products


# ============================================================================
# BROWSING
# ============================================================================
# Browsing surfaces store failures as CatalogError so pages can show a
# retry message; fetch_products leaves them to pricing.

def _catalog_failure(operation: str, error: StoreError, **context) -> CatalogError:
    logger.error(f"Catalog {operation} failed: {error} {context}")
    return CatalogError(
        details={"operation": operation, "reason": str(error), "code": error.code, **context}
    )


async def list_categories(store=None) -> List[Category]:
    """List all categories ordered by name."""
    store = store or get_store()
    try:
        rows = await store.select("categories", order_by="name")
        return [Category.from_row(row) for row in rows]
    except StoreError as e:
        raise _catalog_failure("list_categories", e) from e


async def get_category_by_slug(slug: str, store=None) -> Optional[Category]:
    """Look up a category by its slug."""
    store = store or get_store()
    try:
        rows = await store.select("categories", filters=[eq("slug", slug)], limit=1)
        return Category.from_row(rows[0]) if rows else None
    except StoreError as e:
        raise _catalog_failure("get_category", e, slug=slug) from e


async def list_products(
    category_slug: Optional[str] = None,
    sort: str = DEFAULT_SORT,
    page: int = 1,
    page_size: Optional[int] = None,
    store=None
) -> ProductPage:
    """
    List active products, optionally filtered by category.

    An unknown sort falls back to "latest"; an unknown or unreadable
    category slug lists every category.

    Raises:
        CatalogError: If the product read fails
    """
    store = store or get_store()
    page = max(1, page)
    page_size = page_size or get_products_per_page()

    if sort not in SORT_OPTIONS:
        logger.warning(f"Unknown sort option '{sort}', using {DEFAULT_SORT}")
        sort = DEFAULT_SORT

    filters = [eq("is_active", True)]

    if category_slug:
        try:
            category = await get_category_by_slug(category_slug, store=store)
        except CatalogError:
            category = None

        if category:
            filters.append(eq("category_id", category.id))

    column, descending = SORT_OPTIONS[sort]

    try:
        # One extra row tells us whether a next page exists
        rows = await store.select(
            "products",
            filters=filters,
            order_by=column,
            descending=descending,
            limit=page_size + 1,
            offset=(page - 1) * page_size
        )
        items = [Product.from_row(row) for row in rows[:page_size]]
    except StoreError as e:
        raise _catalog_failure("list_products", e, page=page, sort=sort) from e

    return ProductPage(
        items=items,
        page=page,
        page_size=page_size,
        has_next=len(rows) > page_size
    )


async def get_product(product_id: str, store=None) -> Product:
    """
    Get a single active product.

    Raises:
        ProductNotFoundError: If missing or inactive
        CatalogError: If the read fails
    """
    store = store or get_store()
    try:
        rows = await store.select("products", filters=[eq("id", product_id)], limit=1)
        product = Product.from_row(rows[0]) if rows else None
    except StoreError as e:
        raise _catalog_failure("get_product", e, product_id=product_id) from e

    if product is None or not product.is_active:
        raise ProductNotFoundError(details={"product_id": product_id})

    return product
