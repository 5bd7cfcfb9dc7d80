"""
Shared fixtures: an in-memory record store with the DatabaseClient
interface, seeded with a small catalog.
"""

import copy
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from db import AnyOf, StoreError


def _matches(row, f):
    if isinstance(f, AnyOf):
        return any(_matches(row, sub) for sub in f.filters)
    value = row.get(f.column)
    if f.op == "eq":
        return value == f.value
    if f.op == "neq":
        return value != f.value
    if f.op == "in":
        return value in f.value
    if f.op == "is":
        return value is None
    raise ValueError(f"unsupported op {f.op}")


class InMemoryStore:
    """
    Record store double.

    fail_on: set of (operation, table) pairs that raise StoreError.
    before_update: optional callable(table, patch, filters) run before
    an update is applied, used to simulate concurrent writers.
    """

    def __init__(self):
        self.tables = {
            "categories": [],
            "products": [],
            "cart_items": [],
            "orders": [],
            "order_items": [],
        }
        self.fail_on = set()
        self.before_update = None
        self.calls = []
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _tick(self):
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def _check(self, operation, table):
        self.calls.append((operation, table))
        if (operation, table) in self.fail_on:
            raise StoreError(
                f"{operation} on {table} failed",
                operation=operation,
                table=table,
                code="XX000"
            )

    def seed(self, table, **values):
        row = {"id": values.pop("id", None) or str(uuid.uuid4())}
        row.setdefault("created_at", self._tick())
        row.update(values)
        self.tables[table].append(row)
        return row

    def rows(self, table, **where):
        return [
            copy.deepcopy(row) for row in self.tables[table]
            if all(row.get(k) == v for k, v in where.items())
        ]

    async def select(
        self,
        table,
        columns="*",
        filters=(),
        order_by=None,
        descending=False,
        limit=None,
        offset=0
    ):
        self._check("select", table)
        rows = [r for r in self.tables[table] if all(_matches(r, f) for f in filters)]

        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            absent = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            rows = present + absent

        if limit is not None:
            rows = rows[offset:offset + limit]

        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            return [{c: r.get(c) for c in wanted} for r in rows]

        return copy.deepcopy(rows)

    async def insert(self, table, records):
        self._check("insert", table)
        batch = records if isinstance(records, list) else [records]
        inserted = []
        for record in batch:
            row = {"id": str(uuid.uuid4()), "created_at": self._tick()}
            if table == "orders":
                row.update({"payment_id": None, "payment_method": None})
                row["updated_at"] = row["created_at"]
            row.update(copy.deepcopy(record))
            inserted.append(row)
        self.tables[table].extend(inserted)
        return copy.deepcopy(inserted)

    async def update(self, table, patch, filters):
        self._check("update", table)
        if self.before_update:
            self.before_update(table, patch, filters)
        updated = []
        for row in self.tables[table]:
            if all(_matches(row, f) for f in filters):
                row.update(copy.deepcopy(patch))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table, filters):
        self._check("delete", table)
        keep, removed = [], []
        for row in self.tables[table]:
            (removed if all(_matches(row, f) for f in filters) else keep).append(row)
        self.tables[table] = keep
        return copy.deepcopy(removed)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "ORDER_TOTAL_TOLERANCE",
        "ORDER_NUMBER_PREFIX",
        "PAYMENT_METHOD",
        "PRODUCTS_PER_PAGE",
        "METRICS_ENABLED",
        "SUPABASE_TIMEOUT",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("APP_ENV", "development")


@pytest.fixture
def store():
    s = InMemoryStore()
    tops = s.seed("categories", id="cat-tops", name="Tops", slug="tops")
    s.seed("categories", id="cat-pants", name="Pants", slug="pants")
    s.seed("products", id="p1", name="Linen Shirt", price=15000,
           category_id=tops["id"], stock=10, is_active=True)
    s.seed("products", id="p2", name="Cotton Tee", price=8000,
           category_id=tops["id"], stock=25, is_active=True)
    s.seed("products", id="p3", name="Wide Slacks", price=42000,
           category_id="cat-pants", stock=5, is_active=True)
    s.seed("products", id="p4", name="Retired Jacket", price=99000,
           category_id="cat-tops", stock=0, is_active=False)
    return s


@pytest.fixture
def user_id():
    return "user_abc"


@pytest.fixture
def other_user_id():
    return "user_xyz"
