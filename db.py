"""
Database Module (Production)
=============================
Async record store over Supabase (PostgREST).

Filtered select/insert/update/delete against named tables. Every call
either returns rows or raises StoreError; callers never see raw client
exceptions. Circuit breaker and per-call timeouts, no automatic retries.
"""

import os
import asyncio
import logging
from typing import Dict, List, Any, Optional, Sequence, Union
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum

from supabase import create_client, Client
from postgrest.exceptions import APIError

from config import ConfigurationError, get_supabase_timeout


logger = logging.getLogger(__name__)


# Configuration
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds


# ============================================================================
# ERRORS
# ============================================================================

class StoreError(Exception):
    """Raised when a record store operation fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        code: Optional[str] = None
    ):
        super().__init__(message)
        self.operation = operation
        self.table = table
        self.code = code


class RecordMappingError(StoreError):
    """Raised when a row cannot be mapped to a typed entity."""
    pass


# ============================================================================
# FILTERS
# ============================================================================

@dataclass(frozen=True)
class Filter:
    """Single column predicate."""
    column: str
    op: str  # eq, neq, in, is
    value: Any = None

    def to_postgrest(self) -> str:
        """Render in PostgREST logical-tree syntax (used inside or=...)."""
        if self.op == "in":
            return f"{self.column}.in.({','.join(str(v) for v in self.value)})"
        if self.op == "is":
            return f"{self.column}.is.null"
        return f"{self.column}.{self.op}.{self.value}"


@dataclass(frozen=True, init=False)
class AnyOf:
    """Disjunction of filters (PostgREST or=)."""
    filters: tuple

    def __init__(self, *filters: Filter):
        object.__setattr__(self, "filters", tuple(filters))

    def to_postgrest(self) -> str:
        return ",".join(f.to_postgrest() for f in self.filters)


FilterLike = Union[Filter, AnyOf]


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def in_(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "in", list(values))


def is_null(column: str) -> Filter:
    return Filter(column, "is", None)


def _apply_filters(query, filters: Sequence[FilterLike]):
    """Apply filters to a postgrest query builder."""
    for f in filters:
        if isinstance(f, AnyOf):
            query = query.or_(f.to_postgrest())
        elif f.op == "eq":
            query = query.eq(f.column, f.value)
        elif f.op == "neq":
            query = query.neq(f.column, f.value)
        elif f.op == "in":
            query = query.in_(f.column, f.value)
        elif f.op == "is":
            query = query.is_(f.column, "null")
        else:
            raise ValueError(f"Unsupported filter operator: {f.op}")
    return query


def utc_now() -> datetime:
    """Current time (UTC, timezone-aware)."""
    return datetime.now(timezone.utc)


# ============================================================================
# ROW MAPPING HELPERS
# ============================================================================
# Rows come back from PostgREST as loosely-typed dicts. Entities map them
# through these helpers so malformed data stops at the store boundary.

def row_str(row: Dict[str, Any], key: str, table: str, required: bool = True) -> Optional[str]:
    """Read a string column."""
    value = row.get(key)
    if value is None:
        if required:
            raise RecordMappingError(
                f"{table}: missing required column '{key}'",
                operation="map",
                table=table
            )
        return None
    return str(value)


def row_int(
    row: Dict[str, Any],
    key: str,
    table: str,
    minimum: Optional[int] = None,
    default: Optional[int] = None
) -> int:
    """Read an integer column (money, quantities, stock)."""
    value = row.get(key, default)
    if value is None or isinstance(value, bool):
        raise RecordMappingError(
            f"{table}: missing or invalid integer column '{key}'",
            operation="map",
            table=table
        )
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise RecordMappingError(
            f"{table}: column '{key}' is not an integer: {value!r}",
            operation="map",
            table=table
        )
    if isinstance(value, float) and value != number:
        raise RecordMappingError(
            f"{table}: column '{key}' has a fractional value: {value!r}",
            operation="map",
            table=table
        )
    if minimum is not None and number < minimum:
        raise RecordMappingError(
            f"{table}: column '{key}' below {minimum}: {number}",
            operation="map",
            table=table
        )
    return number


def row_datetime(row: Dict[str, Any], key: str, table: str) -> Optional[datetime]:
    """Read an ISO-8601 timestamp column."""
    value = row.get(key)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise RecordMappingError(
            f"{table}: column '{key}' is not a timestamp: {value!r}",
            operation="map",
            table=table
        )


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for database operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = utc_now()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (utc_now() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


# ============================================================================
# DATABASE CLIENT
# ============================================================================

class DatabaseClient:
    """
    Supabase record store client.

    The supabase client is synchronous; each call runs in the default
    executor under asyncio.wait_for so callers can await it.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        timeout: Optional[float] = None
    ):
        self.client: Optional[Client] = client
        if timeout is None:
            timeout = get_supabase_timeout()
        if timeout <= 0:
            raise ConfigurationError(f"Store timeout must be positive: {timeout}")
        self.timeout = float(timeout)
        self.circuit_breaker = CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

        if self.client is None:
            self._initialize_client()

    def _initialize_client(self):
        """Initialize Supabase client from environment."""
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_KEY")

        if not url or not key:
            logger.warning("SUPABASE_URL and SUPABASE_KEY not set, store disabled")
            return

        try:
            self.client = create_client(url, key)
            logger.info("Supabase client initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {str(e)}")

    async def _execute(self, operation: str, table: str, build) -> Any:
        """
        Run a query builder callable with timeout and circuit breaker.

        Args:
            operation: Operation name (for errors/logs)
            table: Table name
            build: Callable taking the table query builder, returning a
                   builder ready to execute()

        Returns:
            APIResponse

        Raises:
            StoreError: On any failure
        """
        if not self.client:
            raise StoreError(
                "Database client not initialized",
                operation=operation,
                table=table
            )

        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open, rejecting {operation} on {table}")
            raise StoreError(
                "Database temporarily unavailable",
                operation=operation,
                table=table
            )

        loop = asyncio.get_running_loop()

        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: build(self.client.table(table)).execute()
                ),
                timeout=self.timeout
            )

        except asyncio.TimeoutError:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            logger.error(f"{operation} timeout on {table}")
            raise StoreError(
                f"{operation} on {table} timed out",
                operation=operation,
                table=table
            )

        except APIError as e:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            logger.error(f"{operation} error on {table}: {e.message}")
            raise StoreError(
                e.message or f"{operation} on {table} failed",
                operation=operation,
                table=table,
                code=e.code
            ) from e

        except Exception as e:
            self.error_count += 1
            self.circuit_breaker.record_failure()
            logger.error(f"{operation} error on {table}: {str(e)}")
            raise StoreError(
                str(e),
                operation=operation,
                table=table
            ) from e

        self.circuit_breaker.record_success()
        return response

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[FilterLike] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Select rows matching every filter.

        Returns:
            List of rows (possibly empty)
        """
        def build(query):
            query = _apply_filters(query.select(columns), filters)
            if order_by:
                query = query.order(order_by, desc=descending)
            if limit is not None:
                query = query.range(offset, offset + limit - 1)
            return query

        response = await self._execute("select", table, build)
        self.read_count += 1
        return response.data or []

    # ========================================================================
    # WRITE OPERATIONS
    # ========================================================================

    async def insert(
        self,
        table: str,
        records: Union[Dict[str, Any], List[Dict[str, Any]]]
    ) -> List[Dict[str, Any]]:
        """
        Insert one record or a batch in a single request.

        Returns:
            Inserted rows as stored
        """
        response = await self._execute(
            "insert", table, lambda query: query.insert(records)
        )
        self.write_count += 1
        return response.data or []

    async def update(
        self,
        table: str,
        patch: Dict[str, Any],
        filters: Sequence[FilterLike]
    ) -> List[Dict[str, Any]]:
        """
        Conditional update: only rows matching every filter change.

        Returns:
            Updated rows (empty when nothing matched)
        """
        if not filters:
            raise ValueError("update requires at least one filter")

        response = await self._execute(
            "update", table,
            lambda query: _apply_filters(query.update(patch), filters)
        )
        self.write_count += 1
        return response.data or []

    async def delete(
        self,
        table: str,
        filters: Sequence[FilterLike]
    ) -> List[Dict[str, Any]]:
        """
        Delete rows matching every filter.

        Returns:
            Deleted rows
        """
        if not filters:
            raise ValueError("delete requires at least one filter")

        response = await self._execute(
            "delete", table,
            lambda query: _apply_filters(query.delete(), filters)
        )
        self.write_count += 1
        return response.data or []

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if database is healthy."""
        return (
            self.client is not None and
            self.circuit_breaker.state != CircuitState.OPEN
        )


# ============================================================================
# GLOBAL DATABASE INSTANCE
# ============================================================================

db = DatabaseClient()


def get_store() -> DatabaseClient:
    """Get the process-wide record store."""
    return db


def is_db_healthy() -> bool:
    """Check database health."""
    return db.is_healthy()


def get_db_stats() -> Dict[str, Any]:
    """Get database statistics."""
    return db.get_stats()
