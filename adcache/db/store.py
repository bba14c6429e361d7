"""Keyed persistence for cache rows, campaign summaries and daily metrics.

The store is synchronous SQLAlchemy Core; async callers go through
:func:`run_sync` so database work stays off the event loop. Filters are plain
mappings of column name to value, with an optional ``__lt``, ``__lte``,
``__gt``, ``__gte`` or ``__ne`` suffix on the column name.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, TypeVar

from sqlalchemy import Table, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from adcache.db.tables import TABLES
from adcache.errors import PersistenceError
from adcache.utils.dates import to_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPERATORS = {
    "lt": lambda column, value: column < value,
    "lte": lambda column, value: column <= value,
    "gt": lambda column, value: column > value,
    "gte": lambda column, value: column >= value,
    "ne": lambda column, value: column != value,
}


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call in the default executor."""
    call = functools.partial(func, *args, **kwargs)
    return await asyncio.get_running_loop().run_in_executor(None, call)


class SqlPeriodStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def upsert(self, table_name: str, rows: Iterable[Mapping[str, Any]]) -> int:
        """Insert rows, replacing non-key columns of rows whose primary key already exists."""
        table = _table(table_name)
        values = [_prepare(row) for row in rows]
        if not values:
            return 0
        key_columns = [column.name for column in table.primary_key.columns]
        try:
            with self.engine.begin() as conn:
                dialect = postgresql if conn.dialect.name == "postgresql" else sqlite
                stmt = dialect.insert(table)
                updates = {name: stmt.excluded[name] for name in values[0] if name not in key_columns}
                stmt = stmt.on_conflict_do_update(index_elements=key_columns, set_=updates)
                conn.execute(stmt, values)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Upsert into {table_name} failed: {exc}") from exc
        return len(values)

    def get(self, table_name: str, **key: Any) -> dict[str, Any] | None:
        rows = self.select(table_name, key, limit=1)
        return rows[0] if rows else None

    def select(
        self,
        table_name: str,
        where: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table = _table(table_name)
        stmt = select(table).where(*_clauses(table, where))
        if order_by:
            column = table.c[order_by]
            stmt = stmt.order_by(column.desc() if descending else column)
        if limit:
            stmt = stmt.limit(limit)
        try:
            with self.engine.connect() as conn:
                result = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Select from {table_name} failed: {exc}") from exc
        return [_restore(row) for row in result]

    def latest(self, table_name: str, where: Mapping[str, Any], *, order_by: str) -> dict[str, Any] | None:
        rows = self.select(table_name, where, order_by=order_by, descending=True, limit=1)
        return rows[0] if rows else None

    def update_where(self, table_name: str, where: Mapping[str, Any], values: Mapping[str, Any]) -> int:
        table = _table(table_name)
        stmt = update(table).where(*_clauses(table, where)).values(**_prepare(values))
        try:
            with self.engine.begin() as conn:
                return conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Update of {table_name} failed: {exc}") from exc

    def delete_where(self, table_name: str, where: Mapping[str, Any]) -> int:
        """Delete rows matching ``where``. An empty filter is refused."""
        if not where:
            raise ValueError("delete_where requires at least one filter")
        table = _table(table_name)
        stmt = delete(table).where(*_clauses(table, where))
        try:
            with self.engine.begin() as conn:
                deleted = conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Delete from {table_name} failed: {exc}") from exc
        logger.debug("Deleted %s rows from %s where %s", deleted, table_name, dict(where))
        return deleted

    def count(self, table_name: str, where: Mapping[str, Any] | None = None) -> int:
        table = _table(table_name)
        stmt = select(func.count()).select_from(table).where(*_clauses(table, where))
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Count of {table_name} failed: {exc}") from exc

    def bounds(self, table_name: str, column: str, where: Mapping[str, Any] | None = None) -> tuple[Any, Any]:
        """Minimum and maximum of ``column`` over matching rows."""
        table = _table(table_name)
        stmt = select(func.min(table.c[column]), func.max(table.c[column])).where(*_clauses(table, where))
        try:
            with self.engine.connect() as conn:
                low, high = conn.execute(stmt).one()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Bounds query on {table_name} failed: {exc}") from exc
        return low, high


def _table(name: str) -> Table:
    try:
        return TABLES[name]
    except KeyError:
        raise ValueError(f"Unknown table {name}") from None


def _clauses(table: Table, where: Mapping[str, Any] | None) -> list:
    clauses = []
    for name, value in (where or {}).items():
        column_name, _, op = name.partition("__")
        column = table.c[column_name]
        value = _prepare_value(value)
        if op:
            clauses.append(OPERATORS[op](column, value))
        elif value is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == value)
    return clauses


def _prepare_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, enum.Enum):
        return value.value
    return value


def _prepare(row: Mapping[str, Any]) -> dict[str, Any]:
    return {key: _prepare_value(value) for key, value in row.items()}


def _restore(row: Mapping[str, Any]) -> dict[str, Any]:
    restored = dict(row)
    for key, value in restored.items():
        # SQLite hands timestamps back without an offset; they were written as UTC
        if isinstance(value, datetime) and value.tzinfo is None:
            restored[key] = value.replace(tzinfo=timezone.utc)
    return restored
