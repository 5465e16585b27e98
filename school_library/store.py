"""Persistence boundary.

The services only talk to the database through the primitives here:
insert, partial/conditional update, delete, get, filtered+ordered find,
count, atomic counter adjustment and a transaction scope. Nothing outside
this module builds SQL for the core tables.
"""
from __future__ import annotations

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from . import database
from .database import get_db_connection, initialize_database
from .errors import ConflictError, DuplicateError, SchemaError, StorageUnavailableError

logger = logging.getLogger(__name__)

TABLES = frozenset({"books", "loans", "waitlist", "notifications", "comments"})

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_SCHEMA_MARKERS = ("no such table", "no such column", "not authorized")

OrderBy = Union[str, Sequence[str], None]


def classify_error(exc: sqlite3.Error) -> Exception:
    """Map a sqlite error onto the library's error kinds."""
    message = str(exc)
    lowered = message.lower()
    if isinstance(exc, sqlite3.IntegrityError):
        if "unique constraint failed" in lowered:
            return DuplicateError(message)
        return ConflictError(message)
    if isinstance(exc, sqlite3.OperationalError) and any(m in lowered for m in _SCHEMA_MARKERS):
        return SchemaError(message)
    logger.error(f"Storage failure: {message}")
    return StorageUnavailableError(f"Storage unavailable: {message}")


class SQLiteStore:
    """CRUD-style store over a SQLite file."""

    def __init__(self, db_file: Optional[str] = None, initialize: bool = True) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        self._local = threading.local()
        if initialize:
            try:
                initialize_database(self.db_file)
            except sqlite3.Error as exc:
                raise classify_error(exc) from exc

    # ------------------------- Connections ------------------------- #
    def _open(self) -> sqlite3.Connection:
        try:
            return get_db_connection(self.db_file)
        except sqlite3.Error as exc:
            raise classify_error(exc) from exc

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator["SQLiteStore"]:
        """Run the enclosed calls as one serialised unit of work.

        Nested calls join the outer transaction. Any exception rolls the
        whole unit back and is re-raised unchanged.
        """
        if getattr(self._local, "conn", None) is not None:
            yield self
            return

        conn = self._open()
        self._local.conn = conn
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise classify_error(exc) from exc
            try:
                yield self
            except BaseException:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_exc:
                    logger.error(f"Rollback failed: {rollback_exc}")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                raise classify_error(exc) from exc
        finally:
            self._local.conn = None
            conn.close()

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "conn", None) is not None

    def close(self) -> None:
        """Drop a connection left behind on this thread, if any."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            self._local.conn = None
            conn.close()

    # ------------------------- Low level ------------------------- #
    def select(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Read-only query for reporting and catalog read models."""
        with self._connection() as conn:
            try:
                return [dict(row) for row in conn.execute(sql, tuple(params)).fetchall()]
            except sqlite3.Error as exc:
                raise classify_error(exc) from exc

    def _write(self, sql: str, params: Sequence[Any] = ()) -> Tuple[int, Optional[int]]:
        with self._connection() as conn:
            try:
                cursor = conn.execute(sql, tuple(params))
                return cursor.rowcount, cursor.lastrowid
            except sqlite3.Error as exc:
                raise classify_error(exc) from exc

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")

    @staticmethod
    def _check_column(column: str) -> str:
        if not _IDENTIFIER.match(column):
            raise ValueError(f"Invalid column name: {column}")
        return column

    def _where(self, filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
        if not filters:
            return "", []
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in filters.items():
            self._check_column(column)
            if value is None:
                clauses.append(f"{column} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                placeholders = ", ".join("?" for _ in values)
                clauses.append(f"{column} IN ({placeholders})")
                params.extend(values)
            else:
                clauses.append(f"{column} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    def _order(self, order_by: OrderBy) -> str:
        if not order_by:
            return ""
        keys = [order_by] if isinstance(order_by, str) else list(order_by)
        parts = []
        for key in keys:
            descending = key.startswith("-")
            column = self._check_column(key.lstrip("-"))
            parts.append(f"{column} {'DESC' if descending else 'ASC'}")
        return " ORDER BY " + ", ".join(parts)

    # ------------------------- CRUD primitives ------------------------- #
    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        self._check_table(table)
        columns = [self._check_column(c) for c in values]
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        with self.transaction():
            _, row_id = self._write(sql, list(values.values()))
            row = self.get(table, row_id)
            if row is None:
                raise StorageUnavailableError(f"Row {row_id} missing from {table} right after insert.")
        return row

    def get(self, table: str, row_id: int) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        rows = self.select(f"SELECT * FROM {table} WHERE id = ?", (row_id,))
        return rows[0] if rows else None

    def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._check_table(table)
        where, params = self._where(filters)
        sql = f"SELECT * FROM {table}{where}{self._order(order_by)}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
            if offset:
                sql += " OFFSET ?"
                params.append(int(offset))
        return self.select(sql, params)

    def find_one(self, table: str, filters: Dict[str, Any], order_by: OrderBy = None) -> Optional[Dict[str, Any]]:
        rows = self.find(table, filters, order_by=order_by, limit=1)
        return rows[0] if rows else None

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        self._check_table(table)
        where, params = self._where(filters)
        rows = self.select(f"SELECT COUNT(*) AS n FROM {table}{where}", params)
        return int(rows[0]["n"])

    def update(
        self,
        table: str,
        row_id: int,
        values: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Partial update by id.

        With ``expected`` the write only happens when those columns still hold
        the given values (compare-and-set). Returns the updated row, or None
        when no row matched.
        """
        self._check_table(table)
        if not values:
            raise ValueError("Nothing to update.")
        sets = ", ".join(f"{self._check_column(c)} = ?" for c in values)
        where, params = self._where({"id": row_id, **(expected or {})})
        sql = f"UPDATE {table} SET {sets}{where}"
        with self.transaction():
            rowcount, _ = self._write(sql, list(values.values()) + params)
            if rowcount == 0:
                return None
            return self.get(table, row_id)

    def delete(self, table: str, row_id: int) -> bool:
        self._check_table(table)
        rowcount, _ = self._write(f"DELETE FROM {table} WHERE id = ?", (row_id,))
        return rowcount > 0

    def adjust(
        self,
        table: str,
        row_id: int,
        column: str,
        delta: int,
        floor: Optional[int] = None,
        ceiling_column: Optional[str] = None,
    ) -> Optional[int]:
        """Atomically add ``delta`` to a counter column.

        The guard (``column + delta >= floor`` and ``column + delta <=
        ceiling_column``) is part of the UPDATE statement itself, so two
        concurrent callers can never both pass it on a stale read. Returns the
        new value, or None if the row is missing or the guard rejected it.
        """
        self._check_table(table)
        self._check_column(column)
        conditions = ["id = ?"]
        params: List[Any] = [delta, row_id]
        if floor is not None:
            conditions.append(f"{column} + ? >= ?")
            params.extend([delta, floor])
        if ceiling_column is not None:
            self._check_column(ceiling_column)
            conditions.append(f"{column} + ? <= {ceiling_column}")
            params.append(delta)
        sql = f"UPDATE {table} SET {column} = {column} + ? WHERE {' AND '.join(conditions)}"
        with self.transaction():
            rowcount, _ = self._write(sql, params)
            if rowcount == 0:
                return None
            row = self.get(table, row_id)
        return int(row[column]) if row else None
