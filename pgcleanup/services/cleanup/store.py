# pgcleanup/services/cleanup/store.py
"""
Store client: the only way the pipeline touches a database.

One StoreClient wraps one SQLAlchemy engine (main or archive) and exposes
the same capabilities regardless of which database backs it:

- count(table, predicate)
- select_keys(table, predicate, order_by)
- copy_rows(table, keys, dest)
- delete_rows(table, predicate)
- ping() / verify_schema()

Each call runs in its own transaction, so every operation is atomic within
its store. Predicates are small factories returning a SQLAlchemy boolean
expression for a table.
"""

import logging
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime

from sqlalchemy import Table, and_, delete, func, insert, inspect, select, text, true
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from pgcleanup.models import TABLES
from pgcleanup.services.cleanup.errors import (
    CopyError,
    DeleteError,
    QueryError,
    TargetUnreachableError,
    wrap_store_error,
)
from pgcleanup.services.cleanup.windows import TimeWindow

logger = logging.getLogger(__name__)

Predicate = Callable[[Table], ColumnElement[bool]]


# -----------------------------------------------------------------------------
# Predicates
# -----------------------------------------------------------------------------


def created_in(window: TimeWindow) -> Predicate:
    """start < created <= end (start may be unbounded)."""

    def predicate(table: Table) -> ColumnElement[bool]:
        clauses = [table.c.created <= window.end]
        if window.start is not None:
            clauses.append(table.c.created > window.start)
        return and_(*clauses)

    return predicate


def created_at_or_before(cutoff: datetime) -> Predicate:
    return lambda table: table.c.created <= cutoff


def hash_in(keys: Sequence[str]) -> Predicate:
    return lambda table: table.c.hash.in_(list(keys))


def all_rows() -> Predicate:
    return lambda table: true()


def _chunks(keys: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for offset in range(0, len(keys), size):
        yield keys[offset : offset + size]


# -----------------------------------------------------------------------------
# Store client
# -----------------------------------------------------------------------------


class StoreClient:
    """
    Capability wrapper over one database.

    Args:
        engine: SQLAlchemy engine (schema_translate_map already applied)
        name: Label used in logs and errors ("main", "archive")
        schema: Schema the tables live in, None for the default schema
        batch_size: Rows per batch when streaming a copy
    """

    def __init__(
        self,
        engine: Engine,
        name: str,
        schema: str | None = None,
        batch_size: int = 10000,
    ):
        self.engine = engine
        self.name = name
        self.schema = schema
        self.batch_size = batch_size

    def __repr__(self) -> str:
        return f"<StoreClient {self.name} schema={self.schema}>"

    def table(self, table_name: str) -> Table:
        try:
            return TABLES[table_name]
        except KeyError:
            raise QueryError(f"unknown table: {table_name}") from None

    # -------------------------------------------------------------------------
    # Reachability
    # -------------------------------------------------------------------------

    def ping(self) -> None:
        """Run SELECT 1. Raises TargetUnreachableError if the database is down."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise TargetUnreachableError(f"{self.name} database unreachable: {e}") from e

    def verify_schema(self) -> None:
        """
        Check that the schema and all managed tables exist.

        Raises:
            TargetUnreachableError: database down, schema or table missing
        """
        self.ping()
        try:
            inspector = inspect(self.engine)
            if self.schema and not inspector.has_schema(self.schema):
                raise TargetUnreachableError(f"schema {self.schema} does not exist in {self.name} database")
            missing = [name for name in TABLES if not inspector.has_table(name, schema=self.schema)]
        except SQLAlchemyError as e:
            raise TargetUnreachableError(f"{self.name} schema inspection failed: {e}") from e

        if missing:
            raise TargetUnreachableError(f"{self.name} database is missing tables: {', '.join(missing)}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def count(self, table_name: str, predicate: Predicate) -> int:
        """
        Count rows matching predicate.

        Raises:
            StoreConnectionError: connection failed or dropped
            QueryError: any other database error
        """
        table = self.table(table_name)
        stmt = select(func.count()).select_from(table).where(predicate(table))
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())
        except SQLAlchemyError as e:
            raise wrap_store_error(e, f"count {self.name}.{table_name}") from e

    def counts(self, predicate: Predicate, tables: Sequence[str] = tuple(TABLES)) -> dict[str, int]:
        """Count per table with the same predicate."""
        return {name: self.count(name, predicate) for name in tables}

    def select_keys(self, table_name: str, predicate: Predicate, order_by: str = "hash") -> list[str]:
        """Return `hash` values matching predicate, ordered for determinism."""
        table = self.table(table_name)
        stmt = select(table.c.hash).where(predicate(table)).order_by(table.c[order_by])
        try:
            with self.engine.connect() as conn:
                return list(conn.execute(stmt).scalars())
        except SQLAlchemyError as e:
            raise wrap_store_error(e, f"select {self.name}.{table_name}") from e

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def copy_rows(self, table_name: str, keys: Sequence[str], dest: "StoreClient") -> int:
        """
        Copy every row of table whose hash is in keys from this store to dest.

        Rows are streamed in batch_size chunks and inserted inside a single
        dest transaction, so a table is either fully copied or not at all.
        Additive only: a row already present in dest violates its primary key
        and fails the whole copy.

        Returns:
            Number of rows inserted into dest

        Raises:
            CopyError: read, insert or commit failed (dest rolled back)
        """
        if not keys:
            return 0

        table = self.table(table_name)
        dest_table = dest.table(table_name)
        copied = 0

        try:
            with self.engine.connect() as src, dest.engine.begin() as dst:
                for chunk in _chunks(keys, self.batch_size):
                    stmt = select(table).where(table.c.hash.in_(list(chunk))).order_by(*table.primary_key.columns)
                    result = src.execution_options(stream_results=True).execute(stmt)
                    while True:
                        rows = result.fetchmany(self.batch_size)
                        if not rows:
                            break
                        dst.execute(insert(dest_table), [row._asdict() for row in rows])
                        copied += len(rows)
        except SQLAlchemyError as e:
            raise CopyError(f"failed to archive table {table_name} ({self.name} -> {dest.name}): {e}") from e

        logger.debug(f"Copied {copied} rows of {table_name} from {self.name} to {dest.name}")
        return copied

    def delete_rows(self, table_name: str, predicate: Predicate) -> int:
        """
        Delete rows matching predicate in one transaction.

        Returns:
            Affected row count reported by the database

        Raises:
            DeleteError: statement or commit failed (nothing deleted)
        """
        table = self.table(table_name)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(delete(table).where(predicate(table)))
                return int(result.rowcount)
        except SQLAlchemyError as e:
            raise DeleteError(f"delete {self.name}.{table_name}: {e}") from e

    # -------------------------------------------------------------------------
    # Key-based helpers
    # -------------------------------------------------------------------------

    def count_keys(self, table_name: str, keys: Sequence[str]) -> int:
        """Count rows whose hash is in keys, batch_size keys per query."""
        return sum(self.count(table_name, hash_in(chunk)) for chunk in _chunks(keys, self.batch_size))

    def delete_keys(self, table_name: str, keys: Sequence[str]) -> int:
        """
        Delete rows whose hash is in keys.

        Keys are sent batch_size at a time to stay under the driver's
        bound-parameter limit; all batches share one transaction.

        Raises:
            DeleteError: statement or commit failed (nothing deleted)
        """
        if not keys:
            return 0

        table = self.table(table_name)
        deleted = 0
        try:
            with self.engine.begin() as conn:
                for chunk in _chunks(keys, self.batch_size):
                    result = conn.execute(delete(table).where(table.c.hash.in_(list(chunk))))
                    deleted += int(result.rowcount)
        except SQLAlchemyError as e:
            raise DeleteError(f"delete {self.name}.{table_name} by key: {e}") from e
        return deleted
