"""
store/backend.py -- SQLAlchemy gateway that executes QueryPlans.

The repository never builds SQL itself; it hands a QueryPlan (pure data from
core/query.py) and a Table to SQLBackend, which compiles predicates and
ordering to SQLAlchemy Core expressions. Every method here is synchronous and
blocking -- store/repository.py runs them in worker threads.

Pattern: Gateway + Data Mapper. SQLBackend is the gateway to the relational
store; _row_to_record / _encode_values are the mappers between rows and plain
record dicts (list/object columns are JSON text in the table, Python values in
records).

Security: all queries use bound parameters. Column names come from declared
Table objects, never from request input.

Usage:
    backend = SQLBackend()                               # SQLite default
    backend = SQLBackend("postgresql://user:pw@host/db") # PostgreSQL
    rows, total = backend.select_page(table, plan)
    backend.close()
"""

import json
import logging
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Any, Iterator, Optional

from sqlalchemy import Table, create_engine, event, func, or_, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from core.models import SORT_DESC, Predicate, QueryPlan
from store.schema import metadata

logger = logging.getLogger("grcadmin.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'grcadmin.db'}"

_JSON_KINDS = {"list", "object"}


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _row_to_record(table: Table, row) -> dict[str, Any]:
    """Map a result row to a plain dict, decoding JSON text columns."""
    record = dict(row._mapping)
    for column in table.columns:
        if column.info.get("kind") in _JSON_KINDS:
            raw = record.get(column.name)
            if raw is None:
                record[column.name] = [] if column.info["kind"] == "list" else None
            else:
                try:
                    record[column.name] = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("Undecodable JSON in %s.%s", table.name, column.name)
                    record[column.name] = [] if column.info["kind"] == "list" else None
    return record


def _encode_values(table: Table, values: dict[str, Any]) -> dict[str, Any]:
    encoded = dict(values)
    for name, value in values.items():
        column = table.c[name]
        if column.info.get("kind") in _JSON_KINDS and value is not None:
            encoded[name] = json.dumps(value)
    return encoded


# ---------------------------------------------------------------------------
# Predicate compilation
# ---------------------------------------------------------------------------


def compile_predicate(table: Table, predicate: Predicate):
    """Translate one Predicate into a SQLAlchemy boolean clause."""
    if predicate.op == "eq":
        return table.c[predicate.column] == predicate.value
    if predicate.op == "in":
        return table.c[predicate.column].in_(list(predicate.value))
    if predicate.op == "range":
        lower, upper, inclusive = predicate.value
        column = table.c[predicate.column]
        upper_clause = column <= upper if inclusive else column < upper
        return (column >= lower) & upper_clause
    if predicate.op == "icontains_any":
        return or_(*(table.c[name].icontains(predicate.value, autoescape=True) for name in predicate.columns))
    raise ValueError(f"Unsupported predicate op: {predicate.op}")


def _clauses(table: Table, predicates) -> list:
    return [compile_predicate(table, p) for p in predicates]


def _ordering(table: Table, order_by) -> list:
    return [table.c[name].desc() if direction == SORT_DESC else table.c[name].asc() for name, direction in order_by]


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_memory_url(db_url: str) -> bool:
    return db_url.startswith("sqlite") and (":memory:" in db_url or db_url.rstrip("/") == "sqlite:")


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class SQLBackend:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        memory = _is_memory_url(db_url)
        if db_url.startswith("sqlite"):
            # Repository calls run in worker threads, so the SQLite connection
            # is used from threads other than the one that opened it.
            connect_args["check_same_thread"] = False
        if memory:
            # One shared connection, otherwise every pooled connection opens
            # its own empty in-memory database.
            engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite") and not memory:
            event.listen(self.engine, "connect", _set_wal_mode)
        # The shared in-memory connection must not be used by two threads at once.
        self._lock = threading.RLock() if memory else None
        metadata.create_all(self.engine)
        logger.info("Backend ready (%s)", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Connection inside BEGIN ... COMMIT (ROLLBACK on error)."""
        with self._lock or nullcontext():
            with self.engine.begin() as conn:
                yield conn

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def select_page(self, table: Table, plan: QueryPlan) -> tuple[list[dict[str, Any]], int]:
        """Return (rows for the plan's window, total rows matching its predicates).

        Count and window run in one transaction so total and data agree.
        """
        clauses = _clauses(table, plan.predicates)
        count_stmt = select(func.count()).select_from(table).where(*clauses)
        data_stmt = (
            select(table).where(*clauses).order_by(*_ordering(table, plan.order_by)).offset(plan.offset).limit(plan.limit)
        )
        with self.transaction() as conn:
            total = conn.execute(count_stmt).scalar_one()
            rows = conn.execute(data_stmt).fetchall()
        return [_row_to_record(table, r) for r in rows], int(total)

    def select_one(self, table: Table, record_id: str) -> Optional[dict[str, Any]]:
        with self.transaction() as conn:
            row = conn.execute(select(table).where(table.c.id == record_id)).fetchone()
        return _row_to_record(table, row) if row is not None else None

    def fetch(self, table: Table, predicates=(), order_by=(), limit: Optional[int] = None) -> list[dict[str, Any]]:
        stmt = select(table).where(*_clauses(table, predicates)).order_by(*_ordering(table, order_by))
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.transaction() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_record(table, r) for r in rows]

    def group_count(self, table: Table, column: str, predicates=()) -> dict[Any, int]:
        """Server-side GROUP BY count of column over rows matching predicates (NULLs skipped)."""
        target = table.c[column]
        stmt = (
            select(target, func.count())
            .where(target.is_not(None), *_clauses(table, predicates))
            .group_by(target)
        )
        with self.transaction() as conn:
            rows = conn.execute(stmt).fetchall()
        return {value: int(n) for value, n in rows}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, table: Table, values: dict[str, Any]) -> dict[str, Any]:
        """Insert a row and return it as stored."""
        with self.transaction() as conn:
            conn.execute(table.insert().values(**_encode_values(table, values)))
            row = conn.execute(select(table).where(table.c.id == values["id"])).fetchone()
        return _row_to_record(table, row)

    def update(self, table: Table, record_id: str, values: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Apply values to one row; return the updated row, or None if it does not exist."""
        return self._update_row(table, record_id, _encode_values(table, values))

    def update_status(
        self,
        table: Table,
        record_id: str,
        values: dict[str, Any],
        stamps: dict[str, str],
    ) -> Optional[dict[str, Any]]:
        """Write a status change and its timestamp stamps in a single UPDATE.

        Each stamp column keeps its existing value if already set
        (COALESCE(column, now)), so a repeated transition never moves it.
        """
        assignments = _encode_values(table, values)
        for column, stamp in stamps.items():
            assignments[column] = func.coalesce(table.c[column], stamp)
        return self._update_row(table, record_id, assignments)

    def _update_row(self, table: Table, record_id: str, assignments: dict[str, Any]) -> Optional[dict[str, Any]]:
        with self.transaction() as conn:
            result = conn.execute(table.update().where(table.c.id == record_id).values(**assignments))
            if result.rowcount == 0:
                return None
            row = conn.execute(select(table).where(table.c.id == record_id)).fetchone()
        return _row_to_record(table, row)

    def delete(self, table: Table, record_id: str) -> bool:
        """Hard-delete one row. Returns False if nothing was deleted."""
        with self.transaction() as conn:
            result = conn.execute(table.delete().where(table.c.id == record_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.transaction() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
