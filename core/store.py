"""
store.py
---------
Relational store interface used by the rule store, the history suggester and
the recurring detector.

The engine only needs five verbs against four tables: select by equality /
membership / date range, insert, update, and an atomic insert-or-update
keyed on a unique constraint. RelationalStore is that contract;
SQLiteStore is the bundled implementation, SQLAlchemy Core over SQLite
(in-memory by default), used by the CLI and the tests.

Uniqueness lives in the database: one active learned rule per scope owner
and fingerprint (a partial unique index over non-archived rows), one
confirmation per family, category, subcategory and month. NULL owners are
compared as empty strings inside those indexes, so a user rule with no
family still collides with its twin.

Reads come back as pandas DataFrames so downstream code can group and
aggregate them directly.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Sequence, Tuple, Union

import pandas as pd
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    false,
    func,
    literal_column,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool


class StoreError(Exception):
    """The backing store could not serve a read or write."""


class DuplicateKeyError(StoreError):
    """An insert violated a unique constraint."""


# =============================================================================
# APPLICATION SCHEMA
# =============================================================================

metadata = MetaData()

learned_merchant_rules = Table(
    "learned_merchant_rules",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("scope_type", String(16), nullable=False),
    Column("fingerprint_type", String(16), nullable=False),
    Column("fingerprint", String(128), nullable=False),
    Column("category_id", String(100), nullable=False),
    Column("subcategory_id", String(100)),
    Column("merchant_canon", String(100)),
    Column("confidence_base", Float),
    Column("examples_count", Integer),
    Column("conflict_count", Integer),
    Column("is_archived", Boolean, nullable=False),
    Column("user_id", String(64)),
    Column("family_id", String(64)),
    Column("last_used_at", DateTime),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

# Only one active rule per scope owner and fingerprint.
Index(
    "uq_learned_rules_active_owner_fingerprint",
    learned_merchant_rules.c.scope_type,
    func.coalesce(learned_merchant_rules.c.user_id, ""),
    func.coalesce(learned_merchant_rules.c.family_id, ""),
    learned_merchant_rules.c.fingerprint,
    unique=True,
    sqlite_where=learned_merchant_rules.c.is_archived == false(),
)

categorization_feedback = Table(
    "categorization_feedback",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("transaction_id", String(64)),
    Column("user_id", String(64)),
    Column("family_id", String(64)),
    Column("raw_descriptor", String),
    Column("normalized_descriptor", String),
    Column("fingerprint_strong", String(128)),
    Column("fingerprint_weak", String(128)),
    Column("predicted_category_id", String(100)),
    Column("predicted_subcategory_id", String(100)),
    Column("predicted_source", String(16)),
    Column("predicted_confidence", Float),
    Column("user_category_id", String(100)),
    Column("user_subcategory_id", String(100)),
    Column("apply_scope", String(16)),
    Column("apply_to_future", Boolean),
    Column("was_prediction_correct", Boolean),
    Column("created_at", DateTime),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("family_id", String(64), index=True),
    Column("user_id", String(64)),
    Column("description", String),
    Column("category_id", String(100)),
    Column("subcategory_id", String(100)),
    Column("classification", String(16)),
    Column("type", String(16)),
    Column("amount", Float),
    Column("date", Date),
    Column("created_at", DateTime),
)

recurring_expense_confirmations = Table(
    "recurring_expense_confirmations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("family_id", String(64), nullable=False),
    Column("category_id", String(100), nullable=False),
    Column("subcategory_id", String(100)),
    Column("month_ref", String(7), nullable=False),
    Column("confirmation_type", String(16), nullable=False),
    Column("confirmed_by_user_id", String(64)),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

Index(
    "uq_confirmations_family_category_month",
    recurring_expense_confirmations.c.family_id,
    recurring_expense_confirmations.c.category_id,
    func.coalesce(recurring_expense_confirmations.c.subcategory_id, ""),
    recurring_expense_confirmations.c.month_ref,
    unique=True,
)

# Rows a unique index covers, for tables whose index is partial.
UNIQUE_WHERE: Dict[str, Dict[str, Any]] = {
    "learned_merchant_rules": {"is_archived": False},
}


Where = Optional[Dict[str, Any]]
Between = Optional[Dict[str, Tuple[Any, Any]]]
UpdateSpec = Union[Dict[str, Any], Callable[[Dict[str, Any]], Dict[str, Any]], None]


# =============================================================================
# INTERFACE
# =============================================================================

class RelationalStore(ABC):
    """Abstract relational store. Implementations raise StoreError on failure."""

    @abstractmethod
    def select(
        self,
        table: str,
        where: Where = None,
        between: Between = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> pd.DataFrame:
        """
        Rows matching every filter.

        Args:
            where: column -> value (equality, None meaning IS NULL) or
                list/tuple/set (membership).
            between: column -> (low, high), inclusive; either bound may be None.
        """
        ...

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Inserts one row and returns it. Raises DuplicateKeyError."""
        ...

    @abstractmethod
    def update(self, table: str, where: Dict[str, Any], values: Dict[str, Any]) -> int:
        """Updates every matching row. Returns the number of rows affected."""
        ...

    @abstractmethod
    def upsert(
        self,
        table: str,
        row: Dict[str, Any],
        on_conflict: Sequence[str],
        update: UpdateSpec = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Atomic insert-or-update keyed on the on_conflict columns.

        update is a dict of new values, or a callable receiving the existing
        row and returning new values. With update=None the row's own values
        overwrite the existing ones.

        Returns:
            (stored row, inserted) where inserted is False when an existing
            row was updated.
        """
        ...


# =============================================================================
# SQLITE IMPLEMENTATION
# =============================================================================

class SQLiteStore(RelationalStore):
    """
    SQLAlchemy Core store over SQLite.

    Usage:
        store = SQLiteStore()                          # private in-memory database
        store = SQLiteStore("sqlite:///household.db")  # file-backed
        store.insert("transactions", {...})
        df = store.select("transactions", where={"family_id": "fam-1"})
    """

    def __init__(self, url: str = "sqlite://"):
        if not url.startswith("sqlite"):
            raise ValueError(f"SQLiteStore needs a sqlite URL, got '{url}'")

        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database.
            self.engine = create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(url)

        # The shared in-memory connection cannot interleave transactions.
        self._lock = threading.RLock()
        self.tables = metadata.tables
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not create schema: {exc}") from exc

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def select(self, table, where=None, between=None, order_by=None, descending=False, limit=None):
        t = self._table(table)
        stmt = select(t).where(*self._where(t, where), *self._between(t, between))
        if order_by is not None:
            column = self._column(t, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        # Insertion order breaks ties
        stmt = stmt.order_by(literal_column("rowid"))
        if limit is not None:
            stmt = stmt.limit(limit)

        with self._begin() as conn:
            rows = [dict(r) for r in conn.execute(stmt).mappings()]
        return pd.DataFrame(rows, columns=[c.name for c in t.columns])

    def insert(self, table, row):
        t = self._table(table)
        values = self._prepare_row(t, row)
        with self._begin() as conn:
            conn.execute(t.insert().values(**values))
            return self._fetch(conn, t, values["id"])

    def update(self, table, where, values):
        t = self._table(table)
        self._check_columns(t, values)
        with self._begin() as conn:
            result = conn.execute(t.update().where(*self._where(t, where)).values(**values))
            return result.rowcount

    def upsert(self, table, row, on_conflict, update=None):
        t = self._table(table)
        values = self._prepare_row(t, row)
        key = {c: values.get(c) for c in on_conflict}

        with self._begin() as conn:
            # The insert takes the write lock, so the read-merge-write below
            # cannot interleave with another writer.
            result = conn.execute(sqlite_insert(t).values(**values).on_conflict_do_nothing())
            if result.rowcount == 1:
                return self._fetch(conn, t, values["id"]), True

            existing = conn.execute(
                select(t).where(*self._where(t, {**key, **UNIQUE_WHERE.get(table, {})}))
            ).mappings().first()
            if existing is None:
                raise DuplicateKeyError(f"Duplicate key on {table} {list(key.values())}")
            existing = dict(existing)

            if update is None:
                new_values = {k: v for k, v in row.items() if k not in ("id", "created_at")}
            elif callable(update):
                new_values = update(dict(existing))
            else:
                new_values = dict(update)
            self._check_columns(t, new_values)

            if new_values:
                conn.execute(t.update().where(t.c.id == existing["id"]).values(**new_values))
            return self._fetch(conn, t, existing["id"]), False

    def bulk_insert(self, table: str, rows: Iterable[Dict[str, Any]]) -> int:
        """Inserts many rows in one transaction; used to seed transactions from a CSV."""
        t = self._table(table)
        prepared = [self._prepare_row(t, row) for row in rows]
        if not prepared:
            return 0
        with self._begin() as conn:
            conn.execute(t.insert(), prepared)
        return len(prepared)

    def count(self, table: str) -> int:
        t = self._table(table)
        with self._begin() as conn:
            return conn.execute(select(func.count()).select_from(t)).scalar_one()

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """One transaction; database errors surface as StoreError."""
        with self._lock:
            try:
                with self.engine.begin() as conn:
                    yield conn
            except IntegrityError as exc:
                if "UNIQUE" in str(exc.orig):
                    raise DuplicateKeyError(str(exc.orig)) from exc
                raise StoreError(str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                raise StoreError(str(exc)) from exc

    def _table(self, name: str) -> Table:
        if name not in self.tables:
            raise StoreError(f"Unknown table '{name}'. Available: {list(self.tables)}")
        return self.tables[name]

    @staticmethod
    def _check_columns(t: Table, values: Dict[str, Any]) -> None:
        unknown = set(values) - set(t.columns.keys())
        if unknown:
            raise StoreError(f"Unknown columns: {sorted(unknown)}")

    def _column(self, t: Table, name: str):
        self._check_columns(t, {name: None})
        return t.c[name]

    def _prepare_row(self, t: Table, row: Dict[str, Any]) -> Dict[str, Any]:
        """Every column present, with a generated id and created_at when missing."""
        self._check_columns(t, row)
        full = {c.name: row.get(c.name) for c in t.columns}
        if full["id"] is None:
            full["id"] = str(uuid.uuid4())
        if "created_at" in full and full["created_at"] is None:
            full["created_at"] = datetime.now()
        return full

    def _where(self, t: Table, where: Where) -> list:
        clauses = []
        for name, expected in (where or {}).items():
            column = self._column(t, name)
            if isinstance(expected, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(expected)))
            elif expected is None:
                clauses.append(column.is_(None))
            else:
                clauses.append(column == expected)
        return clauses

    def _between(self, t: Table, between: Between) -> list:
        clauses = []
        for name, (low, high) in (between or {}).items():
            column = self._column(t, name)
            clauses.append(column.is_not(None))
            if low is not None:
                clauses.append(column >= low)
            if high is not None:
                clauses.append(column <= high)
        return clauses

    @staticmethod
    def _fetch(conn: Connection, t: Table, row_id: Any) -> Dict[str, Any]:
        return dict(conn.execute(select(t).where(t.c.id == row_id)).mappings().one())
