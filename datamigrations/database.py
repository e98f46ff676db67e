"""
Database schema and connection management.

Uses SQLAlchemy Core. Every named connection maps to one engine; a
transaction opened through the Datastore is shared with every read and
write issued on the same connection name until it closes.
"""

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    inspect,
)
from sqlalchemy.engine import Connection, Engine, make_url

DEFAULT_CONNECTION = "default"


def migrations_table(metadata: MetaData, table_name: str) -> Table:
    """
    Declare the bookkeeping table.

    Args:
        metadata: MetaData collection to attach the table to
        table_name: Name of the table

    Returns:
        SQLAlchemy Table
    """
    return Table(
        table_name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("migration", String(255), nullable=False),
        Column("batch", Integer, nullable=False),
        Column("status", String(20), nullable=False, default="pending"),
        Column("rows_affected", Integer, nullable=True),
        Column("duration_ms", Integer, nullable=True),
        Column("error_message", Text, nullable=True),
        Column("metadata", JSON, nullable=True),
        Column("started_at", DateTime, nullable=True),
        Column("completed_at", DateTime, nullable=True),
        Column("created_at", DateTime, nullable=False, default=datetime.now),
        Column("updated_at", DateTime, nullable=False, default=datetime.now, onupdate=datetime.now),
        UniqueConstraint("migration", name=f"{table_name}_migration_unique"),
        Index(f"{table_name}_batch_status_index", "batch", "status"),
    )


def lock_table(metadata: MetaData, table_name: str) -> Table:
    """Declare the single-row advisory lock table that sits next to ``table_name``."""
    return Table(
        f"{table_name}_lock",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=False),
        Column("owner", String(255), nullable=False),
        Column("acquired_at", DateTime, nullable=False, default=datetime.now),
    )


def get_engine(url: str, **kwargs) -> Engine:
    """
    Create an engine, making sure the parent directory of a SQLite file exists.

    Args:
        url: SQLAlchemy database URL
        **kwargs: Passed through to ``create_engine``

    Returns:
        SQLAlchemy Engine
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, **kwargs)


class Datastore:
    """
    Named database connections with shared-transaction semantics.

    ``transaction(name)`` opens a transaction that commits on normal exit
    and rolls back on error. While it is open, ``connect(name)`` and every
    helper built on it run inside that same transaction; outside one, each
    call gets its own short transaction.
    """

    def __init__(self, engines: Dict[str, Engine], default: str = DEFAULT_CONNECTION):
        if default not in engines:
            raise ValueError(f"Default connection '{default}' is not configured")
        self._engines = dict(engines)
        self.default = default
        self._active: Dict[str, Connection] = {}
        self._tables: Dict[Tuple[str, str], Table] = {}

    @classmethod
    def from_url(cls, url: str, connections: Optional[Mapping[str, str]] = None) -> "Datastore":
        engines = {DEFAULT_CONNECTION: get_engine(url)}
        for name, extra_url in (connections or {}).items():
            engines[name] = get_engine(extra_url)
        return cls(engines)

    @classmethod
    def from_settings(cls, settings) -> "Datastore":
        return cls.from_url(settings.database_url, settings.connections)

    def _key(self, name: Optional[str]) -> str:
        key = name or self.default
        if key not in self._engines:
            raise ValueError(f"Unknown database connection: {key}")
        return key

    def engine(self, name: Optional[str] = None) -> Engine:
        return self._engines[self._key(name)]

    def connection_names(self) -> List[str]:
        return list(self._engines)

    def in_transaction(self, name: Optional[str] = None) -> bool:
        return self._key(name) in self._active

    @contextmanager
    def transaction(self, name: Optional[str] = None) -> Iterator[Connection]:
        """
        Run the enclosed block in one transaction on the named connection.

        Nested calls on the same connection join the outer transaction.
        """
        key = self._key(name)
        if self.in_transaction(name):
            yield self._active[key]
            return

        with self._engines[key].begin() as conn:
            self._active[key] = conn
            try:
                yield conn
            finally:
                del self._active[key]

    @contextmanager
    def connect(self, name: Optional[str] = None) -> Iterator[Connection]:
        """Yield the active transaction's connection, or a fresh autocommitting one."""
        key = self._key(name)
        active = self._active.get(key)
        if active is not None:
            yield active
            return

        with self._engines[key].begin() as conn:
            yield conn

    def execute(self, statement, params: Optional[Any] = None, name: Optional[str] = None) -> int:
        """Execute a write statement and return the number of rows it matched."""
        with self.connect(name) as conn:
            return conn.execute(statement, params).rowcount

    def fetch_all(self, statement, params: Optional[Any] = None, name: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.connect(name) as conn:
            return [dict(row._mapping) for row in conn.execute(statement, params)]

    def fetch_one(self, statement, params: Optional[Any] = None, name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self.connect(name) as conn:
            row = conn.execute(statement, params).first()
            return dict(row._mapping) if row is not None else None

    def scalar(self, statement, params: Optional[Any] = None, name: Optional[str] = None) -> Any:
        with self.connect(name) as conn:
            return conn.execute(statement, params).scalar()

    def stream(self, statement, chunk_size: int, name: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """
        Iterate over a query's rows while buffering at most ``chunk_size`` of them.

        The connection stays open until the iterator is exhausted or closed.
        """
        with self.connect(name) as conn:
            result = conn.execute(statement, execution_options={"yield_per": chunk_size})
            for row in result:
                yield dict(row._mapping)

    def has_table(self, table_name: str, name: Optional[str] = None) -> bool:
        with self.connect(name) as conn:
            return inspect(conn).has_table(table_name)

    def table(self, table_name: str, name: Optional[str] = None) -> Table:
        """Reflect (and cache) an existing table on the named connection."""
        cache_key = (self._key(name), table_name)
        if cache_key not in self._tables:
            with self.connect(name) as conn:
                self._tables[cache_key] = Table(table_name, MetaData(), autoload_with=conn)
        return self._tables[cache_key]

    def forget_table(self, table_name: str, name: Optional[str] = None) -> None:
        self._tables.pop((self._key(name), table_name), None)

    def dispose(self) -> None:
        for engine in self._engines.values():
            engine.dispose()
