"""
Base class for data migrations.

A migration file defines one DataMigration subclass. The class attributes
describe it to the migrator; ``up`` does the work and ``down`` (optional)
reverses it.

Example:
    class BackfillDisplayNames(DataMigration):
        description = "Fill users.display_name from first/last name"
        affected_tables = ["users"]

        def up(self):
            self.chunk("users", self.fill)

        def fill(self, row):
            ...
            self.affected()
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select, update

from .database import Datastore
from .exceptions import MigrationError, MigrationTimeoutError
from .progress import ProgressTracker

DEFAULT_CHUNK_SIZE = 1000

Row = Dict[str, Any]


class DataMigration(ABC):
    """Abstract base class for data migrations."""

    # Named database connection (None = default connection)
    connection: Optional[str] = None

    # Wrap up()/down() in a single transaction when the transaction mode is "auto"
    within_transaction: bool = True

    # Rows per page for the chunk helpers (None = configured default)
    chunk_size: Optional[int] = None

    # Informational: safe to run more than once
    idempotent: bool = False

    # Seconds; 0 = configured default, None = unlimited
    timeout: Optional[int] = 0

    description: str = ""

    # Tables touched by this migration, used for backups and dry runs
    affected_tables: Sequence[str] = ()

    # Whether down() reverses up(). Left unset, it is True when the class
    # defines its own down(); a value declared on a parent class is inherited.
    reversible: Optional[bool] = None
    _reversible_declared = False

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if "reversible" in cls.__dict__:
            cls._reversible_declared = True
        elif not cls._reversible_declared:
            cls.reversible = cls.down is not DataMigration.down

    def __init__(self):
        self.name = type(self).__name__
        self.rows_affected = 0
        self.progress = ProgressTracker()
        self._datastore: Optional[Datastore] = None
        self._default_chunk_size = DEFAULT_CHUNK_SIZE
        self._output: Optional[Callable[[str], None]] = None
        self._logger = None
        self._logging_enabled = True
        self._deadline: Optional[float] = None
        self._timeout_budget: Optional[int] = None

    @abstractmethod
    def up(self) -> None:
        """Run the data migration."""

    def down(self) -> None:
        """Reverse the data migration. Override to make the migration reversible."""

    def is_reversible(self) -> bool:
        return bool(self.reversible)

    def get_estimated_rows(self) -> Optional[int]:
        """Estimated number of rows up() will touch, or None when unknown."""
        return None

    def dry_run(self) -> Dict[str, Any]:
        """Describe what up() would do without touching the database."""
        return {
            "description": self.description,
            "affected_tables": list(self.affected_tables),
            "estimated_rows": self.get_estimated_rows(),
            "reversible": self.is_reversible(),
            "idempotent": self.idempotent,
            "uses_transaction": self.within_transaction,
        }

    def bind(
        self,
        datastore: Datastore,
        chunk_size: Optional[int] = None,
        output: Optional[Callable[[str], None]] = None,
        logger=None,
        logging_enabled: bool = True,
    ) -> "DataMigration":
        """Attach the runtime context the helpers need."""
        self._datastore = datastore
        if chunk_size is not None:
            self._default_chunk_size = chunk_size
        self._output = output
        self.progress.output = output
        self._logger = logger
        self._logging_enabled = logging_enabled
        return self

    # Timeout

    def start_deadline(self, seconds: Optional[int]) -> None:
        """Arm a wall-clock budget; None or 0 disarms it."""
        if not seconds:
            self._deadline = None
            self._timeout_budget = None
            return
        self._timeout_budget = seconds
        self._deadline = time.monotonic() + seconds

    def clear_deadline(self) -> None:
        self.start_deadline(None)

    def check_timeout(self) -> None:
        """Raise MigrationTimeoutError once the armed budget is spent."""
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise MigrationTimeoutError.for_migration(self.name, self._timeout_budget)

    # Database helpers

    @property
    def db(self) -> Datastore:
        if self._datastore is None:
            raise MigrationError(f"Migration '{self.name}' is not bound to a datastore")
        return self._datastore

    def table(self, name: str):
        """Reflected Table for ``name`` on this migration's connection."""
        return self.db.table(name, self.connection)

    def execute(self, statement, params: Optional[Any] = None) -> int:
        return self.db.execute(statement, params, name=self.connection)

    def fetch_all(self, statement, params: Optional[Any] = None) -> List[Row]:
        return self.db.fetch_all(statement, params, name=self.connection)

    def _chunk_size(self, chunk_size: Optional[int]) -> int:
        return chunk_size or self.chunk_size or self._default_chunk_size

    def chunk(self, table: str, callback: Callable[[Row], None], chunk_size: Optional[int] = None) -> int:
        """
        Process every row of ``table`` in pages ordered by id.

        Pages are fetched by keyset (``id > last seen id``) so callbacks may
        update the rows they receive.

        Args:
            table: Table name (must have an ``id`` column)
            callback: Called with each row as a dict
            chunk_size: Rows per page (default: migration/configured chunk size)

        Returns:
            Number of rows processed
        """
        size = self._chunk_size(chunk_size)
        t = self.table(table)
        processed = 0
        last_id = None

        while True:
            self.check_timeout()
            query = select(t).order_by(t.c.id).limit(size)
            if last_id is not None:
                query = query.where(t.c.id > last_id)

            rows = self.fetch_all(query)
            if not rows:
                break

            for row in rows:
                callback(row)
                processed += 1
                self.progress.advance()

            last_id = rows[-1]["id"]
            if len(rows) < size:
                break

        return processed

    def chunk_lazy(self, table: str, callback: Callable[[Row], None], chunk_size: Optional[int] = None) -> int:
        """
        Stream every row of ``table`` ordered by id, buffering one chunk at a time.

        Outside a transaction the stream holds its own connection, so on
        SQLite callbacks should not write while it is open.

        Returns:
            Number of rows processed
        """
        size = self._chunk_size(chunk_size)
        t = self.table(table)
        processed = 0

        for row in self.db.stream(select(t).order_by(t.c.id), size, name=self.connection):
            if processed % size == 0:
                self.check_timeout()
            callback(row)
            processed += 1
            self.progress.advance()

        return processed

    def chunk_update(
        self,
        table: str,
        values: Mapping[str, Any],
        where: Callable[[Any], Any],
        chunk_size: Optional[int] = None,
    ) -> int:
        """
        Apply ``values`` to matching rows at most ``chunk_size`` rows at a time.

        Loops until an iteration updates nothing, so ``values`` must make
        updated rows stop matching ``where``.

        Args:
            table: Table name (must have an ``id`` column)
            values: Column values to set
            where: Called with the Table, returns the filter clause
            chunk_size: Rows per update (default: migration/configured chunk size)

        Returns:
            Total number of rows updated
        """
        size = self._chunk_size(chunk_size)
        t = self.table(table)
        total = 0

        while True:
            self.check_timeout()
            ids_query = select(t.c.id).where(where(t)).order_by(t.c.id).limit(size)
            ids = [row["id"] for row in self.fetch_all(ids_query)]
            if not ids:
                break

            affected = self.execute(update(t).where(t.c.id.in_(ids)).values(**values))
            total += affected
            self.progress.advance(affected)
            if affected == 0:
                break

        return total

    def affected(self, count: int = 1) -> None:
        """Add to the rows-affected counter reported to the repository."""
        self.rows_affected += count

    # Output

    def log(self, message: str, level: str = "info") -> None:
        if self._logging_enabled and self._logger is not None:
            self._logger.log(level, f"[DataMigration] {message}", migration=self.name)
        self.info(message)

    def info(self, message: str) -> None:
        if self._output is not None:
            self._output(message)

    def warn(self, message: str) -> None:
        if self._output is not None:
            self._output(f"WARNING: {message}")

    def error(self, message: str) -> None:
        if self._output is not None:
            self._output(f"ERROR: {message}")
