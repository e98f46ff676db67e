"""
Migrations repository.

Responsibilities:
- Read and write rows of the bookkeeping table.
- Each mutation is one statement run in its own transaction, unless the
  caller already holds a transaction on the repository's connection.

Non-Responsibilities:
- No ordering or batching decisions beyond what the queries express.
- No execution of migration logic.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import MetaData, delete, func, insert, select, update

from .database import Datastore, migrations_table
from .records import (
    COMPLETED,
    FAILED,
    RAN_STATUSES,
    RETRYABLE_STATUSES,
    ROLLED_BACK,
    RUNNING,
    JobRecord,
)


class MigrationRepository:
    """Persisted execution state of data migrations."""

    def __init__(self, datastore: Datastore, table: str = "data_migrations", connection: Optional[str] = None):
        """
        Args:
            datastore: Datastore the bookkeeping table lives in
            table: Name of the bookkeeping table
            connection: Named connection to use (default connection if None)
        """
        self.datastore = datastore
        self.table_name = table
        self.connection = connection
        self.table = migrations_table(MetaData(), table)

    def _all(self, query) -> List[JobRecord]:
        rows = self.datastore.fetch_all(query, name=self.connection)
        return [JobRecord.from_row(row) for row in rows]

    def _execute(self, statement) -> int:
        return self.datastore.execute(statement, name=self.connection)

    def get_ran(self) -> Set[str]:
        """Names of migrations whose status is completed or running."""
        t = self.table
        query = select(t.c.migration).where(t.c.status.in_(RAN_STATUSES))
        return {row["migration"] for row in self.datastore.fetch_all(query, name=self.connection)}

    def get_migrations(self, steps: Optional[int] = None) -> List[JobRecord]:
        """
        All records, newest first (batch desc, then name desc).

        Args:
            steps: Only return this many records when given
        """
        t = self.table
        query = select(t).order_by(t.c.batch.desc(), t.c.migration.desc())
        if steps is not None:
            query = query.limit(steps)
        return self._all(query)

    def get_last(self) -> List[JobRecord]:
        """Completed/running records of the most recent batch that has any."""
        t = self.table
        last_batch = self.datastore.scalar(
            select(func.max(t.c.batch)).where(t.c.status.in_(RAN_STATUSES)),
            name=self.connection,
        )
        if last_batch is None:
            return []

        query = (
            select(t)
            .where(t.c.batch == last_batch, t.c.status.in_(RAN_STATUSES))
            .order_by(t.c.migration.desc())
        )
        return self._all(query)

    def get_migrations_by_batch(self, batch: int) -> List[JobRecord]:
        t = self.table
        query = select(t).where(t.c.batch == batch).order_by(t.c.migration.desc())
        return self._all(query)

    def log_start(self, migration: str, batch: int) -> None:
        """Record that a migration started, replacing a failed or rolled back record."""
        t = self.table
        now = datetime.now()
        with self.datastore.transaction(self.connection):
            self._execute(
                delete(t).where(t.c.migration == migration, t.c.status.in_(RETRYABLE_STATUSES))
            )
            self._execute(
                insert(t).values(
                    migration=migration,
                    batch=batch,
                    status=RUNNING,
                    started_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )

    def log_complete(
        self,
        migration: str,
        rows_affected: int,
        duration_ms: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        t = self.table
        now = datetime.now()
        self._execute(
            update(t)
            .where(t.c.migration == migration)
            .values(
                status=COMPLETED,
                rows_affected=rows_affected,
                duration_ms=duration_ms,
                metadata=metadata or {},
                completed_at=now,
                updated_at=now,
                error_message=None,
            )
        )

    def log_failed(self, migration: str, error_message: str) -> None:
        t = self.table
        self._execute(
            update(t)
            .where(t.c.migration == migration)
            .values(status=FAILED, error_message=error_message, updated_at=datetime.now())
        )

    def log_rollback(self, migration: str) -> None:
        t = self.table
        self._execute(
            update(t)
            .where(t.c.migration == migration)
            .values(status=ROLLED_BACK, updated_at=datetime.now())
        )

    def delete(self, migration: str) -> None:
        t = self.table
        self._execute(delete(t).where(t.c.migration == migration))

    def get_next_batch_number(self) -> int:
        return self.get_last_batch_number() + 1

    def get_last_batch_number(self) -> int:
        t = self.table
        return int(self.datastore.scalar(select(func.max(t.c.batch)), name=self.connection) or 0)

    def get_migration(self, migration: str) -> Optional[JobRecord]:
        t = self.table
        row = self.datastore.fetch_one(select(t).where(t.c.migration == migration), name=self.connection)
        if row is None:
            return None
        return JobRecord.from_row(row)

    def has_run(self, migration: str) -> bool:
        t = self.table
        query = select(t.c.id).where(t.c.migration == migration, t.c.status.in_(RAN_STATUSES))
        return self.datastore.fetch_one(query, name=self.connection) is not None

    def repository_exists(self) -> bool:
        """Whether the bookkeeping table has been created."""
        return self.datastore.has_table(self.table_name, self.connection)

    def create_repository(self) -> None:
        """Create the bookkeeping table and its indexes if missing."""
        with self.datastore.connect(self.connection) as conn:
            self.table.create(conn, checkfirst=True)
