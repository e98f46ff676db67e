"""
Advisory lock serialising migrator invocations.

The lock is a table next to the bookkeeping table that can hold at most
one row (primary key fixed to 1). Inserting the row acquires the lock;
deleting it releases. A crashed process leaves the row behind; clear it
with ``datamigrate unlock``.
"""

import os
import socket
from datetime import datetime
from typing import Optional

from sqlalchemy import MetaData, delete, insert, select
from sqlalchemy.exc import IntegrityError

from .database import Datastore, lock_table
from .exceptions import MigrationLockedError

LOCK_ID = 1


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class MigrationLock:
    """Single-row mutex; use as a context manager around a migrator operation."""

    def __init__(self, datastore: Datastore, table: str = "data_migrations", connection: Optional[str] = None, owner: Optional[str] = None):
        self.datastore = datastore
        self.connection = connection
        self.owner = owner or default_owner()
        self.table = lock_table(MetaData(), table)
        self.held = False

    def create(self) -> None:
        with self.datastore.connect(self.connection) as conn:
            self.table.create(conn, checkfirst=True)

    def holder(self) -> Optional[str]:
        """Owner of the lock, or None when free."""
        t = self.table
        row = self.datastore.fetch_one(select(t.c.owner).where(t.c.id == LOCK_ID), name=self.connection)
        return row["owner"] if row else None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            MigrationLockedError: If another invocation holds it
        """
        self.create()
        t = self.table
        try:
            self.datastore.execute(
                insert(t).values(id=LOCK_ID, owner=self.owner, acquired_at=datetime.now()),
                name=self.connection,
            )
        except IntegrityError as e:
            raise MigrationLockedError(
                f"Data migrations are locked by {self.holder() or 'another process'}. "
                "If that process is gone, run: datamigrate unlock"
            ) from e
        self.held = True

    def release(self) -> None:
        if not self.held:
            return
        t = self.table
        self.datastore.execute(
            delete(t).where(t.c.id == LOCK_ID, t.c.owner == self.owner),
            name=self.connection,
        )
        self.held = False

    def force_release(self) -> bool:
        """Delete the lock row whoever holds it. Returns True if one existed."""
        if not self.datastore.has_table(self.table.name, self.connection):
            return False
        t = self.table
        return self.datastore.execute(delete(t).where(t.c.id == LOCK_ID), name=self.connection) > 0

    def __enter__(self) -> "MigrationLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
