"""
Pre-migration backups.

The migrator asks a BackupService to snapshot a migration's affected
tables before running it. Backups are best effort: a failed backup is
reported as False and never raised.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .database import Datastore
from .logger import StructuredLogger, get_logger
from .retry import RetryError, exponential_backoff, is_transient_error


class BackupService(ABC):
    """Capability used by the migrator for automatic backups."""

    @abstractmethod
    def backup_tables(self, tables: Sequence[str], migration_name: str) -> bool:
        """Back up the given tables. Returns True on success."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether backups can be taken at all."""


class NullBackupService(BackupService):
    """Backup service used when no backup implementation is configured."""

    def backup_tables(self, tables: Sequence[str], migration_name: str) -> bool:
        return False

    def is_available(self) -> bool:
        return False


class TableCopyBackupService(BackupService):
    """
    Copies each table to ``<table>_backup_<YYYYmmddHHMMSS>`` in the same database.

    Copies that fail on a transient lock are retried with exponential backoff.
    """

    def __init__(
        self,
        datastore: Datastore,
        connection: Optional[str] = None,
        logger: Optional[StructuredLogger] = None,
        max_retries: int = 3,
        base_delay: float = 0.5,
    ):
        self.datastore = datastore
        self.connection = connection
        self.logger = logger or get_logger()
        self.created: List[str] = []

        self._copy = exponential_backoff(
            max_retries=max_retries,
            base_delay=base_delay,
            exceptions=(SQLAlchemyError,),
            retry_if=is_transient_error,
            on_retry=self._on_retry,
        )(self._copy_table)

    def is_available(self) -> bool:
        return True

    def backup_tables(self, tables: Sequence[str], migration_name: str) -> bool:
        suffix = datetime.now().strftime("%Y%m%d%H%M%S")
        self.created = []

        try:
            for table in tables:
                target = f"{table}_backup_{suffix}"
                self._copy(table, target)
                self.created.append(target)
        except (SQLAlchemyError, RetryError) as e:
            self.logger.error(
                f"[DataMigration] Backup failed: {e}",
                migration=migration_name,
                tables=list(tables),
            )
            return False

        self.logger.info(
            f"[DataMigration] Backup created before migration: {migration_name}",
            tables=self.created,
        )
        return True

    def _copy_table(self, table: str, target: str) -> None:
        with self.datastore.connect(self.connection) as conn:
            quote = conn.dialect.identifier_preparer.quote
            conn.execute(text(f"CREATE TABLE {quote(target)} AS SELECT * FROM {quote(table)}"))

    def _on_retry(self, attempt: int, exception: Exception, delay: float) -> None:
        self.logger.warning(
            f"[DataMigration] Backup attempt {attempt} failed, retrying in {delay:.1f}s",
            error=str(exception),
        )
