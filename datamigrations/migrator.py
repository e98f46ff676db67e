"""
Migrator: runs pending data migrations and rolls them back.

Responsibilities:
- Work out which migration files are pending and run them, in file order,
  as one batch.
- Wrap each migration in the configured transaction, timeout and backup
  policy, and record every outcome in the repository before returning or
  re-raising.
- Roll back a batch (or the last N records) in reverse order.

Invariant:
A migration that raises is recorded as failed and the exception is
re-raised; no later migration of the batch is attempted.
"""

import math
import time
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .backup import BackupService, NullBackupService, TableCopyBackupService
from .config import Settings
from .database import Datastore
from .exceptions import MigrationNotFoundError, NotReversibleError, RepositoryNotFoundError
from .lock import MigrationLock
from .logger import StructuredLogger, logger_from_settings
from .migration import DataMigration
from .records import PENDING, JobRecord
from .repository import MigrationRepository
from .resolver import MigrationFileResolver


@dataclass(frozen=True)
class MigrationStatus:
    """One line of ``Migrator.status()``."""

    name: str
    batch: Optional[int]
    status: str
    rows_affected: Optional[int]
    duration_ms: Optional[int]
    ran_at: Optional[datetime]


def _elapsed_ms(started: float) -> int:
    return max(1, int(math.ceil((time.perf_counter() - started) * 1000)))


class Migrator:
    """Orchestrates data migration execution."""

    def __init__(
        self,
        repository: MigrationRepository,
        datastore: Datastore,
        resolver: MigrationFileResolver,
        settings: Settings,
        backup_service: Optional[BackupService] = None,
        logger: Optional[StructuredLogger] = None,
        output: Optional[Callable[[str], None]] = None,
    ):
        self.repository = repository
        self.datastore = datastore
        self.resolver = resolver
        self.settings = settings
        self.backup_service = backup_service or NullBackupService()
        self.logger = logger or logger_from_settings(settings)
        self.output = output
        self.notes: List[str] = []
        self.lock = (
            MigrationLock(datastore, settings.table, repository.connection)
            if settings.use_lock else None
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        output: Optional[Callable[[str], None]] = None,
        backup_service: Optional[BackupService] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> "Migrator":
        """Build a migrator and its collaborators from Settings."""
        datastore = Datastore.from_settings(settings)
        logger = logger or logger_from_settings(settings)
        if backup_service is None and settings.auto_backup:
            backup_service = TableCopyBackupService(datastore, logger=logger)
        return cls(
            repository=MigrationRepository(datastore, settings.table),
            datastore=datastore,
            resolver=MigrationFileResolver(settings.path),
            settings=settings,
            backup_service=backup_service,
            logger=logger,
            output=output,
        )

    def install(self) -> None:
        """Create the bookkeeping table (and lock table) if missing."""
        self.repository.create_repository()
        if self.lock is not None:
            self.lock.create()

    def ensure_repository(self) -> None:
        """
        Raises:
            RepositoryNotFoundError: If the bookkeeping table does not exist
        """
        if not self.repository.repository_exists():
            raise RepositoryNotFoundError.for_table(self.repository.table_name)

    # Run

    def run(self, dry_run: bool = False) -> List[Path]:
        """
        Run all pending migrations as one batch.

        Args:
            dry_run: Only describe each pending migration; nothing is written

        Returns:
            Files that ran (or would run, in a dry run), in execution order
        """
        self.notes = []
        self.ensure_repository()

        with self._locked(dry_run):
            return self._run_files(self.get_pending_migrations(), dry_run)

    def fresh(self, dry_run: bool = False) -> List[Path]:
        """Delete every record, then run every migration file as a new batch."""
        self.notes = []
        self.ensure_repository()

        with self._locked(dry_run):
            if dry_run:
                return self._run_files(self.get_migration_files(), dry_run=True)

            with self.datastore.transaction(self.repository.connection):
                for record in self.repository.get_migrations():
                    self.repository.delete(record.migration)
                    self.note(f"Reset: {record.migration}")

            return self._run_files(self.get_migration_files(), dry_run=False)

    def _run_files(self, files: List[Path], dry_run: bool) -> List[Path]:
        if not files:
            self.note("Nothing to migrate.")
            return []

        batch = self.repository.get_next_batch_number()
        self.note("Running data migrations..." if not dry_run else "Data migrations that would run:")

        ran = []
        for file in files:
            self.run_migration(file, batch, dry_run=dry_run)
            ran.append(file)

        return ran

    def run_migration(self, file: Path, batch: int, dry_run: bool = False) -> None:
        """Run a single migration file as part of ``batch``."""
        name = self.get_migration_name(file)
        migration = self.resolve(file)

        if dry_run:
            self._dry_run(name, migration)
            return

        self.note(f"Migrating: {name}")
        self.repository.log_start(name, batch)
        started = time.perf_counter()

        try:
            self._run_up(migration, name)
            duration_ms = _elapsed_ms(started)
            self.repository.log_complete(
                name,
                migration.rows_affected,
                duration_ms,
                {"description": migration.description},
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            self.repository.log_failed(name, message)
            self.logger.record_migration_failure(type(e).__name__)
            self.note(f"Failed: {name} - {message}", level="error")
            raise

        self.logger.record_migration_run(migration.rows_affected)
        self.note(f"Migrated: {name} ({duration_ms}ms, {migration.rows_affected} rows)")

    def _run_up(self, migration: DataMigration, name: str) -> None:
        timeout = self.resolve_timeout(migration)
        self._run_auto_backup(migration, name)
        self._invoke(migration, migration.up, timeout)

    def _invoke(self, migration: DataMigration, work: Callable[[], None], timeout: Optional[int]) -> None:
        """Run ``up``/``down`` inside the transaction policy and time budget."""
        migration.start_deadline(timeout)
        try:
            if self.should_use_transaction(migration):
                with self.datastore.transaction(migration.connection):
                    work()
                    migration.check_timeout()
            else:
                work()
                migration.check_timeout()
        finally:
            migration.clear_deadline()

    def resolve_timeout(self, migration: DataMigration) -> Optional[int]:
        """Seconds the migration may run, or None for unlimited."""
        timeout = migration.timeout
        if timeout == 0:
            timeout = self.settings.timeout
        return timeout or None

    def _run_auto_backup(self, migration: DataMigration, name: str) -> None:
        if not self.settings.auto_backup:
            return

        if not self.backup_service.is_available():
            self.note("Auto backup enabled but backup service not available.", level="warning")
            return

        tables = list(migration.affected_tables)
        if not tables:
            return

        self.note("Creating backup before migration...")
        if self.backup_service.backup_tables(tables, name):
            self.note("Backup created successfully.")
        else:
            self.note("Backup failed, continuing with migration...", level="warning")

    def _dry_run(self, name: str, migration: DataMigration) -> None:
        info = migration.dry_run()
        tables = info["affected_tables"]
        estimated = info["estimated_rows"]

        self.note(f"[DRY RUN] {name}")
        self.note(f"  Description: {info['description'] or 'N/A'}")
        self.note(f"  Affected tables: {', '.join(tables) if tables else 'N/A'}")
        self.note(f"  Estimated rows: {estimated if estimated is not None else 'Unknown'}")
        self.note(f"  Reversible: {'Yes' if info['reversible'] else 'No'}")
        self.note(f"  Idempotent: {'Yes' if info['idempotent'] else 'No'}")
        self.note(f"  Uses transaction: {'Yes' if info['uses_transaction'] else 'No'}")

    # Rollback

    def rollback(self, step: int = 0, batch: Optional[int] = None) -> List[Path]:
        """
        Roll back migrations.

        Args:
            step: Roll back this many most recent records (any batch, any status)
            batch: Roll back every record of this batch (takes precedence)

        Returns:
            Files whose ``down`` ran, in rollback order
        """
        self.notes = []
        self.ensure_repository()

        with self._locked():
            if batch is not None:
                records = self.repository.get_migrations_by_batch(batch)
            elif step > 0:
                records = self.repository.get_migrations(step)
            else:
                records = self.repository.get_last()

            if not records:
                self.note("Nothing to rollback.")
                return []

            return self._rollback_records(records)

    def _rollback_records(self, records: List[JobRecord]) -> List[Path]:
        rolled_back = []

        for record in records:
            try:
                file = self.find_migration_file(record.migration)
            except MigrationNotFoundError:
                self.note(f"Migration file not found: {record.migration}", level="warning")
                self.logger.record_skip()
                continue

            try:
                self.rollback_migration(record, file)
            except NotReversibleError:
                self.note(f"Skipping (not reversible): {record.migration}", level="warning")
                self.logger.record_skip()
                continue

            rolled_back.append(file)

        return rolled_back

    def rollback_migration(self, record: JobRecord, file: Path) -> None:
        """
        Run ``down`` for one record and mark it rolled back.

        Raises:
            NotReversibleError: If the migration has no reverse logic
        """
        migration = self.resolve(file)

        if not migration.is_reversible():
            raise NotReversibleError.for_migration(record.migration)

        self.note(f"Rolling back: {record.migration}")
        started = time.perf_counter()

        try:
            self._invoke(migration, migration.down, self.resolve_timeout(migration))
            self.repository.log_rollback(record.migration)
        except Exception as e:
            self.logger.record_migration_failure(type(e).__name__)
            self.note(f"Rollback failed: {record.migration} - {e}", level="error")
            raise

        self.logger.record_rollback()
        self.note(f"Rolled back: {record.migration} ({_elapsed_ms(started)}ms)")

    # Queries

    def get_migration_files(self) -> List[Path]:
        return self.resolver.get_migration_files()

    def find_migration_file(self, name: str) -> Path:
        """
        Raises:
            MigrationNotFoundError: If no file in the migrations directory has this name
        """
        file = self.resolver.find_migration_file(name)
        if file is None:
            raise MigrationNotFoundError.for_migration(name)
        return file

    def get_pending_migrations(self) -> List[Path]:
        """Migration files without a completed or running record, in file order."""
        ran = self.repository.get_ran()
        return [f for f in self.get_migration_files() if self.get_migration_name(f) not in ran]

    def status(self) -> List[MigrationStatus]:
        """Status of every migration file (``pending`` when it has no record)."""
        self.ensure_repository()
        records = {r.migration: r for r in self.repository.get_migrations()}

        rows = []
        for file in self.get_migration_files():
            name = self.get_migration_name(file)
            record = records.get(name)
            rows.append(MigrationStatus(
                name=name,
                batch=record.batch if record else None,
                status=record.status if record else PENDING,
                rows_affected=record.rows_affected if record else None,
                duration_ms=record.duration_ms if record else None,
                ran_at=record.completed_at if record else None,
            ))
        return rows

    def estimate_pending_rows(self) -> int:
        """Sum of the known row estimates of all pending migrations."""
        total = 0
        for file in self.get_pending_migrations():
            estimated = self.resolve(file).get_estimated_rows()
            if estimated is not None:
                total += estimated
        return total

    def resolve(self, file: Path) -> DataMigration:
        migration = self.resolver.resolve(file)
        return migration.bind(
            self.datastore,
            chunk_size=self.settings.chunk_size,
            output=self.output,
            logger=self.logger,
            logging_enabled=self.settings.logging_enabled,
        )

    def get_migration_name(self, file: Path) -> str:
        return self.resolver.get_migration_name(file)

    def should_use_transaction(self, migration: DataMigration) -> bool:
        mode = self.settings.transaction
        if mode == "always":
            return True
        if mode == "never":
            return False
        return migration.within_transaction

    # Output

    def note(self, message: str, level: str = "info") -> None:
        """Collect a progress note and echo it to the output sink and log."""
        self.notes.append(message)

        if self.output is not None:
            self.output(message)

        if self.settings.logging_enabled and message:
            self.logger.log(level, message)

    def _locked(self, skip: bool = False):
        if skip or self.lock is None:
            return nullcontext()
        return self.lock
