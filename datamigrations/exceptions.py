"""
Exception types raised by the migration engine.
"""


class MigrationError(Exception):
    """Base class for data migration errors."""
    pass


class MigrationNotFoundError(MigrationError):
    """Raised when a migration name has no matching file or record."""

    @classmethod
    def for_migration(cls, name: str) -> "MigrationNotFoundError":
        return cls(f"Migration not found: {name}")


class NotReversibleError(MigrationError):
    """Raised when reverse logic is demanded from a migration without one."""

    @classmethod
    def for_migration(cls, name: str) -> "NotReversibleError":
        return cls(f"Migration is not reversible: {name}")


class MigrationTimeoutError(MigrationError):
    """Raised when a migration runs past its time budget."""

    @classmethod
    def for_migration(cls, name: str, timeout: int) -> "MigrationTimeoutError":
        return cls(
            f"Migration '{name}' exceeded the timeout limit of {timeout} seconds."
        )


class RepositoryNotFoundError(MigrationError):
    """Raised when the bookkeeping table has not been created."""

    @classmethod
    def for_table(cls, table: str) -> "RepositoryNotFoundError":
        return cls(
            f"Data migrations table '{table}' not found. Run: datamigrate install"
        )


class MigrationLockedError(MigrationError):
    """Raised when another invocation holds the migration lock."""
    pass
