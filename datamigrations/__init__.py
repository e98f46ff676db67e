"""
Data migrations: batch jobs for data transformations against a live
database, with durable execution bookkeeping.
"""

__version__ = "0.1.0"

from .exceptions import (
    MigrationError,
    MigrationLockedError,
    MigrationNotFoundError,
    MigrationTimeoutError,
    NotReversibleError,
    RepositoryNotFoundError,
)
from .migration import DataMigration
from .records import JobRecord

__all__ = [
    "__version__",
    "DataMigration",
    "JobRecord",
    "MigrationError",
    "MigrationLockedError",
    "MigrationNotFoundError",
    "MigrationTimeoutError",
    "NotReversibleError",
    "RepositoryNotFoundError",
]
