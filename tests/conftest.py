"""
Pytest configuration and shared fixtures.
"""

import dataclasses
from pathlib import Path
from typing import List, Optional

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, insert, select

from datamigrations.config import Settings
from datamigrations.database import Datastore
from datamigrations.logger import StructuredLogger, reset_logger
from datamigrations.migrator import Migrator
from datamigrations.repository import MigrationRepository
from datamigrations.resolver import MigrationFileResolver


@pytest.fixture(autouse=True)
def _reset_global_logger():
    reset_logger()
    yield
    reset_logger()


@pytest.fixture
def quiet_logger() -> StructuredLogger:
    """Logger with no console or file output."""
    return StructuredLogger(name="datamigrations.test", enable_console=False, enable_file=False)


@pytest.fixture
def migrations_dir(tmp_path) -> Path:
    path = tmp_path / "migrations"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path, migrations_dir) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'app.db'}",
        path=migrations_dir,
        table="data_migrations",
    )


@pytest.fixture
def datastore(settings):
    store = Datastore.from_settings(settings)
    yield store
    store.dispose()


@pytest.fixture
def repository(datastore, settings) -> MigrationRepository:
    repo = MigrationRepository(datastore, settings.table)
    repo.create_repository()
    return repo


@pytest.fixture
def events_table(datastore) -> Table:
    """Table migrations under test write their up/down events to."""
    metadata = MetaData()
    table = Table(
        "events",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("name", String(255), nullable=False),
        Column("direction", String(10), nullable=False),
    )
    metadata.create_all(datastore.engine())
    return table


@pytest.fixture
def users_table(datastore) -> Table:
    """Users table seeded with 25 rows (ids 1..25, every third inactive)."""
    metadata = MetaData()
    table = Table(
        "users",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("email", String(255), nullable=False),
        Column("name", String(255), nullable=True),
        Column("active", Integer, nullable=False, default=1),
    )
    metadata.create_all(datastore.engine())
    with datastore.transaction() as conn:
        conn.execute(insert(table), [
            {"email": f"User{i}@Example.com", "name": None, "active": 0 if i % 3 == 0 else 1}
            for i in range(1, 26)
        ])
    return table


def event_migration_source(
    class_name: str,
    reversible: bool = True,
    fail_message: Optional[str] = None,
    attributes: Optional[List[str]] = None,
    up_extra: Optional[List[str]] = None,
) -> str:
    """Source of a migration that records 'up'/'down' rows in the events table."""
    lines = [
        "import time",
        "",
        "from sqlalchemy import insert",
        "",
        "from datamigrations import DataMigration",
        "",
        "",
        f"class {class_name}(DataMigration):",
        f'    description = "{class_name} test migration"',
        '    affected_tables = ["events"]',
    ]
    lines += [f"    {attr}" for attr in (attributes or [])]
    lines += [
        "",
        "    def up(self):",
        "        events = self.table('events')",
        "        self.execute(insert(events).values(name=self.name, direction='up'))",
        "        self.affected()",
    ]
    lines += [f"        {line}" for line in (up_extra or [])]
    if fail_message is not None:
        lines.append(f"        raise RuntimeError({fail_message!r})")
    if reversible:
        lines += [
            "",
            "    def down(self):",
            "        events = self.table('events')",
            "        self.execute(insert(events).values(name=self.name, direction='down'))",
        ]
    return "\n".join(lines) + "\n"


@pytest.fixture
def write_migration(migrations_dir):
    """Write a migration file; returns its path. ``source`` defaults to an event migration."""
    resolver = MigrationFileResolver(migrations_dir)

    def _write(stem: str, source: Optional[str] = None, **kwargs) -> Path:
        path = migrations_dir / f"{stem}.py"
        if source is None:
            source = event_migration_source(resolver.get_migration_class(path), **kwargs)
        path.write_text(source, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_migrator(settings, datastore, quiet_logger):
    """Factory for a Migrator over the test database; keyword args override Settings."""

    def _make(backup_service=None, output=None, **overrides) -> Migrator:
        migrator_settings = dataclasses.replace(settings, **overrides)
        repository = MigrationRepository(datastore, migrator_settings.table)
        repository.create_repository()
        return Migrator(
            repository=repository,
            datastore=datastore,
            resolver=MigrationFileResolver(migrator_settings.path),
            settings=migrator_settings,
            backup_service=backup_service,
            logger=quiet_logger,
            output=output,
        )

    return _make


@pytest.fixture
def read_events(datastore, events_table):
    """Callable returning the events table as (name, direction) tuples in insert order."""

    def _read():
        rows = datastore.fetch_all(select(events_table).order_by(events_table.c.id))
        return [(row["name"], row["direction"]) for row in rows]

    return _read
