"""
Resolves migration files and instances.

Migration files live in one directory and are named
``YYYY_MM_DD_HHMMSS_snake_case_name.py``; the file stem is the migration's
persisted name and sorting the stems gives execution order.
"""

import importlib.util
import inspect
import re
import sys
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import MigrationError
from .migration import DataMigration

TIMESTAMP_PREFIX = re.compile(r"^\d{4}_\d{2}_\d{2}_\d{6}_")


class MigrationFileResolver:
    """Finds migration files in a directory and loads them."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def get_migration_files(self) -> List[Path]:
        """All migration files, sorted by name. Missing directory -> []."""
        if not self.path.is_dir():
            return []
        files = [
            p for p in self.path.glob("*_*.py")
            if p.is_file() and not p.name.startswith("_")
        ]
        return sorted(files, key=lambda p: p.name)

    def find_migration_file(self, name: str) -> Optional[Path]:
        for file in self.get_migration_files():
            if self.get_migration_name(file) == name:
                return file
        return None

    def get_migration_name(self, file: Union[str, Path]) -> str:
        return Path(file).stem

    def get_migration_class(self, file: Union[str, Path]) -> str:
        """``2024_01_01_000000_update_user_emails.py`` -> ``UpdateUserEmails``."""
        name = TIMESTAMP_PREFIX.sub("", self.get_migration_name(file))
        return "".join(part[:1].upper() + part[1:] for part in re.split(r"[_\-\s]+", name) if part)

    def resolve(self, file: Union[str, Path]) -> DataMigration:
        """
        Load a migration file and return a fresh migration instance.

        The file is executed on every call. A module-level ``migration``
        (a DataMigration instance or subclass) takes precedence; otherwise
        the class named after the file is instantiated.

        Raises:
            MigrationError: If the file defines neither
        """
        file = Path(file)
        name = self.get_migration_name(file)
        module = self._load_module(file)

        candidate = getattr(module, "migration", None)
        if candidate is None:
            candidate = getattr(module, self.get_migration_class(file), None)

        if inspect.isclass(candidate) and issubclass(candidate, DataMigration):
            instance = candidate()
        elif isinstance(candidate, DataMigration):
            instance = candidate
        else:
            raise MigrationError(
                f"Migration file {file.name} must define a module-level 'migration' "
                f"or a DataMigration subclass named {self.get_migration_class(file)}"
            )

        instance.name = name
        return instance

    def _load_module(self, file: Path):
        module_name = "datamigrations_loaded_" + re.sub(r"\W", "_", file.stem)
        spec = importlib.util.spec_from_file_location(module_name, file)
        if spec is None or spec.loader is None:
            raise MigrationError(f"Cannot load migration file: {file}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        finally:
            sys.modules.pop(module_name, None)
        return module
