"""
Runtime configuration.

Settings are read once from the environment (after ``load_env``) and
passed explicitly to the repository, resolver and migrator.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

TRANSACTION_MODES = ("auto", "always", "never")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///data/app.db"
    path: Path = Path("data_migrations")
    table: str = "data_migrations"

    chunk_size: int = 1000
    timeout: int = 0  # seconds, 0 = unlimited
    transaction: str = "auto"

    logging_enabled: bool = True
    log_channel: str = "datamigrations"
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    environment: str = "local"
    require_force_in_production: bool = True
    confirm_threshold: int = 10000
    auto_backup: bool = False
    use_lock: bool = True

    connections: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.transaction not in TRANSACTION_MODES:
            raise ValueError(
                f"Invalid transaction mode '{self.transaction}', expected one of: "
                + ", ".join(TRANSACTION_MODES)
            )
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be a positive integer")
        if self.timeout < 0:
            raise ValueError("timeout must be zero (unlimited) or positive")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_connections(value: str) -> Dict[str, str]:
    """Parse ``name=url;name2=url2`` into a mapping."""
    connections = {}
    for item in value.split(";"):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ValueError(f"Invalid connection entry (expected name=url): {item}")
        name, url = item.split("=", 1)
        connections[name.strip()] = url.strip()
    return connections


def load_config(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from (default: ``os.environ``)

    Returns:
        Settings instance
    """
    env = os.environ if environ is None else environ
    log_dir = env.get("DATA_MIGRATIONS_LOG_DIR")

    return Settings(
        database_url=env.get("DATA_MIGRATIONS_DATABASE_URL", "sqlite:///data/app.db"),
        path=Path(env.get("DATA_MIGRATIONS_PATH", "data_migrations")),
        table=env.get("DATA_MIGRATIONS_TABLE", "data_migrations"),
        chunk_size=int(env.get("DATA_MIGRATIONS_CHUNK_SIZE", "1000")),
        timeout=int(env.get("DATA_MIGRATIONS_TIMEOUT", "0")),
        transaction=env.get("DATA_MIGRATIONS_TRANSACTION", "auto").strip().lower(),
        logging_enabled=_flag(env.get("DATA_MIGRATIONS_LOG_ENABLED", "1")),
        log_channel=env.get("DATA_MIGRATIONS_LOG_CHANNEL", "datamigrations"),
        log_level=env.get("DATA_MIGRATIONS_LOG_LEVEL", "INFO"),
        log_dir=Path(log_dir) if log_dir else None,
        environment=env.get("DATA_MIGRATIONS_ENV", "local"),
        require_force_in_production=_flag(env.get("DATA_MIGRATIONS_REQUIRE_FORCE_IN_PRODUCTION", "1")),
        confirm_threshold=int(env.get("DATA_MIGRATIONS_CONFIRM_THRESHOLD", "10000")),
        auto_backup=_flag(env.get("DATA_MIGRATIONS_AUTO_BACKUP", "0")),
        use_lock=_flag(env.get("DATA_MIGRATIONS_USE_LOCK", "1")),
        connections=parse_connections(env.get("DATA_MIGRATIONS_CONNECTIONS", "")),
    )
