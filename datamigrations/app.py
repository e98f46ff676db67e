import argparse
import dataclasses
import traceback
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import Settings, load_config
from .env import load_env
from .exceptions import MigrationError, MigrationNotFoundError
from .logger import get_logger
from .migrator import MigrationStatus, Migrator

STATUS_LABELS = {
    "pending": "Pending",
    "running": "Running",
    "completed": "Completed",
    "failed": "Failed",
    "rolled_back": "Rolled Back",
}


def build_settings(args: argparse.Namespace) -> Settings:
    settings = load_config()
    overrides = {}
    if getattr(args, "path", None):
        overrides["path"] = Path(args.path)
    if getattr(args, "database", None):
        overrides["database_url"] = args.database
    if getattr(args, "env", None):
        overrides["environment"] = args.env
    return dataclasses.replace(settings, **overrides) if overrides else settings


def build_migrator(args: argparse.Namespace) -> Migrator:
    settings = build_settings(args)
    logger = get_logger(
        name=settings.log_channel,
        level=settings.log_level,
        log_dir=settings.log_dir,
        enable_file=settings.log_dir is not None,
        enable_console=bool(getattr(args, "verbose", False)),
    )
    return Migrator.from_settings(settings, output=print, logger=logger)


def confirm(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def confirm_to_proceed(settings: Settings, args: argparse.Namespace, question: str) -> bool:
    """Production guard: --force, or an interactive yes."""
    if not (settings.require_force_in_production and settings.is_production):
        return True
    return bool(getattr(args, "force", False)) or confirm(question)


def confirm_row_threshold(migrator: Migrator, args: argparse.Namespace) -> bool:
    if args.no_confirm or args.force:
        return True

    threshold = migrator.settings.confirm_threshold
    if threshold == 0:
        return True

    total = migrator.estimate_pending_rows()
    if total > threshold:
        print(f"Estimated rows to be affected: {total}")
        print(f"This exceeds the confirmation threshold of {threshold} rows.")
        return confirm("Do you wish to continue?")
    return True


def _report_error(prefix: str, e: Exception, args: argparse.Namespace) -> int:
    if isinstance(e, MigrationError):
        print(f"{prefix} error: {e}")
    else:
        print(f"Unexpected error: {e}")
        if getattr(args, "verbose", False):
            traceback.print_exc()
    return 1


def cmd_install(args: argparse.Namespace) -> int:
    migrator = build_migrator(args)
    migrator.install()
    print(f"Data migrations table ready: {migrator.repository.table_name}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    migrator = build_migrator(args)
    if not args.dry_run and not confirm_to_proceed(
        migrator.settings, args,
        "You are about to run data migrations in production. Do you wish to continue?",
    ):
        return 1

    try:
        migrator.ensure_repository()
    except MigrationError as e:
        print(str(e))
        return 1

    if args.dry_run:
        print("")
        print("=== DRY RUN MODE ===")
        print("")
    elif not confirm_row_threshold(migrator, args):
        return 1

    try:
        files = migrator.run(dry_run=args.dry_run)
    except Exception as e:
        return _report_error("Migration", e, args)

    if args.dry_run:
        print("")
        print(f"{len(files)} migration(s) would run.")
    return 0


def cmd_rollback(args: argparse.Namespace) -> int:
    migrator = build_migrator(args)
    if not confirm_to_proceed(
        migrator.settings, args,
        "You are about to rollback data migrations in production. This may cause data loss. Continue?",
    ):
        return 1

    try:
        migrator.ensure_repository()
    except MigrationError as e:
        print(str(e))
        return 1

    if args.batch is not None:
        if not migrator.repository.get_migrations_by_batch(args.batch):
            print(f"No migrations found for batch {args.batch}.")
            return 0
        print(f"Rolling back batch {args.batch}...")

    try:
        rolled_back = migrator.rollback(step=args.step, batch=args.batch)
    except Exception as e:
        return _report_error("Rollback", e, args)

    if rolled_back:
        print("")
        print(f"{len(rolled_back)} migration(s) rolled back.")
    return 0


def format_status_table(rows: List[MigrationStatus]) -> List[str]:
    headers = ["Migration", "Batch", "Status", "Rows", "Duration", "Ran At"]
    table = [
        [
            r.name,
            str(r.batch) if r.batch is not None else "-",
            STATUS_LABELS.get(r.status, r.status),
            f"{r.rows_affected:,}" if r.rows_affected is not None else "-",
            f"{r.duration_ms}ms" if r.duration_ms is not None else "-",
            r.ran_at.strftime("%Y-%m-%d %H:%M:%S") if r.ran_at else "-",
        ]
        for r in rows
    ]
    widths = [max(len(str(cell)) for cell in column) for column in zip(headers, *table)]

    def line(cells):
        return "  ".join(str(c).ljust(w) for c, w in zip(cells, widths)).rstrip()

    out = [line(headers), line("-" * w for w in widths)]
    out.extend(line(row) for row in table)
    return out


def cmd_status(args: argparse.Namespace) -> int:
    migrator = build_migrator(args)
    try:
        rows = migrator.status()
    except MigrationError as e:
        print(str(e))
        return 1

    if args.pending:
        rows = [r for r in rows if r.status == "pending"]
    elif args.ran:
        rows = [r for r in rows if r.status != "pending"]

    if not rows:
        print("No migrations found.")
        return 0

    for line in format_status_table(rows):
        print(line)

    pending = sum(1 for r in rows if r.status == "pending")
    completed = sum(1 for r in rows if r.status == "completed")
    failed = sum(1 for r in rows if r.status == "failed")
    print("")
    print(f"Total: {len(rows)} | Pending: {pending} | Completed: {completed} | Failed: {failed}")
    return 0


def cmd_fresh(args: argparse.Namespace) -> int:
    migrator = build_migrator(args)
    if not confirm_to_proceed(
        migrator.settings, args,
        "You are about to reset ALL data migration records in production. This is DANGEROUS. Continue?",
    ):
        return 1

    print("Resetting data migration records...")
    try:
        migrator.fresh()
    except Exception as e:
        return _report_error("Migration", e, args)
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    migrator = build_migrator(args)
    try:
        migrator.ensure_repository()
        if migrator.repository.get_migration(args.name) is None:
            raise MigrationNotFoundError.for_migration(args.name)
    except MigrationError as e:
        print(str(e))
        return 1

    migrator.repository.delete(args.name)
    print(f"Reset: {args.name}")
    return 0


def cmd_unlock(args: argparse.Namespace) -> int:
    migrator = build_migrator(args)
    if migrator.lock is None:
        print("Locking is disabled (DATA_MIGRATIONS_USE_LOCK=0).")
        return 0
    if migrator.lock.force_release():
        print("Lock released.")
    else:
        print("No lock held.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="datamigrate", description="Run, roll back and inspect data migrations")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--path", help="Directory of migration files (or set DATA_MIGRATIONS_PATH)")
    parser.add_argument("--database", help="SQLAlchemy database URL (or set DATA_MIGRATIONS_DATABASE_URL)")
    parser.add_argument("--env", help="Environment name, e.g. production (or set DATA_MIGRATIONS_ENV)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to console and print tracebacks")

    subparsers = parser.add_subparsers(dest="command")

    ins = subparsers.add_parser("install", help="Create the data migrations table")
    ins.set_defaults(func=cmd_install)

    run = subparsers.add_parser("run", help="Run pending data migrations")
    run.add_argument("--dry-run", action="store_true", help="Show what would be migrated without running it")
    run.add_argument("--force", action="store_true", help="Force the operation to run in production")
    run.add_argument("--no-confirm", action="store_true", help="Skip row count confirmation")
    run.set_defaults(func=cmd_run)

    rb = subparsers.add_parser("rollback", help="Rollback the last data migration batch")
    rb.add_argument("--step", type=int, default=0, help="Number of migrations to rollback")
    rb.add_argument("--batch", type=int, help="Rollback a specific batch number")
    rb.add_argument("--force", action="store_true", help="Force the operation to run in production")
    rb.set_defaults(func=cmd_rollback)

    st = subparsers.add_parser("status", help="Show the status of each data migration")
    only = st.add_mutually_exclusive_group()
    only.add_argument("--pending", action="store_true", help="Only show pending migrations")
    only.add_argument("--ran", action="store_true", help="Only show ran migrations")
    st.set_defaults(func=cmd_status)

    fr = subparsers.add_parser("fresh", help="Reset and re-run all data migrations")
    fr.add_argument("--force", action="store_true", help="Force the operation to run in production")
    fr.set_defaults(func=cmd_fresh)

    rs = subparsers.add_parser("reset", help="Delete the record of one migration so it can run again")
    rs.add_argument("name", help="Migration name (file name without .py)")
    rs.set_defaults(func=cmd_reset)

    ul = subparsers.add_parser("unlock", help="Release a lock left behind by a crashed run")
    ul.set_defaults(func=cmd_unlock)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    # Load .env if present (DATA_MIGRATIONS_DATABASE_URL, DATA_MIGRATIONS_PATH, etc.)
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return 0

    if hasattr(args, "func"):
        return args.func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
