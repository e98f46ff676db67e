"""
Tests for records.py - JobRecord parsing and predicates.
"""

from datetime import datetime

from datamigrations.records import JobRecord


def make_row(**overrides):
    row = {
        "id": 1,
        "migration": "2024_01_01_000000_backfill_names",
        "batch": 2,
        "status": "completed",
        "rows_affected": 10,
        "duration_ms": 35,
        "error_message": None,
        "metadata": {"description": "Backfill"},
        "started_at": datetime(2024, 1, 1, 12, 0, 0),
        "completed_at": datetime(2024, 1, 1, 12, 0, 1),
        "created_at": datetime(2024, 1, 1, 12, 0, 0),
        "updated_at": datetime(2024, 1, 1, 12, 0, 1),
    }
    row.update(overrides)
    return row


class TestJobRecord:
    """Test building records from rows."""

    def test_from_row(self):
        record = JobRecord.from_row(make_row())

        assert record.name == "2024_01_01_000000_backfill_names"
        assert record.batch == 2
        assert record.rows_affected == 10
        assert record.metadata == {"description": "Backfill"}
        assert record.completed_at == datetime(2024, 1, 1, 12, 0, 1)

    def test_from_row_parses_strings(self):
        """Raw driver values (JSON text, ISO timestamps) are decoded."""
        record = JobRecord.from_row(make_row(
            batch="3",
            metadata='{"description": "x"}',
            started_at="2024-01-01 12:00:00",
            completed_at="",
        ))

        assert record.batch == 3
        assert record.metadata == {"description": "x"}
        assert record.started_at == datetime(2024, 1, 1, 12, 0, 0)
        assert record.completed_at is None

    def test_optional_columns_missing(self):
        record = JobRecord.from_row({"id": 5, "migration": "m", "batch": 1, "status": "running"})

        assert record.rows_affected is None
        assert record.duration_ms is None
        assert record.metadata is None

    def test_status_predicates(self):
        completed = JobRecord.from_row(make_row(status="completed"))
        running = JobRecord.from_row(make_row(status="running"))
        failed = JobRecord.from_row(make_row(status="failed"))
        rolled_back = JobRecord.from_row(make_row(status="rolled_back"))
        pending = JobRecord.from_row(make_row(status="pending"))

        assert completed.is_completed() and completed.has_ran()
        assert running.is_running() and running.has_ran()
        assert failed.is_failed() and not failed.has_ran()
        assert rolled_back.is_rolled_back() and not rolled_back.has_ran()
        assert pending.is_pending() and not pending.has_ran()
