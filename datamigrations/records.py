"""
Migration record DTO.

One JobRecord mirrors one row of the bookkeeping table.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
ROLLED_BACK = "rolled_back"

# Statuses that count as "ran" when computing pending migrations
RAN_STATUSES = (COMPLETED, RUNNING)

# Statuses a fresh run is allowed to replace
RETRYABLE_STATUSES = (FAILED, ROLLED_BACK)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _parse_metadata(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return value
    return json.loads(value)


@dataclass(frozen=True)
class JobRecord:
    """Execution record of a single migration."""

    id: int
    migration: str
    batch: int
    status: str
    rows_affected: Optional[int] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.migration

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "JobRecord":
        """
        Build a record from a database row mapping.

        Args:
            row: Mapping of column name to value (e.g. ``Row._mapping``)

        Returns:
            JobRecord instance
        """
        rows_affected = row.get("rows_affected")
        duration_ms = row.get("duration_ms")
        return cls(
            id=int(row["id"]),
            migration=str(row["migration"]),
            batch=int(row["batch"]),
            status=str(row["status"]),
            rows_affected=int(rows_affected) if rows_affected is not None else None,
            duration_ms=int(duration_ms) if duration_ms is not None else None,
            error_message=row.get("error_message"),
            metadata=_parse_metadata(row.get("metadata")),
            started_at=_parse_timestamp(row.get("started_at")),
            completed_at=_parse_timestamp(row.get("completed_at")),
            created_at=_parse_timestamp(row.get("created_at")),
            updated_at=_parse_timestamp(row.get("updated_at")),
        )

    def is_pending(self) -> bool:
        return self.status == PENDING

    def is_running(self) -> bool:
        return self.status == RUNNING

    def is_completed(self) -> bool:
        return self.status == COMPLETED

    def is_failed(self) -> bool:
        return self.status == FAILED

    def is_rolled_back(self) -> bool:
        return self.status == ROLLED_BACK

    def has_ran(self) -> bool:
        return self.status in RAN_STATUSES
