import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psycopg
from psycopg.rows import dict_row

from asyncreports.errors import NotFoundError, TransientIOError

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_STARTED = "started"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_COLUMNS = """
    user_id, id, report_type, output_file_path, download_url, download_url_expires_at,
    error_message, created_at, started_at, completed_at, failed_at, claimed_at
"""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS reports (
    user_id UUID NOT NULL,
    id UUID NOT NULL DEFAULT gen_random_uuid(),
    report_type TEXT NOT NULL,
    output_file_path TEXT,
    download_url TEXT,
    download_url_expires_at TIMESTAMPTZ,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    failed_at TIMESTAMPTZ,
    claimed_at TIMESTAMPTZ,
    PRIMARY KEY (user_id, id),
    UNIQUE (id)
)
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Report:
    user_id: uuid.UUID
    id: uuid.UUID
    report_type: str
    created_at: datetime
    output_file_path: Optional[str] = None
    download_url: Optional[str] = None
    download_url_expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    # Time the current build attempt took the report; not part of the API view.
    claimed_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        if self.failed_at is not None:
            return STATUS_FAILED
        if self.completed_at is not None:
            return STATUS_COMPLETED
        if self.started_at is not None:
            return STATUS_STARTED
        return STATUS_PENDING

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None or self.failed_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Report":
        return cls(
            user_id=row["user_id"],
            id=row["id"],
            report_type=row["report_type"],
            created_at=row["created_at"],
            output_file_path=row.get("output_file_path"),
            download_url=row.get("download_url"),
            download_url_expires_at=row.get("download_url_expires_at"),
            error_message=row.get("error_message"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            failed_at=row.get("failed_at"),
            claimed_at=row.get("claimed_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """API representation; unset optional fields are omitted."""
        out: Dict[str, Any] = {
            "id": str(self.id),
            "report_type": self.report_type,
            "output_file_path": self.output_file_path,
            "download_url": self.download_url,
            "download_url_expires_at": self.download_url_expires_at,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "status": self.status,
        }
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in out.items()
            if value is not None
        }


class ReportStore:
    """Postgres-backed report records keyed by (user_id, id)."""

    def __init__(self, dsn: str):
        self.dsn = dsn

    def create(self, user_id: uuid.UUID, report_type: str) -> Report:
        row = self._fetch_one(
            f"""
            INSERT INTO reports (user_id, id, report_type, created_at)
            VALUES (%s, %s, %s, %s)
            RETURNING {_COLUMNS}
            """,
            (user_id, uuid.uuid4(), report_type, utcnow()),
        )
        report = Report.from_row(row)
        logger.info("report_created user=%s report=%s type=%s", user_id, report.id, report_type)
        return report

    def update(self, report: Report) -> Report:
        """
        Overwrite the mutable fields of an existing report.

        Timestamps already set on the stored row are kept as they are.
        """
        row = self._fetch_one(
            f"""
            UPDATE reports SET
                output_file_path = %s,
                download_url = %s,
                download_url_expires_at = %s,
                error_message = %s,
                started_at = COALESCE(started_at, %s),
                completed_at = COALESCE(completed_at, %s),
                failed_at = COALESCE(failed_at, %s)
            WHERE user_id = %s AND id = %s
            RETURNING {_COLUMNS}
            """,
            (
                report.output_file_path,
                report.download_url,
                report.download_url_expires_at,
                report.error_message,
                report.started_at,
                report.completed_at,
                report.failed_at,
                report.user_id,
                report.id,
            ),
        )
        if row is None:
            raise NotFoundError(report.user_id, report.id)
        return Report.from_row(row)

    def by_primary_key(self, user_id: uuid.UUID, report_id: uuid.UUID) -> Report:
        row = self._fetch_one(
            f"SELECT {_COLUMNS} FROM reports WHERE user_id = %s AND id = %s",
            (user_id, report_id),
        )
        if row is None:
            raise NotFoundError(user_id, report_id)
        return Report.from_row(row)

    def mark_started(self, user_id: uuid.UUID, report_id: uuid.UUID,
                     started_at: datetime) -> Optional[Report]:
        """
        Set started_at only if no build has claimed the report yet.

        Returns the updated report, or None when started_at was already set or
        the report is terminal.
        """
        row = self._fetch_one(
            f"""
            UPDATE reports SET started_at = %s, claimed_at = %s
            WHERE user_id = %s AND id = %s
              AND started_at IS NULL AND completed_at IS NULL AND failed_at IS NULL
            RETURNING {_COLUMNS}
            """,
            (started_at, started_at, user_id, report_id),
        )
        return Report.from_row(row) if row else None

    def mark_resumed(self, user_id: uuid.UUID, report_id: uuid.UUID,
                     observed_claimed_at: Optional[datetime],
                     claimed_at: datetime) -> Optional[Report]:
        """
        Take over an abandoned build claim.

        Succeeds only while the claim is still the one the caller observed, so
        of several workers resuming the same report at most one wins. started_at
        is left untouched.
        """
        row = self._fetch_one(
            f"""
            UPDATE reports SET claimed_at = %s
            WHERE user_id = %s AND id = %s
              AND claimed_at IS NOT DISTINCT FROM %s
              AND completed_at IS NULL AND failed_at IS NULL
            RETURNING {_COLUMNS}
            """,
            (claimed_at, user_id, report_id, observed_claimed_at),
        )
        return Report.from_row(row) if row else None

    def mark_completed(self, user_id: uuid.UUID, report_id: uuid.UUID,
                       output_file_path: str, completed_at: datetime) -> Optional[Report]:
        """Record a finished build; None if the report already reached a terminal state."""
        row = self._fetch_one(
            f"""
            UPDATE reports SET output_file_path = %s, completed_at = %s
            WHERE user_id = %s AND id = %s
              AND completed_at IS NULL AND failed_at IS NULL
            RETURNING {_COLUMNS}
            """,
            (output_file_path, completed_at, user_id, report_id),
        )
        return Report.from_row(row) if row else None

    def mark_failed(self, user_id: uuid.UUID, report_id: uuid.UUID,
                    error_message: str, failed_at: datetime) -> Optional[Report]:
        """Record a failed build; None if the report already reached a terminal state."""
        row = self._fetch_one(
            f"""
            UPDATE reports SET error_message = %s, failed_at = %s
            WHERE user_id = %s AND id = %s
              AND completed_at IS NULL AND failed_at IS NULL
            RETURNING {_COLUMNS}
            """,
            (error_message, failed_at, user_id, report_id),
        )
        return Report.from_row(row) if row else None

    def create_schema(self) -> None:
        self._exec(SCHEMA_SQL, ())

    def is_healthy(self) -> bool:
        try:
            self._fetch_one("SELECT 1 AS ok", ())
            return True
        except TransientIOError as exc:
            logger.warning("report_store_unhealthy: %s", exc)
            return False

    def _exec(self, query: str, params: tuple) -> None:
        try:
            with psycopg.connect(self.dsn) as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                conn.commit()
        except psycopg.Error as exc:
            raise TransientIOError(f"database error: {exc}") from exc

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            with psycopg.connect(self.dsn, row_factory=dict_row) as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    row = cur.fetchone()
                conn.commit()
        except psycopg.Error as exc:
            raise TransientIOError(f"database error: {exc}") from exc
        return row
