"""
SQLite-backed job repository.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from pathlib import Path
from typing import cast

from execution_core.schemas import Job

from .database import connect, initialize_database

logger = logging.getLogger(__name__)


def _require_str(value: object, field: str) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        raise ValueError(f"{field} is required")
    return str(value)


def _job_from_row(row: sqlite3.Row) -> Job | None:
    document = _require_str(cast(object, row["document"]), "document")
    try:
        return Job.from_json(document)
    except ValueError as exc:
        logger.warning("Skipping unreadable job %s: %s", row["id"], exc)
        return None


class JobStore:
    """One row per job; the full job document is replaced on every save.

    Header-derived credentials are never part of a Job, so nothing secret
    reaches this table.
    """

    def __init__(self, db_path: str | Path = "data/jobs.db") -> None:
        self.db_path: str = str(db_path)
        initialize_database(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with closing(connect(self.db_path)) as connection:
            with connection:
                yield connection

    def save(self, job: Job) -> None:
        with self._session() as connection:
            _ = connection.execute(
                """
                INSERT OR REPLACE INTO jobs (id, status, created_at, updated_at, document)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.status.value,
                    job.created_at.isoformat(),
                    job.updated_at.isoformat(),
                    job.to_json(),
                ),
            )

    def delete(self, job_id: str) -> bool:
        with self._session() as connection:
            cursor = connection.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount > 0

    def get(self, job_id: str) -> Job | None:
        with self._session() as connection:
            row = cast(
                sqlite3.Row | None,
                connection.execute("SELECT id, document FROM jobs WHERE id = ?", (job_id,)).fetchone(),
            )
        if row is None:
            return None
        return _job_from_row(row)

    def load_all(self) -> list[Job]:
        """Every stored job, oldest first."""
        with self._session() as connection:
            rows = connection.execute(
                "SELECT id, document FROM jobs ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
        jobs: list[Job] = []
        for row in rows:
            job = _job_from_row(cast(sqlite3.Row, row))
            if job is not None:
                jobs.append(job)
        return jobs

    def count_by_status(self) -> dict[str, int]:
        with self._session() as connection:
            rows = connection.execute(
                "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
            ).fetchall()
        counts: dict[str, int] = {}
        for row in rows:
            typed_row = cast(sqlite3.Row, row)
            counts[_require_str(cast(object, typed_row["status"]), "status")] = int(typed_row["count"])
        return counts
