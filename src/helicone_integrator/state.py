from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from helicone_integrator.models import (
    IntegrationRecord,
    IntegrationRequest,
    ReviewDecision,
    RunStatus,
    StatusEvent,
    StatusEventRecord,
    TERMINAL_RUN_STATUSES,
)


_RUN_STATUSES = frozenset({"pending", "running", "waiting", "completed", "rejected", "failed"})
_INTEGRATION_COLUMNS = """
    integration_id,
    repo_url,
    repo_owner,
    repo_name,
    status,
    phase,
    message,
    attempt,
    staging_url,
    pr_url,
    review_window,
    review_open,
    review_deadline,
    cancel_requested,
    error,
    created_at,
    updated_at
"""


class InstanceNotFoundError(RuntimeError):
    """No running integration instance exists for the given id."""

    retryable = False


class DuplicateIntegrationError(RuntimeError):
    retryable = False


@dataclass(frozen=True)
class JournaledStep:
    seq: int
    name: str
    result_json: str


@dataclass(frozen=True)
class ReviewDelivery:
    integration_id: str
    review_window: int
    window_open: bool


def format_timestamp(moment: datetime) -> str:
    """Render `moment` in the same layout SQLite's strftime('%Y-%m-%dT%H:%M:%fZ') produces."""
    utc = moment.astimezone(timezone.utc)
    return f"{utc:%Y-%m-%dT%H:%M:%S}.{utc.microsecond // 1000:03d}Z"


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS integrations (
                    integration_id TEXT PRIMARY KEY,
                    repo_url TEXT NOT NULL,
                    repo_owner TEXT NOT NULL,
                    repo_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    phase TEXT NULL,
                    message TEXT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    staging_url TEXT NULL,
                    pr_url TEXT NULL,
                    review_window INTEGER NOT NULL DEFAULT 0,
                    review_open INTEGER NOT NULL DEFAULT 0,
                    review_deadline TEXT NULL,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    error TEXT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_steps (
                    integration_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    result_json TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (integration_id, seq)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS review_signals (
                    integration_id TEXT PRIMARY KEY,
                    review_window INTEGER NOT NULL,
                    approved INTEGER NOT NULL,
                    feedback TEXT NULL,
                    delivered_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS status_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    integration_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT NOT NULL,
                    staging_url TEXT NULL,
                    pr_url TEXT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_status_events_integration
                ON status_events(integration_id, seq)
                """
            )

    def create_integration(self, request: IntegrationRequest) -> IntegrationRecord:
        with self._lock, self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO integrations(
                        integration_id, repo_url, repo_owner, repo_name, status
                    )
                    VALUES(?, ?, ?, ?, 'pending')
                    """,
                    (
                        request.integration_id,
                        request.repo_url,
                        request.repo_owner,
                        request.repo_name,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateIntegrationError(
                    f"Integration {request.integration_id} already exists"
                ) from exc
            record = _select_integration(conn, request.integration_id)
        if record is None:
            raise RuntimeError(f"Integration {request.integration_id} vanished after insert")
        return record

    def get_integration(self, integration_id: str) -> IntegrationRecord | None:
        with self._lock, self._connect() as conn:
            return _select_integration(conn, integration_id)

    def list_integrations(self, *, limit: int | None = None) -> tuple[IntegrationRecord, ...]:
        query = f"SELECT {_INTEGRATION_COLUMNS} FROM integrations ORDER BY updated_at DESC, integration_id ASC"
        params: tuple[object, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return tuple(_parse_integration_row(row) for row in rows)

    def list_runnable(self, *, now: datetime) -> tuple[str, ...]:
        """Ids a worker should (re)drive: fresh, interrupted, or waiting with something to act on."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT i.integration_id
                FROM integrations AS i
                WHERE i.status IN ('pending', 'running')
                   OR (
                        i.status = 'waiting'
                        AND (
                            i.cancel_requested = 1
                            OR (i.review_deadline IS NOT NULL AND i.review_deadline <= ?)
                            OR EXISTS (
                                SELECT 1 FROM review_signals AS s
                                WHERE s.integration_id = i.integration_id
                                  AND s.review_window = i.review_window
                                  AND i.review_open = 1
                            )
                        )
                   )
                ORDER BY i.created_at ASC, i.integration_id ASC
                """,
                (format_timestamp(now),),
            ).fetchall()
        return tuple(str(row[0]) for row in rows)

    def mark_status(self, integration_id: str, status: RunStatus, *, error: str | None = None) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                UPDATE integrations
                SET status = ?,
                    error = ?,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE integration_id = ?
                """,
                (status, error, integration_id),
            )

    def request_cancel(self, integration_id: str) -> None:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE integrations
                SET cancel_requested = 1,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE integration_id = ?
                  AND status NOT IN ('completed', 'rejected', 'failed')
                """,
                (integration_id,),
            )
            if cursor.rowcount == 0:
                raise InstanceNotFoundError(f"No running integration with id {integration_id}")

    def is_cancel_requested(self, integration_id: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT cancel_requested FROM integrations WHERE integration_id = ?",
                (integration_id,),
            ).fetchone()
        return row is not None and int(row[0]) == 1

    def load_step_journal(self, integration_id: str) -> tuple[JournaledStep, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT seq, name, result_json
                FROM workflow_steps
                WHERE integration_id = ?
                ORDER BY seq ASC
                """,
                (integration_id,),
            ).fetchall()
        return tuple(
            JournaledStep(seq=int(row[0]), name=str(row[1]), result_json=str(row[2])) for row in rows
        )

    def record_step(self, integration_id: str, *, seq: int, name: str, result_json: str) -> None:
        with self._lock, self._connect() as conn:
            _insert_step(conn, integration_id, seq=seq, name=name, result_json=result_json)

    def open_review_window(
        self,
        integration_id: str,
        *,
        review_window: int,
        deadline: datetime,
        seq: int,
        name: str,
    ) -> str:
        """Clear the decision slot and start waiting for `review_window`, journaling the step."""
        deadline_text = format_timestamp(deadline)
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM review_signals WHERE integration_id = ?", (integration_id,))
            conn.execute(
                """
                UPDATE integrations
                SET review_window = ?,
                    review_open = 1,
                    review_deadline = ?,
                    attempt = ?,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE integration_id = ?
                """,
                (review_window, deadline_text, review_window, integration_id),
            )
            _insert_step(
                conn,
                integration_id,
                seq=seq,
                name=name,
                result_json=json.dumps({"review_window": review_window, "deadline": deadline_text}),
            )
        return deadline_text

    def deliver_review_decision(
        self, integration_id: str, decision: ReviewDecision
    ) -> ReviewDelivery:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT status, review_window, review_open
                FROM integrations
                WHERE integration_id = ?
                """,
                (integration_id,),
            ).fetchone()
            if row is None or str(row[0]) in TERMINAL_RUN_STATUSES:
                raise InstanceNotFoundError(f"No running integration with id {integration_id}")
            review_window = int(row[1])
            conn.execute(
                """
                INSERT INTO review_signals(integration_id, review_window, approved, feedback)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(integration_id) DO UPDATE SET
                    review_window=excluded.review_window,
                    approved=excluded.approved,
                    feedback=excluded.feedback,
                    delivered_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (integration_id, review_window, 1 if decision.approved else 0, decision.feedback),
            )
        return ReviewDelivery(
            integration_id=integration_id,
            review_window=review_window,
            window_open=int(row[2]) == 1,
        )

    def consume_review_decision(
        self,
        integration_id: str,
        *,
        review_window: int,
        seq: int,
        name: str,
    ) -> ReviewDecision | None:
        """Read-and-clear the slot for `review_window` and journal it in one transaction."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT approved, feedback
                FROM review_signals
                WHERE integration_id = ? AND review_window = ?
                """,
                (integration_id, review_window),
            ).fetchone()
            if row is None:
                return None
            decision = ReviewDecision(
                approved=int(row[0]) == 1,
                feedback=str(row[1]) if row[1] is not None else None,
            )
            conn.execute("DELETE FROM review_signals WHERE integration_id = ?", (integration_id,))
            conn.execute(
                """
                UPDATE integrations
                SET review_open = 0,
                    review_deadline = NULL,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE integration_id = ?
                """,
                (integration_id,),
            )
            _insert_step(
                conn,
                integration_id,
                seq=seq,
                name=name,
                result_json=encode_review_decision(decision),
            )
        return decision

    def record_status_event(self, event: StatusEvent) -> StatusEventRecord:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO status_events(integration_id, status, message, staging_url, pr_url)
                VALUES(?, ?, ?, ?, ?)
                """,
                (
                    event.integration_id,
                    event.status,
                    event.message,
                    event.staging_url,
                    event.pr_url,
                ),
            )
            seq = cursor.lastrowid
            conn.execute(
                """
                UPDATE integrations
                SET phase = ?,
                    message = ?,
                    staging_url = COALESCE(?, staging_url),
                    pr_url = COALESCE(?, pr_url),
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE integration_id = ?
                """,
                (
                    event.status,
                    event.message,
                    event.staging_url,
                    event.pr_url,
                    event.integration_id,
                ),
            )
            row = conn.execute(
                """
                SELECT seq, integration_id, status, message, staging_url, pr_url, created_at
                FROM status_events
                WHERE seq = ?
                """,
                (seq,),
            ).fetchone()
        if row is None:
            raise RuntimeError("Status event vanished after insert")
        return _parse_status_event_row(row)

    def list_status_events(
        self, integration_id: str, *, limit: int | None = None
    ) -> tuple[StatusEventRecord, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT seq, integration_id, status, message, staging_url, pr_url, created_at
                FROM status_events
                WHERE integration_id = ?
                ORDER BY seq ASC
                """,
                (integration_id,),
            ).fetchall()
        events = tuple(_parse_status_event_row(row) for row in rows)
        if limit is not None:
            return events[-limit:] if limit > 0 else ()
        return events


def encode_review_decision(decision: ReviewDecision) -> str:
    return json.dumps({"approved": decision.approved, "feedback": decision.feedback})


def decode_review_decision(raw: object) -> ReviewDecision:
    if not isinstance(raw, dict):
        raise RuntimeError("Invalid journaled review decision")
    approved = raw.get("approved")
    feedback = raw.get("feedback")
    if not isinstance(approved, bool):
        raise RuntimeError("Invalid approved value in journaled review decision")
    if feedback is not None and not isinstance(feedback, str):
        raise RuntimeError("Invalid feedback value in journaled review decision")
    return ReviewDecision(approved=approved, feedback=feedback)


def _insert_step(
    conn: sqlite3.Connection, integration_id: str, *, seq: int, name: str, result_json: str
) -> None:
    conn.execute(
        """
        INSERT INTO workflow_steps(integration_id, seq, name, result_json)
        VALUES(?, ?, ?, ?)
        """,
        (integration_id, seq, name, result_json),
    )


def _select_integration(conn: sqlite3.Connection, integration_id: str) -> IntegrationRecord | None:
    row = conn.execute(
        f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE integration_id = ?",
        (integration_id,),
    ).fetchone()
    if row is None:
        return None
    return _parse_integration_row(row)


def _parse_integration_row(row: tuple[object, ...]) -> IntegrationRecord:
    if len(row) != 17:
        raise RuntimeError("Invalid integrations row width")
    (
        integration_id,
        repo_url,
        repo_owner,
        repo_name,
        status,
        phase,
        message,
        attempt,
        staging_url,
        pr_url,
        review_window,
        review_open,
        review_deadline,
        cancel_requested,
        error,
        created_at,
        updated_at,
    ) = row
    if not isinstance(status, str) or status not in _RUN_STATUSES:
        raise RuntimeError(f"Unknown status value stored in integrations: {status}")
    if not isinstance(attempt, int) or not isinstance(review_window, int):
        raise RuntimeError("Invalid counter value stored in integrations")
    return IntegrationRecord(
        integration_id=str(integration_id),
        repo_url=str(repo_url),
        repo_owner=str(repo_owner),
        repo_name=str(repo_name),
        status=cast(RunStatus, status),
        phase=_optional_text(phase),
        message=_optional_text(message),
        attempt=attempt,
        staging_url=_optional_text(staging_url),
        pr_url=_optional_text(pr_url),
        review_window=review_window,
        review_open=review_open == 1,
        review_deadline=_optional_text(review_deadline),
        cancel_requested=cancel_requested == 1,
        error=_optional_text(error),
        created_at=str(created_at),
        updated_at=str(updated_at),
    )


def _parse_status_event_row(row: tuple[object, ...]) -> StatusEventRecord:
    seq, integration_id, status, message, staging_url, pr_url, created_at = row
    if not isinstance(seq, int):
        raise RuntimeError("Invalid seq value stored in status_events")
    return StatusEventRecord(
        seq=seq,
        integration_id=str(integration_id),
        status=str(status),
        message=str(message),
        staging_url=_optional_text(staging_url),
        pr_url=_optional_text(pr_url),
        created_at=str(created_at),
    )


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
