"""SQLite implementation of the sync store."""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import structlog

from ticket_sync_manager.github.models import ExternalIssue, ExternalPR, IssueState
from ticket_sync_manager.storage.abc import SyncStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS issues (
    number INTEGER PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    state TEXT NOT NULL DEFAULT 'unknown',
    assignees TEXT NOT NULL DEFAULT '[]',
    ticket_id TEXT,
    ticket_identifier TEXT,
    updated_at TEXT,
    tracker_status TEXT,
    tracker_status_synced_at TEXT,
    last_checked_at TEXT
);
CREATE TABLE IF NOT EXISTS pull_requests (
    url TEXT PRIMARY KEY,
    number INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    body TEXT,
    state TEXT NOT NULL,
    merged INTEGER NOT NULL DEFAULT 0,
    author TEXT NOT NULL DEFAULT '',
    created_at TEXT,
    updated_at TEXT,
    head_ref TEXT,
    base_ref TEXT
);
CREATE TABLE IF NOT EXISTS pull_request_issues (
    url TEXT NOT NULL,
    issue_number INTEGER NOT NULL,
    PRIMARY KEY(url, issue_number),
    FOREIGN KEY(url) REFERENCES pull_requests(url) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_issues_ticket ON issues(ticket_id);
CREATE INDEX IF NOT EXISTS idx_pull_request_issues_issue ON pull_request_issues(issue_number);
"""

_ISSUE_COLUMNS = (
    "number, title, state, assignees, ticket_id, ticket_identifier, updated_at, tracker_status, tracker_status_synced_at, last_checked_at"
)
_PULL_REQUEST_COLUMNS = "url, number, title, body, state, merged, author, created_at, updated_at, head_ref, base_ref"


def _to_text(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _issue_from_row(row: sqlite3.Row) -> ExternalIssue:
    return ExternalIssue(
        number=row["number"],
        title=row["title"],
        state=IssueState(row["state"]),
        assignees=json.loads(row["assignees"]),
        ticket_id=row["ticket_id"],
        ticket_identifier=row["ticket_identifier"],
        updated_at=_to_datetime(row["updated_at"]),
        tracker_status=row["tracker_status"],
        tracker_status_synced_at=_to_datetime(row["tracker_status_synced_at"]),
        last_checked_at=_to_datetime(row["last_checked_at"]),
    )


def _pull_request_from_row(row: sqlite3.Row) -> ExternalPR:
    return ExternalPR(
        url=row["url"],
        number=row["number"],
        title=row["title"],
        body=row["body"],
        state=row["state"],
        merged=bool(row["merged"]),
        author=row["author"],
        created_at=_to_datetime(row["created_at"]),
        updated_at=_to_datetime(row["updated_at"]),
        head_ref=row["head_ref"],
        base_ref=row["base_ref"],
    )


class SqliteSyncStore(SyncStore):
    """Sync store backed by a single SQLite database file.

    One connection is held for the lifetime of the store so that ``:memory:``
    databases work; every write runs in its own transaction.
    """

    def __init__(self, db_path: Path | str) -> None:
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def list_linked_issues(self, open_only: bool = False) -> list[ExternalIssue]:
        query = f"SELECT {_ISSUE_COLUMNS} FROM issues WHERE ticket_id IS NOT NULL"
        params: list[Any] = []
        if open_only:
            query += " AND state = ?"
            params.append(IssueState.OPEN.value)
        rows = self._conn.execute(query + " ORDER BY number", params).fetchall()
        return [_issue_from_row(row) for row in rows]

    def get_issue(self, number: int) -> ExternalIssue | None:
        row = self._conn.execute(f"SELECT {_ISSUE_COLUMNS} FROM issues WHERE number = ?", (number,)).fetchone()
        return _issue_from_row(row) if row is not None else None

    def known_issue_numbers(self) -> set[int]:
        return {row["number"] for row in self._conn.execute("SELECT number FROM issues")}

    def upsert_issue(self, issue: ExternalIssue) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO issues(number, title, state, assignees, ticket_id, ticket_identifier, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(number) DO UPDATE SET
                    title = excluded.title,
                    state = excluded.state,
                    assignees = excluded.assignees,
                    ticket_id = COALESCE(excluded.ticket_id, issues.ticket_id),
                    ticket_identifier = COALESCE(excluded.ticket_identifier, issues.ticket_identifier),
                    updated_at = excluded.updated_at
                """,
                (
                    issue.number,
                    issue.title,
                    issue.state.value,
                    json.dumps(issue.assignees),
                    issue.ticket_id,
                    issue.ticket_identifier,
                    _to_text(issue.updated_at),
                ),
            )

    def link_ticket(self, number: int, ticket_id: str, ticket_identifier: str | None = None) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO issues(number, ticket_id, ticket_identifier) VALUES(?, ?, ?)
                ON CONFLICT(number) DO UPDATE SET
                    ticket_id = excluded.ticket_id,
                    ticket_identifier = COALESCE(excluded.ticket_identifier, issues.ticket_identifier)
                """,
                (number, ticket_id, ticket_identifier),
            )
        logger.info("Linked issue to ticket", issue_number=number, ticket_id=ticket_id, ticket=ticket_identifier)

    def record_tracker_status(self, numbers: Iterable[int], status: str | None, checked_only: bool = False, at: datetime | None = None) -> None:
        timestamp = _to_text(at or self._now())
        numbers = list(numbers)
        with self._conn:
            if checked_only:
                self._conn.executemany("UPDATE issues SET last_checked_at = ? WHERE number = ?", [(timestamp, number) for number in numbers])
            else:
                self._conn.executemany(
                    "UPDATE issues SET tracker_status = ?, tracker_status_synced_at = ?, last_checked_at = ? WHERE number = ?",
                    [(status, timestamp, timestamp, number) for number in numbers],
                )

    def upsert_pull_request(self, pull_request: ExternalPR, issue_numbers: Iterable[int]) -> None:
        with self._conn:
            self._conn.execute(
                f"""
                INSERT INTO pull_requests({_PULL_REQUEST_COLUMNS}) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET
                    number = excluded.number,
                    title = excluded.title,
                    body = excluded.body,
                    state = excluded.state,
                    merged = excluded.merged,
                    author = excluded.author,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at,
                    head_ref = excluded.head_ref,
                    base_ref = excluded.base_ref
                """,
                (
                    pull_request.url,
                    pull_request.number,
                    pull_request.title,
                    pull_request.body,
                    pull_request.state,
                    int(pull_request.merged),
                    pull_request.author,
                    _to_text(pull_request.created_at),
                    _to_text(pull_request.updated_at),
                    pull_request.head_ref,
                    pull_request.base_ref,
                ),
            )
            # Links only ever grow.
            self._conn.executemany(
                "INSERT OR IGNORE INTO pull_request_issues(url, issue_number) VALUES(?, ?)",
                [(pull_request.url, number) for number in issue_numbers],
            )

    def linked_issue_numbers(self, url: str) -> set[int]:
        rows = self._conn.execute("SELECT issue_number FROM pull_request_issues WHERE url = ?", (url,))
        return {row["issue_number"] for row in rows}

    def pull_requests_for_issue(self, number: int) -> list[ExternalPR]:
        rows = self._conn.execute(
            f"""
            SELECT {", ".join("pr." + column.strip() for column in _PULL_REQUEST_COLUMNS.split(","))}
            FROM pull_requests pr JOIN pull_request_issues link ON link.url = pr.url
            WHERE link.issue_number = ?
            ORDER BY pr.number
            """,
            (number,),
        ).fetchall()
        return [_pull_request_from_row(row) for row in rows]
