from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from auction_closer.errors import NotFoundError
from auction_closer.models import (
    BID_ACTIVE,
    BID_WITHDRAWN,
    OPPORTUNITY_ACTIVE,
    OPPORTUNITY_CLOSED,
    Bid,
    Opportunity,
    User,
)
from auction_closer.utils.datetime_utils import parse_datetime_utc, to_storage, utc_now

from .base import CloseOutcome, EmailLogRecord, Repository

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        company TEXT NOT NULL DEFAULT '',
        is_admin INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS opportunities (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        lpa TEXT NOT NULL DEFAULT '',
        nca TEXT NOT NULL DEFAULT '',
        unit_type TEXT NOT NULL DEFAULT '',
        units_required INTEGER NOT NULL DEFAULT 0,
        closing_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        winning_bid_id TEXT NULL,
        winning_bid_amount INTEGER NULL,
        closed_at TEXT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_opportunities_status_closing
    ON opportunities (status, closing_date)
    """,
    """
    CREATE TABLE IF NOT EXISTS bids (
        id TEXT PRIMARY KEY,
        opportunity_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        status TEXT NULL,
        is_winning INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_bids_opportunity
    ON bids (opportunity_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS email_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        kind TEXT NOT NULL,
        recipient TEXT NOT NULL,
        subject TEXT NOT NULL,
        status TEXT NOT NULL,
        opportunity_id TEXT NULL,
        bid_id TEXT NULL,
        error TEXT NULL,
        sent_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_email_logs_lookup
    ON email_logs (kind, recipient, opportunity_id)
    """,
)


class SQLiteStore(Repository):
    def __init__(self, db_path: str, busy_timeout_seconds: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_seconds = busy_timeout_seconds

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as connection:
            for statement in _SCHEMA:
                connection.execute(statement)

    # Opportunities

    def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT * FROM opportunities WHERE id = ?",
                (opportunity_id,),
            ).fetchone()
        return _row_to_opportunity(row) if row is not None else None

    def list_due_opportunities(self, now: datetime) -> list[Opportunity]:
        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT * FROM opportunities
                WHERE status = ? AND closing_date <= ?
                ORDER BY closing_date, id
                """,
                (OPPORTUNITY_ACTIVE, to_storage(now)),
            ).fetchall()
        return [_row_to_opportunity(row) for row in rows]

    def list_opportunities_closing_between(
        self, start: datetime, end: datetime
    ) -> list[Opportunity]:
        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT * FROM opportunities
                WHERE status = ? AND closing_date >= ? AND closing_date <= ?
                ORDER BY closing_date, id
                """,
                (OPPORTUNITY_ACTIVE, to_storage(start), to_storage(end)),
            ).fetchall()
        return [_row_to_opportunity(row) for row in rows]

    def conditional_close_opportunity(
        self,
        opportunity_id: str,
        *,
        closed_at: datetime,
        winning_bid: Bid | None,
    ) -> CloseOutcome:
        with self._connection() as connection:
            # Takes the write lock up front so the status check and the
            # update see the same snapshot.
            connection.execute("BEGIN IMMEDIATE")
            try:
                row = connection.execute(
                    "SELECT status FROM opportunities WHERE id = ?",
                    (opportunity_id,),
                ).fetchone()
                if row is None or row["status"] != OPPORTUNITY_ACTIVE:
                    connection.execute("ROLLBACK")
                    return CloseOutcome.CONDITION_FAILED

                if winning_bid is not None:
                    bid_row = connection.execute(
                        "SELECT status FROM bids WHERE id = ? AND opportunity_id = ?",
                        (winning_bid.id, opportunity_id),
                    ).fetchone()
                    if bid_row is None or bid_row["status"] not in (None, BID_ACTIVE):
                        connection.execute("ROLLBACK")
                        return CloseOutcome.WINNER_WITHDRAWN

                cursor = connection.execute(
                    """
                    UPDATE opportunities
                    SET status = ?,
                        closed_at = ?,
                        winning_bid_id = ?,
                        winning_bid_amount = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        OPPORTUNITY_CLOSED,
                        to_storage(closed_at),
                        winning_bid.id if winning_bid else None,
                        winning_bid.amount if winning_bid else None,
                        opportunity_id,
                        OPPORTUNITY_ACTIVE,
                    ),
                )
                if cursor.rowcount != 1:
                    connection.execute("ROLLBACK")
                    return CloseOutcome.CONDITION_FAILED

                connection.execute("COMMIT")
            except Exception:
                if connection.in_transaction:
                    connection.execute("ROLLBACK")
                raise
        return CloseOutcome.OK

    def list_unflagged_winners(self) -> list[Opportunity]:
        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT o.* FROM opportunities AS o
                JOIN bids AS b ON b.id = o.winning_bid_id
                WHERE o.status = ? AND b.is_winning = 0
                ORDER BY o.closed_at, o.id
                """,
                (OPPORTUNITY_CLOSED,),
            ).fetchall()
        return [_row_to_opportunity(row) for row in rows]

    def save_opportunity(self, opportunity: Opportunity) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO opportunities (
                    id, title, lpa, nca, unit_type, units_required,
                    closing_date, status, winning_bid_id, winning_bid_amount, closed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    lpa = excluded.lpa,
                    nca = excluded.nca,
                    unit_type = excluded.unit_type,
                    units_required = excluded.units_required,
                    closing_date = excluded.closing_date
                """,
                (
                    opportunity.id,
                    opportunity.title,
                    opportunity.lpa,
                    opportunity.nca,
                    opportunity.unit_type,
                    opportunity.units_required,
                    to_storage(opportunity.closing_date),
                    opportunity.status,
                    opportunity.winning_bid_id,
                    opportunity.winning_bid_amount,
                    to_storage(opportunity.closed_at),
                ),
            )

    # Bids

    def get_bid(self, bid_id: str) -> Bid | None:
        with self._connection() as connection:
            row = connection.execute("SELECT * FROM bids WHERE id = ?", (bid_id,)).fetchone()
        return _row_to_bid(row) if row is not None else None

    def list_bids(self, opportunity_id: str) -> list[Bid]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT * FROM bids WHERE opportunity_id = ? ORDER BY created_at, id",
                (opportunity_id,),
            ).fetchall()
        return [_row_to_bid(row) for row in rows]

    def mark_bid_winning(self, bid_id: str) -> None:
        with self._connection() as connection:
            updated = connection.execute(
                "UPDATE bids SET is_winning = 1, updated_at = ? WHERE id = ?",
                (to_storage(utc_now()), bid_id),
            ).rowcount
        if updated != 1:
            raise NotFoundError(f"bid {bid_id} not found")

    def save_bid(self, bid: Bid) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO bids (
                    id, opportunity_id, user_id, amount, status, is_winning, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    amount = excluded.amount,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (
                    bid.id,
                    bid.opportunity_id,
                    bid.user_id,
                    bid.amount,
                    bid.status,
                    int(bid.is_winning),
                    to_storage(bid.created_at),
                    to_storage(bid.updated_at),
                ),
            )

    def withdraw_bid(self, bid_id: str, at: datetime | None = None) -> None:
        with self._connection() as connection:
            updated = connection.execute(
                "UPDATE bids SET status = ?, updated_at = ? WHERE id = ?",
                (BID_WITHDRAWN, to_storage(at or utc_now()), bid_id),
            ).rowcount
        if updated != 1:
            raise NotFoundError(f"bid {bid_id} not found")

    # Users

    def get_user(self, user_id: str) -> User | None:
        with self._connection() as connection:
            row = connection.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, *, is_admin: bool | None = None) -> list[User]:
        query = "SELECT * FROM users"
        params: tuple = ()
        if is_admin is not None:
            query += " WHERE is_admin = ?"
            params = (int(is_admin),)
        with self._connection() as connection:
            rows = connection.execute(f"{query} ORDER BY id", params).fetchall()
        return [_row_to_user(row) for row in rows]

    def save_user(self, user: User) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO users (id, email, first_name, last_name, company, is_admin)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    company = excluded.company,
                    is_admin = excluded.is_admin
                """,
                (
                    user.id,
                    user.email,
                    user.first_name,
                    user.last_name,
                    user.company,
                    int(user.is_admin),
                ),
            )

    # Email log

    def record_email(self, record: EmailLogRecord) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO email_logs (
                    kind, recipient, subject, status, opportunity_id, bid_id, error, sent_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.kind,
                    record.recipient,
                    record.subject,
                    record.status,
                    record.opportunity_id,
                    record.bid_id,
                    record.error,
                    to_storage(record.sent_at),
                ),
            )

    def has_email_log(self, *, kind: str, recipient: str, opportunity_id: str) -> bool:
        with self._connection() as connection:
            row = connection.execute(
                """
                SELECT 1 FROM email_logs
                WHERE kind = ? AND recipient = ? AND opportunity_id = ? AND status = 'sent'
                LIMIT 1
                """,
                (kind, recipient, opportunity_id),
            ).fetchone()
        return row is not None

    def list_email_logs(self, opportunity_id: str | None = None) -> list[EmailLogRecord]:
        query = "SELECT * FROM email_logs"
        params: tuple = ()
        if opportunity_id is not None:
            query += " WHERE opportunity_id = ?"
            params = (opportunity_id,)
        with self._connection() as connection:
            rows = connection.execute(f"{query} ORDER BY id", params).fetchall()
        return [
            EmailLogRecord(
                kind=row["kind"],
                recipient=row["recipient"],
                subject=row["subject"],
                status=row["status"],
                opportunity_id=row["opportunity_id"],
                bid_id=row["bid_id"],
                error=row["error"],
                sent_at=parse_datetime_utc(row["sent_at"]) or utc_now(),
            )
            for row in rows
        ]

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        # Autocommit mode; multi-statement writes open their own transaction.
        connection = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        finally:
            connection.close()


def _row_to_opportunity(row: sqlite3.Row) -> Opportunity:
    return Opportunity(
        id=row["id"],
        title=row["title"],
        lpa=row["lpa"],
        nca=row["nca"],
        unit_type=row["unit_type"],
        units_required=row["units_required"],
        closing_date=parse_datetime_utc(row["closing_date"]) or utc_now(),
        status=row["status"],
        winning_bid_id=row["winning_bid_id"],
        winning_bid_amount=row["winning_bid_amount"],
        closed_at=parse_datetime_utc(row["closed_at"]),
    )


def _row_to_bid(row: sqlite3.Row) -> Bid:
    created_at = parse_datetime_utc(row["created_at"]) or utc_now()
    return Bid(
        id=row["id"],
        opportunity_id=row["opportunity_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        created_at=created_at,
        updated_at=parse_datetime_utc(row["updated_at"]) or created_at,
        status=row["status"] or BID_ACTIVE,
        is_winning=bool(row["is_winning"]),
    )


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        company=row["company"],
        is_admin=bool(row["is_admin"]),
    )
