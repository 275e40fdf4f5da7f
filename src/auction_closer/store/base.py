from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from auction_closer.models import Bid, Opportunity, User


class CloseOutcome(str, Enum):
    OK = "ok"
    CONDITION_FAILED = "condition_failed"
    WINNER_WITHDRAWN = "winner_withdrawn"


@dataclass(slots=True)
class EmailLogRecord:
    kind: str
    recipient: str
    subject: str
    status: str
    opportunity_id: str | None
    bid_id: str | None
    error: str | None
    sent_at: datetime


class Repository(ABC):
    @abstractmethod
    def init_db(self) -> None:
        """Create any required schema."""

    @abstractmethod
    def get_opportunity(self, opportunity_id: str) -> Opportunity | None:
        """Return the opportunity, or None if it does not exist."""

    @abstractmethod
    def list_due_opportunities(self, now: datetime) -> list[Opportunity]:
        """Return active opportunities whose closing date is at or before now."""

    @abstractmethod
    def list_opportunities_closing_between(
        self, start: datetime, end: datetime
    ) -> list[Opportunity]:
        """Return active opportunities closing inside [start, end]."""

    @abstractmethod
    def get_bid(self, bid_id: str) -> Bid | None:
        """Return the bid, or None if it does not exist."""

    @abstractmethod
    def list_bids(self, opportunity_id: str) -> list[Bid]:
        """Return every bid on the opportunity as currently stored."""

    @abstractmethod
    def conditional_close_opportunity(
        self,
        opportunity_id: str,
        *,
        closed_at: datetime,
        winning_bid: Bid | None,
    ) -> CloseOutcome:
        """Close the opportunity only if it is still active.

        When a winning bid is given it must still be non-withdrawn inside the
        same transaction, otherwise nothing is written and WINNER_WITHDRAWN is
        returned.
        """

    @abstractmethod
    def mark_bid_winning(self, bid_id: str) -> None:
        """Flag the bid as the winner. Raises on failure."""

    @abstractmethod
    def list_unflagged_winners(self) -> list[Opportunity]:
        """Closed opportunities whose winning bid is not flagged is_winning."""

    @abstractmethod
    def get_user(self, user_id: str) -> User | None:
        """Return the user, or None if it does not exist."""

    @abstractmethod
    def list_users(self, *, is_admin: bool | None = None) -> list[User]:
        """Return users, optionally filtered on the admin flag."""

    @abstractmethod
    def record_email(self, record: EmailLogRecord) -> None:
        """Append a delivery attempt to the email log."""

    @abstractmethod
    def has_email_log(self, *, kind: str, recipient: str, opportunity_id: str) -> bool:
        """Return True if a sent message of this kind already reached the recipient."""
