from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

OPPORTUNITY_ACTIVE = "active"
OPPORTUNITY_CLOSED = "closed"

BID_ACTIVE = "active"
BID_WITHDRAWN = "withdrawn"


@dataclass(slots=True)
class Opportunity:
    id: str
    title: str
    lpa: str
    nca: str
    unit_type: str
    units_required: int
    closing_date: datetime
    status: str = OPPORTUNITY_ACTIVE
    winning_bid_id: str | None = None
    winning_bid_amount: int | None = None
    closed_at: datetime | None = None

    @property
    def is_closed(self) -> bool:
        return self.status == OPPORTUNITY_CLOSED


@dataclass(slots=True)
class Bid:
    id: str
    opportunity_id: str
    user_id: str
    amount: int
    created_at: datetime
    updated_at: datetime
    status: str = BID_ACTIVE
    is_winning: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in (None, BID_ACTIVE)


@dataclass(slots=True)
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    is_admin: bool = False

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or self.email


class ClosingStatus(str, Enum):
    CLOSED_WITH_WINNER = "closed_with_winner"
    CLOSED_NO_BIDS = "closed_no_bids"
    ALREADY_CLOSED = "already_closed"
    FAILED = "failed"


@dataclass(slots=True)
class DeliveryOutcome:
    recipient: str
    kind: str
    status: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


@dataclass(slots=True)
class FanoutReport:
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "sent")

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "skipped")

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass(slots=True)
class ClosingResult:
    """Outcome of one closing attempt. Never persisted."""

    status: ClosingStatus
    opportunity_id: str
    winning_bid_id: str | None = None
    winning_bid_amount: int | None = None
    reason: str | None = None
    notifications: FanoutReport | None = None

    @classmethod
    def closed_with_winner(cls, opportunity_id: str, bid: Bid) -> ClosingResult:
        return cls(
            status=ClosingStatus.CLOSED_WITH_WINNER,
            opportunity_id=opportunity_id,
            winning_bid_id=bid.id,
            winning_bid_amount=bid.amount,
        )

    @classmethod
    def closed_no_bids(cls, opportunity_id: str) -> ClosingResult:
        return cls(status=ClosingStatus.CLOSED_NO_BIDS, opportunity_id=opportunity_id)

    @classmethod
    def already_closed(cls, opportunity_id: str) -> ClosingResult:
        return cls(status=ClosingStatus.ALREADY_CLOSED, opportunity_id=opportunity_id)

    @classmethod
    def failed(cls, opportunity_id: str, reason: str) -> ClosingResult:
        return cls(status=ClosingStatus.FAILED, opportunity_id=opportunity_id, reason=reason)

    @property
    def committed(self) -> bool:
        return self.status in {ClosingStatus.CLOSED_WITH_WINNER, ClosingStatus.CLOSED_NO_BIDS}
