from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from auction_closer.closing import ClosingWorkflow
from auction_closer.fanout import NotificationFanout
from auction_closer.models import BID_ACTIVE, Bid, Opportunity, User
from auction_closer.notifiers import EmailMessage, Notifier
from auction_closer.store import SQLiteStore

NOW = datetime(2026, 3, 30, 12, 0, tzinfo=timezone.utc)
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
T1 = T0 + timedelta(hours=1)
T2 = T0 + timedelta(hours=2)
OPS_EMAIL = "ops@example.com"


class RecordingNotifier(Notifier):
    def __init__(self, fail_when: Callable[[EmailMessage], bool] | None = None) -> None:
        self.fail_when = fail_when
        self.messages: list[EmailMessage] = []
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> None:
        if self.fail_when is not None and self.fail_when(message):
            raise RuntimeError(f"simulated send failure for {message.recipient}")
        with self._lock:
            self.messages.append(message)

    def recipients(self) -> list[str]:
        return sorted(message.recipient for message in self.messages)

    def subjects_for(self, recipient: str) -> list[str]:
        return [message.subject for message in self.messages if message.recipient == recipient]


def add_user(store: SQLiteStore, user_id: str, *, is_admin: bool = False) -> User:
    user = User(
        id=user_id,
        email=f"{user_id}@example.com",
        first_name=user_id.capitalize(),
        last_name="Tester",
        company=f"{user_id.capitalize()} Ltd",
        is_admin=is_admin,
    )
    store.save_user(user)
    return user


def add_opportunity(
    store: SQLiteStore,
    opportunity_id: str,
    *,
    title: str | None = None,
    closing_date: datetime = NOW - timedelta(hours=1),
) -> Opportunity:
    opportunity = Opportunity(
        id=opportunity_id,
        title=title or f"Opportunity {opportunity_id}",
        lpa="E06000045",
        nca="South Hampshire",
        unit_type="Habitat",
        units_required=12,
        closing_date=closing_date,
    )
    store.save_opportunity(opportunity)
    return opportunity


def add_bid(
    store: SQLiteStore,
    bid_id: str,
    opportunity_id: str,
    user_id: str,
    amount: int,
    created_at: datetime = T0,
    *,
    updated_at: datetime | None = None,
    status: str = BID_ACTIVE,
) -> Bid:
    bid = Bid(
        id=bid_id,
        opportunity_id=opportunity_id,
        user_id=user_id,
        amount=amount,
        created_at=created_at,
        updated_at=updated_at or created_at,
        status=status,
    )
    store.save_bid(bid)
    return bid


def build_workflow(
    store: SQLiteStore,
    notifier: Notifier,
    *,
    operations_recipient: str | None = OPS_EMAIL,
) -> ClosingWorkflow:
    fanout = NotificationFanout(
        repository=store,
        notifier=notifier,
        operations_recipient=operations_recipient,
        max_workers=4,
    )
    return ClosingWorkflow(repository=store, fanout=fanout, clock=lambda: NOW)
