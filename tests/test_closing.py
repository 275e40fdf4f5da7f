from __future__ import annotations

import logging
import threading

from auction_closer.models import BID_WITHDRAWN, OPPORTUNITY_CLOSED, ClosingStatus
from auction_closer.store import SQLiteStore

from support import (
    NOW,
    OPS_EMAIL,
    T0,
    T1,
    T2,
    RecordingNotifier,
    add_bid,
    add_opportunity,
    add_user,
    build_workflow,
)


def _seed_three_bidders(store: SQLiteStore) -> None:
    add_opportunity(store, "opp-1", title="Solent Habitat Units")
    for user_id in ("alice", "bob", "carol"):
        add_user(store, user_id)
    add_bid(store, "bid-alice", "opp-1", "alice", 5000, T1)
    add_bid(store, "bid-bob", "opp-1", "bob", 4800, T2)
    add_bid(store, "bid-carol", "opp-1", "carol", 4800, T0)


def test_close_selects_earliest_lowest_bid_and_notifies_everyone(store: SQLiteStore) -> None:
    _seed_three_bidders(store)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    result = workflow.close("opp-1")

    assert result.status is ClosingStatus.CLOSED_WITH_WINNER
    assert result.winning_bid_id == "bid-carol"
    assert result.winning_bid_amount == 4800

    opportunity = store.get_opportunity("opp-1")
    assert opportunity.status == OPPORTUNITY_CLOSED
    assert opportunity.winning_bid_id == "bid-carol"
    assert opportunity.winning_bid_amount == 4800
    assert opportunity.closed_at == NOW
    assert store.get_bid("bid-carol").is_winning is True
    assert store.get_bid("bid-bob").is_winning is False

    assert notifier.subjects_for("carol@example.com") == ["You won - Solent Habitat Units"]
    assert notifier.subjects_for("alice@example.com") == ["Bid Result - Solent Habitat Units"]
    assert notifier.subjects_for("bob@example.com") == ["Bid Result - Solent Habitat Units"]
    assert notifier.subjects_for(OPS_EMAIL) == ["Opportunity Closed - Solent Habitat Units"]
    winner_message = next(
        message for message in notifier.messages if message.recipient == "carol@example.com"
    )
    assert "Your Winning Bid: £4,800" in winner_message.text

    assert result.notifications is not None
    assert result.notifications.sent == 4
    logs = store.list_email_logs("opp-1")
    assert sorted(log.kind for log in logs) == [
        "closure_summary",
        "not_selected",
        "not_selected",
        "winner",
    ]
    assert {log.status for log in logs} == {"sent"}


def test_close_without_active_bids_records_no_winner(store: SQLiteStore) -> None:
    add_opportunity(store, "opp-empty")
    add_user(store, "alice")
    add_bid(store, "bid-gone", "opp-empty", "alice", 3000, T0, status=BID_WITHDRAWN)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    result = workflow.close("opp-empty")

    assert result.status is ClosingStatus.CLOSED_NO_BIDS
    assert result.winning_bid_id is None
    opportunity = store.get_opportunity("opp-empty")
    assert opportunity.status == OPPORTUNITY_CLOSED
    assert opportunity.winning_bid_id is None
    assert opportunity.winning_bid_amount is None
    assert notifier.recipients() == [OPS_EMAIL]


def test_close_without_bids_and_without_operations_recipient_sends_nothing(
    store: SQLiteStore,
) -> None:
    add_opportunity(store, "opp-empty")
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier, operations_recipient=None)

    result = workflow.close("opp-empty")

    assert result.status is ClosingStatus.CLOSED_NO_BIDS
    assert notifier.messages == []


def test_second_close_is_a_no_op(store: SQLiteStore) -> None:
    _seed_three_bidders(store)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    first = workflow.close("opp-1")
    before = store.get_opportunity("opp-1")
    sent_after_first = len(notifier.messages)

    second = workflow.close("opp-1")
    third = workflow.close("opp-1")

    assert first.status is ClosingStatus.CLOSED_WITH_WINNER
    assert second.status is ClosingStatus.ALREADY_CLOSED
    assert third.status is ClosingStatus.ALREADY_CLOSED
    assert second.notifications is None
    assert store.get_opportunity("opp-1") == before
    assert len(notifier.messages) == sent_after_first


def test_missing_opportunity_fails_with_not_found(store: SQLiteStore) -> None:
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    result = workflow.close("nope")

    assert result.status is ClosingStatus.FAILED
    assert result.reason == "not found"
    assert notifier.messages == []


def test_withdrawn_bidders_are_not_told_they_lost(store: SQLiteStore) -> None:
    _seed_three_bidders(store)
    add_user(store, "dave")
    add_bid(store, "bid-dave", "opp-1", "dave", 1000, T0, status=BID_WITHDRAWN)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    result = workflow.close("opp-1")

    assert result.winning_bid_id == "bid-carol"
    assert "dave@example.com" not in notifier.recipients()


def test_rebidding_bidder_is_represented_by_latest_bid(store: SQLiteStore) -> None:
    add_opportunity(store, "opp-1")
    add_user(store, "alice")
    add_user(store, "bob")
    add_bid(store, "alice-old", "opp-1", "alice", 3000, T0)
    add_bid(store, "alice-new", "opp-1", "alice", 4500, T1, updated_at=T2)
    add_bid(store, "bob-bid", "opp-1", "bob", 4000, T0)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier, operations_recipient=None)

    result = workflow.close("opp-1")

    assert result.winning_bid_id == "bob-bid"
    assert notifier.subjects_for("alice@example.com") == ["Bid Result - Opportunity opp-1"]


class WithdrawBeforeCommitStore(SQLiteStore):
    def __init__(self, db_path: str, bid_to_withdraw: str) -> None:
        super().__init__(db_path)
        self.bid_to_withdraw = bid_to_withdraw
        self.close_calls = 0

    def conditional_close_opportunity(self, opportunity_id, *, closed_at, winning_bid):
        self.close_calls += 1
        if self.close_calls == 1:
            self.withdraw_bid(self.bid_to_withdraw)
        return super().conditional_close_opportunity(
            opportunity_id,
            closed_at=closed_at,
            winning_bid=winning_bid,
        )


def test_bid_withdrawn_before_commit_is_not_recorded_as_winner(tmp_path) -> None:
    store = WithdrawBeforeCommitStore(str(tmp_path / "race.sqlite"), "bid-carol")
    store.init_db()
    _seed_three_bidders(store)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    result = workflow.close("opp-1")

    assert store.close_calls == 2
    assert result.status is ClosingStatus.CLOSED_WITH_WINNER
    assert result.winning_bid_id == "bid-bob"
    assert store.get_opportunity("opp-1").winning_bid_id == "bid-bob"
    assert "carol@example.com" not in notifier.recipients()


def test_losing_bid_withdrawn_before_commit_gets_no_result_email(tmp_path) -> None:
    store = WithdrawBeforeCommitStore(str(tmp_path / "race.sqlite"), "bid-alice")
    store.init_db()
    add_opportunity(store, "opp-1")
    add_user(store, "alice")
    add_user(store, "bob")
    add_bid(store, "bid-alice", "opp-1", "alice", 5000, T0)
    add_bid(store, "bid-bob", "opp-1", "bob", 4000, T0)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier, operations_recipient=None)

    result = workflow.close("opp-1")

    assert store.close_calls == 1
    assert result.winning_bid_id == "bid-bob"
    assert notifier.recipients() == ["bob@example.com"]
    assert [log.kind for log in store.list_email_logs("opp-1")] == ["winner"]


class FlagFailingStore(SQLiteStore):
    fail_flag = True

    def mark_bid_winning(self, bid_id: str) -> None:
        if self.fail_flag:
            raise RuntimeError("write rejected")
        super().mark_bid_winning(bid_id)


def test_winner_flag_failure_keeps_closure_and_can_be_reconciled(tmp_path, caplog) -> None:
    store = FlagFailingStore(str(tmp_path / "flag.sqlite"))
    store.init_db()
    _seed_three_bidders(store)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    with caplog.at_level(logging.WARNING):
        result = workflow.close("opp-1")

    assert result.status is ClosingStatus.CLOSED_WITH_WINNER
    assert store.get_opportunity("opp-1").winning_bid_id == "bid-carol"
    assert store.get_bid("bid-carol").is_winning is False
    assert "could not be flagged as winning" in caplog.text
    assert notifier.subjects_for("carol@example.com") == ["You won - Solent Habitat Units"]

    store.fail_flag = False
    assert workflow.reconcile_winning_flags() == 1
    assert store.get_bid("bid-carol").is_winning is True
    assert workflow.reconcile_winning_flags() == 0


def test_one_failed_delivery_does_not_stop_the_others(store: SQLiteStore) -> None:
    _seed_three_bidders(store)
    notifier = RecordingNotifier(
        fail_when=lambda message: message.recipient == "alice@example.com"
    )
    workflow = build_workflow(store, notifier)

    result = workflow.close("opp-1")

    assert result.status is ClosingStatus.CLOSED_WITH_WINNER
    assert result.notifications.failed == 1
    assert result.notifications.sent == 3
    assert notifier.recipients() == sorted(
        ["bob@example.com", "carol@example.com", OPS_EMAIL]
    )
    failed = [log for log in store.list_email_logs("opp-1") if log.status == "failed"]
    assert len(failed) == 1
    assert failed[0].recipient == "alice@example.com"
    assert "simulated send failure" in failed[0].error


def test_bidder_without_user_record_is_skipped(store: SQLiteStore) -> None:
    add_opportunity(store, "opp-1")
    add_user(store, "alice")
    add_bid(store, "bid-alice", "opp-1", "alice", 3000, T0)
    add_bid(store, "bid-ghost", "opp-1", "ghost", 3500, T0)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier, operations_recipient=None)

    result = workflow.close("opp-1")

    assert result.winning_bid_id == "bid-alice"
    assert result.notifications.skipped == 1
    assert notifier.recipients() == ["alice@example.com"]


class RendezvousStore(SQLiteStore):
    """Holds every caller after reading bids until all of them got there."""

    def __init__(self, db_path: str, parties: int) -> None:
        super().__init__(db_path)
        self.barrier = threading.Barrier(parties, timeout=5)
        self.selections = 0
        self._lock = threading.Lock()

    def list_bids(self, opportunity_id: str):
        bids = super().list_bids(opportunity_id)
        with self._lock:
            self.selections += 1
            first_round = self.selections <= self.barrier.parties
        if first_round:
            try:
                self.barrier.wait()
            except threading.BrokenBarrierError:
                pass
        return bids


def test_concurrent_closes_commit_and_notify_exactly_once(tmp_path) -> None:
    store = RendezvousStore(str(tmp_path / "concurrent.sqlite"), parties=2)
    store.init_db()
    _seed_three_bidders(store)
    notifier = RecordingNotifier()
    workflow = build_workflow(store, notifier)

    results = []
    results_lock = threading.Lock()

    def close() -> None:
        result = workflow.close("opp-1")
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=close) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    # Two selections plus the winner's reload of bidders after commit.
    assert store.selections == 3
    assert sorted(result.status.value for result in results) == [
        ClosingStatus.ALREADY_CLOSED.value,
        ClosingStatus.CLOSED_WITH_WINNER.value,
    ]
    assert notifier.subjects_for("carol@example.com") == ["You won - Solent Habitat Units"]
    assert len(notifier.messages) == 4
