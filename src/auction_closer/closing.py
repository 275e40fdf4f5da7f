"""Closes one opportunity: pick the winner, commit once, then notify.

The conditional close in the repository is the only synchronization point.
Callers racing on the same opportunity all run the same pipeline; the first
one to commit owns the selection and the notifications, every other caller
observes AlreadyClosed.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable

from auction_closer.fanout import NotificationFanout
from auction_closer.models import OPPORTUNITY_CLOSED, Bid, ClosingResult, Opportunity
from auction_closer.selection import effective_bids, select_winner
from auction_closer.store import CloseOutcome, Repository
from auction_closer.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

NOT_FOUND_REASON = "not found"


class ClosingWorkflow:
    def __init__(
        self,
        *,
        repository: Repository,
        fanout: NotificationFanout,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.fanout = fanout
        self.max_attempts = max_attempts
        self.clock = clock

    def close(self, opportunity_id: str) -> ClosingResult:
        try:
            opportunity = self.repository.get_opportunity(opportunity_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to load opportunity %s: %s", opportunity_id, exc)
            return ClosingResult.failed(opportunity_id, f"failed to load opportunity: {exc}")

        if opportunity is None:
            logger.warning("Cannot close %s: opportunity not found", opportunity_id)
            return ClosingResult.failed(opportunity_id, NOT_FOUND_REASON)

        if opportunity.is_closed:
            logger.info("Opportunity %s is already closed", opportunity_id)
            return ClosingResult.already_closed(opportunity_id)

        for attempt in range(1, self.max_attempts + 1):
            try:
                bids = effective_bids(self.repository.list_bids(opportunity_id))
                winner = select_winner(bids)
                closed_at = self.clock()
                outcome = self.repository.conditional_close_opportunity(
                    opportunity_id,
                    closed_at=closed_at,
                    winning_bid=winner,
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to close opportunity %s: %s", opportunity_id, exc)
                return ClosingResult.failed(opportunity_id, f"failed to close: {exc}")

            if outcome is CloseOutcome.CONDITION_FAILED:
                logger.info(
                    "Opportunity %s was closed by a concurrent caller", opportunity_id
                )
                return ClosingResult.already_closed(opportunity_id)

            if outcome is CloseOutcome.WINNER_WITHDRAWN:
                logger.info(
                    "Selected bid %s on %s was withdrawn before commit (attempt %d/%d); reselecting",
                    winner.id if winner else None,
                    opportunity_id,
                    attempt,
                    self.max_attempts,
                )
                continue

            closed = replace(
                opportunity,
                status=OPPORTUNITY_CLOSED,
                closed_at=closed_at,
                winning_bid_id=winner.id if winner else None,
                winning_bid_amount=winner.amount if winner else None,
            )
            return self._after_commit(closed, self._committed_bids(opportunity_id, bids), winner)

        message = f"winner kept changing after {self.max_attempts} attempts"
        logger.error("Gave up closing %s: %s", opportunity_id, message)
        return ClosingResult.failed(opportunity_id, message)

    def reconcile_winning_flags(self) -> int:
        """Re-apply is_winning for closed opportunities whose winner is unflagged."""
        repaired = 0
        for opportunity in self.repository.list_unflagged_winners():
            if opportunity.winning_bid_id is None:
                continue
            try:
                self.repository.mark_bid_winning(opportunity.winning_bid_id)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "Failed to repair winning flag for bid %s on %s: %s",
                    opportunity.winning_bid_id,
                    opportunity.id,
                    exc,
                )
                continue
            repaired += 1
            logger.info(
                "Repaired winning flag for bid %s on %s",
                opportunity.winning_bid_id,
                opportunity.id,
            )
        return repaired

    def _committed_bids(self, opportunity_id: str, selected_from: list[Bid]) -> list[Bid]:
        # Losing bidders are read after the commit so a withdrawal that raced
        # the close is not told it lost.
        try:
            return effective_bids(self.repository.list_bids(opportunity_id))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Could not reload bids for %s after closing, notifying from selection: %s",
                opportunity_id,
                exc,
                exc_info=True,
            )
            return selected_from

    def _after_commit(
        self,
        opportunity: Opportunity,
        bids: list[Bid],
        winner: Bid | None,
    ) -> ClosingResult:
        if winner is None:
            logger.info("Closed opportunity %s with no bids", opportunity.id)
            result = ClosingResult.closed_no_bids(opportunity.id)
        else:
            logger.info(
                "Closed opportunity %s | winning_bid=%s amount=%d bidders=%d",
                opportunity.id,
                winner.id,
                winner.amount,
                len(bids),
            )
            result = ClosingResult.closed_with_winner(opportunity.id, winner)
            try:
                self.repository.mark_bid_winning(winner.id)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Opportunity %s closed but bid %s could not be flagged as winning: %s",
                    opportunity.id,
                    winner.id,
                    exc,
                    exc_info=True,
                )

        try:
            result.notifications = self.fanout.notify_closure(opportunity, bids, winner)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Notification fan-out for %s failed: %s", opportunity.id, exc
            )
        return result
