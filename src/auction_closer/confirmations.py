from __future__ import annotations

import logging

from auction_closer.errors import NotFoundError
from auction_closer.fanout import Delivery, NotificationFanout
from auction_closer.models import FanoutReport
from auction_closer.notifiers import MessageContext, MessageKind
from auction_closer.store import Repository

logger = logging.getLogger(__name__)


class BidConfirmation:
    """Acknowledges a newly placed bid to the bidder and to operations."""

    def __init__(self, *, repository: Repository, fanout: NotificationFanout) -> None:
        self.repository = repository
        self.fanout = fanout

    def notify(self, bid_id: str) -> FanoutReport:
        bid = self.repository.get_bid(bid_id)
        if bid is None:
            raise NotFoundError(f"bid {bid_id} not found")

        opportunity = self.repository.get_opportunity(bid.opportunity_id)
        if opportunity is None:
            raise NotFoundError(f"opportunity {bid.opportunity_id} not found")

        deliveries = [
            Delivery(
                kind=MessageKind.BID_CONFIRMATION,
                context=MessageContext(opportunity=opportunity, bid=bid),
                user_id=bid.user_id,
                bid_id=bid.id,
            )
        ]
        operations = self.fanout.operations_delivery(
            MessageKind.NEW_BID,
            MessageContext(
                opportunity=opportunity,
                bid=bid,
                user=self.repository.get_user(bid.user_id),
            ),
        )
        if operations is not None:
            deliveries.append(operations)

        report = self.fanout.dispatch(deliveries)
        logger.info(
            "Bid confirmation for %s | sent=%d failed=%d skipped=%d",
            bid_id,
            report.sent,
            report.failed,
            report.skipped,
        )
        return report
