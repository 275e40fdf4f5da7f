from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from auction_closer.models import Bid, DeliveryOutcome, FanoutReport, Opportunity
from auction_closer.notifiers import MessageContext, MessageKind, Notifier, build_message
from auction_closer.store import EmailLogRecord, Repository
from auction_closer.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass(slots=True)
class Delivery:
    """One message to one recipient, addressed by user id or by raw address."""

    kind: MessageKind
    context: MessageContext
    user_id: str | None = None
    address: str | None = None
    bid_id: str | None = None

    @property
    def label(self) -> str:
        return self.address or f"user:{self.user_id}"


class NotificationFanout:
    def __init__(
        self,
        *,
        repository: Repository,
        notifier: Notifier,
        operations_recipient: str | None = None,
        max_workers: int = 8,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.operations_recipient = operations_recipient
        self.max_workers = max_workers

    def notify_closure(
        self,
        opportunity: Opportunity,
        bids: list[Bid],
        winner: Bid | None,
    ) -> FanoutReport:
        deliveries = self.closing_deliveries(opportunity, bids, winner)
        report = self.dispatch(deliveries)
        logger.info(
            "Closure notifications for %s | sent=%d failed=%d skipped=%d",
            opportunity.id,
            report.sent,
            report.failed,
            report.skipped,
        )
        return report

    def closing_deliveries(
        self,
        opportunity: Opportunity,
        bids: list[Bid],
        winner: Bid | None,
    ) -> list[Delivery]:
        deliveries: list[Delivery] = []

        if winner is not None:
            deliveries.append(
                Delivery(
                    kind=MessageKind.WINNER,
                    context=MessageContext(opportunity=opportunity, bid=winner),
                    user_id=winner.user_id,
                    bid_id=winner.id,
                )
            )

            notified = {winner.user_id}
            for bid in bids:
                if not bid.is_active or bid.user_id in notified:
                    continue
                notified.add(bid.user_id)
                deliveries.append(
                    Delivery(
                        kind=MessageKind.NOT_SELECTED,
                        context=MessageContext(
                            opportunity=opportunity,
                            bid=bid,
                            winning_amount=winner.amount,
                        ),
                        user_id=bid.user_id,
                        bid_id=bid.id,
                    )
                )

        operations = self.operations_delivery(
            MessageKind.CLOSURE_SUMMARY,
            MessageContext(opportunity=opportunity, bid=winner),
        )
        if operations is not None:
            deliveries.append(operations)

        return deliveries

    def operations_delivery(
        self, kind: MessageKind, context: MessageContext
    ) -> Delivery | None:
        if not self.operations_recipient:
            return None
        return Delivery(
            kind=kind,
            context=context,
            address=self.operations_recipient,
            bid_id=context.bid.id if context.bid else None,
        )

    def dispatch(self, deliveries: list[Delivery]) -> FanoutReport:
        if not deliveries:
            return FanoutReport()

        workers = max(1, min(self.max_workers, len(deliveries)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") as executor:
            outcomes = list(executor.map(self._deliver, deliveries))
        return FanoutReport(outcomes=outcomes)

    def _deliver(self, delivery: Delivery) -> DeliveryOutcome:
        opportunity_id = delivery.context.opportunity.id
        subject = ""
        recipient = delivery.label

        try:
            if delivery.address is None:
                user = self.repository.get_user(delivery.user_id or "")
                if user is None:
                    logger.warning(
                        "Skipping %s notification for %s: user %s not found",
                        delivery.kind.value,
                        opportunity_id,
                        delivery.user_id,
                    )
                    outcome = DeliveryOutcome(
                        recipient=recipient,
                        kind=delivery.kind.value,
                        status=STATUS_SKIPPED,
                        error="user not found",
                    )
                    self._record(delivery, outcome, subject)
                    return outcome
                delivery.context.user = user
                recipient = user.email

            message = build_message(delivery.kind, recipient, delivery.context)
            subject = message.subject
            self.notifier.send(message)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Failed to send %s notification for %s to %s: %s",
                delivery.kind.value,
                opportunity_id,
                recipient,
                exc,
            )
            outcome = DeliveryOutcome(
                recipient=recipient,
                kind=delivery.kind.value,
                status=STATUS_FAILED,
                error=str(exc),
            )
        else:
            logger.info(
                "Sent %s notification for %s to %s",
                delivery.kind.value,
                opportunity_id,
                recipient,
            )
            outcome = DeliveryOutcome(
                recipient=recipient,
                kind=delivery.kind.value,
                status=STATUS_SENT,
            )

        self._record(delivery, outcome, subject)
        return outcome

    def _record(self, delivery: Delivery, outcome: DeliveryOutcome, subject: str) -> None:
        try:
            self.repository.record_email(
                EmailLogRecord(
                    kind=outcome.kind,
                    recipient=outcome.recipient,
                    subject=subject,
                    status=outcome.status,
                    opportunity_id=delivery.context.opportunity.id,
                    bid_id=delivery.bid_id,
                    error=outcome.error,
                    sent_at=utc_now(),
                )
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Failed to record %s email log for %s: %s",
                outcome.kind,
                outcome.recipient,
                exc,
            )
