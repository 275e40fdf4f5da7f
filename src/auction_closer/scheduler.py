from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from auction_closer.closing import ClosingWorkflow
from auction_closer.config import SchedulerSettings
from auction_closer.fanout import Delivery, NotificationFanout
from auction_closer.models import ClosingResult, ClosingStatus, Opportunity
from auction_closer.notifiers import MessageContext, MessageKind
from auction_closer.store import Repository
from auction_closer.utils.datetime_utils import reminder_window, utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepStats:
    discovered: int = 0
    closed_with_winner: int = 0
    closed_no_bids: int = 0
    already_closed: int = 0
    failed: int = 0
    notification_failures: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ClosingSweep:
    """One scheduler tick: close every overdue active opportunity."""

    def __init__(
        self,
        *,
        repository: Repository,
        workflow: ClosingWorkflow,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.workflow = workflow
        self.max_workers = max_workers
        self.clock = clock

    def run_once(self, now: datetime | None = None) -> SweepStats:
        stats = SweepStats()
        now = now or self.clock()

        try:
            due = self.repository.list_due_opportunities(now)
        except Exception as exc:  # noqa: BLE001
            message = f"failed to discover due opportunities: {exc}"
            logger.exception(message)
            stats.errors.append(message)
            return stats

        stats.discovered = len(due)
        logger.info("Auto-closing %d opportunities", len(due))
        if not due:
            return stats

        workers = max(1, min(self.max_workers, len(due)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="close") as executor:
            futures = {
                opportunity.id: executor.submit(self.workflow.close, opportunity.id)
                for opportunity in due
            }
            for opportunity_id, future in futures.items():
                try:
                    result = future.result()
                except Exception as exc:  # noqa: BLE001
                    message = f"failed to auto-close {opportunity_id}: {exc}"
                    logger.exception(message)
                    stats.failed += 1
                    stats.errors.append(message)
                    continue
                self._count(stats, result)

        logger.info(
            "Sweep complete | discovered=%d winners=%d no_bids=%d already_closed=%d failed=%d notification_failures=%d",
            stats.discovered,
            stats.closed_with_winner,
            stats.closed_no_bids,
            stats.already_closed,
            stats.failed,
            stats.notification_failures,
        )
        return stats

    @staticmethod
    def _count(stats: SweepStats, result: ClosingResult) -> None:
        if result.status is ClosingStatus.CLOSED_WITH_WINNER:
            stats.closed_with_winner += 1
        elif result.status is ClosingStatus.CLOSED_NO_BIDS:
            stats.closed_no_bids += 1
        elif result.status is ClosingStatus.ALREADY_CLOSED:
            stats.already_closed += 1
        else:
            stats.failed += 1
            stats.errors.append(f"failed to auto-close {result.opportunity_id}: {result.reason}")
            logger.error("Failed to auto-close %s: %s", result.opportunity_id, result.reason)

        if result.notifications is not None:
            stats.notification_failures += result.notifications.failed


@dataclass(slots=True)
class ReminderStats:
    opportunities: int = 0
    sent: int = 0
    failed: int = 0
    skipped_already_reminded: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ReminderSweep:
    """Reminds non-admin users about opportunities closing today or tomorrow."""

    def __init__(
        self,
        *,
        repository: Repository,
        fanout: NotificationFanout,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.fanout = fanout
        self.clock = clock

    def run_once(self, now: datetime | None = None) -> ReminderStats:
        stats = ReminderStats()
        start, end = reminder_window(now or self.clock())

        try:
            opportunities = self.repository.list_opportunities_closing_between(start, end)
            users = self.repository.list_users(is_admin=False)
        except Exception as exc:  # noqa: BLE001
            message = f"failed to load reminder targets: {exc}"
            logger.exception(message)
            stats.errors.append(message)
            return stats

        stats.opportunities = len(opportunities)
        for opportunity in opportunities:
            deliveries: list[Delivery] = []
            for user in users:
                try:
                    already = self.repository.has_email_log(
                        kind=MessageKind.CLOSING_REMINDER.value,
                        recipient=user.email,
                        opportunity_id=opportunity.id,
                    )
                except Exception as exc:  # noqa: BLE001
                    message = f"failed to read reminder state for {opportunity.id}: {exc}"
                    logger.exception(message)
                    stats.errors.append(message)
                    continue
                if already:
                    stats.skipped_already_reminded += 1
                    continue
                deliveries.append(_reminder_delivery(opportunity, user.id))

            report = self.fanout.dispatch(deliveries)
            stats.sent += report.sent
            stats.failed += report.failed

        logger.info(
            "Reminders complete | opportunities=%d sent=%d failed=%d skipped_already_reminded=%d",
            stats.opportunities,
            stats.sent,
            stats.failed,
            stats.skipped_already_reminded,
        )
        return stats


def _reminder_delivery(opportunity: Opportunity, user_id: str) -> Delivery:
    return Delivery(
        kind=MessageKind.CLOSING_REMINDER,
        context=MessageContext(opportunity=opportunity),
        user_id=user_id,
    )


def build_scheduler(
    *,
    settings: SchedulerSettings,
    closing_sweep: ClosingSweep,
    reminder_sweep: ReminderSweep | None = None,
) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_sweep,
        IntervalTrigger(seconds=settings.close_interval_seconds),
        args=[closing_sweep],
        id="close-due-opportunities",
        name="Close overdue opportunities",
        coalesce=True,
        next_run_time=utc_now(),
    )
    if reminder_sweep is not None:
        scheduler.add_job(
            _run_sweep,
            IntervalTrigger(seconds=settings.reminder_interval_seconds),
            args=[reminder_sweep],
            id="send-closing-reminders",
            name="Send closing reminders",
            coalesce=True,
        )
    return scheduler


def _run_sweep(sweep: ClosingSweep | ReminderSweep) -> None:
    # Jobs must never raise into the scheduler; outcomes are logged.
    try:
        sweep.run_once()
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s tick failed: %s", type(sweep).__name__, exc)
