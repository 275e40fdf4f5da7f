from __future__ import annotations

import argparse
import logging
import os
import sys

from auction_closer.admin import ManualCloseEndpoint
from auction_closer.closing import ClosingWorkflow
from auction_closer.config import AppConfig, ConfigError, load_config
from auction_closer.confirmations import BidConfirmation
from auction_closer.errors import AuctionError
from auction_closer.fanout import NotificationFanout
from auction_closer.logging_config import setup_logging
from auction_closer.models import ClosingResult
from auction_closer.notifiers import BrevoEmailNotifier, Notifier, PreviewNotifier
from auction_closer.scheduler import ClosingSweep, ReminderSweep, build_scheduler
from auction_closer.store import SQLiteStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auction-closer",
        description="Close reverse-auction opportunities and notify bidders.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to config YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        help="Override config log level (e.g. INFO, DEBUG)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print notifications instead of sending them",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("init-db", help="Initialize SQLite schema")
    subparsers.add_parser("sweep", help="Close every overdue opportunity once")
    subparsers.add_parser("remind", help="Send reminders for opportunities closing soon")
    subparsers.add_parser("reconcile", help="Repair winning flags on closed opportunities")
    subparsers.add_parser("serve", help="Run the closing and reminder schedule")

    close = subparsers.add_parser("close", help="Close one opportunity now (admin only)")
    close.add_argument("opportunity_id", help="Opportunity to close")
    close.add_argument(
        "--as",
        dest="caller_id",
        required=True,
        help="User id of the administrator requesting the close",
    )

    confirm = subparsers.add_parser("confirm-bid", help="Send bid confirmation emails")
    confirm.add_argument("bid_id", help="Bid that was just placed")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = load_config(args.config)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2

    log_level = args.log_level or app_config.log_level
    setup_logging(log_level)

    try:
        store = _build_store(app_config)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    store.init_db()
    if args.command == "init-db":
        logger.info("Initialized SQLite database at %s", app_config.storage.path)
        return 0

    dry_run = args.dry_run or app_config.notifications.dry_run
    notifier = _build_notifier(app_config, dry_run=dry_run)
    if notifier is None:
        return 2

    fanout = NotificationFanout(
        repository=store,
        notifier=notifier,
        operations_recipient=app_config.notifications.operations_recipient,
        max_workers=app_config.notifications.max_workers,
    )
    workflow = ClosingWorkflow(
        repository=store,
        fanout=fanout,
        max_attempts=app_config.scheduler.max_close_attempts,
    )
    closing_sweep = ClosingSweep(
        repository=store,
        workflow=workflow,
        max_workers=app_config.scheduler.max_concurrent_closures,
    )
    reminder_sweep = ReminderSweep(repository=store, fanout=fanout)

    if args.command == "sweep":
        return 0 if closing_sweep.run_once().ok else 1

    if args.command == "remind":
        return 0 if reminder_sweep.run_once().ok else 1

    if args.command == "reconcile":
        repaired = workflow.reconcile_winning_flags()
        logger.info("Reconcile complete | repaired=%d", repaired)
        return 0

    if args.command == "close":
        endpoint = ManualCloseEndpoint(repository=store, workflow=workflow)
        try:
            result = endpoint.close(args.caller_id, args.opportunity_id)
        except AuctionError as exc:
            logger.error("Close failed: %s", exc)
            return 1
        print(_describe_result(result))
        return 0

    if args.command == "confirm-bid":
        confirmation = BidConfirmation(repository=store, fanout=fanout)
        try:
            report = confirmation.notify(args.bid_id)
        except AuctionError as exc:
            logger.error("Bid confirmation failed: %s", exc)
            return 1
        return 0 if report.ok else 1

    if args.command == "serve":
        scheduler = build_scheduler(
            settings=app_config.scheduler,
            closing_sweep=closing_sweep,
            reminder_sweep=reminder_sweep,
        )
        logger.info(
            "Scheduler started | close_interval=%ds reminder_interval=%ds",
            app_config.scheduler.close_interval_seconds,
            app_config.scheduler.reminder_interval_seconds,
        )
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Scheduler stopped")
        return 0

    parser.error(f"unknown command {args.command}")
    return 2


def _build_store(app_config: AppConfig) -> SQLiteStore:
    if app_config.storage.type != "sqlite":
        raise ConfigError(f"Unsupported storage type: {app_config.storage.type}")
    return SQLiteStore(app_config.storage.path)


def _build_notifier(app_config: AppConfig, *, dry_run: bool) -> Notifier | None:
    if dry_run:
        return PreviewNotifier()

    api_key = os.getenv(app_config.email.api_key_env_var, "").strip()
    if not api_key:
        logger.error(
            "Missing email API key in environment variable %s",
            app_config.email.api_key_env_var,
        )
        return None
    return BrevoEmailNotifier(
        api_url=app_config.email.api_url,
        api_key=api_key,
        sender_name=app_config.email.sender_name,
        sender_email=app_config.email.sender_email,
        timeout_seconds=app_config.email.timeout_seconds,
    )


def _describe_result(result: ClosingResult) -> str:
    text = f"{result.opportunity_id}: {result.status.value}"
    if result.winning_bid_id:
        text += f" (winning bid {result.winning_bid_id} at {result.winning_bid_amount})"
    return text


if __name__ == "__main__":
    raise SystemExit(main())
