"""CLI entry point for bankfeed scheduled jobs.

Commands:
    bankfeed sync ACCOUNT_ID            Sync one linked bank account
    bankfeed sync-all [--user USER]     Sync every linked account
    bankfeed categorize USER [--limit N]  Suggest categories for pending transactions
    bankfeed check-missed USER          Raise alerts for overdue expected payments
    bankfeed notify                     Send notifications for stale connection alerts
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on BANKFEED_LOG_LEVEL env var."""
    level = os.environ.get("BANKFEED_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from bankfeed.config import Config

    config_dir = os.environ.get("BANKFEED_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("BANKFEED_MIGRATIONS_DIR", default))


def _get_repo():
    """Create a Repository connected to the configured database, schema applied."""
    from bankfeed.database.repository import Repository

    db_path = os.environ.get("BANKFEED_DB_PATH", "bankfeed.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _make_claude_fn(config):
    """Create a Claude API callback for categorization.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    try:
        import anthropic

        client = anthropic.Anthropic(api_key=api_key)
        model = config.categorization["model"]

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model=model,
                max_tokens=256,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text

        return claude_fn
    except Exception as e:
        logger.warning("Claude API not available: %s", e)
        return None


def _get_client(config):
    """Create the aggregator client from settings and environment."""
    from bankfeed.aggregator.client import AggregatorClient

    settings = config.aggregator
    return AggregatorClient(
        base_url=os.environ.get("BASIQ_SERVER_URL") or settings["base_url"],
        api_key=os.environ.get("BASIQ_API_KEY"),
        api_version=str(settings["api_version"]),
        timeout=float(settings["timeout_seconds"]),
    )


def _get_engine(config, repo):
    from bankfeed.categorize.pipeline import CategorizationEngine
    from bankfeed.categorize.taxonomy import Taxonomy

    return CategorizationEngine(
        repo, Taxonomy.from_config(config),
        claude_fn=_make_claude_fn(config), config=config,
    )


def _log_notification(alert) -> None:
    """Default notifier: there is no mail transport, so record it in the log."""
    logger.warning(
        "Connection alert %s (%s) for account %s has been open since %s: %s",
        alert.id, alert.alert_type.value, alert.bank_account_id,
        alert.created_at, alert.error_message,
    )


def _get_coordinator(config, repo, client):
    from bankfeed.alerts.manager import AlertManager
    from bankfeed.sync.coordinator import SyncCoordinator

    return SyncCoordinator(
        repo, client, _get_engine(config, repo),
        AlertManager(repo, config=config), config=config,
    )


# ── Command handlers ─────────────────────────────────────


def cmd_sync(args: argparse.Namespace) -> int:
    """Sync a single bank account."""
    from bankfeed.sync.coordinator import (
        AccountNotFoundError,
        RateLimitedError,
        SyncFailedError,
        SyncInProgressError,
    )

    config = _get_config()
    repo = _get_repo()
    client = _get_client(config)
    try:
        coordinator = _get_coordinator(config, repo, client)
        try:
            result = coordinator.sync_account(args.account_id)
        except (AccountNotFoundError, RateLimitedError, SyncInProgressError, SyncFailedError) as e:
            print(f"Error: {e}")
            return 1

        print(
            f"{args.account_id}: {result.transactions_added} new,"
            f" {result.anomalies_created} anomalies,"
            f" {result.categorized} categorized"
        )
        if result.enrichment_errors:
            print(f"  ({result.enrichment_errors} enrichment step(s) failed, see log)")
        return 0
    finally:
        client.close()
        repo.close()


def cmd_sync_all(args: argparse.Namespace) -> int:
    """Sync every linked account, optionally for one user."""
    config = _get_config()
    repo = _get_repo()
    client = _get_client(config)
    try:
        coordinator = _get_coordinator(config, repo, client)
        summary = coordinator.sync_all(user_id=args.user)

        if not summary.outcomes:
            print("No accounts to sync.")
            return 0

        for outcome in summary.outcomes:
            if outcome.ok:
                print(f"  {outcome.account_id}: {outcome.result.transactions_added} new")
            else:
                print(f"  {outcome.account_id}: FAILED ({outcome.error})")

        print(f"\nSynced {len(summary.outcomes)} accounts, {len(summary.failed)} failed")
        return 1 if summary.failed else 0
    finally:
        client.close()
        repo.close()


def cmd_categorize(args: argparse.Namespace) -> int:
    """Suggest categories for a user's uncategorized transactions."""
    config = _get_config()
    repo = _get_repo()
    try:
        engine = _get_engine(config, repo)
        result = engine.categorize_pending(args.user, limit=args.limit)
        print(
            f"Processed {result.processed}: {result.suggested} suggested,"
            f" {result.failed} failed"
        )
        return 0
    finally:
        repo.close()


def cmd_check_missed(args: argparse.Namespace) -> int:
    """Raise missed-payment alerts for overdue expected transactions."""
    from bankfeed.alerts.manager import AlertManager
    from bankfeed.anomaly.detectors import AnomalyDetector

    config = _get_config()
    repo = _get_repo()
    try:
        found = AnomalyDetector(repo, config).check_missed_payments(args.user)
        created = AlertManager(repo, config=config).record_anomalies(args.user, found)
        print(f"{len(found)} overdue payments, {len(created)} new alerts")
        return 0
    finally:
        repo.close()


def cmd_notify(args: argparse.Namespace) -> int:
    """Send notifications for connection alerts open past the email delay."""
    from bankfeed.alerts.manager import AlertManager

    config = _get_config()
    repo = _get_repo()
    try:
        manager = AlertManager(repo, config=config, notify_fn=_log_notification)
        sent = manager.send_pending_notifications()
        print(f"Sent {sent} notifications")
        return 0
    finally:
        repo.close()


_COMMANDS = {
    "sync": cmd_sync,
    "sync-all": cmd_sync_all,
    "categorize": cmd_categorize,
    "check-missed": cmd_check_missed,
    "notify": cmd_notify,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="bankfeed",
        description="Bank feed sync and transaction intelligence jobs",
    )
    subparsers = parser.add_subparsers(dest="command")

    # sync
    sync_p = subparsers.add_parser("sync", help="Sync one bank account")
    sync_p.add_argument("account_id", help="Bank account ID")

    # sync-all
    sync_all_p = subparsers.add_parser("sync-all", help="Sync every linked account")
    sync_all_p.add_argument("--user", help="Only this user's accounts")

    # categorize
    cat_p = subparsers.add_parser("categorize", help="Suggest categories for pending transactions")
    cat_p.add_argument("user", help="User ID")
    cat_p.add_argument("--limit", type=int, default=50, help="Max transactions (default 50)")

    # check-missed
    missed_p = subparsers.add_parser("check-missed", help="Alert on overdue expected payments")
    missed_p.add_argument("user", help="User ID")

    # notify
    subparsers.add_parser("notify", help="Send notifications for stale connection alerts")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
