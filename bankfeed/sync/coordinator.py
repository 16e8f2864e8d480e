"""Sync coordinator: one manual or scheduled sync of a linked bank account.

Orchestrate: rate check → mark pending → refresh + fetch → ingest →
anomaly check → categorize → status update.

Fetch and ingest failures fail the sync, update the account's connection
status, and open a connection alert. Enrichment (anomalies and
categorization) is best effort: its failures are logged and counted,
and the newly ingested transactions stay.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from bankfeed.aggregator.client import AggregatorClient, AggregatorTransaction
from bankfeed.alerts.manager import AlertManager
from bankfeed.anomaly.detectors import AnomalyDetector
from bankfeed.categorize.pipeline import CategorizationEngine
from bankfeed.config import Config, settings_section
from bankfeed.database.models import (
    BankAccount,
    ConnectionAlertType,
    ConnectionStatus,
    SyncStatus,
    Transaction,
    TransactionType,
)
from bankfeed.database.repository import DuplicateTransactionError, Repository

logger = logging.getLogger(__name__)

MANUAL_SYNC_COOLDOWN_MINUTES = 15


class AccountNotFoundError(Exception):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Bank account not found: {account_id}")


class RateLimitedError(Exception):
    """Raised when a manual sync is attempted inside the cooldown window."""

    def __init__(self, retry_after: datetime, message: str):
        self.retry_after = retry_after
        super().__init__(message)


class SyncInProgressError(Exception):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Sync already in progress for account {account_id}")


class SyncFailedError(Exception):
    def __init__(self, message: str, alert_type: ConnectionAlertType):
        self.alert_type = alert_type
        super().__init__(message)


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after: datetime | None = None
    message: str | None = None


@dataclass
class SyncResult:
    transactions_added: int = 0
    anomalies_created: int = 0
    categorized: int = 0
    enrichment_errors: int = 0


@dataclass
class AccountSyncOutcome:
    """One account's outcome within sync_all."""
    account_id: str
    result: SyncResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncAllResult:
    outcomes: list[AccountSyncOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[AccountSyncOutcome]:
        return [o for o in self.outcomes if not o.ok]


def check_rate_limit(
    last_manual_sync_at: datetime | None,
    now: datetime,
    cooldown_minutes: float = MANUAL_SYNC_COOLDOWN_MINUTES,
) -> RateLimitResult:
    """Allow a manual sync only once per cooldown window."""
    if last_manual_sync_at is None:
        return RateLimitResult(allowed=True)

    retry_after = last_manual_sync_at + timedelta(minutes=cooldown_minutes)
    if now >= retry_after:
        return RateLimitResult(allowed=True)

    minutes_left = max(1, math.ceil((retry_after - now).total_seconds() / 60))
    return RateLimitResult(
        allowed=False,
        retry_after=retry_after,
        message=f"Please wait {minutes_left} minute(s) before syncing again",
    )


def map_status_to_alert_type(status_code: int | None) -> ConnectionAlertType:
    """Classify an upstream HTTP status into a connection alert type."""
    if status_code in (401, 403):
        return ConnectionAlertType.REQUIRES_REAUTH
    if status_code in (408, 504):
        return ConnectionAlertType.DISCONNECTED
    return ConnectionAlertType.SYNC_FAILED


def alert_type_to_connection_status(alert_type: ConnectionAlertType) -> ConnectionStatus:
    if alert_type == ConnectionAlertType.DISCONNECTED:
        return ConnectionStatus.DISCONNECTED
    return ConnectionStatus.ERROR


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class SyncCoordinator:
    """Runs account syncs.

    Args:
        repo: Database repository.
        client: Aggregator client for refresh/fetch.
        engine: Categorization engine for new transactions.
        alerts: Alert manager for connection and anomaly alerts.
        config: Application config (sync/anomaly settings), or None for defaults.
        clock: Callable returning the current UTC datetime.
        detector: Optional AnomalyDetector; built from repo/config if omitted.
    """

    def __init__(
        self,
        repo: Repository,
        client: AggregatorClient,
        engine: CategorizationEngine,
        alerts: AlertManager,
        config: Config | None = None,
        clock=None,
        detector: AnomalyDetector | None = None,
    ):
        self.repo = repo
        self.client = client
        self.engine = engine
        self.alerts = alerts
        self.settings = settings_section(config, "sync")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.detector = detector or AnomalyDetector(repo, config, clock=self._clock)

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def _get_account(self, account_id: str) -> BankAccount:
        account = self.repo.get_bank_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    # ── Sync ────────────────────────────────────────────────

    def sync_account(self, account_id: str) -> SyncResult:
        """Sync one account.

        Raises:
            AccountNotFoundError: Unknown account.
            SyncInProgressError: Another sync of this account is running.
            RateLimitedError: Inside the manual sync cooldown.
            SyncFailedError: Fetch or ingest failed.
        """
        lock = self._account_lock(account_id)
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(account_id)
        try:
            return self._sync(account_id)
        finally:
            lock.release()

    def _sync(self, account_id: str) -> SyncResult:
        account = self._get_account(account_id)
        now = self._clock()

        rate = check_rate_limit(
            _parse_ts(account.last_manual_sync_at), now,
            float(self.settings["manual_sync_cooldown_minutes"]),
        )
        if not rate.allowed:
            logger.info("Sync of account %s rate limited until %s", account_id, rate.retry_after)
            raise RateLimitedError(rate.retry_after, rate.message)

        self.repo.update_bank_account(
            account_id,
            last_manual_sync_at=now.isoformat(),
            last_sync_status=SyncStatus.PENDING,
        )
        logger.info("Sync started for account %s", account_id)
        started = time.monotonic()

        new_txns: list[Transaction] = []
        try:
            self.client.refresh_connection(account.connection_id)
            from_date = account.last_synced_at[:10] if account.last_synced_at else None
            fetched = self.client.get_transactions(
                account.user_id, account.external_account_id, from_date=from_date,
            )
            self._ingest(account, fetched, new_txns)
        except Exception as e:
            if new_txns:
                # rows inserted before the failure stay, so they still get checked
                self._enrich(account, new_txns, SyncResult(transactions_added=len(new_txns)))
            self._fail(account, e)

        result = SyncResult(transactions_added=len(new_txns))
        if new_txns:
            self._enrich(account, new_txns, result)

        self.repo.update_bank_account(
            account_id,
            connection_status=ConnectionStatus.CONNECTED,
            last_sync_status=SyncStatus.SUCCESS,
            last_sync_error=None,
            last_synced_at=self._clock().isoformat(),
        )
        self.alerts.resolve_connection_alerts(account_id)

        logger.info(
            "Sync finished for account %s in %.1fs: %d new, %d anomalies,"
            " %d categorized, %d enrichment errors",
            account_id, time.monotonic() - started, result.transactions_added,
            result.anomalies_created, result.categorized, result.enrichment_errors,
        )
        return result

    def _ingest(
        self,
        account: BankAccount,
        fetched: list[AggregatorTransaction],
        inserted: list[Transaction],
    ) -> None:
        """Insert fetched transactions into ``inserted``, skipping any already ingested."""
        duplicates = 0
        for item in fetched:
            txn = Transaction(
                user_id=account.user_id,
                bank_account_id=account.id,
                external_id=item.id,
                property_id=account.default_property_id,
                date=item.post_date,
                amount=round(item.signed_amount, 2),
                description=item.description,
                transaction_type=(
                    TransactionType.INCOME if item.direction == "credit"
                    else TransactionType.EXPENSE
                ),
            )
            try:
                self.repo.insert_transaction(txn)
            except DuplicateTransactionError:
                duplicates += 1
                continue
            inserted.append(txn)

        if duplicates:
            logger.debug("Account %s: %d already-ingested transactions skipped", account.id, duplicates)

    def _enrich(
        self, account: BankAccount, new_txns: list[Transaction], result: SyncResult
    ) -> None:
        try:
            recent = self.repo.get_recent_transactions(
                account.id, limit=int(self.settings["recent_window"]),
            )
            found = self.detector.check_transactions(account.user_id, new_txns, recent)
            created = self.alerts.record_anomalies(
                account.user_id, found, bank_account_id=account.id,
            )
            result.anomalies_created = len(created)
        except Exception:
            logger.exception("Anomaly detection failed for account %s", account.id)
            result.enrichment_errors += 1

        try:
            batch = self.engine.categorize_pending(
                account.user_id,
                bank_account_id=account.id,
                limit=int(self.settings["categorize_batch_size"]),
            )
            result.categorized = batch.suggested
        except Exception:
            logger.exception("Categorization failed for account %s", account.id)
            result.enrichment_errors += 1

    def _fail(self, account: BankAccount, error: Exception):
        status_code = getattr(error, "status_code", None)
        alert_type = map_status_to_alert_type(status_code)
        message = str(error) or type(error).__name__

        self.repo.update_bank_account(
            account.id,
            connection_status=alert_type_to_connection_status(alert_type),
            last_sync_status=SyncStatus.FAILED,
            last_sync_error=message,
        )
        self.alerts.record_connection_failure(account, alert_type, message)
        logger.warning(
            "Sync failed for account %s (status=%s, alert=%s): %s",
            account.id, status_code, alert_type.value, message,
        )
        raise SyncFailedError(f"Sync failed: {message}", alert_type) from error

    # ── Batch & reconnect ───────────────────────────────────

    def sync_all(self, user_id: str | None = None) -> SyncAllResult:
        """Sync every account not waiting on the user to re-authorize, one at a time."""
        summary = SyncAllResult()
        eligible = (
            ConnectionStatus.CONNECTED,
            ConnectionStatus.ERROR,
            ConnectionStatus.DISCONNECTED,
        )
        for account in self.repo.list_bank_accounts(user_id):
            if account.connection_status not in eligible:
                logger.debug(
                    "Skipping account %s (%s)", account.id, account.connection_status.value,
                )
                continue
            outcome = AccountSyncOutcome(account_id=account.id)
            try:
                outcome.result = self.sync_account(account.id)
            except (RateLimitedError, SyncInProgressError, SyncFailedError) as e:
                outcome.error = str(e)
            except Exception as e:
                logger.exception("Unexpected error syncing account %s", account.id)
                outcome.error = str(e) or type(e).__name__
            summary.outcomes.append(outcome)
        return summary

    def reconnect(self, account_id: str) -> str:
        """Return a consent URL the account owner can use to re-link the bank."""
        account = self._get_account(account_id)
        return self.client.create_auth_link(account.user_id)
