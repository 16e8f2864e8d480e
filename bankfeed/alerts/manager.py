"""Alert lifecycle for bank connection problems and transaction anomalies.

Connection alerts: at most one active alert per (account, type). They
are resolved in bulk when the account next syncs successfully, and an
email goes out once an alert has been active for a day.

Anomaly alerts: deduplicated on (type, subject). The subject is the
transaction for transaction-level checks and the expected transaction
for missed payments. A duplicate pair is one subject: whichever side is
reported first gets the alert.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone

from bankfeed.anomaly.detectors import AnomalyResult
from bankfeed.config import Config, settings_section
from bankfeed.database.models import (
    AlertStatus,
    AnomalyAlert,
    AnomalyType,
    BankAccount,
    ConnectionAlert,
    ConnectionAlertType,
    ExpectedTransaction,
    Severity,
    Transaction,
)
from bankfeed.database.repository import Repository

logger = logging.getLogger(__name__)

EMAIL_DELAY_HOURS = 24


class AlertNotFoundError(Exception):
    """Raised when an alert doesn't exist or belongs to another user."""

    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert not found: {alert_id}")


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _related_transaction_ids(txn: Transaction, result: AnomalyResult) -> frozenset[str]:
    """The transaction ids an alert is about: both sides of a duplicate pair."""
    if result.alert_type != AnomalyType.DUPLICATE_TRANSACTION or not result.metadata:
        return frozenset([txn.id])
    meta = json.loads(result.metadata)
    return frozenset(i for i in (txn.id, meta.get("duplicateId")) if i)


def should_create_alert(
    active_alerts: list[ConnectionAlert], new_type: ConnectionAlertType
) -> bool:
    """True unless an active alert of the same type already exists."""
    return not any(
        a.alert_type == new_type and a.status == AlertStatus.ACTIVE
        for a in active_alerts
    )


def should_send_email(
    alert: ConnectionAlert,
    now: datetime,
    delay_hours: float = EMAIL_DELAY_HOURS,
) -> bool:
    """True once an unsent alert has been open for at least delay_hours."""
    if alert.email_sent_at is not None:
        return False
    return now - _parse_ts(alert.created_at) >= timedelta(hours=delay_hours)


class AlertManager:
    def __init__(
        self,
        repo: Repository,
        clock=None,
        notify_fn=None,
        config: Config | None = None,
    ):
        self.repo = repo
        self.notify_fn = notify_fn
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.email_delay_hours = float(settings_section(config, "alerts")["email_delay_hours"])

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    # ── Connection alerts ───────────────────────────────────

    def record_connection_failure(
        self,
        account: BankAccount,
        alert_type: ConnectionAlertType,
        message: str,
    ) -> ConnectionAlert | None:
        """Open a connection alert unless one of this type is already active."""
        active = self.repo.get_active_connection_alerts(bank_account_id=account.id)
        if not should_create_alert(active, alert_type):
            logger.debug(
                "Account %s already has an active %s alert", account.id, alert_type.value,
            )
            return None

        alert = ConnectionAlert(
            user_id=account.user_id,
            bank_account_id=account.id,
            alert_type=alert_type,
            error_message=message,
            created_at=self._now_iso(),
        )
        self.repo.insert_connection_alert(alert)
        logger.warning(
            "Opened %s alert for account %s: %s", alert_type.value, account.id, message,
        )
        return alert

    def resolve_connection_alerts(self, bank_account_id: str) -> int:
        count = self.repo.resolve_connection_alerts(bank_account_id, self._now_iso())
        if count:
            logger.info("Resolved %d connection alerts for account %s", count, bank_account_id)
        return count

    def dismiss_connection_alert(self, alert_id: str, user_id: str) -> ConnectionAlert:
        alert = self.repo.get_connection_alert(alert_id, user_id=user_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        self.repo.dismiss_connection_alert(alert_id, self._now_iso())
        return self.repo.get_connection_alert(alert_id)

    def send_pending_notifications(self) -> int:
        """Notify for every active alert past the email delay. Returns the sent count."""
        if self.notify_fn is None:
            return 0

        now = self._clock()
        sent = 0
        for alert in self.repo.get_active_connection_alerts():
            if not should_send_email(alert, now, self.email_delay_hours):
                continue
            try:
                self.notify_fn(alert)
            except Exception:
                logger.exception("Failed to send notification for alert %s", alert.id)
                continue
            self.repo.mark_connection_alert_emailed(alert.id, now.isoformat())
            sent += 1
        return sent

    # ── Anomaly alerts ──────────────────────────────────────

    def record_anomalies(
        self,
        user_id: str,
        results: list[tuple[Transaction | ExpectedTransaction, AnomalyResult]],
        bank_account_id: str | None = None,
    ) -> list[AnomalyAlert]:
        """Persist anomaly results, skipping any already active for the same subject."""
        created: list[AnomalyAlert] = []
        seen: set[tuple[AnomalyType, frozenset[str]]] = set()

        for subject, result in results:
            if isinstance(subject, ExpectedTransaction):
                scope = {"expected_transaction_id": subject.id}
                related = frozenset([subject.id])
            else:
                scope = {"transaction_id": subject.id}
                related = _related_transaction_ids(subject, result)

            key = (result.alert_type, related)
            if key in seen:
                continue
            seen.add(key)

            if self._has_active(user_id, result.alert_type, scope, related):
                logger.debug("Skipping %s for %s: already active", result.alert_type.value, subject.id)
                continue

            alert = AnomalyAlert(
                user_id=user_id,
                property_id=subject.property_id,
                bank_account_id=bank_account_id or getattr(subject, "bank_account_id", None),
                alert_type=result.alert_type,
                severity=result.severity,
                description=result.description,
                suggested_action=result.suggested_action,
                metadata=result.metadata,
                created_at=self._now_iso(),
                **scope,
            )
            self.repo.insert_anomaly_alert(alert)
            created.append(alert)

        if created:
            logger.info("Created %d anomaly alerts for user %s", len(created), user_id)
        return created

    def _has_active(
        self, user_id: str, alert_type: AnomalyType, scope: dict, related: frozenset[str]
    ) -> bool:
        if "expected_transaction_id" in scope:
            active = self.repo.get_active_anomaly_alerts(user_id, **scope)
        else:
            active = [
                a for txn_id in sorted(related)
                for a in self.repo.get_active_anomaly_alerts(user_id, transaction_id=txn_id)
            ]
        return any(a.alert_type == alert_type for a in active)

    def dismiss_anomaly(self, alert_id: str, user_id: str) -> AnomalyAlert:
        alert = self.repo.get_anomaly_alert(alert_id, user_id=user_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        self.repo.dismiss_anomaly_alert(alert_id, self._now_iso())
        return self.repo.get_anomaly_alert(alert_id)

    def resolve_anomaly(self, alert_id: str, user_id: str) -> AnomalyAlert:
        alert = self.repo.get_anomaly_alert(alert_id, user_id=user_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        self.repo.resolve_anomaly_alert(alert_id, self._now_iso())
        return self.repo.get_anomaly_alert(alert_id)

    def bulk_dismiss_anomalies(self, alert_ids: list[str], user_id: str) -> int:
        return self.repo.bulk_dismiss_anomaly_alerts(alert_ids, user_id, self._now_iso())

    def active_anomaly_counts(self, user_id: str) -> dict[str, int]:
        by_severity = self.repo.count_active_anomalies_by_severity(user_id)
        counts = {s.value: by_severity.get(s.value, 0) for s in Severity}
        counts["total"] = sum(by_severity.values())
        return counts
