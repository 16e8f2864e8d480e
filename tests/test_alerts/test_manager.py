"""Tests for connection and anomaly alert lifecycle."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from bankfeed.alerts.manager import (
    AlertManager,
    AlertNotFoundError,
    should_create_alert,
    should_send_email,
)
from bankfeed.anomaly.detectors import (
    AnomalyResult,
    detect_duplicates,
    detect_missed_payment,
    detect_unexpected_expense,
)
from bankfeed.database.models import (
    AlertStatus,
    AnomalyType,
    BankAccount,
    ConnectionAlert,
    ConnectionAlertType,
    ExpectedTransaction,
    Severity,
    Transaction,
)
from bankfeed.database.repository import Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "bankfeed" / "database" / "migrations"

NOW = datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def account(repo):
    return repo.insert_bank_account(BankAccount(
        user_id="user-1", institution="CBA", connection_id="conn-1",
        external_account_id="ext-1", account_name="Offset",
    ))


@pytest.fixture
def manager(repo, clock):
    return AlertManager(repo, clock=clock)


def _alert(**kw) -> ConnectionAlert:
    defaults = dict(
        user_id="user-1", bank_account_id="acct-1",
        alert_type=ConnectionAlertType.SYNC_FAILED,
        created_at=NOW.isoformat(),
    )
    defaults.update(kw)
    return ConnectionAlert(**defaults)


def _expense_result(amount: float = 1000.0) -> AnomalyResult:
    return detect_unexpected_expense(
        Transaction(user_id="user-1", date="2026-03-10", amount=-amount, description="ACME ROOFING"),
        set(),
    )


class TestShouldCreateAlert:
    def test_no_active_alerts(self):
        assert should_create_alert([], ConnectionAlertType.DISCONNECTED) is True

    def test_same_type_active(self):
        active = [_alert(alert_type=ConnectionAlertType.DISCONNECTED)]
        assert should_create_alert(active, ConnectionAlertType.DISCONNECTED) is False

    def test_different_type_active(self):
        active = [_alert(alert_type=ConnectionAlertType.SYNC_FAILED)]
        assert should_create_alert(active, ConnectionAlertType.REQUIRES_REAUTH) is True

    def test_same_type_resolved(self):
        active = [_alert(alert_type=ConnectionAlertType.DISCONNECTED, status=AlertStatus.RESOLVED)]
        assert should_create_alert(active, ConnectionAlertType.DISCONNECTED) is True


class TestShouldSendEmail:
    def test_before_delay(self):
        alert = _alert(created_at=(NOW - timedelta(hours=23)).isoformat())
        assert should_send_email(alert, NOW) is False

    def test_at_delay(self):
        alert = _alert(created_at=(NOW - timedelta(hours=24)).isoformat())
        assert should_send_email(alert, NOW) is True

    def test_already_sent(self):
        alert = _alert(
            created_at=(NOW - timedelta(days=3)).isoformat(),
            email_sent_at=(NOW - timedelta(days=2)).isoformat(),
        )
        assert should_send_email(alert, NOW) is False

    def test_naive_timestamp_treated_as_utc(self):
        alert = _alert(created_at="2026-03-14T08:00:00")
        assert should_send_email(alert, NOW) is True

    def test_custom_delay(self):
        alert = _alert(created_at=(NOW - timedelta(hours=2)).isoformat())
        assert should_send_email(alert, NOW, delay_hours=1) is True


class TestConnectionAlerts:
    def test_opens_alert(self, manager, repo, account):
        alert = manager.record_connection_failure(
            account, ConnectionAlertType.DISCONNECTED, "timeout",
        )
        assert alert is not None
        stored = repo.get_connection_alert(alert.id)
        assert stored.status == AlertStatus.ACTIVE
        assert stored.error_message == "timeout"
        assert stored.created_at == NOW.isoformat()

    def test_repeated_failure_single_alert(self, manager, repo, account):
        manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        assert manager.record_connection_failure(
            account, ConnectionAlertType.SYNC_FAILED, "boom again",
        ) is None
        assert len(repo.get_active_connection_alerts(bank_account_id=account.id)) == 1

    def test_different_types_coexist(self, manager, repo, account):
        manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        manager.record_connection_failure(account, ConnectionAlertType.REQUIRES_REAUTH, "401")
        assert len(repo.get_active_connection_alerts(bank_account_id=account.id)) == 2

    def test_resolve_all_for_account(self, manager, repo, account):
        manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        manager.record_connection_failure(account, ConnectionAlertType.DISCONNECTED, "timeout")
        assert manager.resolve_connection_alerts(account.id) == 2
        assert repo.get_active_connection_alerts(bank_account_id=account.id) == []
        assert manager.resolve_connection_alerts(account.id) == 0

    def test_new_alert_after_resolution(self, manager, account):
        manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        manager.resolve_connection_alerts(account.id)
        assert manager.record_connection_failure(
            account, ConnectionAlertType.SYNC_FAILED, "boom",
        ) is not None

    def test_dismiss(self, manager, account):
        alert = manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        dismissed = manager.dismiss_connection_alert(alert.id, "user-1")
        assert dismissed.status == AlertStatus.DISMISSED
        assert dismissed.dismissed_at == NOW.isoformat()

    def test_dismiss_other_users_alert(self, manager, account):
        alert = manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        with pytest.raises(AlertNotFoundError):
            manager.dismiss_connection_alert(alert.id, "user-2")


class TestNotifications:
    def test_sends_once_after_delay(self, repo, clock, account):
        sent = []
        manager = AlertManager(repo, clock=clock, notify_fn=sent.append)
        manager.record_connection_failure(account, ConnectionAlertType.DISCONNECTED, "timeout")

        assert manager.send_pending_notifications() == 0

        clock.now = NOW + timedelta(hours=25)
        assert manager.send_pending_notifications() == 1
        assert [a.alert_type for a in sent] == [ConnectionAlertType.DISCONNECTED]

        assert manager.send_pending_notifications() == 0
        assert len(sent) == 1

    def test_failed_notification_retried_later(self, repo, clock, account):
        calls = []

        def flaky(alert):
            calls.append(alert.id)
            if len(calls) == 1:
                raise RuntimeError("smtp down")

        manager = AlertManager(repo, clock=clock, notify_fn=flaky)
        alert = manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        clock.now = NOW + timedelta(days=2)

        assert manager.send_pending_notifications() == 0
        assert repo.get_connection_alert(alert.id).email_sent_at is None
        assert manager.send_pending_notifications() == 1
        assert repo.get_connection_alert(alert.id).email_sent_at is not None

    def test_no_notifier_configured(self, manager, clock, account):
        manager.record_connection_failure(account, ConnectionAlertType.SYNC_FAILED, "boom")
        clock.now = NOW + timedelta(days=2)
        assert manager.send_pending_notifications() == 0


class TestAnomalyAlerts:
    @pytest.fixture
    def txn(self, repo, account):
        return repo.insert_transaction(Transaction(
            user_id="user-1", date="2026-03-10", amount=-1000.0,
            description="ACME ROOFING", bank_account_id=account.id,
            property_id="prop-1",
        ))

    def test_records_alert_scoped_to_transaction(self, manager, txn):
        created = manager.record_anomalies("user-1", [(txn, _expense_result())])
        assert len(created) == 1
        alert = created[0]
        assert alert.transaction_id == txn.id
        assert alert.expected_transaction_id is None
        assert alert.bank_account_id == txn.bank_account_id
        assert alert.property_id == "prop-1"
        assert alert.severity == Severity.INFO

    def test_active_alert_not_duplicated(self, manager, txn):
        manager.record_anomalies("user-1", [(txn, _expense_result())])
        assert manager.record_anomalies("user-1", [(txn, _expense_result())]) == []

    def test_duplicates_within_batch_collapsed(self, manager, txn):
        created = manager.record_anomalies(
            "user-1", [(txn, _expense_result()), (txn, _expense_result(2000.0))],
        )
        assert len(created) == 1

    def test_same_type_other_transaction_allowed(self, manager, repo, account, txn):
        other = repo.insert_transaction(Transaction(
            user_id="user-1", date="2026-03-11", amount=-1200.0,
            description="BETA PAINTING", bank_account_id=account.id,
        ))
        created = manager.record_anomalies(
            "user-1", [(txn, _expense_result()), (other, _expense_result())],
        )
        assert len(created) == 2

    def test_duplicate_pair_raises_one_alert(self, manager, repo, account):
        a, b = (
            repo.insert_transaction(Transaction(
                user_id="user-1", date="2026-03-10", amount=-150.0,
                description="AGL ENERGY BILL", bank_account_id=account.id,
                external_id=ext,
            ))
            for ext in ("x1", "x2")
        )
        results = [(a, detect_duplicates(a, [a, b])), (b, detect_duplicates(b, [a, b]))]
        created = manager.record_anomalies("user-1", results)
        assert len(created) == 1
        assert created[0].alert_type == AnomalyType.DUPLICATE_TRANSACTION
        assert created[0].transaction_id == a.id

    def test_duplicate_pair_not_realerted_from_other_side(self, manager, repo, account):
        a, b = (
            repo.insert_transaction(Transaction(
                user_id="user-1", date="2026-03-10", amount=-150.0,
                description="AGL ENERGY BILL", bank_account_id=account.id,
                external_id=ext,
            ))
            for ext in ("x1", "x2")
        )
        assert len(manager.record_anomalies("user-1", [(a, detect_duplicates(a, [b]))])) == 1
        assert manager.record_anomalies("user-1", [(b, detect_duplicates(b, [a]))]) == []

    def test_dismissed_alert_can_be_raised_again(self, manager, txn):
        alert = manager.record_anomalies("user-1", [(txn, _expense_result())])[0]
        manager.dismiss_anomaly(alert.id, "user-1")
        assert len(manager.record_anomalies("user-1", [(txn, _expense_result())])) == 1

    def test_missed_payment_scoped_to_expected(self, manager, repo):
        expected = repo.insert_expected_transaction(ExpectedTransaction(
            user_id="user-1", description="Rent", expected_date="2026-03-01",
            expected_amount=2400.0, property_id="prop-1",
        ))
        result = detect_missed_payment(expected, 3, NOW.date())
        created = manager.record_anomalies("user-1", [(expected, result)])
        assert created[0].expected_transaction_id == expected.id
        assert created[0].transaction_id is None
        assert created[0].alert_type == AnomalyType.MISSED_RENT
        assert manager.record_anomalies("user-1", [(expected, result)]) == []

    def test_dismiss_counts_once(self, manager, repo, txn):
        alert = manager.record_anomalies("user-1", [(txn, _expense_result())])[0]
        first = manager.dismiss_anomaly(alert.id, "user-1")
        second = manager.dismiss_anomaly(alert.id, "user-1")
        assert first.status == AlertStatus.DISMISSED
        assert first.dismissal_count == 1
        assert second.dismissal_count == 1

    def test_dismiss_unknown(self, manager):
        with pytest.raises(AlertNotFoundError):
            manager.dismiss_anomaly("missing", "user-1")

    def test_resolve(self, manager, txn):
        alert = manager.record_anomalies("user-1", [(txn, _expense_result())])[0]
        resolved = manager.resolve_anomaly(alert.id, "user-1")
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolved_at == NOW.isoformat()

    def test_resolve_other_user(self, manager, txn):
        alert = manager.record_anomalies("user-1", [(txn, _expense_result())])[0]
        with pytest.raises(AlertNotFoundError):
            manager.resolve_anomaly(alert.id, "user-2")

    def test_bulk_dismiss(self, manager, repo, account, txn):
        other = repo.insert_transaction(Transaction(
            user_id="user-1", date="2026-03-11", amount=-1200.0,
            description="BETA PAINTING", bank_account_id=account.id,
        ))
        created = manager.record_anomalies(
            "user-1", [(txn, _expense_result()), (other, _expense_result())],
        )
        ids = [a.id for a in created]
        assert manager.bulk_dismiss_anomalies(ids + ["missing"], "user-1") == 2
        assert manager.bulk_dismiss_anomalies(ids, "user-1") == 0
        assert manager.bulk_dismiss_anomalies([], "user-1") == 0

    def test_active_counts(self, manager, repo, txn):
        expected = repo.insert_expected_transaction(ExpectedTransaction(
            user_id="user-1", description="Rent", expected_date="2026-03-01",
            expected_amount=2400.0,
        ))
        manager.record_anomalies("user-1", [
            (txn, _expense_result()),
            (expected, detect_missed_payment(expected, 3, NOW.date())),
        ])
        assert manager.active_anomaly_counts("user-1") == {
            "info": 1, "warning": 0, "critical": 1, "total": 2,
        }
        assert manager.active_anomaly_counts("user-2")["total"] == 0
