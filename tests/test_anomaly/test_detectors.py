"""Tests for anomaly detection checks and the storage-backed detector."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from bankfeed.alerts.manager import AlertManager
from bankfeed.anomaly.detectors import (
    AnomalyDetector,
    HistoricalAverage,
    calculate_similarity,
    detect_duplicates,
    detect_missed_payment,
    detect_unexpected_expense,
    detect_unusual_amount,
    extract_merchant,
    months_before,
)
from bankfeed.database.models import (
    AnomalyType,
    BankAccount,
    ExpectedStatus,
    ExpectedTransaction,
    Severity,
    Transaction,
)
from bankfeed.database.repository import Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "bankfeed" / "database" / "migrations"


def _txn(**kw) -> Transaction:
    defaults = dict(user_id="user-1", date="2026-03-10", amount=-100.0, description="AGL ENERGY")
    defaults.update(kw)
    return Transaction(**defaults)


class TestCalculateSimilarity:
    def test_identical_ignoring_case(self):
        assert calculate_similarity("AGL Energy", "agl energy") == 1.0

    def test_empty_string(self):
        assert calculate_similarity("", "agl") == 0.0
        assert calculate_similarity("agl", "") == 0.0

    def test_jaccard_of_words(self):
        # {agl, energy, sydney} vs {agl, energy, melbourne}: 2 / 4
        assert calculate_similarity("AGL ENERGY SYDNEY", "AGL ENERGY MELBOURNE") == 0.5

    def test_disjoint(self):
        assert calculate_similarity("foo bar", "baz qux") == 0.0


class TestExtractMerchant:
    def test_first_three_words_without_digits(self):
        assert extract_merchant("WOOLWORTHS 1234 SYDNEY NSW") == "WOOLWORTHS  SYDNEY"

    def test_short_description(self):
        assert extract_merchant("AGL") == "AGL"

    def test_trims(self):
        assert extract_merchant("POS 4455 ") == "POS"


class TestUnusualAmount:
    def test_needs_minimum_history(self):
        assert detect_unusual_amount(_txn(amount=-500.0), HistoricalAverage(100.0, 2)) is None

    def test_within_threshold(self):
        assert detect_unusual_amount(_txn(amount=-130.0), HistoricalAverage(100.0, 5)) is None

    def test_flags_higher(self):
        result = detect_unusual_amount(_txn(amount=-150.0), HistoricalAverage(100.0, 5))
        assert result.alert_type == AnomalyType.UNUSUAL_AMOUNT
        assert result.severity == Severity.WARNING
        assert result.description == "AGL ENERGY of $150.00 is 50% higher than usual ($100.00 avg)"
        assert result.suggested_action == "Review transaction or mark as expected"
        meta = json.loads(result.metadata)
        assert meta == {"amount": 150.0, "average": 100.0, "deviation": 50, "historicalCount": 5}

    def test_just_over_threshold(self):
        result = detect_unusual_amount(_txn(amount=-131.0), HistoricalAverage(100.0, 3))
        assert result.severity == Severity.WARNING
        assert "31% higher" in result.description
        assert json.loads(result.metadata)["deviation"] == 31

    def test_flags_lower(self):
        result = detect_unusual_amount(_txn(amount=-40.0), HistoricalAverage(100.0, 3))
        assert "60% lower" in result.description

    def test_zero_average_never_flags(self):
        assert detect_unusual_amount(_txn(amount=-40.0), HistoricalAverage(0.0, 10)) is None

    def test_custom_threshold(self):
        assert detect_unusual_amount(
            _txn(amount=-115.0), HistoricalAverage(100.0, 3), threshold=0.1,
        ) is not None


class TestDuplicates:
    def test_same_amount_adjacent_day_similar_description(self):
        txn = _txn(id="a", description="AGL ENERGY SYDNEY")
        other = _txn(id="b", date="2026-03-11", description="AGL ENERGY")
        result = detect_duplicates(txn, [other])
        assert result.alert_type == AnomalyType.DUPLICATE_TRANSACTION
        assert result.severity == Severity.WARNING
        assert result.description == (
            'Possible duplicate: Two $100.00 transactions from "AGL ENERGY SYDNEY" on similar dates'
        )
        meta = json.loads(result.metadata)
        assert meta["transactionId"] == "a"
        assert meta["duplicateId"] == "b"

    def test_ignores_itself(self):
        txn = _txn(id="a")
        assert detect_duplicates(txn, [txn]) is None

    def test_amount_outside_tolerance(self):
        assert detect_duplicates(_txn(id="a"), [_txn(id="b", amount=-100.02)]) is None

    def test_amount_within_tolerance(self):
        assert detect_duplicates(_txn(id="a"), [_txn(id="b", amount=-100.005)]) is not None

    def test_date_too_far(self):
        assert detect_duplicates(_txn(id="a"), [_txn(id="b", date="2026-03-12")]) is None

    def test_similarity_must_exceed_half(self):
        txn = _txn(id="a", description="AGL ENERGY SYDNEY")
        other = _txn(id="b", description="AGL ENERGY MELBOURNE")  # exactly 0.5
        assert detect_duplicates(txn, [other]) is None

    def test_similarity_above_half_flags(self):
        txn = _txn(id="a", description="AGL ENERGY BILL SYDNEY")
        other = _txn(id="b", description="AGL ENERGY BILL MELBOURNE")  # 3 / 5
        result = detect_duplicates(txn, [other])
        assert result.alert_type == AnomalyType.DUPLICATE_TRANSACTION
        assert json.loads(result.metadata)["similarity"] == pytest.approx(0.6)

    def test_similarity_below_half(self):
        txn = _txn(id="a", description="AGL ENERGY BILL SYDNEY")
        other = _txn(id="b", description="AGL ENERGY PAYMENT")  # 2 / 5
        assert detect_duplicates(txn, [other]) is None


class TestUnexpectedExpense:
    def test_flags_large_unknown(self):
        result = detect_unexpected_expense(_txn(amount=-1000.0, description="ACME ROOFING CO"), set())
        assert result.alert_type == AnomalyType.UNEXPECTED_EXPENSE
        assert result.severity == Severity.INFO
        assert result.description == 'New expense of $1000.00 from "ACME ROOFING CO"'
        assert json.loads(result.metadata) == {"amount": 1000.0, "merchant": "ACME ROOFING CO"}

    def test_known_merchant(self):
        assert detect_unexpected_expense(
            _txn(amount=-1000.0, description="ACME ROOFING CO 42"), {"ACME ROOFING CO"},
        ) is None

    def test_income_ignored(self):
        assert detect_unexpected_expense(_txn(amount=5000.0), set()) is None

    def test_below_minimum(self):
        assert detect_unexpected_expense(_txn(amount=-499.99), set()) is None

    def test_exactly_minimum_flags(self):
        assert detect_unexpected_expense(_txn(amount=-500.0), set()) is not None


class TestMissedPayment:
    def _expected(self, **kw):
        defaults = dict(
            user_id="user-1", description="Rent", expected_date="2026-03-01",
            expected_amount=2400.0, property_label="12 Smith St",
        )
        defaults.update(kw)
        return ExpectedTransaction(**defaults)

    def test_flags_once_delay_reached(self):
        result = detect_missed_payment(self._expected(), 3, date(2026, 3, 4))
        assert result.alert_type == AnomalyType.MISSED_RENT
        assert result.severity == Severity.CRITICAL
        assert result.description == (
            "Rent of $2400.00 expected on 2026-03-01 from 12 Smith St has not been received"
        )
        assert json.loads(result.metadata)["daysPastDue"] == 3

    def test_not_yet_due(self):
        assert detect_missed_payment(self._expected(), 3, date(2026, 3, 3)) is None

    def test_unknown_property(self):
        result = detect_missed_payment(self._expected(property_label=None), 0, date(2026, 3, 1))
        assert "from Unknown property" in result.description


class TestMonthsBefore:
    @pytest.mark.parametrize("day, months, expected", [
        (date(2026, 8, 15), 6, date(2026, 2, 15)),
        (date(2026, 3, 10), 6, date(2025, 9, 10)),
        (date(2026, 8, 31), 6, date(2026, 2, 28)),
    ])
    def test_months_before(self, day, months, expected):
        assert months_before(day, months) == expected


# ── Storage-backed detector ───────────────────────────────


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def account(repo):
    return repo.insert_bank_account(BankAccount(
        user_id="user-1", institution="CBA", connection_id="conn-1",
        external_account_id="ext-1", account_name="Offset",
    ))


@pytest.fixture
def detector(repo):
    return AnomalyDetector(repo, clock=lambda: datetime(2026, 3, 15, tzinfo=timezone.utc))


class TestAnomalyDetector:
    def test_batch_merchant_is_not_known_to_itself(self, repo, account, detector):
        txn = repo.insert_transaction(_txn(
            bank_account_id=account.id, amount=-1000.0, description="ACME ROOFING CO",
        ))
        found = detector.check_transactions("user-1", [txn], [txn])
        assert [r.alert_type for _, r in found] == [AnomalyType.UNEXPECTED_EXPENSE]

    def test_previously_seen_merchant_is_known(self, repo, account, detector):
        repo.insert_transaction(_txn(
            bank_account_id=account.id, date="2026-01-05", amount=-900.0,
            description="ACME ROOFING CO",
        ))
        txn = repo.insert_transaction(_txn(
            bank_account_id=account.id, amount=-1000.0, description="ACME ROOFING CO",
        ))
        found = detector.check_transactions("user-1", [txn], [txn])
        assert all(r.alert_type != AnomalyType.UNEXPECTED_EXPENSE for _, r in found)

    def test_merchant_seen_on_another_property_is_not_known(self, repo, account, detector):
        repo.insert_transaction(_txn(
            bank_account_id=account.id, property_id="prop-other", date="2026-01-05",
            amount=-900.0, description="ACME ROOFING CO",
        ))
        txn = repo.insert_transaction(_txn(
            bank_account_id=account.id, property_id="prop-1", amount=-1000.0,
            description="ACME ROOFING CO",
        ))
        found = detector.check_transactions("user-1", [txn], [txn])
        assert AnomalyType.UNEXPECTED_EXPENSE in [r.alert_type for _, r in found]

    def test_merchant_seen_on_same_property_is_known(self, repo, account, detector):
        repo.insert_transaction(_txn(
            bank_account_id=account.id, property_id="prop-1", date="2026-01-05",
            amount=-900.0, description="ACME ROOFING CO",
        ))
        txn = repo.insert_transaction(_txn(
            bank_account_id=account.id, property_id="prop-1", amount=-1000.0,
            description="ACME ROOFING CO",
        ))
        found = detector.check_transactions("user-1", [txn], [txn])
        assert AnomalyType.UNEXPECTED_EXPENSE not in [r.alert_type for _, r in found]

    def test_unusual_amount_from_history(self, repo, account, detector):
        for day in ("2026-01-05", "2026-02-05", "2026-03-01"):
            repo.insert_transaction(_txn(bank_account_id=account.id, date=day, amount=-100.0))
        txn = repo.insert_transaction(_txn(bank_account_id=account.id, amount=-200.0))
        found = detector.check_transactions("user-1", [txn], [txn])
        assert [r.alert_type for _, r in found] == [AnomalyType.UNUSUAL_AMOUNT]

    def test_history_window_excludes_old_transactions(self, repo, account, detector):
        for day in ("2025-01-05", "2025-02-05", "2025-03-01"):
            repo.insert_transaction(_txn(bank_account_id=account.id, date=day, amount=-100.0))
        txn = repo.insert_transaction(_txn(bank_account_id=account.id, amount=-200.0))
        assert detector.historical_average("user-1", txn.description, [txn.id]).count == 0

    def test_duplicates_within_batch_alert_once(self, repo, account, detector):
        a = repo.insert_transaction(_txn(bank_account_id=account.id, external_id="x1"))
        b = repo.insert_transaction(_txn(bank_account_id=account.id, external_id="x2"))
        recent = repo.get_recent_transactions(account.id)
        found = detector.check_transactions("user-1", [a, b], recent)
        dupes = [(t, r) for t, r in found if r.alert_type == AnomalyType.DUPLICATE_TRANSACTION]
        assert sorted(t.id for t, _ in dupes) == sorted([a.id, b.id])

        created = AlertManager(repo).record_anomalies("user-1", dupes)
        assert len(created) == 1

    def test_empty_batch(self, detector):
        assert detector.check_transactions("user-1", [], []) == []

    def test_check_missed_payments(self, repo, detector):
        overdue = repo.insert_expected_transaction(ExpectedTransaction(
            user_id="user-1", description="Rent", expected_date="2026-03-10",
            expected_amount=2400.0,
        ))
        repo.insert_expected_transaction(ExpectedTransaction(
            user_id="user-1", description="Rent", expected_date="2026-03-14",
            expected_amount=2400.0,
        ))
        repo.insert_expected_transaction(ExpectedTransaction(
            user_id="user-1", description="Rent", expected_date="2026-03-01",
            expected_amount=2400.0, status=ExpectedStatus.MATCHED,
        ))
        found = detector.check_missed_payments("user-1")
        assert [e.id for e, _ in found] == [overdue.id]
