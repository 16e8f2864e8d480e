"""Anomaly detection over newly synced transactions.

Four checks, each a pure function returning an AnomalyResult or None:
  - unusual_amount: spend far from this merchant's historical average
  - duplicate_transaction: same amount, adjacent date, similar description
  - unexpected_expense: large outflow to a merchant never seen before
  - missed_rent: an expected recurring payment that is overdue

AnomalyDetector gathers the storage context these checks need.
"""

from __future__ import annotations

import calendar
import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone

from bankfeed.config import Config, settings_section
from bankfeed.database.models import (
    AnomalyType,
    ExpectedTransaction,
    Severity,
    Transaction,
)
from bankfeed.database.repository import Repository

logger = logging.getLogger(__name__)

UNUSUAL_AMOUNT_THRESHOLD = 0.30
UNEXPECTED_EXPENSE_MIN = 500.0
MIN_HISTORICAL_COUNT = 3
DUPLICATE_DATE_TOLERANCE_DAYS = 1
DUPLICATE_AMOUNT_TOLERANCE = 0.01
DUPLICATE_SIMILARITY_MIN = 0.5
DEFAULT_ALERT_DELAY_DAYS = 3

_WS_RE = re.compile(r"\s+")
_DIGITS_RE = re.compile(r"[0-9]")


@dataclass
class AnomalyResult:
    alert_type: AnomalyType
    severity: Severity
    description: str
    suggested_action: str
    metadata: str  # JSON


@dataclass
class HistoricalAverage:
    avg: float
    count: int


def calculate_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the lower-cased whitespace-separated word sets."""
    s1, s2 = a.lower(), b.lower()
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    words1 = set(_WS_RE.split(s1))
    words2 = set(_WS_RE.split(s2))
    return len(words1 & words2) / len(words1 | words2)


def extract_merchant(description: str) -> str:
    """First three words with digits removed, e.g. 'WOOLWORTHS 1234 SYDNEY' -> 'WOOLWORTHS  SYDNEY'."""
    head = " ".join(_WS_RE.split(description)[:3])
    return _DIGITS_RE.sub("", head).strip()


def _parse_date(value: str) -> date:
    return date.fromisoformat(value[:10])


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def detect_unusual_amount(
    txn: Transaction,
    historical: HistoricalAverage,
    threshold: float = UNUSUAL_AMOUNT_THRESHOLD,
    min_count: int = MIN_HISTORICAL_COUNT,
) -> AnomalyResult | None:
    if historical.count < min_count or historical.avg <= 0:
        return None

    amount = abs(txn.amount)
    deviation = abs(amount - historical.avg) / historical.avg
    if deviation <= threshold:
        return None

    percent = _round_half_up(deviation * 100)
    direction = "higher" if amount > historical.avg else "lower"
    return AnomalyResult(
        alert_type=AnomalyType.UNUSUAL_AMOUNT,
        severity=Severity.WARNING,
        description=(
            f"{txn.description} of ${amount:.2f} is {percent}% {direction}"
            f" than usual (${historical.avg:.2f} avg)"
        ),
        suggested_action="Review transaction or mark as expected",
        metadata=json.dumps({
            "amount": amount,
            "average": historical.avg,
            "deviation": percent,
            "historicalCount": historical.count,
        }),
    )


def detect_duplicates(
    txn: Transaction,
    recent: list[Transaction],
) -> AnomalyResult | None:
    """Flag the first recent transaction that looks like the same charge."""
    txn_date = _parse_date(txn.date)
    for other in recent:
        if other.id == txn.id:
            continue
        if abs(txn.amount - other.amount) > DUPLICATE_AMOUNT_TOLERANCE:
            continue
        if abs((txn_date - _parse_date(other.date)).days) > DUPLICATE_DATE_TOLERANCE_DAYS:
            continue

        similarity = calculate_similarity(txn.description, other.description)
        if similarity > DUPLICATE_SIMILARITY_MIN:
            return AnomalyResult(
                alert_type=AnomalyType.DUPLICATE_TRANSACTION,
                severity=Severity.WARNING,
                description=(
                    f"Possible duplicate: Two ${abs(txn.amount):.2f} transactions"
                    f' from "{txn.description}" on similar dates'
                ),
                suggested_action="Review both transactions - dismiss if intentional",
                metadata=json.dumps({
                    "transactionId": txn.id,
                    "duplicateId": other.id,
                    "amount": txn.amount,
                    "similarity": similarity,
                }),
            )
    return None


def detect_unexpected_expense(
    txn: Transaction,
    known_merchants: set[str],
    minimum: float = UNEXPECTED_EXPENSE_MIN,
) -> AnomalyResult | None:
    if txn.amount >= 0:
        return None
    amount = abs(txn.amount)
    if amount < minimum:
        return None

    merchant = extract_merchant(txn.description)
    if merchant in known_merchants:
        return None

    return AnomalyResult(
        alert_type=AnomalyType.UNEXPECTED_EXPENSE,
        severity=Severity.INFO,
        description=f'New expense of ${amount:.2f} from "{txn.description}"',
        suggested_action="Categorise and verify this transaction",
        metadata=json.dumps({"amount": amount, "merchant": merchant}),
    )


def detect_missed_payment(
    expected: ExpectedTransaction,
    alert_delay_days: int,
    today: date,
) -> AnomalyResult | None:
    days_past_due = (today - _parse_date(expected.expected_date)).days
    if days_past_due < alert_delay_days:
        return None

    property_name = expected.property_label or "Unknown property"
    return AnomalyResult(
        alert_type=AnomalyType.MISSED_RENT,
        severity=Severity.CRITICAL,
        description=(
            f"{expected.description} of ${expected.expected_amount:.2f} expected on"
            f" {expected.expected_date} from {property_name} has not been received"
        ),
        suggested_action="Check with tenant or mark as skipped",
        metadata=json.dumps({
            "expectedAmount": expected.expected_amount,
            "expectedDate": expected.expected_date,
            "daysPastDue": days_past_due,
        }),
    )


def months_before(day: date, months: int) -> date:
    """Same day-of-month ``months`` earlier, clamped to the month's length."""
    total = day.year * 12 + (day.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


class AnomalyDetector:
    """Runs the per-transaction checks with context loaded from storage."""

    def __init__(
        self,
        repo: Repository,
        config: Config | None = None,
        clock=None,
    ):
        self.repo = repo
        self.settings = settings_section(config, "anomaly")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def historical_average(
        self, user_id: str, description: str, exclude_ids: list[str] | None = None
    ) -> HistoricalAverage:
        words = description.split()
        if not words:
            return HistoricalAverage(avg=0.0, count=0)
        since = months_before(self._clock().date(), int(self.settings["history_months"]))
        avg, count = self.repo.get_historical_average(
            user_id, words[0], since.isoformat(), exclude_ids=exclude_ids,
        )
        return HistoricalAverage(avg=avg, count=count)

    def known_merchants(
        self,
        user_id: str,
        property_id: str | None = None,
        exclude_ids: list[str] | None = None,
    ) -> set[str]:
        descriptions = self.repo.get_distinct_descriptions(
            user_id, property_id=property_id, exclude_ids=exclude_ids,
        )
        return {extract_merchant(d) for d in descriptions}

    def check_transactions(
        self,
        user_id: str,
        new_txns: list[Transaction],
        recent: list[Transaction],
    ) -> list[tuple[Transaction, AnomalyResult]]:
        """Run all transaction-level checks over a freshly ingested batch.

        History and known merchants exclude the batch itself so a brand
        new merchant isn't "known" just because it was ingested a moment
        ago. Known merchants are scoped to each transaction's property.
        """
        if not new_txns:
            return []

        batch_ids = [t.id for t in new_txns]
        known_by_property: dict[str | None, set[str]] = {}
        threshold = float(self.settings["unusual_amount_threshold"])
        min_count = int(self.settings["min_historical_count"])
        expense_min = float(self.settings["unexpected_expense_min"])

        found: list[tuple[Transaction, AnomalyResult]] = []
        for txn in new_txns:
            if txn.property_id not in known_by_property:
                known_by_property[txn.property_id] = self.known_merchants(
                    user_id, property_id=txn.property_id, exclude_ids=batch_ids,
                )
            known = known_by_property[txn.property_id]
            historical = self.historical_average(user_id, txn.description, exclude_ids=batch_ids)
            checks = (
                detect_unusual_amount(txn, historical, threshold=threshold, min_count=min_count),
                detect_duplicates(txn, recent),
                detect_unexpected_expense(txn, known, minimum=expense_min),
            )
            found.extend((txn, result) for result in checks if result is not None)

        logger.debug(
            "Checked %d new transactions for user %s: %d anomalies",
            len(new_txns), user_id, len(found),
        )
        return found

    def check_missed_payments(
        self, user_id: str, today: date | None = None
    ) -> list[tuple[ExpectedTransaction, AnomalyResult]]:
        today = today or self._clock().date()
        found = []
        for expected in self.repo.get_pending_expected_transactions(user_id, today.isoformat()):
            result = detect_missed_payment(expected, expected.alert_delay_days, today)
            if result is not None:
                found.append((expected, result))
        return found
