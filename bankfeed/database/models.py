"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()). Closed
value sets are str-valued Enums so they are stored as their plain value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PENDING_REAUTH = "pending_reauth"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    CAPITAL = "capital"
    TRANSFER = "transfer"
    PERSONAL = "personal"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


class AnomalyType(str, Enum):
    UNUSUAL_AMOUNT = "unusual_amount"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    UNEXPECTED_EXPENSE = "unexpected_expense"
    MISSED_RENT = "missed_rent"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ConnectionAlertType(str, Enum):
    DISCONNECTED = "disconnected"
    REQUIRES_REAUTH = "requires_reauth"
    SYNC_FAILED = "sync_failed"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"


class ExpectedStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    MISSED = "missed"
    SKIPPED = "skipped"


@dataclass
class BankAccount:
    user_id: str
    institution: str
    connection_id: str
    external_account_id: str
    account_name: str
    id: str = field(default_factory=_new_id)
    connection_status: ConnectionStatus = ConnectionStatus.CONNECTED
    last_sync_status: SyncStatus | None = None
    last_synced_at: str | None = None
    last_manual_sync_at: str | None = None
    last_sync_error: str | None = None
    default_property_id: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    user_id: str
    date: str
    amount: float
    description: str
    id: str = field(default_factory=_new_id)
    bank_account_id: str | None = None
    external_id: str | None = None
    property_id: str | None = None
    category: str = "uncategorized"
    transaction_type: TransactionType = TransactionType.EXPENSE
    is_deductible: bool = False
    is_verified: bool = False
    suggested_category: str | None = None
    suggestion_confidence: float | None = None
    suggestion_status: SuggestionStatus | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class MerchantMemoryEntry:
    user_id: str
    merchant_name: str
    category: str
    confidence: float
    id: str = field(default_factory=_new_id)
    usage_count: int = 1
    last_used_at: str = field(default_factory=_now)
    created_at: str = field(default_factory=_now)


@dataclass
class CategorizationExample:
    user_id: str
    description: str
    category: str
    id: str = field(default_factory=_new_id)
    was_correction: bool = True
    created_at: str = field(default_factory=_now)


@dataclass
class AnomalyAlert:
    user_id: str
    alert_type: AnomalyType
    severity: Severity
    description: str
    id: str = field(default_factory=_new_id)
    property_id: str | None = None
    bank_account_id: str | None = None
    transaction_id: str | None = None
    expected_transaction_id: str | None = None
    suggested_action: str | None = None
    metadata: str | None = None
    status: AlertStatus = AlertStatus.ACTIVE
    dismissal_count: int = 0
    created_at: str = field(default_factory=_now)
    dismissed_at: str | None = None
    resolved_at: str | None = None


@dataclass
class ConnectionAlert:
    user_id: str
    bank_account_id: str
    alert_type: ConnectionAlertType
    id: str = field(default_factory=_new_id)
    status: AlertStatus = AlertStatus.ACTIVE
    error_message: str | None = None
    email_sent_at: str | None = None
    created_at: str = field(default_factory=_now)
    dismissed_at: str | None = None
    resolved_at: str | None = None


@dataclass
class ExpectedTransaction:
    user_id: str
    description: str
    expected_date: str
    expected_amount: float
    id: str = field(default_factory=_new_id)
    property_id: str | None = None
    property_label: str | None = None
    alert_delay_days: int = 3
    status: ExpectedStatus = ExpectedStatus.PENDING
    matched_transaction_id: str | None = None
    created_at: str = field(default_factory=_now)
