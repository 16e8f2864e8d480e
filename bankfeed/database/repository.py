"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. The connection is shared across threads (the
categorization worker pool), so every public method runs under one
re-entrant lock.
"""

from __future__ import annotations

import functools
import sqlite3
import threading
from pathlib import Path

from .models import (
    AlertStatus,
    AnomalyAlert,
    AnomalyType,
    BankAccount,
    CategorizationExample,
    ConnectionAlert,
    ConnectionAlertType,
    ConnectionStatus,
    ExpectedStatus,
    ExpectedTransaction,
    MerchantMemoryEntry,
    Severity,
    SuggestionStatus,
    SyncStatus,
    Transaction,
    TransactionType,
    _now,
)


class DuplicateTransactionError(Exception):
    """Raised when a transaction with the same external_id was already ingested."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        super().__init__(f"Transaction with external_id '{external_id}' already exists")


def _locked(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


def _value(v):
    """Unwrap Enum members to their stored value."""
    return getattr(v, "value", v)


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    @_locked
    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Bank accounts ───────────────────────────────────────

    @_locked
    def insert_bank_account(self, acct: BankAccount) -> BankAccount:
        self.conn.execute(
            "INSERT INTO bank_accounts"
            " (id, user_id, institution, connection_id, external_account_id,"
            "  account_name, connection_status, last_sync_status, last_synced_at,"
            "  last_manual_sync_at, last_sync_error, default_property_id, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (acct.id, acct.user_id, acct.institution, acct.connection_id,
             acct.external_account_id, acct.account_name,
             _value(acct.connection_status), _value(acct.last_sync_status),
             acct.last_synced_at, acct.last_manual_sync_at,
             acct.last_sync_error, acct.default_property_id, acct.created_at),
        )
        self.conn.commit()
        return acct

    @_locked
    def get_bank_account(self, account_id: str) -> BankAccount | None:
        row = self.conn.execute(
            "SELECT * FROM bank_accounts WHERE id = ?", (account_id,)
        ).fetchone()
        return self._row_to_bank_account(row) if row else None

    @_locked
    def list_bank_accounts(self, user_id: str | None = None) -> list[BankAccount]:
        sql = "SELECT * FROM bank_accounts"
        params: list = []
        if user_id:
            sql += " WHERE user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_bank_account(r) for r in rows]

    _ACCOUNT_UPDATE_COLS = frozenset({
        "connection_status", "last_sync_status", "last_synced_at",
        "last_manual_sync_at", "last_sync_error", "default_property_id",
        "account_name",
    })

    @_locked
    def update_bank_account(self, account_id: str, **kwargs):
        # Reject unknown column names to prevent silent bugs
        unknown = set(kwargs.keys()) - self._ACCOUNT_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_bank_account: {unknown}")
        if not kwargs:
            return

        sets = []
        vals: list = []
        for col, val in kwargs.items():
            sets.append(f"{col} = ?")
            vals.append(_value(val))
        vals.append(account_id)
        self.conn.execute(
            f"UPDATE bank_accounts SET {', '.join(sets)} WHERE id = ?", vals
        )
        self.conn.commit()

    # ── Transactions ────────────────────────────────────────

    @_locked
    def insert_transaction(self, txn: Transaction) -> Transaction:
        """Insert a transaction.

        Raises:
            DuplicateTransactionError: If the external_id was already ingested.
        """
        try:
            self.conn.execute(
                "INSERT INTO transactions"
                " (id, user_id, bank_account_id, external_id, property_id,"
                "  date, amount, description, category, transaction_type,"
                "  is_deductible, is_verified, suggested_category,"
                "  suggestion_confidence, suggestion_status, created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (txn.id, txn.user_id, txn.bank_account_id, txn.external_id,
                 txn.property_id, txn.date, txn.amount, txn.description,
                 txn.category, _value(txn.transaction_type),
                 int(txn.is_deductible), int(txn.is_verified),
                 txn.suggested_category, txn.suggestion_confidence,
                 _value(txn.suggestion_status), txn.created_at, txn.updated_at),
            )
            self.conn.commit()
            return txn
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if txn.external_id and "external_id" in str(e):
                raise DuplicateTransactionError(txn.external_id) from e
            raise

    @_locked
    def get_transaction(
        self, txn_id: str, user_id: str | None = None
    ) -> Transaction | None:
        sql = "SELECT * FROM transactions WHERE id = ?"
        params: list = [txn_id]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(sql, params).fetchone()
        return self._row_to_transaction(row) if row else None

    @_locked
    def get_transaction_by_external_id(self, external_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE external_id = ?", (external_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    @_locked
    def get_recent_transactions(
        self, bank_account_id: str, limit: int = 100
    ) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE bank_account_id = ?"
            " ORDER BY date DESC, rowid DESC LIMIT ?",
            (bank_account_id, limit),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    @_locked
    def get_uncategorized_transactions(
        self,
        user_id: str,
        bank_account_id: str | None = None,
        limit: int = 50,
    ) -> list[Transaction]:
        """Uncategorized transactions never scored, oldest first."""
        sql = (
            "SELECT * FROM transactions"
            " WHERE user_id = ? AND category = 'uncategorized'"
            "   AND suggestion_status IS NULL"
        )
        params: list = [user_id]
        if bank_account_id:
            sql += " AND bank_account_id = ?"
            params.append(bank_account_id)
        sql += " ORDER BY date ASC, rowid ASC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    @_locked
    def set_suggestion(self, txn_id: str, category: str, confidence: float):
        """Record a pending suggestion. Never touches the authoritative category."""
        self.conn.execute(
            "UPDATE transactions SET suggested_category = ?,"
            " suggestion_confidence = ?, suggestion_status = ?, updated_at = ?"
            " WHERE id = ?",
            (category, confidence, SuggestionStatus.PENDING.value, _now(), txn_id),
        )
        self.conn.commit()

    @_locked
    def mark_suggestion_failed(self, txn_id: str):
        self.conn.execute(
            "UPDATE transactions SET suggestion_status = ?, updated_at = ?"
            " WHERE id = ?",
            (SuggestionStatus.FAILED.value, _now(), txn_id),
        )
        self.conn.commit()

    @_locked
    def apply_category(
        self,
        txn_id: str,
        category: str,
        transaction_type: TransactionType,
        is_deductible: bool,
        suggestion_status: SuggestionStatus,
    ):
        """Write category, derived fields and suggestion status in one statement."""
        self.conn.execute(
            "UPDATE transactions SET category = ?, transaction_type = ?,"
            " is_deductible = ?, is_verified = 1, suggestion_status = ?,"
            " updated_at = ? WHERE id = ?",
            (category, _value(transaction_type), int(is_deductible),
             _value(suggestion_status), _now(), txn_id),
        )
        self.conn.commit()

    _CONFIDENCE_FILTERS = {
        "all": "",
        "high": " AND suggestion_confidence >= ?",
        "low": " AND suggestion_confidence < ?",
    }

    @_locked
    def find_pending_suggestions(
        self,
        user_id: str,
        confidence_filter: str = "all",
        threshold: float = 80.0,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """Return (page of pending suggestions, total matching count)."""
        if confidence_filter not in self._CONFIDENCE_FILTERS:
            raise ValueError(f"Unknown confidence filter: {confidence_filter}")
        where = (
            " WHERE user_id = ? AND suggestion_status = 'pending'"
            + self._CONFIDENCE_FILTERS[confidence_filter]
        )
        params: list = [user_id]
        if confidence_filter != "all":
            params.append(threshold)

        total = self.conn.execute(
            "SELECT COUNT(*) FROM transactions" + where, params
        ).fetchone()[0]
        rows = self.conn.execute(
            "SELECT * FROM transactions" + where
            + " ORDER BY suggestion_confidence DESC, date DESC LIMIT ? OFFSET ?",
            params + [limit, offset],
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows], total

    # ── History queries (anomaly context) ───────────────────

    @_locked
    def get_historical_average(
        self,
        user_id: str,
        merchant_pattern: str,
        since_date: str,
        exclude_ids: list[str] | None = None,
    ) -> tuple[float, int]:
        """Average absolute amount and count of matching past transactions."""
        sql = (
            "SELECT AVG(ABS(amount)) AS avg, COUNT(*) AS cnt FROM transactions"
            " WHERE user_id = ? AND description LIKE ? AND date >= ?"
        )
        params: list = [user_id, f"%{merchant_pattern}%", since_date]
        if exclude_ids:
            sql += f" AND id NOT IN ({','.join('?' * len(exclude_ids))})"
            params.extend(exclude_ids)
        row = self.conn.execute(sql, params).fetchone()
        return (row["avg"] or 0.0), (row["cnt"] or 0)

    @_locked
    def get_distinct_descriptions(
        self,
        user_id: str,
        property_id: str | None = None,
        exclude_ids: list[str] | None = None,
    ) -> list[str]:
        sql = "SELECT DISTINCT description FROM transactions WHERE user_id = ?"
        params: list = [user_id]
        if property_id:
            sql += " AND property_id = ?"
            params.append(property_id)
        if exclude_ids:
            sql += f" AND id NOT IN ({','.join('?' * len(exclude_ids))})"
            params.extend(exclude_ids)
        rows = self.conn.execute(sql, params).fetchall()
        return [r["description"] for r in rows]

    # ── Merchant memory ─────────────────────────────────────

    @_locked
    def get_merchant_memory(
        self, user_id: str, merchant_name: str
    ) -> MerchantMemoryEntry | None:
        row = self.conn.execute(
            "SELECT * FROM merchant_memory WHERE user_id = ? AND merchant_name = ?",
            (user_id, merchant_name),
        ).fetchone()
        return self._row_to_merchant_memory(row) if row else None

    @_locked
    def upsert_merchant_memory(
        self,
        entry: MerchantMemoryEntry,
        was_correction: bool,
        correction_penalty: float,
    ) -> MerchantMemoryEntry:
        """Create or update a mapping in a single atomic statement.

        ``entry.confidence`` is the seed used when no row exists. On conflict
        a correction subtracts the penalty (floored at 0) and an acceptance
        folds a 100 into the running average (capped at 100).
        """
        self.conn.execute(
            "INSERT INTO merchant_memory"
            " (id, user_id, merchant_name, category, confidence, usage_count,"
            "  last_used_at, created_at)"
            " VALUES (?, ?, ?, ?, ?, 1, ?, ?)"
            " ON CONFLICT(user_id, merchant_name) DO UPDATE SET"
            "  category = excluded.category,"
            "  confidence = MIN(100.0, CASE WHEN ? THEN MAX(0.0, confidence - ?)"
            "    ELSE (confidence * usage_count + 100.0) / (usage_count + 1) END),"
            "  usage_count = usage_count + 1,"
            "  last_used_at = excluded.last_used_at",
            (entry.id, entry.user_id, entry.merchant_name, entry.category,
             entry.confidence, entry.last_used_at, entry.created_at,
             int(was_correction), correction_penalty),
        )
        self.conn.commit()
        return self.get_merchant_memory(entry.user_id, entry.merchant_name)

    @_locked
    def list_merchant_memory(
        self, user_id: str, limit: int = 20
    ) -> list[MerchantMemoryEntry]:
        rows = self.conn.execute(
            "SELECT * FROM merchant_memory WHERE user_id = ?"
            " ORDER BY last_used_at DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [self._row_to_merchant_memory(r) for r in rows]

    @_locked
    def count_merchant_memory(self, user_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM merchant_memory WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row[0]

    @_locked
    def insert_categorization_example(
        self, example: CategorizationExample
    ) -> CategorizationExample:
        self.conn.execute(
            "INSERT INTO categorization_examples"
            " (id, user_id, description, category, was_correction, created_at)"
            " VALUES (?,?,?,?,?,?)",
            (example.id, example.user_id, example.description,
             example.category, int(example.was_correction), example.created_at),
        )
        self.conn.commit()
        return example

    @_locked
    def get_recent_examples(
        self, user_id: str, limit: int = 10
    ) -> list[CategorizationExample]:
        rows = self.conn.execute(
            "SELECT * FROM categorization_examples WHERE user_id = ?"
            " ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [self._row_to_example(r) for r in rows]

    @_locked
    def count_examples(self, user_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM categorization_examples WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return row[0]

    # ── Anomaly alerts ──────────────────────────────────────

    @_locked
    def insert_anomaly_alert(self, alert: AnomalyAlert) -> AnomalyAlert:
        self.conn.execute(
            "INSERT INTO anomaly_alerts"
            " (id, user_id, property_id, bank_account_id, transaction_id,"
            "  expected_transaction_id, alert_type, severity, description,"
            "  suggested_action, metadata, status, dismissal_count,"
            "  created_at, dismissed_at, resolved_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (alert.id, alert.user_id, alert.property_id,
             alert.bank_account_id, alert.transaction_id,
             alert.expected_transaction_id, _value(alert.alert_type),
             _value(alert.severity), alert.description,
             alert.suggested_action, alert.metadata, _value(alert.status),
             alert.dismissal_count, alert.created_at,
             alert.dismissed_at, alert.resolved_at),
        )
        self.conn.commit()
        return alert

    @_locked
    def get_anomaly_alert(
        self, alert_id: str, user_id: str | None = None
    ) -> AnomalyAlert | None:
        sql = "SELECT * FROM anomaly_alerts WHERE id = ?"
        params: list = [alert_id]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(sql, params).fetchone()
        return self._row_to_anomaly_alert(row) if row else None

    @_locked
    def get_active_anomaly_alerts(
        self,
        user_id: str,
        transaction_id: str | None = None,
        expected_transaction_id: str | None = None,
    ) -> list[AnomalyAlert]:
        sql = "SELECT * FROM anomaly_alerts WHERE user_id = ? AND status = 'active'"
        params: list = [user_id]
        if transaction_id:
            sql += " AND transaction_id = ?"
            params.append(transaction_id)
        if expected_transaction_id:
            sql += " AND expected_transaction_id = ?"
            params.append(expected_transaction_id)
        rows = self.conn.execute(sql + " ORDER BY created_at DESC", params).fetchall()
        return [self._row_to_anomaly_alert(r) for r in rows]

    @_locked
    def dismiss_anomaly_alert(self, alert_id: str, dismissed_at: str):
        """Dismiss an active alert, counting the dismissal. No-op otherwise."""
        self.conn.execute(
            "UPDATE anomaly_alerts SET status = 'dismissed', dismissed_at = ?,"
            " dismissal_count = dismissal_count + 1"
            " WHERE id = ? AND status = 'active'",
            (dismissed_at, alert_id),
        )
        self.conn.commit()

    @_locked
    def resolve_anomaly_alert(self, alert_id: str, resolved_at: str):
        self.conn.execute(
            "UPDATE anomaly_alerts SET status = 'resolved', resolved_at = ?"
            " WHERE id = ? AND status != 'resolved'",
            (resolved_at, alert_id),
        )
        self.conn.commit()

    @_locked
    def bulk_dismiss_anomaly_alerts(
        self, alert_ids: list[str], user_id: str, dismissed_at: str
    ) -> int:
        if not alert_ids:
            return 0
        ph = ",".join("?" * len(alert_ids))
        cur = self.conn.execute(
            f"UPDATE anomaly_alerts SET status = 'dismissed', dismissed_at = ?,"
            f" dismissal_count = dismissal_count + 1"
            f" WHERE id IN ({ph}) AND user_id = ? AND status = 'active'",
            [dismissed_at, *alert_ids, user_id],
        )
        self.conn.commit()
        return cur.rowcount

    @_locked
    def count_active_anomalies_by_severity(self, user_id: str) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT severity, COUNT(*) AS cnt FROM anomaly_alerts"
            " WHERE user_id = ? AND status = 'active' GROUP BY severity",
            (user_id,),
        ).fetchall()
        return {r["severity"]: r["cnt"] for r in rows}

    # ── Connection alerts ───────────────────────────────────

    @_locked
    def insert_connection_alert(self, alert: ConnectionAlert) -> ConnectionAlert:
        self.conn.execute(
            "INSERT INTO connection_alerts"
            " (id, user_id, bank_account_id, alert_type, status, error_message,"
            "  email_sent_at, created_at, dismissed_at, resolved_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?)",
            (alert.id, alert.user_id, alert.bank_account_id,
             _value(alert.alert_type), _value(alert.status),
             alert.error_message, alert.email_sent_at, alert.created_at,
             alert.dismissed_at, alert.resolved_at),
        )
        self.conn.commit()
        return alert

    @_locked
    def get_connection_alert(
        self, alert_id: str, user_id: str | None = None
    ) -> ConnectionAlert | None:
        sql = "SELECT * FROM connection_alerts WHERE id = ?"
        params: list = [alert_id]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        row = self.conn.execute(sql, params).fetchone()
        return self._row_to_connection_alert(row) if row else None

    @_locked
    def get_active_connection_alerts(
        self, bank_account_id: str | None = None, user_id: str | None = None
    ) -> list[ConnectionAlert]:
        sql = "SELECT * FROM connection_alerts WHERE status = 'active'"
        params: list = []
        if bank_account_id:
            sql += " AND bank_account_id = ?"
            params.append(bank_account_id)
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        rows = self.conn.execute(sql + " ORDER BY created_at, rowid", params).fetchall()
        return [self._row_to_connection_alert(r) for r in rows]

    @_locked
    def resolve_connection_alerts(self, bank_account_id: str, resolved_at: str) -> int:
        cur = self.conn.execute(
            "UPDATE connection_alerts SET status = 'resolved', resolved_at = ?"
            " WHERE bank_account_id = ? AND status = 'active'",
            (resolved_at, bank_account_id),
        )
        self.conn.commit()
        return cur.rowcount

    @_locked
    def dismiss_connection_alert(self, alert_id: str, dismissed_at: str):
        self.conn.execute(
            "UPDATE connection_alerts SET status = 'dismissed', dismissed_at = ?"
            " WHERE id = ? AND status = 'active'",
            (dismissed_at, alert_id),
        )
        self.conn.commit()

    @_locked
    def mark_connection_alert_emailed(self, alert_id: str, sent_at: str):
        self.conn.execute(
            "UPDATE connection_alerts SET email_sent_at = ? WHERE id = ?",
            (sent_at, alert_id),
        )
        self.conn.commit()

    # ── Expected transactions ───────────────────────────────

    @_locked
    def insert_expected_transaction(
        self, expected: ExpectedTransaction
    ) -> ExpectedTransaction:
        self.conn.execute(
            "INSERT INTO expected_transactions"
            " (id, user_id, property_id, property_label, description,"
            "  expected_date, expected_amount, alert_delay_days, status,"
            "  matched_transaction_id, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (expected.id, expected.user_id, expected.property_id,
             expected.property_label, expected.description,
             expected.expected_date, expected.expected_amount,
             expected.alert_delay_days, _value(expected.status),
             expected.matched_transaction_id, expected.created_at),
        )
        self.conn.commit()
        return expected

    @_locked
    def get_pending_expected_transactions(
        self, user_id: str, on_or_before: str
    ) -> list[ExpectedTransaction]:
        rows = self.conn.execute(
            "SELECT * FROM expected_transactions"
            " WHERE user_id = ? AND status = 'pending' AND expected_date <= ?"
            " ORDER BY expected_date, rowid",
            (user_id, on_or_before),
        ).fetchall()
        return [self._row_to_expected(r) for r in rows]

    # ── API Usage ───────────────────────────────────────────

    @_locked
    def increment_api_usage(
        self, month: str, service: str,
        requests: int = 1,
        tokens_in: int = 0, tokens_out: int = 0,
        cost_cents: int = 0,
    ):
        """Upsert api_usage row: increment counters for month+service."""
        self.conn.execute(
            "INSERT INTO api_usage"
            " (id, month, service, request_count, input_tokens,"
            "  output_tokens, estimated_cost_cents, updated_at)"
            " VALUES (hex(randomblob(16)), ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)"
            " ON CONFLICT(month, service) DO UPDATE SET"
            "  request_count = request_count + excluded.request_count,"
            "  input_tokens = input_tokens + excluded.input_tokens,"
            "  output_tokens = output_tokens + excluded.output_tokens,"
            "  estimated_cost_cents = estimated_cost_cents + excluded.estimated_cost_cents,"
            "  updated_at = CURRENT_TIMESTAMP",
            (month, service, requests, tokens_in, tokens_out, cost_cents),
        )
        self.conn.commit()

    @_locked
    def get_monthly_cost(self, month: str) -> int:
        """Total estimated cost in cents for a given month."""
        row = self.conn.execute(
            "SELECT COALESCE(SUM(estimated_cost_cents), 0) FROM api_usage"
            " WHERE month = ?",
            (month,),
        ).fetchone()
        return row[0]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_bank_account(row: sqlite3.Row) -> BankAccount:
        return BankAccount(
            id=row["id"], user_id=row["user_id"],
            institution=row["institution"],
            connection_id=row["connection_id"],
            external_account_id=row["external_account_id"],
            account_name=row["account_name"],
            connection_status=ConnectionStatus(row["connection_status"]),
            last_sync_status=(
                SyncStatus(row["last_sync_status"])
                if row["last_sync_status"] else None
            ),
            last_synced_at=row["last_synced_at"],
            last_manual_sync_at=row["last_manual_sync_at"],
            last_sync_error=row["last_sync_error"],
            default_property_id=row["default_property_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], user_id=row["user_id"],
            bank_account_id=row["bank_account_id"],
            external_id=row["external_id"],
            property_id=row["property_id"],
            date=row["date"], amount=row["amount"],
            description=row["description"],
            category=row["category"],
            transaction_type=TransactionType(row["transaction_type"]),
            is_deductible=bool(row["is_deductible"]),
            is_verified=bool(row["is_verified"]),
            suggested_category=row["suggested_category"],
            suggestion_confidence=row["suggestion_confidence"],
            suggestion_status=(
                SuggestionStatus(row["suggestion_status"])
                if row["suggestion_status"] else None
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_merchant_memory(row: sqlite3.Row) -> MerchantMemoryEntry:
        return MerchantMemoryEntry(
            id=row["id"], user_id=row["user_id"],
            merchant_name=row["merchant_name"],
            category=row["category"],
            confidence=row["confidence"],
            usage_count=row["usage_count"],
            last_used_at=row["last_used_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_example(row: sqlite3.Row) -> CategorizationExample:
        return CategorizationExample(
            id=row["id"], user_id=row["user_id"],
            description=row["description"],
            category=row["category"],
            was_correction=bool(row["was_correction"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_anomaly_alert(row: sqlite3.Row) -> AnomalyAlert:
        return AnomalyAlert(
            id=row["id"], user_id=row["user_id"],
            property_id=row["property_id"],
            bank_account_id=row["bank_account_id"],
            transaction_id=row["transaction_id"],
            expected_transaction_id=row["expected_transaction_id"],
            alert_type=AnomalyType(row["alert_type"]),
            severity=Severity(row["severity"]),
            description=row["description"],
            suggested_action=row["suggested_action"],
            metadata=row["metadata"],
            status=AlertStatus(row["status"]),
            dismissal_count=row["dismissal_count"],
            created_at=row["created_at"],
            dismissed_at=row["dismissed_at"],
            resolved_at=row["resolved_at"],
        )

    @staticmethod
    def _row_to_connection_alert(row: sqlite3.Row) -> ConnectionAlert:
        return ConnectionAlert(
            id=row["id"], user_id=row["user_id"],
            bank_account_id=row["bank_account_id"],
            alert_type=ConnectionAlertType(row["alert_type"]),
            status=AlertStatus(row["status"]),
            error_message=row["error_message"],
            email_sent_at=row["email_sent_at"],
            created_at=row["created_at"],
            dismissed_at=row["dismissed_at"],
            resolved_at=row["resolved_at"],
        )

    @staticmethod
    def _row_to_expected(row: sqlite3.Row) -> ExpectedTransaction:
        return ExpectedTransaction(
            id=row["id"], user_id=row["user_id"],
            property_id=row["property_id"],
            property_label=row["property_label"],
            description=row["description"],
            expected_date=row["expected_date"],
            expected_amount=row["expected_amount"],
            alert_delay_days=row["alert_delay_days"],
            status=ExpectedStatus(row["status"]),
            matched_transaction_id=row["matched_transaction_id"],
            created_at=row["created_at"],
        )
