"""Categorization engine: merchant memory first, Claude AI as fallback.

Steps (in priority order):
1. Merchant memory: a learned mapping at >= 80 confidence is used as is
2. Claude AI: single-transaction suggestion with the user's corrections
   as examples
3. Failed: no usable answer, the transaction stays for manual review

Results are written as *suggestions* (suggested_category / confidence /
status pending). The authoritative category only changes when the user
accepts or rejects a suggestion, which also feeds merchant memory.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field

from bankfeed.categorize.claude_ai import suggest_category
from bankfeed.categorize.merchant_memory import MerchantMemory
from bankfeed.categorize.taxonomy import Taxonomy
from bankfeed.config import Config, settings_section
from bankfeed.database.models import (
    MerchantMemoryEntry,
    SuggestionStatus,
    Transaction,
)
from bankfeed.database.repository import Repository

logger = logging.getLogger(__name__)

SOURCE_MERCHANT_MEMORY = "merchant_memory"
SOURCE_CLAUDE_AI = "claude_ai"


class SuggestionNotFoundError(Exception):
    """Raised when a transaction has no suggestion to act on."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"No suggestion found for transaction {transaction_id}")


@dataclass
class CategorizationResult:
    """Outcome of categorizing a single transaction."""
    category: str | None
    confidence: float
    source: str | None  # "merchant_memory", "claude_ai" or None


@dataclass
class BatchResult:
    processed: int = 0
    suggested: int = 0
    failed: int = 0


@dataclass
class MerchantStats:
    mapping_count: int
    example_count: int
    recent_mappings: list[MerchantMemoryEntry] = field(default_factory=list)


@dataclass
class SuggestionGroup:
    """Pending suggestions sharing a merchant key and suggested category."""
    merchant_key: str
    suggested_category: str | None
    transactions: list[Transaction]

    @property
    def average_confidence(self) -> float:
        if not self.transactions:
            return 0.0
        total = sum(t.suggestion_confidence or 0.0 for t in self.transactions)
        return total / len(self.transactions)


@dataclass
class PendingReview:
    transactions: list[Transaction]
    total: int
    has_more: bool
    groups: list[SuggestionGroup]


def _call_with_timeout(func, timeout_seconds: float):
    """Run func in a helper thread, raising TimeoutError after timeout_seconds.

    The helper is not joined on timeout; a hung call finishes in the
    background and its result is discarded.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(func)
        try:
            return future.result(timeout=timeout_seconds)
        except FuturesTimeout:
            raise TimeoutError(f"call timed out after {timeout_seconds}s") from None
    finally:
        executor.shutdown(wait=False)


def _merchant_key(description: str) -> str:
    return " ".join(description.lower().split(" ")[:2])


class CategorizationEngine:
    """Suggests categories for transactions and learns from user decisions."""

    def __init__(
        self,
        repo: Repository,
        taxonomy: Taxonomy,
        claude_fn=None,
        config: Config | None = None,
    ):
        self.repo = repo
        self.taxonomy = taxonomy
        self.claude_fn = claude_fn
        self.settings = settings_section(config, "categorization")
        self.memory = MerchantMemory(
            repo, threshold=float(self.settings["confidence_threshold"]),
        )

    # ── Suggestion ──────────────────────────────────────────

    def categorize_transaction(
        self,
        user_id: str,
        transaction_id: str,
        description: str,
        amount: float,
    ) -> CategorizationResult:
        """Suggest a category for one transaction and record it.

        Never raises for classifier problems: an unusable answer marks the
        suggestion failed and returns a result with no category.
        """
        entry = self.memory.lookup(user_id, description)
        if entry is not None:
            self.repo.set_suggestion(transaction_id, entry.category, entry.confidence)
            logger.debug(
                "Txn %s: merchant memory -> %s (%.0f)",
                transaction_id, entry.category, entry.confidence,
            )
            return CategorizationResult(
                category=entry.category,
                confidence=entry.confidence,
                source=SOURCE_MERCHANT_MEMORY,
            )

        suggestion = None
        if self.claude_fn is not None:
            examples = self.memory.recent_examples(
                user_id, limit=int(self.settings["max_examples"]),
            )
            suggestion = suggest_category(
                description, amount, self.taxonomy,
                self._timed_claude_fn, self.repo,
                examples=examples,
                monthly_budget_cents=int(self.settings["monthly_budget_cents"]),
            )

        if suggestion is None:
            self.repo.mark_suggestion_failed(transaction_id)
            return CategorizationResult(category=None, confidence=0.0, source=None)

        self.repo.set_suggestion(transaction_id, suggestion.category, suggestion.confidence)
        logger.debug(
            "Txn %s: Claude -> %s (%.0f)",
            transaction_id, suggestion.category, suggestion.confidence,
        )
        return CategorizationResult(
            category=suggestion.category,
            confidence=suggestion.confidence,
            source=SOURCE_CLAUDE_AI,
        )

    def _timed_claude_fn(self, system: str, prompt: str) -> str:
        timeout = float(self.settings["call_timeout_seconds"])
        return _call_with_timeout(lambda: self.claude_fn(system, prompt), timeout)

    def categorize_pending(
        self,
        user_id: str,
        bank_account_id: str | None = None,
        limit: int = 50,
    ) -> BatchResult:
        """Categorize uncategorized, never-scored transactions, oldest first."""
        txns = self.repo.get_uncategorized_transactions(
            user_id, bank_account_id=bank_account_id, limit=limit,
        )
        result = BatchResult()
        if not txns:
            return result

        with ThreadPoolExecutor(max_workers=int(self.settings["max_workers"])) as pool:
            futures = {
                pool.submit(
                    self.categorize_transaction,
                    user_id, txn.id, txn.description, txn.amount,
                ): txn
                for txn in txns
            }
            for future, txn in futures.items():
                result.processed += 1
                try:
                    outcome = future.result()
                except Exception:
                    logger.exception("Categorization worker failed for txn %s", txn.id)
                    self.repo.mark_suggestion_failed(txn.id)
                    result.failed += 1
                    continue
                if outcome.category is None:
                    result.failed += 1
                else:
                    result.suggested += 1

        logger.info(
            "Categorized %d transactions for user %s: %d suggested, %d failed",
            result.processed, user_id, result.suggested, result.failed,
        )
        return result

    # ── User decisions ──────────────────────────────────────

    def accept_suggestion(self, user_id: str, transaction_id: str) -> Transaction:
        txn = self.repo.get_transaction(transaction_id, user_id=user_id)
        if txn is None or not txn.suggested_category:
            raise SuggestionNotFoundError(transaction_id)

        self._apply(txn, txn.suggested_category, SuggestionStatus.ACCEPTED)
        self.memory.update(user_id, txn.description, txn.suggested_category, was_correction=False)
        return self.repo.get_transaction(transaction_id)

    def reject_suggestion(
        self, user_id: str, transaction_id: str, new_category: str
    ) -> Transaction:
        if new_category not in self.taxonomy:
            raise ValueError(f"Unknown category: {new_category}")
        txn = self.repo.get_transaction(transaction_id, user_id=user_id)
        if txn is None:
            raise SuggestionNotFoundError(transaction_id)

        self._apply(txn, new_category, SuggestionStatus.REJECTED)
        self.memory.update(user_id, txn.description, new_category, was_correction=True)
        return self.repo.get_transaction(transaction_id)

    def batch_accept(self, user_id: str, transaction_ids: list[str]) -> int:
        """Accept every pending suggestion in the list. Returns the accepted count.

        Merchant memory is updated once, from the first accepted transaction,
        since a batch is normally one merchant group.
        """
        accepted = 0
        for txn_id in transaction_ids:
            try:
                txn = self.repo.get_transaction(txn_id, user_id=user_id)
                if (
                    txn is None
                    or not txn.suggested_category
                    or txn.suggestion_status != SuggestionStatus.PENDING
                ):
                    logger.debug("Skipping txn %s: no pending suggestion", txn_id)
                    continue

                self._apply(txn, txn.suggested_category, SuggestionStatus.ACCEPTED)
                if accepted == 0:
                    self.memory.update(
                        user_id, txn.description, txn.suggested_category,
                        was_correction=False,
                    )
                accepted += 1
            except Exception:
                logger.exception("Failed to accept suggestion for txn %s", txn_id)
        return accepted

    def _apply(self, txn: Transaction, category: str, status: SuggestionStatus):
        txn_type, is_deductible = self.taxonomy.derive_transaction_fields(category)
        self.repo.apply_category(txn.id, category, txn_type, is_deductible, status)

    # ── Review helpers ──────────────────────────────────────

    def merchant_stats(self, user_id: str) -> MerchantStats:
        return MerchantStats(
            mapping_count=self.repo.count_merchant_memory(user_id),
            example_count=self.repo.count_examples(user_id),
            recent_mappings=self.repo.list_merchant_memory(user_id, limit=20),
        )

    def pending_review(
        self,
        user_id: str,
        confidence_filter: str = "all",
        limit: int = 50,
        offset: int = 0,
    ) -> PendingReview:
        """Pending suggestions grouped by merchant key and suggested category."""
        txns, total = self.repo.find_pending_suggestions(
            user_id,
            confidence_filter=confidence_filter,
            threshold=float(self.settings["confidence_threshold"]),
            limit=limit,
            offset=offset,
        )

        groups: dict[tuple[str, str | None], SuggestionGroup] = {}
        for txn in txns:
            key = (_merchant_key(txn.description), txn.suggested_category)
            if key not in groups:
                groups[key] = SuggestionGroup(
                    merchant_key=key[0], suggested_category=key[1], transactions=[],
                )
            groups[key].transactions.append(txn)

        return PendingReview(
            transactions=txns,
            total=total,
            has_more=offset + len(txns) < total,
            groups=list(groups.values()),
        )
