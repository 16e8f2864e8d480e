"""Merchant memory: learned merchant -> category mappings per user.

Mappings are keyed on a normalized merchant name and gain or lose
confidence as the user accepts or corrects suggestions:
  - New mapping: seeded at 80 (acceptance) or 70 (correction)
  - Acceptance: running average with a 100, capped at 100
  - Correction: minus 10, floored at 0, category overwritten
Only mappings at or above the lookup threshold short-circuit the AI call.
"""

from __future__ import annotations

import logging
import re

from bankfeed.database.models import CategorizationExample, MerchantMemoryEntry, _now
from bankfeed.database.repository import Repository

logger = logging.getLogger(__name__)

LOOKUP_THRESHOLD = 80.0
SEED_CONFIDENCE_ACCEPTED = 80.0
SEED_CONFIDENCE_CORRECTED = 70.0
CORRECTION_PENALTY = 10.0

_SUFFIX_RE = re.compile(r"\s*\b(pty|ltd|inc|limited|australia|au)\b\s*", re.IGNORECASE)
_PAREN_RE = re.compile(r"\s*\([^)]*\)\s*")
_WS_RE = re.compile(r"\s+")


def normalize_merchant_name(description: str) -> str:
    """Lower-case, collapse whitespace, drop entity suffixes and parenthetical notes.

    >>> normalize_merchant_name("  Bunnings  Pty Ltd (Store 42) ")
    'bunnings'
    """
    name = _WS_RE.sub(" ", description.lower()).strip()
    name = _SUFFIX_RE.sub(" ", name)
    name = _PAREN_RE.sub(" ", name)
    return _WS_RE.sub(" ", name).strip()


class MerchantMemory:
    """Lookup and learning over the merchant_memory table."""

    def __init__(self, repo: Repository, threshold: float = LOOKUP_THRESHOLD):
        self.repo = repo
        self.threshold = threshold

    def lookup(self, user_id: str, description: str) -> MerchantMemoryEntry | None:
        """Return the mapping for this merchant if it is confident enough."""
        name = normalize_merchant_name(description)
        if not name:
            return None
        entry = self.repo.get_merchant_memory(user_id, name)
        if entry is None or entry.confidence < self.threshold:
            return None
        return entry

    def update(
        self,
        user_id: str,
        description: str,
        category: str,
        was_correction: bool,
    ) -> MerchantMemoryEntry | None:
        """Record a user decision for this merchant.

        Runs as a single upsert so concurrent updates for the same
        merchant can't lose an increment. Corrections are also kept as
        labelled examples for the classifier prompt.
        """
        name = normalize_merchant_name(description)
        if not name:
            logger.debug("Skipping merchant memory update for empty name: %r", description)
            return None

        now = _now()
        seed = SEED_CONFIDENCE_CORRECTED if was_correction else SEED_CONFIDENCE_ACCEPTED
        entry = self.repo.upsert_merchant_memory(
            MerchantMemoryEntry(
                user_id=user_id, merchant_name=name, category=category,
                confidence=seed, last_used_at=now, created_at=now,
            ),
            was_correction=was_correction,
            correction_penalty=CORRECTION_PENALTY,
        )

        if was_correction:
            self.repo.insert_categorization_example(CategorizationExample(
                user_id=user_id, description=description,
                category=category, was_correction=True,
            ))

        logger.debug(
            "Merchant memory %s -> %s (confidence=%.1f, uses=%d)",
            name, category, entry.confidence, entry.usage_count,
        )
        return entry

    def recent_examples(self, user_id: str, limit: int = 10) -> list[CategorizationExample]:
        return self.repo.get_recent_examples(user_id, limit=limit)
