"""Category taxonomy for property-investment transactions.

Loaded from categories.yaml. Each category belongs to one group
(income, expense, capital, other) which drives the transaction type
and deductibility written alongside an accepted category.
"""

from __future__ import annotations

from dataclasses import dataclass

from bankfeed.config import Config
from bankfeed.database.models import TransactionType

NON_DEDUCTIBLE_OTHER = frozenset({"transfer", "personal", "uncategorized"})


@dataclass(frozen=True)
class Category:
    value: str
    label: str
    is_deductible: bool
    type: str
    ato_reference: str | None = None


class Taxonomy:
    """Closed set of categories with lookup helpers."""

    def __init__(self, categories: list[Category]):
        self._by_value: dict[str, Category] = {c.value: c for c in categories}
        self.categories = list(categories)

    @classmethod
    def from_config(cls, config: Config) -> Taxonomy:
        return cls.from_dicts(config.categories)

    @classmethod
    def from_dicts(cls, entries: list[dict]) -> Taxonomy:
        cats = []
        for entry in entries:
            value = entry.get("value", "")
            if not value:
                continue
            cats.append(Category(
                value=value,
                label=entry.get("label", value),
                is_deductible=bool(entry.get("is_deductible", False)),
                type=entry.get("type", "expense"),
                ato_reference=entry.get("ato_reference"),
            ))
        return cls(cats)

    def __contains__(self, value: str) -> bool:
        return value in self._by_value

    def __len__(self) -> int:
        return len(self.categories)

    def get(self, value: str) -> Category | None:
        return self._by_value.get(value)

    @property
    def values(self) -> set[str]:
        return set(self._by_value)

    def values_of_type(self, type_: str) -> set[str]:
        return {c.value for c in self.categories if c.type == type_}

    def derive_transaction_fields(self, category: str) -> tuple[TransactionType, bool]:
        """Transaction type and deductibility implied by a category.

        Income categories are income, capital categories are capital,
        transfer and personal map to themselves, everything else is an
        expense. Deductible unless capital, transfer, personal or
        uncategorized.
        """
        capital = self.values_of_type("capital")
        if category in self.values_of_type("income"):
            txn_type = TransactionType.INCOME
        elif category in capital:
            txn_type = TransactionType.CAPITAL
        elif category == "transfer":
            txn_type = TransactionType.TRANSFER
        elif category == "personal":
            txn_type = TransactionType.PERSONAL
        else:
            txn_type = TransactionType.EXPENSE

        is_deductible = category not in capital and category not in NON_DEDUCTIBLE_OTHER
        return txn_type, is_deductible
