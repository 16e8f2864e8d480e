"""Claude AI categorization for transactions merchant memory can't resolve.

Sends one transaction at a time to Claude through the claude_fn callback
(system: str, prompt: str) -> str so tests can substitute a fake. The
prompt carries the full taxonomy and the user's recent corrections as
few-shot examples.

Monthly budget cap tracked via api_usage table.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from bankfeed.categorize.taxonomy import Taxonomy
from bankfeed.database.models import CategorizationExample
from bankfeed.database.repository import Repository

logger = logging.getLogger(__name__)

# Monthly budget cap for Claude categorization (in cents), $5/month
MONTHLY_BUDGET_CENTS = 500

# Cost estimate per Claude categorization call (in cents)
CLAUDE_CATEGORIZE_COST_CENTS = 1

API_SERVICE = "claude_categorize"

SYSTEM_PROMPT = (
    "You are a categorization assistant for Australian property investors. "
    "Categorize bank transactions into the correct tax category. "
    "Return ONLY a JSON object, no other text."
)


@dataclass
class ClaudeSuggestion:
    """Parsed classifier answer."""
    category: str
    confidence: float


def build_prompt(
    description: str,
    amount: float,
    taxonomy: Taxonomy,
    examples: list[CategorizationExample] | None = None,
) -> str:
    """Build the user prompt for one transaction."""
    direction = "credit/income" if amount >= 0 else "debit/expense"
    category_lines = "\n".join(
        f"- {c.value}: {c.label}" + (" (tax deductible)" if c.is_deductible else "")
        for c in taxonomy.categories
    )

    prompt = (
        "Categorize this bank transaction for an Australian residential "
        "investment property owner.\n\n"
        f"Transaction:\n"
        f"- Description: {description}\n"
        f"- Amount: ${abs(amount):.2f}\n"
        f"- Type: {direction}\n\n"
        f"Available categories:\n{category_lines}\n"
    )

    if examples:
        example_lines = "\n".join(
            f'- "{ex.description}" → {ex.category}' for ex in examples
        )
        prompt += f"\nHere are some examples of how this user categorizes transactions:\n{example_lines}\n"

    prompt += (
        "\nRespond with ONLY a JSON object in this exact format:\n"
        '{"category": "category_value", "confidence": 85}\n\n'
        "The confidence should be 0-100 based on how certain you are."
    )
    return prompt


def suggest_category(
    description: str,
    amount: float,
    taxonomy: Taxonomy,
    claude_fn,
    repo: Repository,
    examples: list[CategorizationExample] | None = None,
    monthly_budget_cents: int = MONTHLY_BUDGET_CENTS,
) -> ClaudeSuggestion | None:
    """Ask Claude to categorize a single transaction.

    Args:
        description: Raw bank description.
        amount: Signed amount (positive = money in).
        taxonomy: Valid categories; answers outside it are rejected.
        claude_fn: Callable (system: str, prompt: str) -> str.
        repo: Repository for budget tracking.
        examples: Recent user corrections used as few-shot context.
        monthly_budget_cents: Spend cap for the current month.

    Returns:
        ClaudeSuggestion if Claude provided a usable answer, None if the
        budget is exhausted, the call failed, or the answer was unusable.
    """
    month = datetime.now(timezone.utc).strftime("%Y-%m")

    current_cost = repo.get_monthly_cost(month)
    if current_cost >= monthly_budget_cents:
        logger.warning(
            "Monthly Claude budget exceeded (%d/%d cents), skipping categorization",
            current_cost, monthly_budget_cents,
        )
        return None

    prompt = build_prompt(description, amount, taxonomy, examples)

    try:
        response = claude_fn(SYSTEM_PROMPT, prompt)
    except Exception:
        logger.exception("Claude categorization failed for %r", description[:60])
        return None

    repo.increment_api_usage(
        month, API_SERVICE,
        requests=1,
        cost_cents=CLAUDE_CATEGORIZE_COST_CENTS,
    )
    return parse_response(response, taxonomy)


def _extract_json_object(text: str) -> dict | None:
    """Return the first well-formed JSON object embedded in free text."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            data, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(data, dict):
            return data
        start = text.find("{", start + 1)
    return None


def parse_response(response: str, taxonomy: Taxonomy) -> ClaudeSuggestion | None:
    """Parse Claude's answer into a suggestion, or None if unusable."""
    if not isinstance(response, str):
        logger.error("Claude response is not text: %s", type(response))
        return None

    text = response.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [line for line in lines if not line.strip().startswith("```")]
        text = "\n".join(lines)

    data = _extract_json_object(text)
    if data is None:
        logger.error("Failed to parse Claude categorization response: %s", text[:200])
        return None

    category = data.get("category")
    confidence = data.get("confidence")

    if not isinstance(category, str) or not category:
        logger.warning("Claude response missing category: %s", text[:200])
        return None
    # bool is an int subclass; "true" is not a confidence
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        logger.warning("Claude response has non-numeric confidence: %r", confidence)
        return None

    if category not in taxonomy:
        logger.warning("Claude returned invalid category '%s', not in taxonomy", category)
        return None

    confidence = max(0.0, min(100.0, float(confidence)))
    return ClaudeSuggestion(category=category, confidence=confidence)
