"""Intent classification for free-text requests.

Classification is a pluggable strategy: anything with an async
``classify(prompt) -> list[Intent]`` method can replace the keyword rules
below without touching decomposition or execution.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog

from autobooks.core.models import utcnow

logger = structlog.get_logger()


@dataclass
class Intent:
    """A candidate interpretation of a request."""

    action: str
    confidence: float
    entities: dict[str, Any] = field(default_factory=dict)
    suggested_agents: list[str] = field(default_factory=list)


class IntentClassifier(Protocol):
    """Strategy turning a request into intent candidates."""

    async def classify(self, prompt: str) -> list[Intent]:
        ...


@dataclass(frozen=True)
class IntentRule:
    """Keyword rule: fires when a subject word and a trigger word both appear.

    An empty ``subjects`` tuple means only a trigger word is needed.
    """

    action: str
    confidence: float
    triggers: tuple[str, ...]
    subjects: tuple[str, ...] = ()
    suggested_agents: tuple[str, ...] = ()

    def matches(self, text: str) -> bool:
        if self.subjects and not any(s in text for s in self.subjects):
            return False
        return any(t in text for t in self.triggers)


DEFAULT_RULES = (
    IntentRule(
        "generate_invoice", 0.9, ("generate", "create"), ("invoice",), ("invoice_agent",)
    ),
    IntentRule(
        "send_invoice", 0.85, ("send",), ("invoice",), ("invoice_agent", "communication_agent")
    ),
    IntentRule(
        "follow_up_overdue", 0.88, ("overdue", "follow up"), ("invoice",), ("invoice_agent",)
    ),
    IntentRule(
        "track_payment", 0.87, ("track", "status"), ("payment",), ("invoice_agent", "payment_agent")
    ),
    IntentRule(
        "reconcile_accounts", 0.85, ("reconcile",), (), ("invoice_agent", "quickbooks_agent")
    ),
    IntentRule(
        "month_end_close",
        0.92,
        ("month-end", "close books"),
        (),
        ("invoice_agent", "quickbooks_agent", "expense_agent", "analysis_agent"),
    ),
)

DATE_PATTERN = re.compile(r"\b(\d{1,2}/\d{1,2}/\d{4}|\w+ \d{1,2}, \d{4})\b")
DATE_FORMATS = ("%m/%d/%Y", "%B %d, %Y", "%b %d, %Y")
CUSTOMER_PATTERN = re.compile(r"customer\s+(\w+)", re.IGNORECASE)
AMOUNT_PATTERN = re.compile(r"\$\s?([\d,]+(?:\.\d+)?)")
ALL_CUSTOMERS_PATTERN = re.compile(
    r"(everyone|every one|all customers|all clients|for all)", re.IGNORECASE
)


def _parse_date(text: str) -> datetime | None:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _week_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = (now - timedelta(days=now.weekday())).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    end = (start + timedelta(days=6)).replace(hour=23, minute=59, second=59, microsecond=999999)
    return start, end


def _month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    next_month = (start + timedelta(days=32)).replace(day=1)
    return start, next_month - timedelta(microseconds=1)


def extract_entities(prompt: str, now: datetime | None = None) -> dict[str, Any]:
    """Pull dates, customer, amount, relative ranges and an all-customers flag.

    Args:
        prompt: Free-text request
        now: Reference time for relative ranges (defaults to UTC now)

    Returns:
        Dict with any of ``date``, ``customer``, ``amount``, ``date_range``
        (``{"start": ..., "end": ...}``) and ``all_customers``
    """
    now = now or utcnow()
    entities: dict[str, Any] = {}

    date_match = DATE_PATTERN.search(prompt)
    if date_match:
        parsed = _parse_date(date_match.group(0))
        if parsed is not None:
            entities["date"] = parsed

    customer_match = CUSTOMER_PATTERN.search(prompt)
    if customer_match:
        entities["customer"] = customer_match.group(1)

    amount_match = AMOUNT_PATTERN.search(prompt)
    if amount_match:
        entities["amount"] = float(amount_match.group(1).replace(",", ""))

    lower = prompt.lower()
    week_start, week_end = _week_bounds(now)
    if "this week" in lower:
        entities["date_range"] = {"start": week_start, "end": week_end}
    elif "this month" in lower:
        start, end = _month_bounds(now)
        entities["date_range"] = {"start": start, "end": end}
    elif "last week" in lower:
        entities["date_range"] = {
            "start": week_start - timedelta(days=7),
            "end": week_end - timedelta(days=7),
        }

    if ALL_CUSTOMERS_PATTERN.search(prompt):
        entities["all_customers"] = True

    return entities


class KeywordIntentClassifier:
    """Rule-based classifier using keyword matching."""

    def __init__(
        self,
        rules: tuple[IntentRule, ...] = DEFAULT_RULES,
        clock: Callable[[], datetime] | None = None,
    ):
        self.rules = rules
        self._clock = clock or utcnow

    async def classify(self, prompt: str) -> list[Intent]:
        text = prompt.lower()
        matched = [rule for rule in self.rules if rule.matches(text)]
        if not matched:
            logger.info("no_intent_matched", prompt_length=len(prompt))
            return []

        entities = extract_entities(prompt, now=self._clock())
        return [
            Intent(
                action=rule.action,
                confidence=rule.confidence,
                entities=dict(entities),
                suggested_agents=list(rule.suggested_agents),
            )
            for rule in matched
        ]


def best_intent(intents: list[Intent]) -> Intent | None:
    """Highest confidence intent (the first one wins ties)."""
    if not intents:
        return None
    return max(intents, key=lambda intent: intent.confidence)
