"""Tests for keyword intent classification and entity extraction."""

from datetime import UTC, datetime

import pytest

from autobooks.orchestrator.intents import (
    Intent,
    IntentRule,
    KeywordIntentClassifier,
    best_intent,
    extract_entities,
)

# Wednesday
NOW = datetime(2025, 1, 15, 12, 30, tzinfo=UTC)


@pytest.fixture
def classifier():
    return KeywordIntentClassifier(clock=lambda: NOW)


class TestClassification:
    """Test rule matching."""

    @pytest.mark.asyncio
    async def test_generate_invoice(self, classifier):
        intents = await classifier.classify("Generate an invoice for customer acme")

        assert [i.action for i in intents] == ["generate_invoice"]
        assert intents[0].confidence == 0.9
        assert intents[0].entities["customer"] == "acme"
        assert intents[0].suggested_agents == ["invoice_agent"]

    @pytest.mark.asyncio
    async def test_subject_word_required(self, classifier):
        assert await classifier.classify("create a report") == []

    @pytest.mark.asyncio
    async def test_several_rules_match(self, classifier):
        intents = await classifier.classify("Create and send the invoices")

        assert {i.action for i in intents} == {"generate_invoice", "send_invoice"}
        assert best_intent(intents).action == "generate_invoice"

    @pytest.mark.parametrize(
        "prompt,action,confidence",
        [
            ("Please follow up on overdue invoices", "follow_up_overdue", 0.88),
            ("What is the payment status?", "track_payment", 0.87),
            ("Reconcile the bank account", "reconcile_accounts", 0.85),
            ("Run the month-end checklist", "month_end_close", 0.92),
            ("Time to close books for March", "month_end_close", 0.92),
        ],
    )
    @pytest.mark.asyncio
    async def test_rule_table(self, classifier, prompt, action, confidence):
        intent = best_intent(await classifier.classify(prompt))

        assert intent.action == action
        assert intent.confidence == confidence

    @pytest.mark.asyncio
    async def test_no_match(self, classifier):
        assert await classifier.classify("hello there") == []

    @pytest.mark.asyncio
    async def test_custom_rules(self):
        classifier = KeywordIntentClassifier(
            rules=(IntentRule("categorize_expense", 0.8, ("categorize",), ("expense",)),)
        )

        intents = await classifier.classify("Categorize this expense")

        assert [i.action for i in intents] == ["categorize_expense"]
        assert await classifier.classify("generate invoice") == []

    def test_best_intent_prefers_first_on_ties(self):
        intents = [Intent("a", 0.5), Intent("b", 0.9), Intent("c", 0.9)]
        assert best_intent(intents).action == "b"
        assert best_intent([]) is None


class TestEntityExtraction:
    """Test entity extraction from prompts."""

    def test_amount_requires_currency_symbol(self):
        assert extract_entities("invoice for $1,250.50", now=NOW)["amount"] == 1250.5
        assert "amount" not in extract_entities("invoice for 1250", now=NOW)

    def test_customer_is_case_insensitive(self):
        assert extract_entities("bill CUSTOMER Acme now", now=NOW)["customer"] == "Acme"

    def test_numeric_date(self):
        assert extract_entities("due 03/15/2025", now=NOW)["date"] == datetime(2025, 3, 15)

    def test_long_date(self):
        assert extract_entities("due March 5, 2025", now=NOW)["date"] == datetime(2025, 3, 5)

    def test_this_week(self):
        date_range = extract_entities("invoices this week", now=NOW)["date_range"]

        assert date_range["start"] == datetime(2025, 1, 13, tzinfo=UTC)
        assert date_range["end"] == datetime(2025, 1, 19, 23, 59, 59, 999999, tzinfo=UTC)

    def test_last_week(self):
        date_range = extract_entities("what happened last week", now=NOW)["date_range"]

        assert date_range["start"] == datetime(2025, 1, 6, tzinfo=UTC)
        assert date_range["end"] == datetime(2025, 1, 12, 23, 59, 59, 999999, tzinfo=UTC)

    def test_this_month(self):
        date_range = extract_entities("everything this month", now=NOW)["date_range"]

        assert date_range["start"] == datetime(2025, 1, 1, tzinfo=UTC)
        assert date_range["end"] == datetime(2025, 1, 31, 23, 59, 59, 999999, tzinfo=UTC)

    def test_december_month_end(self):
        now = datetime(2025, 12, 10, tzinfo=UTC)
        date_range = extract_entities("this month", now=now)["date_range"]

        assert date_range["end"] == datetime(2025, 12, 31, 23, 59, 59, 999999, tzinfo=UTC)

    @pytest.mark.parametrize(
        "prompt", ["invoice everyone", "for all customers", "ALL CLIENTS please", "do it for all"]
    )
    def test_all_customers(self, prompt):
        assert extract_entities(prompt, now=NOW)["all_customers"] is True

    def test_nothing_to_extract(self):
        assert extract_entities("hello", now=NOW) == {}
