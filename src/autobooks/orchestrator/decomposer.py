"""Expansion of intents into executable tasks."""

from typing import Any

import structlog

from autobooks.core.models import Task, TaskOutputRef, TaskPriority, new_id
from autobooks.orchestrator.intents import Intent

logger = structlog.get_logger()


def collect_refs(value: Any) -> list[str]:
    """Task ids referenced by TaskOutputRef values anywhere in a payload."""
    if isinstance(value, TaskOutputRef):
        return [value.task_id]
    if isinstance(value, dict):
        return [ref for item in value.values() for ref in collect_refs(item)]
    if isinstance(value, (list, tuple)):
        return [ref for item in value for ref in collect_refs(item)]
    return []


def resolve_refs(value: Any, outputs: dict[str, Any]) -> Any:
    """Replace TaskOutputRef values with the referenced task output.

    Raises:
        KeyError: If a referenced task has no output yet
    """
    if isinstance(value, TaskOutputRef):
        return outputs[value.task_id]
    if isinstance(value, dict):
        return {key: resolve_refs(item, outputs) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_refs(item, outputs) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve_refs(item, outputs) for item in value)
    return value


class TaskDecomposer:
    """Turns one intent into one or more tasks.

    - ``generate_invoice`` for all customers: a single bulk task
    - ``generate_invoice`` for one customer: fetch customer -> fetch items -> generate
    - ``month_end_close``: five tasks, reconciliation waits on invoices, payments
      and expenses, reporting waits on reconciliation
    - anything else: one task whose payload is the intent's entities
    """

    def decompose(self, intent: Intent) -> list[Task]:
        base_id = new_id("task")
        if intent.action == "generate_invoice":
            if intent.entities.get("all_customers"):
                tasks = self._bulk_invoices(base_id, intent)
            else:
                tasks = self._single_invoice(base_id, intent)
        elif intent.action == "month_end_close":
            tasks = self._month_end_close(base_id)
        else:
            tasks = [
                Task(
                    id=base_id,
                    type=intent.action,
                    description=f"Execute {intent.action}",
                    payload=dict(intent.entities),
                )
            ]

        logger.debug("intent_decomposed", action=intent.action, task_count=len(tasks))
        return tasks

    def _bulk_invoices(self, base_id: str, intent: Intent) -> list[Task]:
        return [
            Task(
                id=f"{base_id}_bulk",
                type="bulk_generate_invoices",
                description="Generate invoices for all customers",
                priority=TaskPriority.HIGH,
                payload={
                    "customers": ["ALL"],
                    "date_range": intent.entities.get("date_range"),
                    "auto_send": False,
                },
            )
        ]

    def _single_invoice(self, base_id: str, intent: Intent) -> list[Task]:
        customer = intent.entities.get("customer")
        fetch_customer = Task(
            id=f"{base_id}_1",
            type="fetch_customer_data",
            description="Fetch customer information",
            payload={"customer_id": customer},
        )
        fetch_items = Task(
            id=f"{base_id}_2",
            type="fetch_billable_items",
            description="Fetch billable items for customer",
            payload={"customer_id": customer},
            dependencies=[fetch_customer.id],
        )
        generate = Task(
            id=f"{base_id}_3",
            type="generate_invoice",
            description="Generate invoice document",
            payload={
                "customer_id": customer,
                "customer_info": TaskOutputRef(task_id=fetch_customer.id),
                "items": TaskOutputRef(task_id=fetch_items.id),
                "date_range": intent.entities.get("date_range"),
            },
            dependencies=[fetch_customer.id, fetch_items.id],
        )
        return [fetch_customer, fetch_items, generate]

    def _month_end_close(self, base_id: str) -> list[Task]:
        invoices = Task(
            id=f"{base_id}_invoices",
            type="generate_pending_invoices",
            description="Generate all pending invoices",
            priority=TaskPriority.HIGH,
        )
        payments = Task(
            id=f"{base_id}_payments",
            type="process_pending_payments",
            description="Process all pending payments",
            priority=TaskPriority.HIGH,
        )
        expenses = Task(
            id=f"{base_id}_expenses",
            type="finalize_expenses",
            description="Finalize expense reports",
            priority=TaskPriority.HIGH,
        )
        reconcile = Task(
            id=f"{base_id}_reconcile",
            type="reconcile_accounts",
            description="Reconcile all accounts",
            priority=TaskPriority.HIGH,
            dependencies=[invoices.id, payments.id, expenses.id],
        )
        reports = Task(
            id=f"{base_id}_reports",
            type="generate_reports",
            description="Generate financial reports",
            dependencies=[reconcile.id],
        )
        return [invoices, payments, expenses, reconcile, reports]
