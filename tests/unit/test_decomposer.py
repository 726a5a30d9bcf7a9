"""Tests for task decomposition and agent assignment."""

import pytest

from autobooks.core.models import Task, TaskOutputRef, TaskPriority
from autobooks.orchestrator.assignment import (
    AgentAssignment,
    order_assignments,
    route_task_type,
    select_agents,
)
from autobooks.orchestrator.decomposer import TaskDecomposer, collect_refs, resolve_refs
from autobooks.orchestrator.intents import Intent


@pytest.fixture
def decomposer():
    return TaskDecomposer()


class TestDecomposer:
    """Test intent expansion."""

    def test_bulk_invoices_for_all_customers(self, decomposer):
        intent = Intent("generate_invoice", 0.9, {"all_customers": True})

        tasks = decomposer.decompose(intent)

        assert len(tasks) == 1
        assert tasks[0].id.endswith("_bulk")
        assert tasks[0].type == "bulk_generate_invoices"
        assert tasks[0].priority == TaskPriority.HIGH
        assert tasks[0].payload["customers"] == ["ALL"]
        assert tasks[0].payload["auto_send"] is False

    def test_single_customer_invoice_chain(self, decomposer):
        intent = Intent("generate_invoice", 0.9, {"customer": "acme"})

        fetch_customer, fetch_items, generate = decomposer.decompose(intent)

        assert fetch_customer.type == "fetch_customer_data"
        assert fetch_items.dependencies == [fetch_customer.id]
        assert generate.type == "generate_invoice"
        assert generate.dependencies == [fetch_customer.id, fetch_items.id]
        assert generate.payload["customer_info"] == TaskOutputRef(task_id=fetch_customer.id)
        assert generate.payload["items"] == TaskOutputRef(task_id=fetch_items.id)
        assert generate.payload["customer_id"] == "acme"

    def test_month_end_close(self, decomposer):
        """Test that reconciliation waits on the three preparation tasks."""
        tasks = decomposer.decompose(Intent("month_end_close", 0.92))

        invoices, payments, expenses, reconcile, reports = tasks
        assert [t.type for t in tasks] == [
            "generate_pending_invoices",
            "process_pending_payments",
            "finalize_expenses",
            "reconcile_accounts",
            "generate_reports",
        ]
        assert reconcile.dependencies == [invoices.id, payments.id, expenses.id]
        assert reports.dependencies == [reconcile.id]
        assert all(t.priority == TaskPriority.HIGH for t in tasks[:4])
        assert reports.priority == TaskPriority.NORMAL

    def test_other_intents_become_one_task(self, decomposer):
        intent = Intent("track_payment", 0.87, {"amount": 50.0})

        tasks = decomposer.decompose(intent)

        assert len(tasks) == 1
        assert tasks[0].type == "track_payment"
        assert tasks[0].payload == {"amount": 50.0}

    def test_task_ids_are_unique_per_decomposition(self, decomposer):
        first = decomposer.decompose(Intent("send_invoice", 0.85))
        second = decomposer.decompose(Intent("send_invoice", 0.85))
        assert first[0].id != second[0].id


class TestOutputRefs:
    """Test payload reference collection and resolution."""

    def test_collect_nested_refs(self):
        payload = {
            "a": TaskOutputRef(task_id="t1"),
            "b": [1, {"c": TaskOutputRef(task_id="t2")}],
            "d": "plain",
        }
        assert collect_refs(payload) == ["t1", "t2"]

    def test_resolve_refs(self):
        payload = {"a": TaskOutputRef(task_id="t1"), "b": [TaskOutputRef(task_id="t2"), 3]}

        resolved = resolve_refs(payload, {"t1": {"name": "Acme"}, "t2": [1, 2]})

        assert resolved == {"a": {"name": "Acme"}, "b": [[1, 2], 3]}

    def test_resolve_missing_ref(self):
        with pytest.raises(KeyError):
            resolve_refs({"a": TaskOutputRef(task_id="nope")}, {})


class TestAssignment:
    """Test routing tasks to agents."""

    @pytest.mark.parametrize(
        "task_type,agent_id",
        [
            ("bulk_generate_invoices", "invoice_agent"),
            ("process_pending_payments", "invoice_agent"),
            ("follow_up_overdue", "invoice_agent"),
            ("finalize_expenses", "expense_agent"),
            ("reconcile_accounts", "quickbooks_agent"),
            ("sync_quickbooks", "quickbooks_agent"),
            ("generate_reports", "analysis_agent"),
            ("fetch_customer_data", "general_agent"),
        ],
    )
    def test_route_task_type(self, task_type, agent_id):
        assert route_task_type(task_type) == agent_id

    def test_custom_routes(self):
        routes = [(("customer",), "crm_agent")]
        assert route_task_type("fetch_customer_data", routes) == "crm_agent"
        assert route_task_type("generate_invoice", routes, default="fallback") == "fallback"

    def test_select_agents_groups_month_end(self, decomposer):
        tasks = decomposer.decompose(Intent("month_end_close", 0.92))

        assignments = select_agents(tasks)

        assert [a.agent_id for a in assignments] == [
            "invoice_agent",
            "expense_agent",
            "quickbooks_agent",
            "analysis_agent",
        ]
        invoice, expense, quickbooks, analysis = assignments
        assert invoice.task_ids == [tasks[0].id, tasks[1].id]
        assert invoice.priority == TaskPriority.HIGH
        assert quickbooks.dependencies == [tasks[0].id, tasks[1].id, tasks[2].id]
        assert analysis.priority == TaskPriority.NORMAL

    def test_empty_task_list(self):
        assert select_agents([]) == []

    def test_order_assignments_respects_dependencies(self):
        first = Task(id="t1", type="a")
        second = Task(id="t2", type="b", dependencies=["t1"])
        third = Task(id="t3", type="c", dependencies=["t2"])
        assignments = [
            AgentAssignment("c_agent", [third], dependencies=["t2"]),
            AgentAssignment("b_agent", [second], dependencies=["t1"]),
            AgentAssignment("a_agent", [first]),
        ]

        ordered = order_assignments(assignments)

        assert [a.agent_id for a in ordered] == ["a_agent", "b_agent", "c_agent"]

    def test_order_is_stable_for_independent_assignments(self):
        assignments = [
            AgentAssignment("x", [Task(id="t1", type="a")]),
            AgentAssignment("y", [Task(id="t2", type="b")], dependencies=["external"]),
            AgentAssignment("z", [Task(id="t3", type="c")]),
        ]

        assert [a.agent_id for a in order_assignments(assignments)] == ["x", "y", "z"]

    def test_cycles_keep_input_order(self):
        assignments = [
            AgentAssignment("x", [Task(id="t1", type="a")], dependencies=["t2"]),
            AgentAssignment("y", [Task(id="t2", type="b")], dependencies=["t1"]),
        ]

        assert [a.agent_id for a in order_assignments(assignments)] == ["x", "y"]
