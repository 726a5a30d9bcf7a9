"""Invoice agent: invoice generation, delivery, payment tracking and collection.

Rendering, storage, e-mail and payment processing are opaque tools injected
by the application:

- ``template_engine``: render an invoice document
- ``pdf_generator``: turn rendered output into a PDF
- ``database``: select/insert/update/increment operations
- ``email_service``: send a message, returns ``{"message_id": ...}``
- ``payment_gateway``: payment status and listings
- ``quickbooks``: accounting sync
"""

import asyncio
from typing import Any

from autobooks.agents.base import BaseAgent, UnknownActionError
from autobooks.agents.signals import AgentSignal
from autobooks.core.models import (
    AgentCapability,
    AgentMessage,
    ExecutionContext,
    MessageType,
    ResultStatus,
    Task,
    TaskResult,
    utcnow,
)

INVOICE_TTL_SECONDS = 86400
CUSTOMER_TTL_SECONDS = 3600

TEMPLATES = {
    "standard": ["header", "customer", "items", "totals", "footer"],
    "professional": ["logo", "header", "customer", "items", "totals", "terms", "footer"],
    "simple": ["header", "customer", "items", "totals"],
}

# Task type -> (action, confidence)
TASK_ACTIONS = {
    "generate_invoice": ("generate_single", 0.8),
    "invoice_generation": ("generate_single", 0.8),
    "bulk_generate": ("generate_bulk", 0.95),
    "bulk_generate_invoices": ("generate_bulk", 0.95),
    "generate_pending_invoices": ("generate_bulk", 0.95),
    "send_invoice": ("send", 0.9),
    "send_invoices": ("send", 0.9),
    "track_payment": ("track", 0.9),
    "track_payments": ("track", 0.9),
    "process_pending_payments": ("track", 0.9),
    "check_overdue": ("check_overdue", 0.9),
    "follow_up": ("follow_up", 0.85),
    "follow_up_overdue": ("follow_up", 0.85),
    "reconcile": ("reconcile", 0.9),
    "reconcile_invoices": ("reconcile", 0.9),
}

REMINDER_LEVELS = [
    (7, 1, "Friendly", "friendly_reminder"),
    (30, 2, "Important", "firm_reminder"),
    (60, 3, "Urgent", "urgent_reminder"),
]
FINAL_REMINDER = (4, "Final Notice", "final_notice")


def reminder_level(days_overdue: int) -> tuple[int, str, str]:
    """(level, subject prefix, template) for a number of days overdue."""
    for limit, level, prefix, template in REMINDER_LEVELS:
        if days_overdue <= limit:
            return level, prefix, template
    return FINAL_REMINDER


def batched(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class InvoiceAgent(BaseAgent):
    """Handles the invoice lifecycle on top of injected tools."""

    @property
    def name(self) -> str:
        return "InvoiceAgent"

    @property
    def capabilities(self) -> list[AgentCapability]:
        return [
            AgentCapability(
                name="generate_invoice",
                description="Generate a single invoice from data",
                required_tools=["template_engine", "pdf_generator", "database"],
                input_schema={
                    "type": "object",
                    "properties": {
                        "customer_info": {"type": "object"},
                        "items": {"type": "array"},
                        "template": {"type": "string"},
                    },
                },
            ),
            AgentCapability(
                name="bulk_generate",
                description="Generate multiple invoices in batch",
                required_tools=["template_engine", "pdf_generator", "database"],
                input_schema={
                    "type": "object",
                    "properties": {
                        "customers": {"type": "array"},
                        "date_range": {"type": "object"},
                        "auto_send": {"type": "boolean"},
                    },
                },
            ),
            AgentCapability(
                name="send_invoices",
                description="Send invoices via email",
                required_tools=["email_service", "database"],
                input_schema={
                    "type": "object",
                    "properties": {
                        "invoice_ids": {"type": "array"},
                        "email_template": {"type": "string"},
                    },
                },
            ),
            AgentCapability(
                name="track_payments",
                description="Track invoice payment status",
                required_tools=["database", "payment_gateway"],
                input_schema={"type": "object", "properties": {"invoice_ids": {"type": "array"}}},
            ),
            AgentCapability(
                name="follow_up",
                description="Send payment reminders for overdue invoices",
                required_tools=["email_service", "database", "payment_gateway"],
                input_schema={
                    "type": "object",
                    "properties": {
                        "days_overdue": {"type": "number"},
                        "reminder_template": {"type": "string"},
                    },
                },
            ),
            AgentCapability(
                name="reconcile",
                description="Reconcile invoices with payments",
                required_tools=["database", "payment_gateway", "quickbooks"],
                input_schema={"type": "object", "properties": {"date_range": {"type": "object"}}},
            ),
        ]

    def initialize(self) -> None:
        self._actions = {
            "generate_single": self.generate_single_invoice,
            "generate_bulk": self.generate_bulk_invoices,
            "send": self.send_invoices,
            "track": self.track_payments,
            "check_overdue": self.check_overdue,
            "follow_up": self.follow_up_overdue,
            "reconcile": self.reconcile_invoices,
        }

    def resolve_action(self, task: Task) -> tuple[str, float]:
        """Pick the action for a task, by type first and payload shape second."""
        if task.type in TASK_ACTIONS:
            return TASK_ACTIONS[task.type]

        payload = task.payload
        if len(payload.get("customers") or []) > 1:
            return "generate_bulk", 0.95
        if payload.get("invoice_ids") and payload.get("send"):
            return "send", 0.9
        if payload.get("track_payments"):
            return "track", 0.9
        if payload.get("overdue_check"):
            return "follow_up", 0.85
        if payload.get("reconcile"):
            return "reconcile", 0.9
        if payload.get("customer_info") or payload.get("items"):
            return "generate_single", 0.8
        raise UnknownActionError(f"{self.name} cannot handle task type '{task.type}'")

    async def validate(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            return False

        customer = payload.get("customer_info")
        if isinstance(customer, dict) and not customer.get("email"):
            self.logger.warning("invoice_validation_failed", reason="customer email is required")
            return False

        if "items" in payload and isinstance(payload["items"], list) and not payload["items"]:
            self.logger.warning("invoice_validation_failed", reason="at least one item is required")
            return False

        return True

    async def execute(self, task: Task, context: ExecutionContext) -> TaskResult:
        action, confidence = self.resolve_action(task)

        pattern = self.find_pattern(task.type)
        if pattern is not None and pattern.confidence > self.settings.pattern_shortcut_threshold:
            self.logger.info(
                "using_learned_pattern", task_type=task.type, confidence=pattern.confidence
            )
            return await self.execute_pattern(pattern, task, context)

        data = await self._actions[action](task.payload, context)
        return TaskResult(
            task_id=task.id,
            status=ResultStatus.SUCCESS,
            data=data,
            tools_used=self.tools_used,
            confidence=confidence,
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _dataset(self, context: ExecutionContext) -> Any:
        return context.metadata.get("dataset_id")

    async def _next_invoice_number(self, context: ExecutionContext) -> str:
        counter = await self.call_tool(
            "database",
            {"operation": "increment", "key": f"invoice_counter_{context.organization_id}"},
        )
        now = utcnow()
        return f"INV-{now.year}{now.month:02d}-{int(counter):05d}"

    async def generate_single_invoice(
        self, payload: dict[str, Any], context: ExecutionContext
    ) -> dict[str, Any]:
        """Render, store and cache one invoice."""
        number = await self._next_invoice_number(context)
        customer_id = payload.get("customer_id") or (payload.get("customer_info") or {}).get("id")
        template = (
            self.recall(f"preferred_template_{customer_id}")
            or payload.get("template")
            or "standard"
        )
        if template not in TEMPLATES:
            raise ValueError(f"Unknown invoice template: {template}")

        invoice = {**payload, "id": number, "template": template}
        rendered = await self.call_tool(
            "template_engine",
            {"template": template, "sections": TEMPLATES[template], "data": invoice},
        )
        pdf = await self.call_tool("pdf_generator", {"html": rendered, "options": {"format": "A4"}})
        await self.call_tool(
            "database",
            {
                "operation": "insert",
                "table": "invoices",
                "data": invoice,
                "dataset_id": self._dataset(context),
            },
        )

        record = {**invoice, "pdf": pdf}
        self.remember(f"invoice_{number}", record, ttl=INVOICE_TTL_SECONDS)
        return {"invoice_number": number, "pdf": pdf, "data": invoice}

    async def _fetch_customer(self, customer_id: str, context: ExecutionContext) -> Any:
        cached = self.recall(f"customer_{customer_id}")
        if cached:
            return cached

        customer = await self.call_tool(
            "database",
            {
                "operation": "select",
                "table": "customers",
                "where": {"id": customer_id},
                "dataset_id": self._dataset(context),
            },
        )
        self.remember(f"customer_{customer_id}", customer, ttl=CUSTOMER_TTL_SECONDS)
        return customer

    async def _invoice_customer(
        self, customer_id: str, request: dict[str, Any], context: ExecutionContext
    ) -> dict[str, Any] | None:
        try:
            customer = await self._fetch_customer(customer_id, context)
            where = {"customer_id": customer_id, "billed": False}
            if request.get("date_range"):
                where["date_range"] = request["date_range"]
            items = await self.call_tool(
                "database",
                {
                    "operation": "select",
                    "table": "billable_items",
                    "where": where,
                    "dataset_id": self._dataset(context),
                },
            )
            if not items:
                self.logger.info("no_billable_items", customer_id=customer_id)
                return None

            invoice = await self.generate_single_invoice(
                {
                    "customer_id": customer_id,
                    "customer_info": customer,
                    "items": items,
                    "metadata": {"terms": (customer or {}).get("terms", "Net 30")},
                },
                context,
            )
            if request.get("auto_send"):
                await self.send_invoices(
                    {"invoice_ids": [invoice["invoice_number"]], "email_template": "standard"},
                    context,
                )
            return invoice

        except Exception as e:
            self.logger.error("customer_invoice_failed", customer_id=customer_id, error=str(e))
            return {"customer_id": customer_id, "error": str(e)}

    async def generate_bulk_invoices(
        self, request: dict[str, Any], context: ExecutionContext
    ) -> dict[str, Any]:
        """Generate invoices for many customers, one concurrent batch at a time.

        ``customers`` may be a list of ids or customer records; an empty list or
        an ``ALL`` marker selects every customer. A failure for one customer is
        reported in the output and does not stop the batch.
        """
        customers = [
            c.get("id") if isinstance(c, dict) else c for c in request.get("customers") or []
        ]
        if not customers or any("ALL" in str(c).upper() for c in customers):
            everyone = await self.call_tool(
                "database",
                {"operation": "select", "table": "customers", "dataset_id": self._dataset(context)},
            )
            customers = [c.get("id") for c in everyone or [] if c.get("id")]

        invoices = []
        for batch in batched(customers, self.settings.bulk_batch_size):
            outcomes = await asyncio.gather(
                *(self._invoice_customer(customer_id, request, context) for customer_id in batch)
            )
            invoices.extend(o for o in outcomes if o is not None)
            await self.signals.emit(
                AgentSignal.PROGRESS, {"completed": len(invoices), "total": len(customers)}
            )

        failed = sum(1 for invoice in invoices if "error" in invoice)
        return {"generated": len(invoices) - failed, "failed": failed, "invoices": invoices}

    async def send_invoices(self, payload: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        """E-mail invoices and mark them as sent."""
        invoice_ids = payload.get("invoice_ids") or [
            invoice["invoice_number"]
            for invoice in payload.get("invoices", [])
            if isinstance(invoice, dict) and "invoice_number" in invoice
        ]

        results = []
        for invoice_id in invoice_ids:
            try:
                invoice = self.recall(f"invoice_{invoice_id}") or await self.call_tool(
                    "database",
                    {
                        "operation": "select",
                        "table": "invoices",
                        "where": {"id": invoice_id},
                        "dataset_id": self._dataset(context),
                    },
                )
                if not invoice:
                    raise LookupError(f"Invoice not found: {invoice_id}")

                sent = await self.call_tool(
                    "email_service",
                    {
                        "to": (invoice.get("customer_info") or {}).get("email"),
                        "subject": f"Invoice {invoice_id} from {context.organization_id}",
                        "template": payload.get("email_template", "standard"),
                        "data": invoice,
                        "attachments": [
                            {"filename": f"invoice_{invoice_id}.pdf", "content": invoice.get("pdf")}
                        ],
                    },
                )
                await self.call_tool(
                    "database",
                    {
                        "operation": "update",
                        "table": "invoices",
                        "where": {"id": invoice_id},
                        "data": {"status": "sent", "sent_at": utcnow().isoformat()},
                        "dataset_id": self._dataset(context),
                    },
                )
                results.append(
                    {"invoice_id": invoice_id, "status": "sent", "email_id": sent.get("message_id")}
                )

            except Exception as e:
                self.logger.error("invoice_send_failed", invoice_id=invoice_id, error=str(e))
                results.append({"invoice_id": invoice_id, "status": "failed", "error": str(e)})

        return {
            "sent": sum(1 for r in results if r["status"] == "sent"),
            "failed": sum(1 for r in results if r["status"] == "failed"),
            "results": results,
        }

    async def track_payments(self, payload: dict[str, Any], context: ExecutionContext) -> list[dict]:
        """Check payment status and mark paid invoices."""
        results = []
        for invoice_id in payload.get("invoice_ids", []):
            status = await self.call_tool(
                "payment_gateway", {"action": "check_status", "invoice_id": invoice_id}
            )
            if status.get("paid"):
                await self.call_tool(
                    "database",
                    {
                        "operation": "update",
                        "table": "invoices",
                        "where": {"id": invoice_id},
                        "data": {
                            "status": "paid",
                            "paid_at": status.get("paid_at"),
                            "payment_method": status.get("method"),
                        },
                        "dataset_id": self._dataset(context),
                    },
                )
            results.append(
                {**status, "invoice_id": invoice_id, "status": "paid" if status.get("paid") else "unpaid"}
            )
        return results

    async def check_overdue(self, payload: dict[str, Any], context: ExecutionContext) -> dict[str, Any]:
        """List invoices that are past due and still unpaid."""
        invoices = await self.call_tool(
            "database",
            {
                "operation": "select",
                "table": "invoices",
                "where": {
                    "status": ["sent", "viewed"],
                    "days_overdue": payload.get("days_overdue", 0),
                },
                "dataset_id": self._dataset(context),
            },
        )
        invoices = list(invoices or [])
        return {"overdue_count": len(invoices), "invoices": invoices}

    async def follow_up_overdue(
        self, payload: dict[str, Any], context: ExecutionContext
    ) -> dict[str, Any]:
        """Send escalating reminders for overdue invoices that are still unpaid."""
        if "invoices" in payload:
            invoices = payload["invoices"]
        else:
            invoices = (await self.check_overdue(payload, context))["invoices"]

        results = []
        for invoice in invoices:
            check = await self.track_payments({"invoice_ids": [invoice["id"]]}, context)
            if check and check[0]["status"] == "paid":
                continue

            days_overdue = int(invoice.get("days_overdue", payload.get("days_overdue", 0)))
            level, prefix, template = reminder_level(days_overdue)
            sent = await self.call_tool(
                "email_service",
                {
                    "to": (invoice.get("customer_info") or {}).get("email"),
                    "subject": f"{prefix} Payment Reminder - Invoice {invoice['id']}",
                    "template": template or payload.get("reminder_template"),
                    "data": {**invoice, "days_overdue": days_overdue, "reminder_level": level},
                },
            )
            await self.call_tool(
                "database",
                {
                    "operation": "insert",
                    "table": "reminders",
                    "data": {
                        "invoice_id": invoice["id"],
                        "reminder_level": level,
                        "sent_at": utcnow().isoformat(),
                        "email_id": sent.get("message_id"),
                    },
                    "dataset_id": self._dataset(context),
                },
            )
            results.append({"invoice_id": invoice["id"], "reminder_level": level, "sent": True})

        return {"reminders_sent": len(results), "results": results}

    async def reconcile_invoices(
        self, payload: dict[str, Any], context: ExecutionContext
    ) -> dict[str, Any]:
        """Match invoices with payments and push matches to accounting."""
        date_range = payload.get("date_range")
        invoices = await self.call_tool(
            "database",
            {
                "operation": "select",
                "table": "invoices",
                "where": {"date_range": date_range},
                "dataset_id": self._dataset(context),
            },
        )
        payments = await self.call_tool(
            "payment_gateway", {"action": "list_payments", "date_range": date_range}
        )

        reconciled = []
        unmatched = []
        for invoice in invoices or []:
            payment = next(
                (
                    p
                    for p in payments or []
                    if p.get("reference") == invoice.get("id")
                    or (p.get("amount") is not None and p.get("amount") == invoice.get("total"))
                ),
                None,
            )
            if payment is not None:
                reconciled.append({"invoice": invoice, "payment": payment, "matched": True})
                await self.call_tool(
                    "quickbooks",
                    {
                        "action": "create_payment",
                        "data": {
                            "invoice_id": invoice.get("id"),
                            "amount": payment.get("amount"),
                            "date": payment.get("date"),
                            "method": payment.get("method"),
                        },
                    },
                )
            elif invoice.get("status") == "paid":
                unmatched.append({"invoice": invoice, "issue": "marked_paid_no_payment"})

        matched_ids = {r["payment"].get("id") for r in reconciled}
        orphans = [p for p in payments or [] if p.get("id") not in matched_ids]
        return {
            "reconciled": len(reconciled),
            "unmatched": len(unmatched),
            "orphan_payments": len(orphans),
            "details": {"reconciled": reconciled, "unmatched": unmatched, "orphan_payments": orphans},
        }

    # ------------------------------------------------------------------
    # Messaging and feedback
    # ------------------------------------------------------------------

    async def handle_request(self, message: AgentMessage) -> None:
        action = message.payload.action
        if action != "generate_invoice":
            self.logger.warning("unknown_request_action", action=action)
            return

        context = message.payload.context
        if context is None:
            await self.send_message(
                message.sender,
                "invoice_failed",
                "Request carries no execution context",
                message_type=MessageType.ERROR,
                reply_to=message.id,
            )
            return

        task = Task(
            type="invoice_generation",
            description=f"Generate invoice requested by {message.sender}",
            priority=message.priority,
            payload=message.payload.data or {},
        )
        result = await self.process_task(task, context)
        await self.send_message(
            message.sender,
            "invoice_generated",
            result,
            message_type=MessageType.RESPONSE,
            context=context,
            reply_to=message.id,
        )

    async def handle_event(self, message: AgentMessage) -> None:
        data = message.payload.data or {}
        if message.payload.action == "customer_updated" and isinstance(data, dict):
            self.memory.forget(f"customer_{data.get('customer_id')}")
            self.logger.info("customer_cache_invalidated", customer_id=data.get("customer_id"))

    async def apply_corrections(self, task_id: str, corrections: dict[str, Any]) -> None:
        task = self.memory.peek(f"task_{task_id}")
        if task is not None and corrections.get("template"):
            customer_id = task.payload.get("customer_id")
            self.remember(f"preferred_template_{customer_id}", corrections["template"])
            self.logger.info(
                "template_preference_updated", customer_id=customer_id, template=corrections["template"]
            )
