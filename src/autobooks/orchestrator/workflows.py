"""Workflow definitions and YAML loading."""

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from autobooks.core.workflow import Workflow

logger = structlog.get_logger()


class WorkflowConfigError(ValueError):
    """Raised when workflow configuration cannot be parsed or validated."""

    pass


DEFAULT_WORKFLOWS_YAML = """
workflows:
  - id: monthly_invoicing
    name: Monthly Invoice Generation
    description: Generate and send all monthly invoices
    triggers:
      - type: schedule
        config: {cron: "0 9 1 * *"}
    steps:
      - id: fetch_customers
        agent_id: database_agent
        action: fetch_active_customers
        on_success: generate_invoices
      - id: generate_invoices
        agent_id: invoice_agent
        action: bulk_generate
        input_from: fetch_customers
        parallel: true
        on_success: send_invoices
      - id: send_invoices
        agent_id: invoice_agent
        action: send_invoices
        input_from: generate_invoices
        on_success: update_quickbooks
      - id: update_quickbooks
        agent_id: quickbooks_agent
        action: create_invoices
        input_from: generate_invoices
    error_handling:
      retry_policy: {max_attempts: 3, backoff: exponential, initial_delay: 1.0}
      alerting:
        channels: [email, slack]
        severity: high

  - id: overdue_collection
    name: Overdue Invoice Collection
    description: Follow up on overdue invoices
    triggers:
      - type: schedule
        config: {cron: "0 10 * * *"}
    steps:
      - id: check_overdue
        agent_id: invoice_agent
        action: check_overdue
        on_success: send_reminders
      - id: send_reminders
        agent_id: invoice_agent
        action: follow_up
        input_from: check_overdue
        conditions:
          - {field: overdue_count, operator: greater, value: 0}
        on_success: log_activity
      - id: log_activity
        agent_id: crm_agent
        action: log_collection_activity
        input_from: send_reminders
    error_handling:
      retry_policy: {max_attempts: 2, backoff: linear, initial_delay: 5.0}
"""


def parse_workflows(text: str, source: str = "<string>") -> list[Workflow]:
    """Parse and validate workflows from YAML text.

    The document is either a list of workflows or a mapping with a
    ``workflows`` list.

    Raises:
        WorkflowConfigError: If the YAML is malformed or a workflow is invalid
    """
    try:
        document = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise WorkflowConfigError(f"{source}: invalid YAML: {e}") from e

    entries = document.get("workflows", []) if isinstance(document, dict) else document
    if not isinstance(entries, list):
        raise WorkflowConfigError(f"{source}: expected a list of workflows")

    workflows = []
    for index, entry in enumerate(entries):
        try:
            workflows.append(Workflow.model_validate(entry))
        except ValidationError as e:
            workflow_id = entry.get("id", index) if isinstance(entry, dict) else index
            raise WorkflowConfigError(f"{source}: workflow '{workflow_id}': {e}") from e
    return workflows


def load_workflows(path: Path | str) -> list[Workflow]:
    """Load workflows from a YAML file."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise WorkflowConfigError(f"{path}: {e}") from e

    workflows = parse_workflows(text, source=str(path))
    logger.info("workflows_loaded", path=str(path), count=len(workflows))
    return workflows


def default_workflows() -> list[Workflow]:
    """Built-in invoicing and collection workflows."""
    return parse_workflows(DEFAULT_WORKFLOWS_YAML, source="defaults")
