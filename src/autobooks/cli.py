"""autobooks developer CLI."""

import asyncio
import sys
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from autobooks.config import get_settings
from autobooks.core.workflow import Workflow
from autobooks.orchestrator.engine import Orchestrator
from autobooks.orchestrator.workflows import WorkflowConfigError, default_workflows, load_workflows
from autobooks.utils.logging import configure_logging

console = Console()
logger = structlog.get_logger()


def _describe_stages(workflow: Workflow) -> str:
    parts = []
    for stage in workflow.stages():
        ids = [step.id for step in stage]
        parts.append(ids[0] if len(ids) == 1 else "[" + " | ".join(ids) + "]")
    return " > ".join(parts)


def _describe_triggers(workflow: Workflow) -> str:
    if not workflow.triggers:
        return "-"
    return ", ".join(
        f"{t.type.value} {t.config.get('cron', '')}".strip() for t in workflow.triggers
    )


@click.group()
@click.version_option(package_name="autobooks")
def main():
    """autobooks - agent orchestration and workflow engine.

    Inspect workflows and dry-run request planning without an application
    around the core.
    """
    configure_logging(get_settings())


@main.command()
@click.option(
    "--file",
    "workflow_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Additional workflow YAML file",
)
def workflows(workflow_file: Path | None):
    """List registered workflows with their stages and triggers."""
    try:
        definitions = default_workflows()
        if workflow_file is not None:
            definitions.extend(load_workflows(workflow_file))
    except WorkflowConfigError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Workflows")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Stages", style="green")
    table.add_column("Triggers", style="dim")

    for workflow in definitions:
        table.add_row(
            workflow.id,
            workflow.name,
            _describe_stages(workflow),
            _describe_triggers(workflow),
        )

    console.print(table)


@main.command()
@click.argument("prompt")
def classify(prompt: str):
    """Dry-run a request: intents, tasks and agent assignments.

    Examples:
        autobooks classify "generate invoices for all customers this month"
    """
    orchestrator = Orchestrator(settings=get_settings())

    intents = asyncio.run(orchestrator.analyze_intent(prompt))
    if not intents:
        console.print("[red]Could not understand the request[/red]")
        sys.exit(1)

    intent_table = Table(title="Intents")
    intent_table.add_column("Action", style="cyan")
    intent_table.add_column("Confidence")
    intent_table.add_column("Entities", style="dim")
    intent_table.add_column("Suggested Agents")
    for intent in intents:
        intent_table.add_row(
            intent.action,
            f"{intent.confidence:.2f}",
            ", ".join(sorted(intent.entities)) or "-",
            ", ".join(intent.suggested_agents),
        )
    console.print(intent_table)

    plan = asyncio.run(orchestrator.plan_request(prompt))
    console.print(f"Chosen intent: [bold]{plan.intent.action}[/bold]")

    task_table = Table(title="Tasks")
    task_table.add_column("ID", style="dim")
    task_table.add_column("Type", style="cyan")
    task_table.add_column("Priority")
    task_table.add_column("Depends On")
    for task in plan.tasks:
        task_table.add_row(
            task.id, task.type, task.priority.value, ", ".join(task.dependencies) or "-"
        )
    console.print(task_table)

    assignment_table = Table(title="Assignments")
    assignment_table.add_column("Agent", style="green")
    assignment_table.add_column("Tasks")
    assignment_table.add_column("Priority")
    for assignment in plan.assignments:
        assignment_table.add_row(
            assignment.agent_id,
            ", ".join(task.type for task in assignment.tasks),
            assignment.priority.value,
        )
    console.print(assignment_table)


@main.command(name="validate-workflows")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_workflows(path: Path):
    """Validate a workflow YAML file."""
    try:
        definitions = load_workflows(path)
    except WorkflowConfigError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ {len(definitions)} workflow(s) valid in {path}[/green]")
    for workflow in definitions:
        console.print(f"  {workflow.id}: {_describe_stages(workflow)}")


if __name__ == "__main__":
    main()
