"""Task to agent assignment."""

from dataclasses import dataclass, field

from autobooks.core.models import Task, TaskPriority

DEFAULT_AGENT = "general_agent"

# Checked in order; the first route with a keyword contained in the task type wins.
DEFAULT_ROUTES: list[tuple[tuple[str, ...], str]] = [
    (("invoice", "payment", "overdue"), "invoice_agent"),
    (("expense",), "expense_agent"),
    (("quickbooks", "reconcile"), "quickbooks_agent"),
    (("report", "analysis"), "analysis_agent"),
]


@dataclass
class AgentAssignment:
    """Tasks grouped for one agent."""

    agent_id: str
    tasks: list[Task] = field(default_factory=list)
    priority: TaskPriority = TaskPriority.LOW
    dependencies: list[str] = field(default_factory=list)

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]


def route_task_type(
    task_type: str,
    routes: list[tuple[tuple[str, ...], str]] | None = None,
    default: str = DEFAULT_AGENT,
) -> str:
    """Agent id responsible for a task type."""
    for keywords, agent_id in routes if routes is not None else DEFAULT_ROUTES:
        if any(keyword in task_type for keyword in keywords):
            return agent_id
    return default


def select_agents(
    tasks: list[Task],
    routes: list[tuple[tuple[str, ...], str]] | None = None,
    default: str = DEFAULT_AGENT,
) -> list[AgentAssignment]:
    """Group tasks by responsible agent.

    Groups keep the order in which their agent first appears. A group's
    priority is the highest priority of its tasks and its dependencies are the
    union (first-seen order) of its tasks' dependencies.
    """
    grouped: dict[str, list[Task]] = {}
    for task in tasks:
        grouped.setdefault(route_task_type(task.type, routes, default), []).append(task)

    assignments = []
    for agent_id, agent_tasks in grouped.items():
        dependencies = list(dict.fromkeys(dep for t in agent_tasks for dep in t.dependencies))
        assignments.append(
            AgentAssignment(
                agent_id=agent_id,
                tasks=agent_tasks,
                priority=TaskPriority.highest([t.priority for t in agent_tasks]),
                dependencies=dependencies,
            )
        )
    return assignments


def order_assignments(assignments: list[AgentAssignment]) -> list[AgentAssignment]:
    """Order assignments so each runs after the assignments it depends on.

    Stable: independent assignments keep their relative order. Dependencies
    on tasks outside the list, and cycles, do not reorder anything.
    """
    owner = {task_id: index for index, a in enumerate(assignments) for task_id in a.task_ids}
    waits_on = [
        {owner[dep] for dep in a.dependencies if dep in owner and owner[dep] != index}
        for index, a in enumerate(assignments)
    ]

    ordered: list[int] = []
    pending = list(range(len(assignments)))
    while pending:
        ready = next((i for i in pending if waits_on[i] <= set(ordered)), None)
        if ready is None:
            ordered.extend(pending)
            break
        ordered.append(ready)
        pending.remove(ready)

    return [assignments[i] for i in ordered]
