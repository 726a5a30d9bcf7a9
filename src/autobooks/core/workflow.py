"""Workflow configuration and execution models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from autobooks.core.models import ExecutionContext, TaskResult, new_id, utcnow


class TriggerType(str, Enum):
    """How a workflow can be started."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"
    CONDITION = "condition"


class ConditionOperator(str, Enum):
    """Comparison operators for step conditions."""

    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER = "greater"
    LESS = "less"
    EXISTS = "exists"


class BackoffKind(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class WorkflowStatus(str, Enum):
    """Lifecycle of a workflow execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowTrigger(BaseModel):
    """Trigger definition. Cron strings are accepted; scheduling happens elsewhere."""

    type: TriggerType
    config: dict[str, Any] = Field(default_factory=dict)


class TriggerEvent(BaseModel):
    """An externally fired trigger."""

    type: TriggerType
    config: dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext


_MISSING = object()


def resolve_path(state: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts (``_MISSING`` when absent)."""
    value = state
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


class WorkflowCondition(BaseModel):
    """Guard evaluated against the execution state before a step runs."""

    field: str = Field(..., description="Dotted path into the execution state")
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, state: dict[str, Any]) -> bool:
        """Check the condition. A missing or null field never satisfies it."""
        actual = resolve_path(state, self.field)
        if actual is _MISSING or actual is None:
            return False

        try:
            if self.operator == ConditionOperator.EQUALS:
                return actual == self.value
            if self.operator == ConditionOperator.CONTAINS:
                return self.value in actual
            if self.operator == ConditionOperator.GREATER:
                return actual > self.value
            if self.operator == ConditionOperator.LESS:
                return actual < self.value
        except TypeError:
            return False
        return self.operator == ConditionOperator.EXISTS


class WorkflowStep(BaseModel):
    """One step of a workflow, executed by a single agent."""

    id: str
    agent_id: str
    action: str
    input_from: str | None = Field(
        None, description="Step whose output data becomes this step's input"
    )
    params: dict[str, Any] = Field(default_factory=dict, description="Literal input parameters")
    conditions: list[WorkflowCondition] = Field(default_factory=list)
    on_success: str | None = None
    on_failure: str | None = None
    parallel: bool = False
    timeout: float | None = Field(None, gt=0, description="Seconds before the step is aborted")


class RetryPolicy(BaseModel):
    max_attempts: int = Field(3, ge=1)
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    initial_delay: float = Field(1.0, ge=0, description="Seconds")


class FallbackAction(BaseModel):
    agent_id: str
    action: str


class AlertingConfig(BaseModel):
    channels: list[str] = Field(default_factory=list)
    severity: AlertSeverity = AlertSeverity.MEDIUM


class ErrorHandlingStrategy(BaseModel):
    """What happens when a workflow step fails."""

    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    fallback: FallbackAction | None = None
    alerting: AlertingConfig | None = None


class Workflow(BaseModel):
    """Named sequence of steps with triggers and error handling."""

    id: str
    name: str
    description: str = ""
    triggers: list[WorkflowTrigger] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(..., min_length=1)
    error_handling: ErrorHandlingStrategy = Field(default_factory=ErrorHandlingStrategy)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def stages(self) -> list[list[WorkflowStep]]:
        """Group steps into execution stages.

        Consecutive steps flagged ``parallel`` share a stage; every other step
        is a stage of its own. Stages run in order.
        """
        stages: list[list[WorkflowStep]] = []
        for step in self.steps:
            if step.parallel and stages and all(s.parallel for s in stages[-1]):
                stages[-1].append(step)
            else:
                stages.append([step])
        return stages

    def get_step(self, step_id: str) -> WorkflowStep | None:
        return next((s for s in self.steps if s.id == step_id), None)

    def stage_index(self, step_id: str) -> int | None:
        """Index of the stage containing a step."""
        for index, stage in enumerate(self.stages()):
            if any(s.id == step_id for s in stage):
                return index
        return None

    @model_validator(mode="after")
    def check_step_references(self) -> "Workflow":
        """Step ids are unique, inputs come from earlier stages, branches go forward."""
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}' in workflow '{self.id}'")
            seen.add(step.id)

        stages = self.stages()
        stage_of = {s.id: index for index, stage in enumerate(stages) for s in stage}

        for step in self.steps:
            if step.input_from is not None and (
                step.input_from not in stage_of or stage_of[step.input_from] >= stage_of[step.id]
            ):
                raise ValueError(
                    f"Step '{step.id}' reads from '{step.input_from}', "
                    "which does not run in an earlier stage"
                )
            for target in (step.on_success, step.on_failure):
                if target is None:
                    continue
                if target not in stage_of:
                    raise ValueError(f"Step '{step.id}' points to unknown step '{target}'")
                if stage_of[target] <= stage_of[step.id]:
                    raise ValueError(
                        f"Step '{step.id}' branches to '{target}', which does not run later"
                    )
        return self


class WorkflowExecution(BaseModel):
    """One run of a workflow against an execution context."""

    id: str = Field(default_factory=lambda: new_id("exec"))
    workflow: Workflow
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_step: str | None = None
    context: ExecutionContext
    results: dict[str, TaskResult] = Field(default_factory=dict)
    skipped_steps: list[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    error: str | None = None

    def state(self) -> dict[str, Any]:
        """Accumulated state that step conditions are evaluated against.

        Dict outputs of completed steps are merged in execution order, and the
        raw outputs and the context are exposed under ``results`` and
        ``context``.
        """
        state: dict[str, Any] = {}
        for result in self.results.values():
            if isinstance(result.data, dict):
                state.update(result.data)
        state["results"] = {step_id: r.data for step_id, r in self.results.items()}
        state["context"] = self.context.model_dump()
        return state

    def output_of(self, step_id: str) -> Any:
        result = self.results.get(step_id)
        return result.data if result is not None else None


class WorkflowRunResult(BaseModel):
    """Returned by a successful workflow execution."""

    execution_id: str
    workflow_id: str
    status: WorkflowStatus
    results: dict[str, TaskResult]
    skipped_steps: list[str] = Field(default_factory=list)
