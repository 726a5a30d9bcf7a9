"""Core data models for autobooks."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    """Generate a process-unique identifier with a readable prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def clamp_confidence(value: float) -> float:
    """Clamp a confidence score into [0, 1]."""
    return min(1.0, max(0.0, float(value)))


class AgentStatus(str, Enum):
    """Lifecycle states of an agent instance."""

    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    WAITING = "waiting"
    COMPLETED = "completed"
    ERROR = "error"


class TaskPriority(str, Enum):
    """Task priority, ordered from low to critical."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def highest(cls, priorities: list["TaskPriority"]) -> "TaskPriority":
        """Return the highest priority in the list (LOW for an empty list)."""
        if not priorities:
            return cls.LOW
        return max(priorities, key=lambda p: p.rank)


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.CRITICAL: 3,
}


class ResultStatus(str, Enum):
    """Outcome of a task execution."""

    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class EventOutcome(str, Enum):
    """Outcome recorded on an episodic event."""

    SUCCESS = "success"
    FAILURE = "failure"


class MessageType(str, Enum):
    """Kinds of inter-agent messages."""

    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"
    ERROR = "error"
    NOTIFICATION = "notification"


class TaskConstraints(BaseModel):
    """Optional execution limits attached to tasks and messages."""

    timeout: float | None = Field(None, description="Seconds allowed for the task")
    max_cost: float | None = Field(None, description="Maximum tool cost allowed")
    required_accuracy: float | None = None
    allowed_tools: list[str] | None = None
    forbidden_tools: list[str] | None = None


class TaskOutputRef(BaseModel):
    """Typed reference to the output of another task.

    Placed inside a task payload, it is replaced by the referenced task's
    result data once that task has run.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str = Field(..., description="Task whose result data is referenced")


class Task(BaseModel):
    """A single unit of work for an agent. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("task"), description="Unique task id")
    type: str = Field(..., description="Task type, used for routing and learning")
    description: str = Field("", description="Human readable description")
    priority: TaskPriority = TaskPriority.NORMAL
    payload: dict[str, Any] = Field(default_factory=dict, description="Agent-specific input")
    constraints: TaskConstraints | None = None
    dependencies: list[str] = Field(default_factory=list, description="Ids of tasks this one waits on")
    created_at: datetime = Field(default_factory=utcnow)
    deadline: datetime | None = None
    retry_count: int = 0
    max_retries: int | None = Field(
        None, ge=0, description="Retries after the first attempt (None uses the configured default)"
    )


class TaskResult(BaseModel):
    """Final outcome of executing a task."""

    task_id: str
    status: ResultStatus
    data: Any = None
    error: str | None = Field(None, description="Error description when the task failed")
    execution_time: float = Field(0.0, description="Seconds spent executing")
    tools_used: list[str] = Field(default_factory=list)
    cost: float | None = None
    confidence: float | None = None
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("confidence")
    @classmethod
    def clamp(cls, v: float | None) -> float | None:
        return None if v is None else clamp_confidence(v)

    @property
    def succeeded(self) -> bool:
        return self.status == ResultStatus.SUCCESS


class Permission(BaseModel):
    """Allowed actions on a resource."""

    resource: str
    actions: list[str] = Field(default_factory=list)
    conditions: dict[str, Any] | None = None


class ExecutionContext(BaseModel):
    """Caller context passed read-only through a task or workflow execution."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    organization_id: str
    session_id: str
    parent_task_id: str | None = None
    permissions: list[Permission] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    trace_id: str = Field(default_factory=lambda: new_id("trace"))
    environment: str | None = None

    def allows(self, resource: str, action: str) -> bool:
        """Check whether the context grants an action on a resource."""
        return any(
            p.resource == resource and action in p.actions for p in self.permissions
        )


class MessagePayload(BaseModel):
    """Body of an inter-agent message."""

    action: str
    data: Any = None
    context: ExecutionContext | None = None
    constraints: TaskConstraints | None = None


class AgentMessage(BaseModel):
    """Ephemeral message routed between agents."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: new_id("msg"))
    sender: str = Field(..., alias="from", description="Sending agent id")
    to: str | list[str] = Field(..., description="One or many recipient ids")
    type: MessageType = MessageType.REQUEST
    priority: TaskPriority = TaskPriority.NORMAL
    payload: MessagePayload
    timestamp: datetime = Field(default_factory=utcnow)
    ttl: float | None = Field(None, description="Seconds the message stays deliverable")
    reply_to: str | None = None

    @property
    def recipients(self) -> list[str]:
        return [self.to] if isinstance(self.to, str) else list(self.to)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.ttl is None:
            return False
        now = now or utcnow()
        return (now - self.timestamp).total_seconds() > self.ttl


class AgentEvent(BaseModel):
    """Append-only episodic memory record."""

    id: str = Field(default_factory=lambda: new_id("evt"))
    agent_id: str
    type: str = Field(..., description="e.g. task_execution, learning")
    timestamp: datetime = Field(default_factory=utcnow)
    data: Any = None
    outcome: EventOutcome | None = None
    learnings: list[str] = Field(default_factory=list)


class EventFilter(BaseModel):
    """Filter for recalling episodic events."""

    agent_id: str | None = None
    type: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    outcome: EventOutcome | None = None

    def matches(self, event: AgentEvent) -> bool:
        if self.agent_id and event.agent_id != self.agent_id:
            return False
        if self.type and event.type != self.type:
            return False
        if self.start_date and event.timestamp < self.start_date:
            return False
        if self.end_date and event.timestamp > self.end_date:
            return False
        if self.outcome and event.outcome != self.outcome:
            return False
        return True


class KnowledgeTriple(BaseModel):
    """Confidence-weighted (subject, predicate, object) fact."""

    subject: str
    predicate: str
    object: str
    confidence: float = 0.5
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("confidence")
    @classmethod
    def clamp(cls, v: float) -> float:
        return clamp_confidence(v)


class QueryPattern(BaseModel):
    """Partial triple used to query semantic memory."""

    subject: str | None = None
    predicate: str | None = None
    object: str | None = None

    def matches(self, triple: KnowledgeTriple) -> bool:
        return (
            (self.subject is None or triple.subject == self.subject)
            and (self.predicate is None or triple.predicate == self.predicate)
            and (self.object is None or triple.object == self.object)
        )


class Pattern(BaseModel):
    """Summary of a successful execution, reused to shortcut planning."""

    task_type: str
    tools_used: list[str] = Field(default_factory=list)
    execution_time: float = 0.0
    confidence: float = 0.5
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("confidence")
    @classmethod
    def clamp(cls, v: float) -> float:
        return clamp_confidence(v)

    @property
    def approach(self) -> dict[str, Any]:
        """The approach this pattern represents, comparable with learning approaches."""
        return {"tools_used": list(self.tools_used)}


class ApproachSuggestion(BaseModel):
    """A suggested approach for a task type."""

    source: str = Field(..., description="'pattern' or 'semantic'")
    approach: Any
    confidence: float
    pattern: Pattern | None = None


class LearningFeedback(BaseModel):
    """User feedback about a finished task."""

    task_id: str
    agent_id: str
    rating: int = Field(..., ge=1, le=5)
    feedback: str | None = None
    corrections: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class AgentCapability(BaseModel):
    """Declarative description of something an agent can do."""

    name: str
    description: str
    required_tools: list[str] = Field(default_factory=list)
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None


class MemoryOptions(BaseModel):
    """Per-agent memory behaviour."""

    short_term_size: int | None = None
    long_term_ttl: float | None = Field(None, description="Default TTL in seconds for remembered entries")
    learning_enabled: bool = False


class MonitoringOptions(BaseModel):
    """Per-agent monitoring behaviour."""

    metrics_enabled: bool = True
    logging_level: str | None = None
    alert_thresholds: dict[str, float] = Field(default_factory=dict)


class AgentConfig(BaseModel):
    """Static configuration of an agent instance."""

    id: str = Field(..., description="Registry id, e.g. invoice_agent")
    name: str
    description: str = ""
    version: str = "1.0.0"
    capabilities: list[AgentCapability] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    memory: MemoryOptions = Field(default_factory=MemoryOptions)
    monitoring: MonitoringOptions = Field(default_factory=MonitoringOptions)


class PerformanceMetrics(BaseModel):
    tasks_completed: int = 0
    average_execution_time: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    last_execution_time: datetime | None = None


class ResourceMetrics(BaseModel):
    api_calls_count: int = 0
    token_usage: int = 0
    compute_time: float = 0.0
    storage_used: int = 0


class AgentMetrics(BaseModel):
    """Runtime metrics of an agent."""

    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    resource: ResourceMetrics = Field(default_factory=ResourceMetrics)
    business: dict[str, float] = Field(default_factory=dict)
