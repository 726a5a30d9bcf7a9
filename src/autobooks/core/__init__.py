"""Core data models."""

from autobooks.core.models import (
    AgentEvent,
    AgentMessage,
    AgentStatus,
    EventFilter,
    ExecutionContext,
    KnowledgeTriple,
    Pattern,
    QueryPattern,
    ResultStatus,
    Task,
    TaskOutputRef,
    TaskPriority,
    TaskResult,
)
from autobooks.core.workflow import Workflow, WorkflowExecution, WorkflowStep

__all__ = [
    "AgentEvent",
    "AgentMessage",
    "AgentStatus",
    "EventFilter",
    "ExecutionContext",
    "KnowledgeTriple",
    "Pattern",
    "QueryPattern",
    "ResultStatus",
    "Task",
    "TaskOutputRef",
    "TaskPriority",
    "TaskResult",
    "Workflow",
    "WorkflowExecution",
    "WorkflowStep",
]
