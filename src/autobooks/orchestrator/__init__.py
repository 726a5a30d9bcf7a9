"""Intent handling, agent coordination and workflow execution."""

from autobooks.orchestrator.engine import (
    AgentNotFoundError,
    OrchestrationError,
    Orchestrator,
    RequestOutcome,
    RequestStatus,
    StepTimeoutError,
    TriggerOutcome,
    WorkflowError,
    WorkflowNotFoundError,
)
from autobooks.orchestrator.intents import Intent, IntentClassifier, KeywordIntentClassifier

__all__ = [
    "AgentNotFoundError",
    "Intent",
    "IntentClassifier",
    "KeywordIntentClassifier",
    "OrchestrationError",
    "Orchestrator",
    "RequestOutcome",
    "RequestStatus",
    "StepTimeoutError",
    "TriggerOutcome",
    "WorkflowError",
    "WorkflowNotFoundError",
]
