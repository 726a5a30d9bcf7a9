"""Observer interface for agent and orchestrator notifications."""

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

Handler = Callable[[Any], Awaitable[None] | None]


class AgentSignal(str, Enum):
    """Notifications emitted by an agent."""

    STATUS_CHANGED = "status-changed"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"
    PROGRESS = "progress"
    MESSAGE_SENT = "message-sent"
    COST_INCURRED = "cost-incurred"
    FEEDBACK_RECEIVED = "feedback-received"
    AGENT_STARTED = "agent-started"
    AGENT_STOPPED = "agent-stopped"


class OrchestratorSignal(str, Enum):
    """Notifications emitted by the orchestrator."""

    AGENT_STATUS_CHANGED = "agent-status-changed"
    TASK_RESULT = "task-result"
    WORKFLOW_STARTED = "workflow-started"
    WORKFLOW_COMPLETED = "workflow-completed"
    WORKFLOW_FAILED = "workflow-failed"
    STEP_STARTED = "step-started"
    STEP_SKIPPED = "step-skipped"
    STEP_COMPLETED = "step-completed"
    ALERT = "alert"


class SignalBus:
    """Per-instance subscription registry.

    Handlers may be plain callables or coroutine functions. They run in
    subscription order; a failing handler is logged and the remaining
    handlers still run.
    """

    def __init__(self, owner: str):
        self.owner = owner
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, signal: str, handler: Handler) -> Callable[[], None]:
        """Register a handler.

        Args:
            signal: Signal kind (an AgentSignal or OrchestratorSignal)
            handler: Called with the signal payload

        Returns:
            Function that removes the subscription
        """
        self._handlers[signal].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(signal, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def handler_count(self, signal: str) -> int:
        return len(self._handlers.get(signal, ()))

    async def emit(self, signal: str, payload: Any = None) -> None:
        """Deliver a payload to every handler of a signal."""
        for handler in list(self._handlers.get(signal, ())):
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(
                    "signal_handler_failed",
                    owner=self.owner,
                    signal=str(getattr(signal, "value", signal)),
                    error=str(e),
                )
