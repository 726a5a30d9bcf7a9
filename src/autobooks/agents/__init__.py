"""Agent runtime and reference agents."""

from autobooks.agents.base import (
    AgentBusyError,
    AgentError,
    BaseAgent,
    TaskValidationError,
    UnknownActionError,
)
from autobooks.agents.invoice import InvoiceAgent
from autobooks.agents.signals import AgentSignal, OrchestratorSignal, SignalBus
from autobooks.agents.toolbox import ToolAgent
from autobooks.agents.tools import (
    FunctionTool,
    Tool,
    ToolError,
    ToolNotFoundError,
    ToolValidationError,
)

__all__ = [
    "AgentBusyError",
    "AgentError",
    "AgentSignal",
    "BaseAgent",
    "FunctionTool",
    "InvoiceAgent",
    "OrchestratorSignal",
    "SignalBus",
    "TaskValidationError",
    "Tool",
    "ToolAgent",
    "ToolError",
    "ToolNotFoundError",
    "ToolValidationError",
    "UnknownActionError",
]
