"""Generic agent that maps task types onto registered tools."""

from collections.abc import Awaitable, Callable
from typing import Any

from autobooks.agents.base import BaseAgent, UnknownActionError
from autobooks.agents.tools import Tool
from autobooks.config import Settings
from autobooks.core.models import (
    AgentCapability,
    AgentConfig,
    ExecutionContext,
    ResultStatus,
    Task,
    TaskResult,
)
from autobooks.infrastructure.memory_store import MemoryStore


class ToolAgent(BaseAgent):
    """Agent whose every action is a single tool call.

    Used for thin integration agents (database, CRM, accounting) that take part
    in workflows. A task of type ``T`` runs the tool routed from ``T``, or the
    tool named ``T`` when there is no explicit route.
    """

    def __init__(
        self,
        config: AgentConfig,
        memory: MemoryStore,
        tools: list[Tool] | None = None,
        routes: dict[str, str] | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize tool agent.

        Args:
            config: Agent configuration
            memory: Shared memory store
            tools: Tools to register
            routes: Task type -> tool name
            settings: Settings instance (uses global if None)
            sleep: Retry backoff coroutine
        """
        super().__init__(config, memory, settings=settings, sleep=sleep)
        self.routes = dict(routes or {})
        for tool in tools or []:
            self.register_tool(tool)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def capabilities(self) -> list[AgentCapability]:
        routed = {**{name: name for name in self.tools}, **self.routes}
        return [
            AgentCapability(
                name=task_type,
                description=self.tools[tool].description if tool in self.tools else "",
                required_tools=[tool],
            )
            for task_type, tool in routed.items()
        ]

    def tool_for(self, task_type: str) -> str:
        return self.routes.get(task_type, task_type)

    async def validate(self, payload: Any) -> bool:
        return isinstance(payload, dict)

    async def execute(self, task: Task, context: ExecutionContext) -> TaskResult:
        tool_name = self.tool_for(task.type)
        if tool_name not in self.tools:
            raise UnknownActionError(f"{self.name} cannot handle task type '{task.type}'")

        data = await self.call_tool(tool_name, {**task.payload, "task_type": task.type})
        return TaskResult(
            task_id=task.id,
            status=ResultStatus.SUCCESS,
            data=data,
            tools_used=self.tools_used,
            confidence=1.0,
        )
