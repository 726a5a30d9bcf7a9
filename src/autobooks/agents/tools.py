"""Tool contract for side-effecting collaborators (storage, email, payments...)."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any


class ToolError(Exception):
    """Base class for tool lookup and validation errors."""

    pass


class ToolNotFoundError(ToolError):
    """Raised when an agent calls a tool that is not registered."""

    pass


class ToolValidationError(ToolError):
    """Raised when a tool rejects its parameters before running."""

    pass


class Tool(ABC):
    """Opaque external effect invoked by agents.

    Subclasses implement ``execute``; ``validate`` accepts everything unless
    overridden. A tool with a ``cost`` makes the calling agent emit a
    cost-incurred signal per call.
    """

    def __init__(self, name: str, description: str = "", cost: float | None = None):
        self.name = name
        self.description = description
        self.cost = cost

    @abstractmethod
    async def execute(self, params: Any) -> Any:
        """Run the tool.

        Args:
            params: Tool-specific parameters

        Returns:
            Tool-specific result
        """
        pass

    def validate(self, params: Any) -> bool:
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class FunctionTool(Tool):
    """Tool backed by a coroutine function."""

    def __init__(
        self,
        name: str,
        func: Callable[[Any], Awaitable[Any]],
        description: str = "",
        validator: Callable[[Any], bool] | None = None,
        cost: float | None = None,
    ):
        super().__init__(name, description=description, cost=cost)
        self._func = func
        self._validator = validator

    async def execute(self, params: Any) -> Any:
        return await self._func(params)

    def validate(self, params: Any) -> bool:
        if self._validator is None:
            return True
        return bool(self._validator(params))
