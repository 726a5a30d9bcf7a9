"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from autobooks.agents.base import BaseAgent
from autobooks.config import Settings
from autobooks.core.models import (
    AgentCapability,
    AgentConfig,
    ExecutionContext,
    MemoryOptions,
    ResultStatus,
    Task,
    TaskResult,
)
from autobooks.infrastructure.memory_store import MemoryStore


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ScriptedAgent(BaseAgent):
    """Agent whose execute() replays a list of outcomes.

    Each call consumes one outcome: an exception is raised, a TaskResult is
    returned as-is and anything else becomes the data of a successful result.
    With no outcomes left the task payload is echoed back.
    """

    def __init__(self, config, memory, outcomes=None, valid=True, delay=0.0, **kwargs):
        self.outcomes = list(outcomes or [])
        self.valid = valid
        self.delay = delay
        self.release: asyncio.Event | None = None
        self.calls: list[Task] = []
        super().__init__(config, memory, **kwargs)

    @property
    def name(self) -> str:
        return "ScriptedAgent"

    @property
    def capabilities(self) -> list[AgentCapability]:
        return [AgentCapability(name="echo", description="Echo the task payload")]

    async def validate(self, payload: Any) -> bool:
        return self.valid

    async def execute(self, task: Task, context: ExecutionContext) -> TaskResult:
        self.calls.append(task)
        if self.release is not None:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, TaskResult):
            return outcome
        return TaskResult(
            task_id=task.id,
            status=ResultStatus.SUCCESS,
            data=dict(task.payload) if outcome is None else outcome,
            tools_used=self.tools_used,
            confidence=0.9,
        )


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at a Wednesday noon UTC."""
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def memory(settings: Settings, clock: FakeClock) -> MemoryStore:
    """Memory store driven by the fake clock."""
    return MemoryStore(settings=settings, clock=clock)


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def context() -> ExecutionContext:
    """Sample execution context."""
    return ExecutionContext(
        user_id="user_1",
        organization_id="org_1",
        session_id="session_1",
        metadata={"dataset_id": "dataset_1"},
    )


@pytest.fixture
def make_agent(memory: MemoryStore, settings: Settings, recorded_sleep: RecordingSleep):
    """Factory for scripted agents sharing the test memory store."""

    def _make_agent(agent_id: str = "echo_agent", learning: bool = False, **kwargs) -> ScriptedAgent:
        config = AgentConfig(
            id=agent_id,
            name=agent_id,
            memory=MemoryOptions(learning_enabled=learning),
        )
        return ScriptedAgent(config, memory, settings=settings, sleep=recorded_sleep, **kwargs)

    return _make_agent
