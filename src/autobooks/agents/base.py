"""Base agent contract and per-agent task state machine."""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from autobooks.agents.signals import AgentSignal, SignalBus
from autobooks.agents.tools import Tool, ToolNotFoundError, ToolValidationError
from autobooks.config import Settings, get_settings
from autobooks.core.models import (
    AgentCapability,
    AgentConfig,
    AgentEvent,
    AgentMessage,
    AgentMetrics,
    AgentStatus,
    EventFilter,
    EventOutcome,
    ExecutionContext,
    LearningFeedback,
    MessagePayload,
    MessageType,
    Pattern,
    ResultStatus,
    Task,
    TaskPriority,
    TaskResult,
    utcnow,
)
from autobooks.infrastructure.memory_store import MemoryStore

SLOW_TASK_SECONDS = 5.0
COMPLEX_TASK_TOOLS = 3
RECURRING_FAILURES = 5
PATTERN_CANDIDATES = 5


class AgentError(Exception):
    """Raised when agent execution fails."""

    pass


class TaskValidationError(AgentError):
    """Raised when a task payload is rejected by the agent. Never retried."""

    pass


class AgentBusyError(AgentError):
    """Raised when a task is submitted to an agent that is already working."""

    pass


class UnknownActionError(AgentError):
    """Raised when an agent cannot map a task to one of its actions."""

    pass


NON_RETRYABLE = (TaskValidationError, UnknownActionError, ToolNotFoundError, ToolValidationError)


class BaseAgent(ABC):
    """Base class for all agents.

    All agents must implement:
    - name / capabilities: descriptive metadata
    - validate(): payload check run before execution
    - execute(): main execution logic, called (with retries) by process_task

    Message handlers, the correction hook and the lifecycle hooks have
    logging defaults and can be overridden.
    """

    def __init__(
        self,
        config: AgentConfig,
        memory: MemoryStore,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """Initialize base agent.

        Args:
            config: Agent configuration
            memory: Memory store shared with other agents
            settings: Settings instance (uses global if None)
            sleep: Coroutine used for retry backoff (defaults to asyncio.sleep)
        """
        self.config = config
        self.memory = memory
        self.settings = settings or get_settings()
        self.status = AgentStatus.IDLE
        self.tools: dict[str, Tool] = {}
        self.metrics = AgentMetrics()
        self.signals = SignalBus(config.id)
        self.execution_history: deque[TaskResult] = deque(
            maxlen=self.settings.execution_history_size
        )
        self.logger = structlog.get_logger(self.__module__).bind(agent_id=config.id)

        self._sleep = sleep or asyncio.sleep
        self._current_task: Task | None = None
        self._tools_used: list[str] = []

        self.initialize()

    @property
    @abstractmethod
    def name(self) -> str:
        """Agent name (e.g., "InvoiceAgent")."""
        pass

    @property
    @abstractmethod
    def capabilities(self) -> list[AgentCapability]:
        """Declarative list of what this agent can do."""
        pass

    @abstractmethod
    async def validate(self, payload: Any) -> bool:
        """Check a task payload before execution.

        Args:
            payload: Task payload

        Returns:
            True if the payload can be executed
        """
        pass

    @abstractmethod
    async def execute(self, task: Task, context: ExecutionContext) -> TaskResult:
        """Execute agent logic.

        Args:
            task: Task to execute
            context: Caller context (read only)

        Returns:
            TaskResult for the task
        """
        pass

    @property
    def agent_id(self) -> str:
        return self.config.id

    @property
    def current_task(self) -> Task | None:
        return self._current_task

    @property
    def tools_used(self) -> list[str]:
        """Tools called so far for the current task, in first-use order."""
        return list(self._tools_used)

    def initialize(self) -> None:
        """Hook run at the end of construction."""
        pass

    async def shutdown(self) -> None:
        """Hook run by stop()."""
        pass

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def register_tool(self, tool: Tool) -> None:
        self.tools[tool.name] = tool
        self.logger.info("tool_registered", tool=tool.name)

    async def call_tool(self, name: str, params: Any = None) -> Any:
        """Invoke a registered tool.

        Args:
            name: Tool name
            params: Tool parameters

        Returns:
            Tool result

        Raises:
            ToolNotFoundError: If no tool with that name is registered
            ToolValidationError: If the tool rejects the parameters
        """
        tool = self.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool not found: {name}")
        if not tool.validate(params):
            raise ToolValidationError(f"Invalid parameters for tool: {name}")

        if name not in self._tools_used:
            self._tools_used.append(name)

        start = time.perf_counter()
        try:
            result = await tool.execute(params)
        except Exception as e:
            self.logger.error("tool_execution_failed", tool=name, error=str(e))
            raise

        self.metrics.resource.api_calls_count += 1
        self.metrics.resource.compute_time += time.perf_counter() - start

        if tool.cost:
            await self.signals.emit(AgentSignal.COST_INCURRED, {"tool": name, "cost": tool.cost})

        return result

    # ------------------------------------------------------------------
    # Task processing
    # ------------------------------------------------------------------

    async def _set_status(self, status: AgentStatus) -> None:
        self.status = status
        await self.signals.emit(AgentSignal.STATUS_CHANGED, status)

    async def process_task(self, task: Task, context: ExecutionContext) -> TaskResult:
        """Run a task through validation, execution with retries and learning.

        Task failures are returned as a failed TaskResult rather than raised.
        The agent is back to idle when this returns.

        Args:
            task: Task to process
            context: Caller context (read only)

        Returns:
            Final TaskResult of the task

        Raises:
            AgentBusyError: If the agent is already processing a task
        """
        if self._current_task is not None:
            raise AgentBusyError(
                f"Agent {self.agent_id} is busy with task {self._current_task.id}"
            )

        self._current_task = task
        self._tools_used = []
        start = time.perf_counter()
        self.logger.info("task_started", task_id=task.id, task_type=task.type)

        try:
            await self._set_status(AgentStatus.THINKING)
            self.memory.stash(f"task_{task.id}", task)

            if not await self.validate(task.payload):
                raise TaskValidationError(f"Task validation failed: {task.id}")

            await self._set_status(AgentStatus.EXECUTING)
            result = await self.execute_with_retry(task, context)
            if result.task_id != task.id:
                result = result.model_copy(update={"task_id": task.id})

            elapsed = time.perf_counter() - start
            self.store_execution(task, result, context)
            self._update_metrics(elapsed)

            if self.config.memory.learning_enabled:
                await self.learn(task, result)

            await self._set_status(AgentStatus.COMPLETED)
            await self.signals.emit(AgentSignal.TASK_COMPLETED, result)
            self.logger.info(
                "task_completed", task_id=task.id, status=result.status.value, elapsed=elapsed
            )

        except Exception as e:
            elapsed = time.perf_counter() - start
            result = TaskResult(
                task_id=task.id,
                status=ResultStatus.FAILURE,
                error=str(e),
                execution_time=elapsed,
                tools_used=self.tools_used,
                suggestions=self.suggest_fixes(e),
            )
            self.execution_history.append(result)
            self._update_metrics(elapsed)

            await self._set_status(AgentStatus.ERROR)
            await self.signals.emit(AgentSignal.TASK_FAILED, result)
            self.logger.error(
                "task_failed", task_id=task.id, error=str(e), error_type=type(e).__name__
            )

        finally:
            self._current_task = None
            await self._set_status(AgentStatus.IDLE)

        return result

    async def execute_with_retry(self, task: Task, context: ExecutionContext) -> TaskResult:
        """Call execute(), retrying failures with exponential backoff.

        ``task.max_retries`` retries follow the first attempt (the configured
        default when unset). Retry waits are 2, 4, 8... seconds. Validation,
        unknown-action and tool lookup errors are not retried,
        and cancellation is never retried.

        Raises:
            Exception: The last error once all attempts failed
        """
        max_retries = (
            task.max_retries
            if task.max_retries is not None
            else self.settings.default_max_retries
        )

        def log_retry(retry_state: RetryCallState) -> None:
            self.logger.warning(
                "task_attempt_failed",
                task_id=task.id,
                attempt=retry_state.attempt_number,
                max_retries=max_retries,
                error=str(retry_state.outcome.exception()),
                retry_in=retry_state.next_action.sleep,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_multiplier),
            retry=retry_if_exception_type(Exception)
            & retry_if_not_exception_type(NON_RETRYABLE),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.execute(task, context)

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------

    def remember(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a long-term entry (agent's default TTL when ttl is None)."""
        if ttl is None:
            ttl = self.config.memory.long_term_ttl
        self.memory.remember(key, value, ttl=ttl)

    def recall(self, key: str) -> Any:
        return self.memory.recall(key)

    def search(self, query: str, limit: int = 10) -> list[Any]:
        return self.memory.search(query, limit)

    def store_event(
        self,
        event_type: str,
        data: Any = None,
        outcome: EventOutcome | None = None,
        learnings: list[str] | None = None,
    ) -> AgentEvent:
        event = AgentEvent(
            agent_id=self.agent_id,
            type=event_type,
            data=data,
            outcome=outcome,
            learnings=learnings or [],
        )
        self.memory.store_event(event)
        return event

    def store_execution(self, task: Task, result: TaskResult, context: ExecutionContext) -> None:
        """Record a finished execution in long-term and episodic memory."""
        execution = {
            "task": task,
            "result": result,
            "context": context,
            "timestamp": utcnow(),
        }
        self.remember(f"execution_{task.id}", execution)
        self.store_event(
            "task_execution",
            execution,
            outcome=EventOutcome.SUCCESS if result.succeeded else EventOutcome.FAILURE,
        )
        self.execution_history.append(result)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def learn(self, task: Task, result: TaskResult) -> None:
        """Derive a reusable pattern and insights from an execution."""
        if result.succeeded:
            pattern = Pattern(
                task_type=task.type,
                tools_used=result.tools_used,
                execution_time=result.execution_time,
                confidence=result.confidence if result.confidence is not None else 1.0,
            )
            self.remember(f"pattern_{task.type}_{uuid.uuid4().hex[:12]}", pattern)
            self.memory.add_relation(task.type, "solved_by", ",".join(result.tools_used))

        insights = await self.extract_insights(task, result)
        self.store_event(
            "learning",
            {"task": task, "result": result, "insights": insights},
            learnings=insights,
        )

    async def extract_insights(self, task: Task, result: TaskResult) -> list[str]:
        insights = []
        if result.execution_time > SLOW_TASK_SECONDS:
            insights.append(f"Task type {task.type} takes longer than expected")

        if len(result.tools_used) > COMPLEX_TASK_TOOLS:
            insights.append(
                f"Complex task requiring multiple tools: {', '.join(result.tools_used)}"
            )

        if result.status == ResultStatus.FAILURE:
            failures = self.memory.recall_events(
                EventFilter(type="task_execution", outcome=EventOutcome.FAILURE)
            )
            if len(failures) > RECURRING_FAILURES:
                insights.append(f"Recurring failure pattern detected for {task.type}")

        return insights

    def find_pattern(self, task_type: str) -> Pattern | None:
        """Most confident of the most recently learned patterns for a task type."""
        patterns = [
            value
            for value in self.search(f"pattern_{task_type}", self.settings.pattern_cache_size)
            if isinstance(value, Pattern) and value.task_type == task_type
        ]
        if not patterns:
            return None
        patterns.sort(key=lambda p: p.timestamp, reverse=True)
        return max(patterns[:PATTERN_CANDIDATES], key=lambda p: p.confidence)

    async def execute_pattern(
        self, pattern: Pattern, task: Task, context: ExecutionContext
    ) -> TaskResult:
        """Replay the tools of a learned pattern against the task payload."""
        start = time.perf_counter()
        outputs = []
        for tool_name in pattern.tools_used:
            if tool_name in self.tools:
                outputs.append(await self.call_tool(tool_name, task.payload))

        return TaskResult(
            task_id=task.id,
            status=ResultStatus.SUCCESS,
            data=outputs,
            execution_time=time.perf_counter() - start,
            tools_used=list(pattern.tools_used),
            confidence=pattern.confidence,
        )

    def suggest_fixes(self, error: BaseException) -> list[str]:
        """Human readable hints derived from an error message."""
        message = str(error).lower()
        suggestions = []

        if "email" in message or "recipient" in message:
            suggestions.append("Check the recipient email address is valid")
            suggestions.append("Verify email service configuration")

        if "template" in message:
            suggestions.append("Verify template exists and is properly formatted")
            suggestions.append("Check template data requirements")

        if "database" in message:
            suggestions.append("Check database connection")
            suggestions.append("Verify required fields are present")

        if isinstance(error, TimeoutError) or "timeout" in message or "timed out" in message:
            suggestions.append("Retry later or increase the allowed time")

        return suggestions

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(
        self,
        to: str | list[str],
        action: str,
        data: Any = None,
        *,
        message_type: MessageType = MessageType.REQUEST,
        priority: TaskPriority = TaskPriority.NORMAL,
        context: ExecutionContext | None = None,
        reply_to: str | None = None,
        ttl: float | None = None,
    ) -> AgentMessage:
        """Emit a message for routing to other agents.

        Returns:
            The message that was sent
        """
        message = AgentMessage(
            sender=self.agent_id,
            to=to,
            type=message_type,
            priority=priority,
            payload=MessagePayload(action=action, data=data, context=context),
            reply_to=reply_to,
            ttl=ttl,
        )
        await self.signals.emit(AgentSignal.MESSAGE_SENT, message)
        return message

    async def handle_message(self, message: AgentMessage) -> None:
        """Dispatch an incoming message to the handler for its type.

        Messages of other types are logged and dropped.
        """
        self.logger.info(
            "message_received",
            sender=message.sender,
            action=message.payload.action,
            message_type=message.type.value,
        )
        handlers = {
            MessageType.REQUEST: self.handle_request,
            MessageType.RESPONSE: self.handle_response,
            MessageType.EVENT: self.handle_event,
            MessageType.ERROR: self.handle_error,
        }
        handler = handlers.get(message.type)
        if handler is None:
            self.logger.warning("unknown_message_type", message_type=message.type.value)
            return
        await handler(message)

    async def handle_request(self, message: AgentMessage) -> None:
        self.logger.warning("unhandled_request", action=message.payload.action)

    async def handle_response(self, message: AgentMessage) -> None:
        self.logger.info("response_received", sender=message.sender, reply_to=message.reply_to)

    async def handle_event(self, message: AgentMessage) -> None:
        self.logger.debug("event_received", sender=message.sender, action=message.payload.action)

    async def handle_error(self, message: AgentMessage) -> None:
        self.logger.error("error_received", sender=message.sender, data=message.payload.data)

    # ------------------------------------------------------------------
    # Metrics and feedback
    # ------------------------------------------------------------------

    def _update_metrics(self, elapsed: float) -> None:
        perf = self.metrics.performance
        perf.tasks_completed += 1
        perf.average_execution_time += (elapsed - perf.average_execution_time) / perf.tasks_completed

        window = list(self.execution_history)
        if window:
            successes = sum(1 for r in window if r.status == ResultStatus.SUCCESS)
            failures = sum(1 for r in window if r.status == ResultStatus.FAILURE)
            perf.success_rate = successes / len(window) * 100
            perf.error_rate = failures / len(window) * 100

        perf.last_execution_time = utcnow()

    def get_metrics(self) -> AgentMetrics:
        return self.metrics.model_copy(deep=True)

    async def receive_feedback(self, feedback: LearningFeedback) -> None:
        """Persist user feedback and apply any corrections."""
        self.remember(f"feedback_{feedback.task_id}", feedback)

        if feedback.rating < 3:
            self.logger.info(
                "low_rating_received", task_id=feedback.task_id, feedback=feedback.feedback
            )
            self.memory.add_relation(
                f"task_{feedback.task_id}",
                "needs_improvement",
                feedback.feedback or "low_rating",
            )

        if feedback.corrections:
            await self.apply_corrections(feedback.task_id, feedback.corrections)

        await self.signals.emit(AgentSignal.FEEDBACK_RECEIVED, feedback)

    async def apply_corrections(self, task_id: str, corrections: dict[str, Any]) -> None:
        """Hook for agent-specific corrections from feedback."""
        self.logger.debug("corrections_ignored", task_id=task_id, keys=list(corrections))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.logger.info("agent_starting", name=self.name)
        self.status = AgentStatus.IDLE
        await self.signals.emit(AgentSignal.AGENT_STARTED, self.agent_id)

    async def stop(self) -> None:
        self.logger.info("agent_stopping", name=self.name)
        self.status = AgentStatus.IDLE
        await self.shutdown()
        await self.signals.emit(AgentSignal.AGENT_STOPPED, self.agent_id)

    def get_status(self) -> AgentStatus:
        return self.status
