"""Orchestrator: request handling, agent registry and workflow execution."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from autobooks.agents.base import AgentBusyError, BaseAgent
from autobooks.agents.signals import AgentSignal, OrchestratorSignal, SignalBus
from autobooks.config import Settings, get_settings
from autobooks.core.models import (
    AgentMessage,
    AgentStatus,
    ExecutionContext,
    ResultStatus,
    Task,
    TaskPriority,
    TaskResult,
    utcnow,
)
from autobooks.core.workflow import (
    TriggerEvent,
    Workflow,
    WorkflowExecution,
    WorkflowRunResult,
    WorkflowStatus,
    WorkflowStep,
)
from autobooks.infrastructure.memory_store import MemoryStore
from autobooks.orchestrator.alerts import AlertSink, LoggingAlertSink
from autobooks.orchestrator.assignment import (
    DEFAULT_AGENT,
    AgentAssignment,
    order_assignments,
    select_agents,
)
from autobooks.orchestrator.decomposer import TaskDecomposer, collect_refs, resolve_refs
from autobooks.orchestrator.intents import (
    Intent,
    IntentClassifier,
    KeywordIntentClassifier,
    best_intent,
)
from autobooks.orchestrator.workflows import default_workflows, load_workflows

logger = structlog.get_logger()

ORCHESTRATOR_ID = "orchestrator"


class OrchestrationError(Exception):
    """Base class for orchestration errors."""

    pass


class AgentNotFoundError(OrchestrationError):
    """Raised when no agent is registered under the requested id."""

    pass


class WorkflowNotFoundError(OrchestrationError):
    """Raised when no workflow is registered under the requested id."""

    pass


class WorkflowError(OrchestrationError):
    """Raised when a workflow execution fails."""

    pass


class StepTimeoutError(WorkflowError, TimeoutError):
    """Raised when a step does not finish within its timeout."""

    pass


class RequestStatus(str, Enum):
    """Outcome of a user request."""

    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class RequestOutcome(BaseModel):
    """Envelope returned by process_user_request."""

    status: RequestStatus
    message: str | None = None
    intent: Intent | None = None
    results: list[TaskResult] = Field(default_factory=list)


class TriggerOutcome(BaseModel):
    """Outcome of one workflow started by a trigger."""

    workflow_id: str
    success: bool
    result: WorkflowRunResult | None = None
    error: str | None = None


@dataclass
class RequestPlan:
    """Intent, tasks and assignments derived from a request."""

    intent: Intent
    tasks: list[Task]
    assignments: list[AgentAssignment]


def _failed(task: Task, error: str) -> TaskResult:
    return TaskResult(task_id=task.id, status=ResultStatus.FAILURE, error=error)


class Orchestrator:
    """Coordinates agents for user requests and workflows.

    Owns the agent registry, the workflow registry and the table of active
    workflow executions.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        classifier: IntentClassifier | None = None,
        decomposer: TaskDecomposer | None = None,
        alert_sink: AlertSink | None = None,
        workflows: list[Workflow] | None = None,
        routes: list[tuple[tuple[str, ...], str]] | None = None,
    ):
        """Initialize orchestrator.

        Args:
            settings: Settings instance (uses global if None)
            classifier: Intent classification strategy (keyword rules by default)
            decomposer: Intent to task expansion
            alert_sink: Destination of workflow alerts (logs by default)
            workflows: Workflows to register (built-in workflows if None)
            routes: Task type keyword routes for agent selection
        """
        self.settings = settings or get_settings()
        self.classifier = classifier or KeywordIntentClassifier()
        self.decomposer = decomposer or TaskDecomposer()
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.routes = routes
        self.signals = SignalBus(ORCHESTRATOR_ID)

        self.agents: dict[str, BaseAgent] = {}
        self.workflows: dict[str, Workflow] = {}
        self.active_executions: dict[str, WorkflowExecution] = {}

        self._unsubscribers: dict[str, list[Callable[[], None]]] = {}
        self._detached: set[asyncio.Task] = set()

        for workflow in workflows if workflows is not None else default_workflows():
            self.register_workflow(workflow)
        if self.settings.workflows_file is not None:
            for workflow in load_workflows(self.settings.workflows_file):
                self.register_workflow(workflow)

    # ------------------------------------------------------------------
    # Registries
    # ------------------------------------------------------------------

    def register_agent(self, agent: BaseAgent, agent_id: str | None = None) -> str:
        """Register an agent and subscribe to its signals.

        Args:
            agent: Agent instance
            agent_id: Registry id (defaults to the agent's config id)

        Returns:
            The registry id
        """
        agent_id = agent_id or agent.agent_id
        if agent_id in self.agents:
            self.unregister_agent(agent_id)

        async def forward_status(status: AgentStatus) -> None:
            await self.signals.emit(
                OrchestratorSignal.AGENT_STATUS_CHANGED, {"agent_id": agent_id, "status": status}
            )

        async def forward_result(result: TaskResult) -> None:
            await self.signals.emit(OrchestratorSignal.TASK_RESULT, result)

        self.agents[agent_id] = agent
        self._unsubscribers[agent_id] = [
            agent.signals.subscribe(AgentSignal.MESSAGE_SENT, self.route_message),
            agent.signals.subscribe(AgentSignal.TASK_COMPLETED, forward_result),
            agent.signals.subscribe(AgentSignal.TASK_FAILED, forward_result),
            agent.signals.subscribe(AgentSignal.STATUS_CHANGED, forward_status),
        ]
        logger.info("agent_registered", agent_id=agent_id, name=agent.name)
        return agent_id

    def unregister_agent(self, agent_id: str) -> BaseAgent | None:
        for unsubscribe in self._unsubscribers.pop(agent_id, []):
            unsubscribe()
        agent = self.agents.pop(agent_id, None)
        if agent is not None:
            logger.info("agent_unregistered", agent_id=agent_id)
        return agent

    def register_workflow(self, workflow: Workflow) -> None:
        self.workflows[workflow.id] = workflow
        logger.debug("workflow_registered", workflow_id=workflow.id, steps=len(workflow.steps))

    def list_workflows(self) -> list[Workflow]:
        return list(self.workflows.values())

    def get_agent_status(self) -> dict[str, AgentStatus]:
        return {agent_id: agent.get_status() for agent_id, agent in self.agents.items()}

    def get_active_workflows(self) -> list[WorkflowExecution]:
        return list(self.active_executions.values())

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def analyze_intent(self, prompt: str) -> list[Intent]:
        return await self.classifier.classify(prompt)

    def decompose_task(self, intent: Intent) -> list[Task]:
        return self.decomposer.decompose(intent)

    def select_agents(self, tasks: list[Task]) -> list[AgentAssignment]:
        return select_agents(tasks, self.routes, DEFAULT_AGENT)

    async def plan_request(self, prompt: str) -> RequestPlan | None:
        """Classify, decompose and assign a request without executing it.

        Returns:
            The plan, or None when no intent was recognized
        """
        intent = best_intent(await self.analyze_intent(prompt))
        if intent is None:
            return None
        tasks = self.decompose_task(intent)
        return RequestPlan(intent=intent, tasks=tasks, assignments=self.select_agents(tasks))

    async def process_user_request(self, prompt: str, context: ExecutionContext) -> RequestOutcome:
        """Handle a free-text request end to end.

        Assignments run one after another, each task awaited before the next.
        A task whose agent is missing, or whose dependencies did not succeed,
        gets a failed result without running. References to other tasks'
        outputs in a payload are resolved just before the task runs.

        Returns:
            RequestOutcome (never raises for orchestration errors)
        """
        try:
            plan = await self.plan_request(prompt)
            if plan is None:
                return RequestOutcome(
                    status=RequestStatus.ERROR, message="Could not understand the request"
                )

            logger.info(
                "request_planned",
                action=plan.intent.action,
                confidence=plan.intent.confidence,
                tasks=len(plan.tasks),
                session_id=context.session_id,
            )

            results: dict[str, TaskResult] = {}
            for assignment in order_assignments(plan.assignments):
                agent = self.agents.get(assignment.agent_id)
                for task in assignment.tasks:
                    results[task.id] = await self._run_request_task(agent, assignment, task, results, context)

        except Exception as e:
            logger.error("request_failed", error=str(e), error_type=type(e).__name__)
            return RequestOutcome(status=RequestStatus.ERROR, message=str(e))

        ordered = [results[task.id] for task in plan.tasks if task.id in results]
        succeeded = sum(1 for r in ordered if r.succeeded)
        if succeeded == len(ordered):
            status, message = RequestStatus.SUCCESS, None
        elif succeeded:
            status, message = RequestStatus.PARTIAL, f"{len(ordered) - succeeded} of {len(ordered)} tasks failed"
        else:
            status, message = RequestStatus.ERROR, "No task succeeded"

        return RequestOutcome(status=status, message=message, intent=plan.intent, results=ordered)

    async def _run_request_task(
        self,
        agent: BaseAgent | None,
        assignment: AgentAssignment,
        task: Task,
        results: dict[str, TaskResult],
        context: ExecutionContext,
    ) -> TaskResult:
        if agent is None:
            logger.warning("agent_not_found", agent_id=assignment.agent_id, task_id=task.id)
            return _failed(task, f"Agent not found: {assignment.agent_id}")

        required = list(dict.fromkeys([*task.dependencies, *collect_refs(task.payload)]))
        unmet = [dep for dep in required if dep not in results or not results[dep].succeeded]
        if unmet:
            return _failed(task, f"Dependencies not satisfied: {', '.join(unmet)}")

        outputs = {task_id: result.data for task_id, result in results.items()}
        resolved = task.model_copy(update={"payload": resolve_refs(task.payload, outputs)})
        try:
            return await agent.process_task(resolved, context)
        except AgentBusyError as e:
            return _failed(task, str(e))

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def route_message(self, message: AgentMessage) -> None:
        """Deliver a message to each registered recipient.

        Expired messages and unknown recipients are logged and dropped.
        """
        if message.is_expired(utcnow()):
            logger.warning("message_expired", message_id=message.id, sender=message.sender)
            return

        for recipient in message.recipients:
            agent = self.agents.get(recipient)
            if agent is not None:
                try:
                    await agent.handle_message(message)
                except Exception as e:
                    logger.error(
                        "message_delivery_failed",
                        message_id=message.id,
                        recipient=recipient,
                        error=str(e),
                    )
            elif recipient == ORCHESTRATOR_ID:
                await self.handle_message(message)
            else:
                logger.warning("message_recipient_not_found", recipient=recipient, message_id=message.id)

    async def handle_message(self, message: AgentMessage) -> None:
        logger.info(
            "orchestrator_message_received",
            sender=message.sender,
            action=message.payload.action,
            message_type=message.type.value,
        )

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def execute_workflow(self, workflow_id: str, context: ExecutionContext) -> WorkflowRunResult:
        """Run a registered workflow.

        Stages run in order; the steps of a parallel stage run concurrently.
        A step whose result failed is recorded and follows its failure branch
        if it has one. A step that raises or times out fails the workflow:
        alerts and the fallback action run before the error is re-raised.

        Args:
            workflow_id: Registered workflow id
            context: Execution context passed to every step

        Returns:
            WorkflowRunResult of the completed execution

        Raises:
            WorkflowNotFoundError: If the workflow is not registered
            StepTimeoutError: If a step exceeds its timeout
            AgentNotFoundError: If a step targets an unregistered agent
        """
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")

        execution = WorkflowExecution(
            workflow=workflow,
            context=context,
            status=WorkflowStatus.RUNNING,
            current_step=workflow.steps[0].id,
        )
        self.active_executions[execution.id] = execution
        logger.info("workflow_started", workflow_id=workflow.id, execution_id=execution.id)
        await self.signals.emit(OrchestratorSignal.WORKFLOW_STARTED, execution)

        try:
            await self._run_stages(workflow, execution)

            execution.status = WorkflowStatus.COMPLETED
            execution.end_time = utcnow()
            logger.info(
                "workflow_completed",
                workflow_id=workflow.id,
                execution_id=execution.id,
                steps_run=len(execution.results),
                steps_skipped=len(execution.skipped_steps),
            )
            await self.signals.emit(OrchestratorSignal.WORKFLOW_COMPLETED, execution)
            return WorkflowRunResult(
                execution_id=execution.id,
                workflow_id=workflow.id,
                status=execution.status,
                results=dict(execution.results),
                skipped_steps=list(execution.skipped_steps),
            )

        except Exception as e:
            execution.status = WorkflowStatus.FAILED
            execution.end_time = utcnow()
            execution.error = str(e)
            logger.error(
                "workflow_failed",
                workflow_id=workflow.id,
                execution_id=execution.id,
                step=execution.current_step,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.signals.emit(
                OrchestratorSignal.WORKFLOW_FAILED, {"execution": execution, "error": e}
            )
            await self._handle_workflow_error(workflow, execution, e)
            raise

        finally:
            self.active_executions.pop(execution.id, None)

    async def _run_stages(self, workflow: Workflow, execution: WorkflowExecution) -> None:
        stages = workflow.stages()
        index = 0
        while index < len(stages):
            stage = stages[index]
            outcomes = await self._run_stage(stage, execution)

            target = None
            for step in stage:
                result = outcomes.get(step.id)
                if result is None:
                    continue
                if result.status == ResultStatus.FAILURE:
                    if step.on_failure is not None:
                        target = target or step.on_failure
                elif step.on_success is not None:
                    target = target or step.on_success

            next_index = index + 1
            if target is not None:
                next_index = max(next_index, workflow.stage_index(target))
                for bypassed in stages[index + 1 : next_index]:
                    for step in bypassed:
                        await self._skip_step(step, execution, reason=f"branched to {target}")
            index = next_index

    async def _run_stage(
        self, stage: list[WorkflowStep], execution: WorkflowExecution
    ) -> dict[str, TaskResult | None]:
        if len(stage) == 1:
            step = stage[0]
            return {step.id: await self._execute_step(step, execution)}

        # Agents run one task at a time, so steps for the same agent are chained.
        chains: dict[str, list[WorkflowStep]] = {}
        for step in stage:
            chains.setdefault(step.agent_id, []).append(step)

        async def run_chain(steps: list[WorkflowStep]) -> dict[str, TaskResult | None]:
            return {step.id: await self._execute_step(step, execution) for step in steps}

        outcomes = await asyncio.gather(
            *(run_chain(steps) for steps in chains.values()), return_exceptions=True
        )
        merged: dict[str, TaskResult | None] = {}
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            merged.update(outcome)
        return merged

    async def _skip_step(self, step: WorkflowStep, execution: WorkflowExecution, reason: str) -> None:
        execution.skipped_steps.append(step.id)
        logger.info("step_skipped", execution_id=execution.id, step_id=step.id, reason=reason)
        await self.signals.emit(
            OrchestratorSignal.STEP_SKIPPED,
            {"execution_id": execution.id, "step": step, "reason": reason},
        )

    async def _execute_step(self, step: WorkflowStep, execution: WorkflowExecution) -> TaskResult | None:
        execution.current_step = step.id
        await self.signals.emit(
            OrchestratorSignal.STEP_STARTED, {"execution_id": execution.id, "step": step}
        )

        if step.conditions:
            state = execution.state()
            if not all(condition.evaluate(state) for condition in step.conditions):
                await self._skip_step(step, execution, reason="conditions not met")
                return None

        agent = self.agents.get(step.agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent not found: {step.agent_id}")

        payload = dict(step.params)
        if step.input_from is not None:
            upstream = execution.output_of(step.input_from)
            if isinstance(upstream, dict):
                payload.update(upstream)
            elif upstream is not None:
                payload["input"] = upstream

        task = Task(
            id=f"{execution.id}_{step.id}",
            type=step.action,
            description=f"Execute {step.action} for workflow {execution.workflow.name}",
            payload=payload,
        )
        timeout = step.timeout or self.settings.step_timeout_seconds

        job = asyncio.create_task(agent.process_task(task, execution.context))
        try:
            done, _ = await asyncio.wait({job}, timeout=timeout)
        except asyncio.CancelledError:
            job.cancel()
            raise

        if job not in done:
            self._detach(job, step)
            raise StepTimeoutError(f"Step '{step.id}' timed out after {timeout}s")

        result = job.result()
        execution.results[step.id] = result
        logger.info(
            "step_completed",
            execution_id=execution.id,
            step_id=step.id,
            status=result.status.value,
        )
        await self.signals.emit(
            OrchestratorSignal.STEP_COMPLETED,
            {"execution_id": execution.id, "step": step, "result": result},
        )
        return result

    def _detach(self, job: asyncio.Task, step: WorkflowStep) -> None:
        """Keep a timed-out step running in the background until it settles."""
        self._detached.add(job)

        def settled(finished: asyncio.Task) -> None:
            self._detached.discard(finished)
            if finished.cancelled():
                logger.info("detached_step_cancelled", step_id=step.id)
            elif finished.exception() is not None:
                logger.warning(
                    "detached_step_failed", step_id=step.id, error=str(finished.exception())
                )
            else:
                logger.info("detached_step_finished", step_id=step.id)

        job.add_done_callback(settled)

    async def _handle_workflow_error(
        self, workflow: Workflow, execution: WorkflowExecution, error: Exception
    ) -> None:
        strategy = workflow.error_handling

        if strategy.alerting is not None:
            alert = {
                "workflow": workflow.name,
                "workflow_id": workflow.id,
                "execution_id": execution.id,
                "error": str(error),
                "severity": strategy.alerting.severity.value,
            }
            for channel in strategy.alerting.channels:
                try:
                    await self.alert_sink.send(channel, alert)
                except Exception as e:
                    logger.error("alert_delivery_failed", channel=channel, error=str(e))
                await self.signals.emit(OrchestratorSignal.ALERT, {"channel": channel, **alert})

        if strategy.fallback is not None:
            agent = self.agents.get(strategy.fallback.agent_id)
            if agent is None:
                logger.warning("fallback_agent_not_found", agent_id=strategy.fallback.agent_id)
                return

            task = Task(
                id=f"fallback_{execution.id}",
                type=strategy.fallback.action,
                description="Fallback action",
                priority=TaskPriority.HIGH,
                payload={"error": str(error), "execution": execution.model_dump()},
            )
            try:
                result = await agent.process_task(task, execution.context)
            except AgentBusyError as e:
                logger.error("fallback_failed", execution_id=execution.id, error=str(e))
                return
            logger.info(
                "fallback_executed", execution_id=execution.id, status=result.status.value
            )

    async def handle_trigger(self, event: TriggerEvent) -> list[TriggerOutcome]:
        """Run every workflow with a trigger equal to the event.

        Returns:
            One outcome per matching workflow (failures included)
        """
        outcomes = []
        for workflow in list(self.workflows.values()):
            if not any(
                trigger.type == event.type and trigger.config == event.config
                for trigger in workflow.triggers
            ):
                continue
            try:
                result = await self.execute_workflow(workflow.id, event.context)
                outcomes.append(TriggerOutcome(workflow_id=workflow.id, success=True, result=result))
            except Exception as e:
                outcomes.append(TriggerOutcome(workflow_id=workflow.id, success=False, error=str(e)))
        return outcomes

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _memory_stores(self) -> list[MemoryStore]:
        """Distinct memory stores of the registered agents."""
        stores: dict[int, MemoryStore] = {}
        for agent in self.agents.values():
            stores.setdefault(id(agent.memory), agent.memory)
        return list(stores.values())

    async def start(self) -> None:
        """Start registered agents and the background sweep of their memory."""
        for agent in list(self.agents.values()):
            await agent.start()
        stores = self._memory_stores()
        for store in stores:
            await store.start()
        logger.info("orchestrator_started", agents=len(self.agents), memory_stores=len(stores))

    async def shutdown(self) -> None:
        """Cancel timed-out steps still running, stop all agents and memory sweeps."""
        leftovers = list(self._detached)
        for job in leftovers:
            job.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)

        for agent_id, agent in list(self.agents.items()):
            try:
                await agent.stop()
            except Exception as e:
                logger.error("agent_stop_failed", agent_id=agent_id, error=str(e))
        for store in self._memory_stores():
            await store.stop()
        logger.info("orchestrator_stopped", cancelled_steps=len(leftovers))
