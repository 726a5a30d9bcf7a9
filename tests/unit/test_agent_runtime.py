"""Tests for the BaseAgent task lifecycle."""

import asyncio
from datetime import timedelta

import pytest

from autobooks.agents.base import AgentBusyError, UnknownActionError
from autobooks.agents.signals import AgentSignal
from autobooks.core.models import (
    AgentMessage,
    AgentStatus,
    EventFilter,
    LearningFeedback,
    MessagePayload,
    MessageType,
    Pattern,
    QueryPattern,
    ResultStatus,
    Task,
    TaskResult,
)


def make_task(**overrides) -> Task:
    """Helper to create test tasks with default values."""
    defaults = {"type": "echo", "payload": {"value": 42}}
    defaults.update(overrides)
    return Task(**defaults)


class TestProcessTask:
    """Test the happy path and status transitions."""

    @pytest.mark.asyncio
    async def test_successful_task(self, make_agent, context):
        agent = make_agent()
        task = make_task()

        result = await agent.process_task(task, context)

        assert result.status == ResultStatus.SUCCESS
        assert result.task_id == task.id
        assert result.data == {"value": 42}
        assert agent.get_status() == AgentStatus.IDLE
        assert agent.current_task is None

    @pytest.mark.asyncio
    async def test_status_transitions(self, make_agent, context):
        agent = make_agent()
        statuses = []
        agent.signals.subscribe(AgentSignal.STATUS_CHANGED, statuses.append)

        await agent.process_task(make_task(), context)

        assert statuses == [
            AgentStatus.THINKING,
            AgentStatus.EXECUTING,
            AgentStatus.COMPLETED,
            AgentStatus.IDLE,
        ]

    @pytest.mark.asyncio
    async def test_task_completed_signal(self, make_agent, context):
        agent = make_agent()
        completed = []
        agent.signals.subscribe(AgentSignal.TASK_COMPLETED, completed.append)

        result = await agent.process_task(make_task(), context)

        assert completed == [result]

    @pytest.mark.asyncio
    async def test_task_is_stashed_in_short_term_memory(self, make_agent, context, memory):
        agent = make_agent()
        task = make_task()

        await agent.process_task(task, context)

        assert memory.peek(f"task_{task.id}") == task

    @pytest.mark.asyncio
    async def test_execution_is_recorded(self, make_agent, context, memory):
        agent = make_agent()
        task = make_task()

        await agent.process_task(task, context)

        execution = memory.recall(f"execution_{task.id}")
        assert execution["task"] == task
        assert execution["context"] == context
        events = memory.recall_events(EventFilter(agent_id="echo_agent", type="task_execution"))
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_result_task_id_is_corrected(self, make_agent, context):
        agent = make_agent(outcomes=[TaskResult(task_id="wrong", status=ResultStatus.SUCCESS)])
        task = make_task()

        result = await agent.process_task(task, context)

        assert result.task_id == task.id


class TestRetries:
    """Test retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, make_agent, context, recorded_sleep):
        """Test that a failing task runs 4 times with 2s, 4s and 8s waits."""
        agent = make_agent(outcomes=[RuntimeError("boom")] * 4)
        failed = []
        agent.signals.subscribe(AgentSignal.TASK_FAILED, failed.append)

        result = await agent.process_task(make_task(), context)

        assert result.status == ResultStatus.FAILURE
        assert result.error == "boom"
        assert len(agent.calls) == 4
        assert recorded_sleep.delays == [2, 4, 8]
        assert failed == [result]
        assert agent.get_status() == AgentStatus.IDLE

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self, make_agent, context, recorded_sleep):
        agent = make_agent(outcomes=[RuntimeError("flaky"), RuntimeError("flaky"), {"ok": True}])

        result = await agent.process_task(make_task(), context)

        assert result.status == ResultStatus.SUCCESS
        assert result.data == {"ok": True}
        assert recorded_sleep.delays == [2, 4]

    @pytest.mark.asyncio
    async def test_task_max_retries_overrides_default(self, make_agent, context, recorded_sleep):
        agent = make_agent(outcomes=[RuntimeError("boom")] * 4)

        result = await agent.process_task(make_task(max_retries=1), context)

        assert result.status == ResultStatus.FAILURE
        assert len(agent.calls) == 2
        assert recorded_sleep.delays == [2]

    @pytest.mark.asyncio
    async def test_zero_retries(self, make_agent, context, recorded_sleep):
        agent = make_agent(outcomes=[RuntimeError("boom")])

        await agent.process_task(make_task(max_retries=0), context)

        assert len(agent.calls) == 1
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_validation_failure_is_not_retried(self, make_agent, context, recorded_sleep):
        agent = make_agent(valid=False)

        result = await agent.process_task(make_task(), context)

        assert result.status == ResultStatus.FAILURE
        assert "validation failed" in result.error
        assert agent.calls == []
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_unknown_action_is_not_retried(self, make_agent, context, recorded_sleep):
        agent = make_agent(outcomes=[UnknownActionError("cannot handle task type 'x'")])

        result = await agent.process_task(make_task(), context)

        assert result.status == ResultStatus.FAILURE
        assert len(agent.calls) == 1
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_failure_carries_suggestions(self, make_agent, context):
        agent = make_agent(outcomes=[RuntimeError("database connection lost")])

        result = await agent.process_task(make_task(max_retries=0), context)

        assert "Check database connection" in result.suggestions

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self, make_agent, context, recorded_sleep):
        agent = make_agent(delay=10)

        job = asyncio.create_task(agent.process_task(make_task(), context))
        await asyncio.sleep(0.01)
        job.cancel()

        with pytest.raises(asyncio.CancelledError):
            await job
        assert len(agent.calls) == 1
        assert recorded_sleep.delays == []
        assert agent.current_task is None


class TestBusyGuard:
    """Test that an agent processes one task at a time."""

    @pytest.mark.asyncio
    async def test_second_task_rejected_while_busy(self, make_agent, context):
        agent = make_agent()
        agent.release = asyncio.Event()
        first = make_task()

        job = asyncio.create_task(agent.process_task(first, context))
        while agent.current_task is None:
            await asyncio.sleep(0)

        with pytest.raises(AgentBusyError):
            await agent.process_task(make_task(), context)

        agent.release.set()
        result = await job
        assert result.task_id == first.id
        assert len(agent.calls) == 1


class TestMetrics:
    """Test rolling metrics."""

    @pytest.mark.asyncio
    async def test_success_and_error_rates(self, make_agent, context):
        agent = make_agent(outcomes=[{"ok": True}, RuntimeError("boom")])

        await agent.process_task(make_task(), context)
        await agent.process_task(make_task(max_retries=0), context)

        perf = agent.get_metrics().performance
        assert perf.tasks_completed == 2
        assert perf.success_rate == 50.0
        assert perf.error_rate == 50.0
        assert perf.last_execution_time is not None

    @pytest.mark.asyncio
    async def test_metrics_are_a_copy(self, make_agent, context):
        agent = make_agent()
        snapshot = agent.get_metrics()
        snapshot.performance.tasks_completed = 99

        assert agent.get_metrics().performance.tasks_completed == 0


class TestLearning:
    """Test learning from executions."""

    @pytest.mark.asyncio
    async def test_learning_records_pattern_and_relation(self, make_agent, context, memory):
        agent = make_agent(learning=True)

        await agent.process_task(make_task(), context)

        pattern = agent.find_pattern("echo")
        assert isinstance(pattern, Pattern)
        assert pattern.task_type == "echo"
        assert memory.query(QueryPattern(subject="echo", predicate="solved_by"))
        assert memory.recall_events(EventFilter(type="learning"))

    @pytest.mark.asyncio
    async def test_learning_disabled(self, make_agent, context, memory):
        agent = make_agent(learning=False)

        await agent.process_task(make_task(), context)

        assert agent.find_pattern("echo") is None
        assert memory.recall_events(EventFilter(type="learning")) == []

    def test_find_pattern_prefers_recent_learning(self, make_agent, memory, clock):
        """Test that older patterns do not crowd out recent ones."""
        agent = make_agent()
        for i in range(6):
            memory.remember(
                f"pattern_echo_legacy_{i}",
                Pattern(
                    task_type="echo",
                    tools_used=["legacy"],
                    confidence=0.95,
                    timestamp=clock.now - timedelta(days=20 - i),
                ),
            )
        for i, confidence in enumerate([0.6, 0.7, 0.65, 0.62, 0.61]):
            memory.remember(
                f"pattern_echo_recent_{i}",
                Pattern(
                    task_type="echo",
                    tools_used=["current"],
                    confidence=confidence,
                    timestamp=clock.now - timedelta(minutes=5 - i),
                ),
            )

        pattern = agent.find_pattern("echo")

        assert pattern.tools_used == ["current"]
        assert pattern.confidence == 0.7

    @pytest.mark.asyncio
    async def test_slow_task_insight(self, make_agent):
        agent = make_agent()
        task = make_task()
        result = TaskResult(
            task_id=task.id,
            status=ResultStatus.SUCCESS,
            execution_time=6.0,
            tools_used=["a", "b", "c", "d"],
        )

        insights = await agent.extract_insights(task, result)

        assert insights == [
            "Task type echo takes longer than expected",
            "Complex task requiring multiple tools: a, b, c, d",
        ]

    def test_suggest_fixes(self, make_agent):
        agent = make_agent()

        assert agent.suggest_fixes(ValueError("bad recipient")) == [
            "Check the recipient email address is valid",
            "Verify email service configuration",
        ]
        assert agent.suggest_fixes(TimeoutError()) == ["Retry later or increase the allowed time"]
        assert agent.suggest_fixes(ValueError("other")) == []


class TestFeedback:
    """Test feedback handling."""

    @pytest.mark.asyncio
    async def test_low_rating_records_relation(self, make_agent, memory):
        agent = make_agent()
        received = []
        agent.signals.subscribe(AgentSignal.FEEDBACK_RECEIVED, received.append)
        feedback = LearningFeedback(
            task_id="task_1", agent_id="echo_agent", rating=2, feedback="wrong totals"
        )

        await agent.receive_feedback(feedback)

        assert memory.recall("feedback_task_1") == feedback
        relations = memory.query(QueryPattern(subject="task_task_1", predicate="needs_improvement"))
        assert [t.object for t in relations] == ["wrong totals"]
        assert received == [feedback]

    @pytest.mark.asyncio
    async def test_high_rating_records_no_relation(self, make_agent, memory):
        agent = make_agent()

        await agent.receive_feedback(LearningFeedback(task_id="t", agent_id="echo_agent", rating=5))

        assert memory.query() == []


class TestMessaging:
    """Test message sending and dispatch."""

    @pytest.mark.asyncio
    async def test_send_message(self, make_agent):
        agent = make_agent()
        sent = []
        agent.signals.subscribe(AgentSignal.MESSAGE_SENT, sent.append)

        message = await agent.send_message(["a", "b"], "ping", {"x": 1}, ttl=30)

        assert sent == [message]
        assert message.sender == "echo_agent"
        assert message.recipients == ["a", "b"]
        assert message.type == MessageType.REQUEST

    @pytest.mark.asyncio
    async def test_dispatch_by_type(self, make_agent):
        agent = make_agent()
        handled = []

        async def handle_event(message):
            handled.append(message.payload.action)

        agent.handle_event = handle_event
        event = AgentMessage(
            sender="other", to="echo_agent", type=MessageType.EVENT, payload=MessagePayload(action="changed")
        )
        notification = AgentMessage(
            sender="other",
            to="echo_agent",
            type=MessageType.NOTIFICATION,
            payload=MessagePayload(action="fyi"),
        )

        await agent.handle_message(event)
        await agent.handle_message(notification)

        assert handled == ["changed"]

    def test_message_accepts_from_alias(self):
        message = AgentMessage.model_validate(
            {"from": "a", "to": "b", "payload": {"action": "ping"}}
        )
        assert message.sender == "a"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_agent):
        agent = make_agent()
        events = []
        agent.signals.subscribe(AgentSignal.AGENT_STARTED, events.append)
        agent.signals.subscribe(AgentSignal.AGENT_STOPPED, events.append)

        await agent.start()
        await agent.stop()

        assert events == ["echo_agent", "echo_agent"]
        assert agent.get_status() == AgentStatus.IDLE
