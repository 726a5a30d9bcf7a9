"""Tests for tools, tool calls and the signal bus."""

import pytest

from autobooks.agents.signals import AgentSignal, SignalBus
from autobooks.agents.tools import FunctionTool, Tool, ToolNotFoundError, ToolValidationError


async def echo(params):
    return {"echo": params}


class StaticTool(Tool):
    async def execute(self, params):
        return "static"


class TestTools:
    """Test tool implementations."""

    @pytest.mark.asyncio
    async def test_function_tool(self):
        tool = FunctionTool("echo", echo, description="Echo params")
        assert await tool.execute({"a": 1}) == {"echo": {"a": 1}}
        assert tool.validate(None) is True

    def test_function_tool_validator(self):
        tool = FunctionTool("echo", echo, validator=lambda p: isinstance(p, dict))
        assert tool.validate({}) is True
        assert tool.validate("nope") is False

    @pytest.mark.asyncio
    async def test_tool_subclass_defaults(self):
        tool = StaticTool("static")
        assert tool.validate(object()) is True
        assert tool.cost is None
        assert await tool.execute(None) == "static"
        assert repr(tool) == "StaticTool(name='static')"


class TestAgentToolCalls:
    """Test BaseAgent.call_tool."""

    @pytest.mark.asyncio
    async def test_call_tool_tracks_usage(self, make_agent):
        agent = make_agent()
        agent.register_tool(FunctionTool("echo", echo))

        result = await agent.call_tool("echo", {"x": 1})
        await agent.call_tool("echo", {"x": 2})

        assert result == {"echo": {"x": 1}}
        assert agent.tools_used == ["echo"]
        assert agent.get_metrics().resource.api_calls_count == 2

    @pytest.mark.asyncio
    async def test_unknown_tool(self, make_agent):
        agent = make_agent()
        with pytest.raises(ToolNotFoundError):
            await agent.call_tool("missing")

    @pytest.mark.asyncio
    async def test_invalid_params(self, make_agent):
        agent = make_agent()
        agent.register_tool(FunctionTool("strict", echo, validator=lambda p: False))

        with pytest.raises(ToolValidationError):
            await agent.call_tool("strict", {})
        assert agent.tools_used == []

    @pytest.mark.asyncio
    async def test_costly_tool_emits_cost_signal(self, make_agent):
        agent = make_agent()
        agent.register_tool(FunctionTool("paid_api", echo, cost=0.25))
        costs = []
        agent.signals.subscribe(AgentSignal.COST_INCURRED, costs.append)

        await agent.call_tool("paid_api", {})

        assert costs == [{"tool": "paid_api", "cost": 0.25}]

    @pytest.mark.asyncio
    async def test_tool_error_propagates(self, make_agent):
        async def broken(params):
            raise RuntimeError("email service down")

        agent = make_agent()
        agent.register_tool(FunctionTool("email_service", broken))

        with pytest.raises(RuntimeError, match="email service down"):
            await agent.call_tool("email_service", {})
        assert agent.get_metrics().resource.api_calls_count == 0


class TestSignalBus:
    """Test subscription and delivery."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = SignalBus("owner")
        received = []

        async def async_handler(payload):
            received.append(("async", payload))

        bus.subscribe("ping", lambda payload: received.append(("sync", payload)))
        bus.subscribe("ping", async_handler)

        await bus.emit("ping", 1)

        assert received == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = SignalBus("owner")
        received = []
        unsubscribe = bus.subscribe("ping", received.append)

        unsubscribe()
        unsubscribe()
        await bus.emit("ping", 1)

        assert received == []
        assert bus.handler_count("ping") == 0

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self):
        bus = SignalBus("owner")
        received = []

        def broken(payload):
            raise ValueError("handler bug")

        bus.subscribe("ping", broken)
        bus.subscribe("ping", received.append)

        await bus.emit("ping", "payload")

        assert received == ["payload"]

    @pytest.mark.asyncio
    async def test_emit_without_handlers(self):
        await SignalBus("owner").emit(AgentSignal.PROGRESS, {})
