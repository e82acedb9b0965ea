import asyncio

import pytest

from hearth.exceptions import (
    ToolBlockedError,
    ToolDisabledError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ToolValidationError,
)
from hearth.tools.registry import (
    RiskLevel,
    Tool,
    ToolContext,
    ToolParameter,
    ToolPolicy,
    ToolRegistry,
    ToolResult,
    ToolSchema,
)


class FlakyTool(Tool):
    name = "flaky"
    description = "Fails on demand"
    schema = ToolSchema(properties={"mode": ToolParameter(enum=["ok", "fail", "raise"])}, required=["mode"])

    async def execute(self, arguments, context=None):
        if arguments["mode"] == "raise":
            raise RuntimeError("exploded")
        if arguments["mode"] == "fail":
            return ToolResult(success=False, error="did not work")
        return ToolResult(success=True, output="worked")


class SlowTool(Tool):
    name = "slow"
    description = "Sleeps"
    timeout_seconds = 1.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, arguments, context=None):
        try:
            await asyncio.sleep(5.0)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolResult(success=True, output="late")


class ContextEchoTool(Tool):
    name = "echo_context"
    description = "Echoes the calling agent"
    risk_level = RiskLevel.HIGH

    async def execute(self, arguments, context=None):
        return ToolResult(success=True, output=f"{context.agent_id}:{context.depth}")


@pytest.mark.asyncio
async def test_five_consecutive_failures_disable_tool():
    registry = ToolRegistry()
    registry.register(FlakyTool())

    for _ in range(5):
        result = await registry.execute("flaky", {"mode": "fail"})
        assert result.success is False

    assert registry.is_disabled("flaky") is True
    assert registry.error_count("flaky") == 5
    with pytest.raises(ToolDisabledError):
        await registry.execute("flaky", {"mode": "ok"})


@pytest.mark.asyncio
async def test_success_resets_error_count_before_threshold():
    registry = ToolRegistry()
    registry.register(FlakyTool())

    for _ in range(4):
        with pytest.raises(ToolExecutionError):
            await registry.execute("flaky", {"mode": "raise"})
    assert registry.error_count("flaky") == 4

    result = await registry.execute("flaky", {"mode": "ok"})

    assert result.success is True
    assert registry.is_disabled("flaky") is False
    assert registry.error_count("flaky") == 0


@pytest.mark.asyncio
async def test_disabled_tool_needs_explicit_enable():
    registry = ToolRegistry(error_threshold=2)
    registry.register(FlakyTool())
    await registry.execute("flaky", {"mode": "fail"})
    await registry.execute("flaky", {"mode": "fail"})
    assert registry.is_disabled("flaky")
    assert "flaky" not in registry.list_tools()
    assert "flaky" in registry.list_tools(include_disabled=True)

    await registry.enable("flaky")

    assert registry.is_disabled("flaky") is False
    assert registry.error_count("flaky") == 0
    assert (await registry.execute("flaky", {"mode": "ok"})).output == "worked"


@pytest.mark.asyncio
async def test_validation_failure_counts_and_raises():
    registry = ToolRegistry()
    registry.register(FlakyTool())

    with pytest.raises(ToolValidationError) as missing:
        await registry.execute("flaky", {})
    with pytest.raises(ToolValidationError) as bad_enum:
        await registry.execute("flaky", {"mode": "sideways"})

    assert "Missing required argument: mode" in str(missing.value)
    assert "must be one of" in str(bad_enum.value)
    assert registry.error_count("flaky") == 2


@pytest.mark.asyncio
async def test_policy_blocks_denied_tool():
    registry = ToolRegistry(policy=ToolPolicy(deny=["FLAKY"]))
    registry.register(FlakyTool())

    with pytest.raises(ToolBlockedError):
        await registry.execute("flaky", {"mode": "ok"})
    assert registry.list_tools() == []


@pytest.mark.asyncio
async def test_unknown_tool_raises_not_found():
    registry = ToolRegistry()
    with pytest.raises(ToolNotFoundError) as exc_info:
        await registry.execute("missing", {})
    assert exc_info.value.code == "not_found"


@pytest.mark.asyncio
async def test_timeout_cancels_tool_and_counts_failure():
    registry = ToolRegistry()
    tool = SlowTool()
    registry.register(tool)

    with pytest.raises(ToolTimeoutError):
        await registry.execute("slow", {})

    assert tool.cancelled is True
    assert registry.error_count("slow") == 1


@pytest.mark.asyncio
async def test_context_is_passed_to_tool():
    registry = ToolRegistry()
    registry.register(ContextEchoTool())

    result = await registry.execute("echo_context", {}, ToolContext(agent_id="worker-1", depth=1))

    assert result.output == "worker-1:1"


@pytest.mark.asyncio
async def test_status_reports_counts_and_risk():
    registry = ToolRegistry()
    registry.register(FlakyTool())
    registry.register(ContextEchoTool())
    await registry.execute("flaky", {"mode": "fail"})

    status = {entry["name"]: entry for entry in await registry.status()}

    assert status["flaky"]["error_count"] == 1
    assert status["flaky"]["disabled"] is False
    assert status["echo_context"]["risk_level"] == "high"


def test_failed_result_always_has_error_and_code():
    result = ToolResult(success=False, output="partial")
    assert result.error == "partial"
    assert result.error_code == "execution_failed"
    assert result.text == "partial"


def test_describe_lists_arguments():
    line = FlakyTool().describe()
    assert line.startswith("- flaky: Fails on demand [risk: low]")
    assert "mode: string (required) one of ok|fail|raise" in line
