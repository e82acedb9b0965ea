import pytest

from hearth.core_memory import CoreMemory, MemoryBlock
from hearth.tools.delegate import DelegateTaskTool, agent_type_for_profile
from hearth.tools.memory_tools import CoreMemoryAppendTool, CoreMemoryReadTool, CoreMemoryReplaceTool
from hearth.tools.registry import ToolContext


def _context() -> ToolContext:
    memory = CoreMemory(
        blocks=[
            MemoryBlock(label="human", value="Name: Sam", limit=100),
            MemoryBlock(label="system", value="Be helpful.", read_only=True),
        ]
    )
    return ToolContext(agent_id="worker-1", memory=memory)


@pytest.mark.asyncio
async def test_read_all_blocks_shows_usage_and_flags():
    result = await CoreMemoryReadTool().execute({}, _context())
    assert result.success is True
    assert "<human> 9/100 chars\nName: Sam" in result.output
    assert "<system> 11/2000 chars read-only" in result.output


@pytest.mark.asyncio
async def test_append_updates_block():
    context = _context()
    result = await CoreMemoryAppendTool().execute({"label": "human", "content": "Likes tea"}, context)
    assert result.success is True
    assert context.memory.get("human").value == "Name: Sam\nLikes tea"


@pytest.mark.asyncio
async def test_append_to_read_only_block_reports_code():
    context = _context()
    result = await CoreMemoryAppendTool().execute({"label": "system", "content": "x"}, context)
    assert result.success is False
    assert result.error_code == "block_read_only"
    assert context.memory.get("system").value == "Be helpful."


@pytest.mark.asyncio
async def test_replace_missing_label_reports_not_found():
    result = await CoreMemoryReplaceTool().execute(
        {"label": "ghost", "old_content": "a", "new_content": "b"},
        _context(),
    )
    assert result.error_code == "block_not_found"


@pytest.mark.asyncio
async def test_append_over_limit_is_rejected():
    result = await CoreMemoryAppendTool().execute({"label": "human", "content": "x" * 200}, _context())
    assert result.success is False
    assert result.error_code == "block_over_limit"


@pytest.mark.asyncio
async def test_memory_tools_without_memory_fail_cleanly():
    result = await CoreMemoryReadTool().execute({}, ToolContext())
    assert result.success is False


@pytest.mark.asyncio
async def test_delegate_tool_cannot_run_outside_loop():
    tool = DelegateTaskTool()
    result = await tool.execute({"message": "do it"})
    assert tool.delegation is True
    assert result.success is False


def test_profile_aliases_map_to_agent_types():
    assert agent_type_for_profile("researcher") == "research"
    assert agent_type_for_profile("Developer") == "coder"
    assert agent_type_for_profile(None) == "general"
    assert agent_type_for_profile("unknown") == "general"
