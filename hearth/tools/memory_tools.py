"""Agent-facing tools over core memory blocks."""

from hearth.exceptions import MemoryBlockError
from hearth.logging import get_logger
from hearth.tools.registry import (
    RiskLevel,
    Tool,
    ToolContext,
    ToolParameter,
    ToolResult,
    ToolSchema,
)

log = get_logger(__name__)

_LABEL = ToolParameter(description="Memory block label, e.g. human, knowledge, short_term")


def _memory_failure(exc: MemoryBlockError) -> ToolResult:
    return ToolResult.failure(str(exc), code=exc.code)


class CoreMemoryReadTool(Tool):
    """Show one block, or every block when no label is given."""

    name = "core_memory_read"
    description = "Read core memory. Omit label to list every block with its usage."
    schema = ToolSchema(properties={"label": _LABEL})

    async def execute(self, arguments: dict[str, str], context: ToolContext | None = None) -> ToolResult:
        if context is None or context.memory is None:
            return ToolResult.failure("No core memory attached to this agent")
        label = arguments.get("label", "").strip()
        try:
            blocks = [context.memory.get(label)] if label else context.memory.blocks()
        except MemoryBlockError as e:
            return _memory_failure(e)
        lines = []
        for block in blocks:
            flags = " read-only" if block.read_only else ""
            flags += " OVER LIMIT" if block.is_over_limit else ""
            lines.append(
                f"<{block.label}> {block.char_count}/{block.limit} chars{flags}\n{block.value}"
            )
        return ToolResult(success=True, output="\n\n".join(lines))


class CoreMemoryAppendTool(Tool):
    """Append a line to a writable block."""

    name = "core_memory_append"
    description = "Append text to a core memory block (new line)."
    risk_level = RiskLevel.MEDIUM
    schema = ToolSchema(
        properties={
            "label": _LABEL,
            "content": ToolParameter(description="Text to append"),
        },
        required=["label", "content"],
    )

    async def execute(self, arguments: dict[str, str], context: ToolContext | None = None) -> ToolResult:
        if context is None or context.memory is None:
            return ToolResult.failure("No core memory attached to this agent")
        try:
            block = await context.memory.append(arguments["label"].strip(), arguments["content"])
        except MemoryBlockError as e:
            return _memory_failure(e)
        log.info("Core memory appended", label=block.label, agent=context.agent_id)
        return ToolResult(
            success=True,
            output=f"Appended to {block.label} ({block.char_count}/{block.limit} chars)",
        )


class CoreMemoryReplaceTool(Tool):
    """Replace text inside a writable block."""

    name = "core_memory_replace"
    description = "Replace old_content with new_content in a core memory block. Empty old_content replaces everything."
    risk_level = RiskLevel.MEDIUM
    schema = ToolSchema(
        properties={
            "label": _LABEL,
            "old_content": ToolParameter(description="Exact text to replace"),
            "new_content": ToolParameter(description="Replacement text"),
        },
        required=["label"],
    )

    async def execute(self, arguments: dict[str, str], context: ToolContext | None = None) -> ToolResult:
        if context is None or context.memory is None:
            return ToolResult.failure("No core memory attached to this agent")
        try:
            block = await context.memory.replace(
                arguments["label"].strip(),
                arguments.get("old_content", ""),
                arguments.get("new_content", ""),
            )
        except MemoryBlockError as e:
            return _memory_failure(e)
        return ToolResult(
            success=True,
            output=f"Updated {block.label} ({block.char_count}/{block.limit} chars)",
        )
