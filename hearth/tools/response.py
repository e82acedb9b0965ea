"""Response tool: the agent's final reply to the user."""

from hearth.tools.registry import Tool, ToolContext, ToolParameter, ToolResult, ToolSchema


class ResponseTool(Tool):
    """Deliver the final answer. Calling it ends the run."""

    name = "response"
    description = "Send the final answer to the user. Call this once the task is done."
    schema = ToolSchema(
        properties={
            "text": ToolParameter(description="The complete answer shown to the user"),
        },
        required=["text"],
    )

    async def execute(self, arguments: dict[str, str], context: ToolContext | None = None) -> ToolResult:
        return ToolResult(success=True, output=arguments.get("text", ""))
