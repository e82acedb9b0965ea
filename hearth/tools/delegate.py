"""Delegation tool: hand a sub-task to a nested agent."""

from hearth.tools.registry import RiskLevel, Tool, ToolContext, ToolParameter, ToolResult, ToolSchema

PROFILE_AGENT_TYPES = {
    "general": "general",
    "assistant": "general",
    "research": "research",
    "researcher": "research",
    "web": "research",
    "coder": "coder",
    "developer": "coder",
    "code": "coder",
}


def agent_type_for_profile(profile: str | None) -> str:
    return PROFILE_AGENT_TYPES.get((profile or "").strip().lower(), "general")


class DelegateTaskTool(Tool):
    """Spawn a sub-agent with a fresh conversation and read-only memory.

    The agent loop runs the sub-agent itself so its steps can be relayed
    into the parent's stream; `execute` is never used for delegation.
    """

    name = "call_subordinate"
    description = (
        "Delegate a self-contained sub-task to a sub-agent and get its final answer back. "
        "Profiles: general, research, coder."
    )
    risk_level = RiskLevel.MEDIUM
    delegation = True
    schema = ToolSchema(
        properties={
            "message": ToolParameter(description="Full instructions for the sub-agent"),
            "profile": ToolParameter(description="Sub-agent profile: general, research or coder"),
        },
        required=["message"],
    )

    async def execute(self, arguments: dict[str, str], context: ToolContext | None = None) -> ToolResult:
        return ToolResult.failure(
            "call_subordinate can only run inside an agent loop",
            code="execution_failed",
        )
