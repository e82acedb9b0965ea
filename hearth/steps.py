"""Step records emitted by an agent run."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class StepType(str, Enum):
    THINK = "think"
    TOOL_CALL = "toolCall"
    TOOL_RESULT = "toolResult"
    FINAL_ANSWER = "finalAnswer"
    ERROR = "error"
    CHECKPOINT = "checkpoint"
    SUB_AGENT_SPAWN = "subAgentSpawn"
    SUB_AGENT_RESULT = "subAgentResult"


@dataclass
class Step:
    """One unit of observable progress; also the audit trail entry."""

    step_number: int
    type: StepType
    content: str = ""
    tool_name: str | None = None
    success: bool | None = None
    sub_agent: str | None = None
    checkpoint_id: str | None = None
    confidence: float | None = None
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "step": self.step_number,
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_name is not None:
            data["tool"] = self.tool_name
        if self.success is not None:
            data["success"] = self.success
        if self.sub_agent is not None:
            data["sub_agent"] = self.sub_agent
        if self.checkpoint_id is not None:
            data["checkpoint_id"] = self.checkpoint_id
        if self.confidence is not None:
            data["confidence"] = self.confidence
        return data


@dataclass
class AgentResult:
    """Buffered outcome of a run."""

    output: str
    steps: list[Step]
    success: bool
    checkpoint_id: str | None = None

    @property
    def tool_results(self) -> list[dict[str, Any]]:
        """Top-level tool results (relayed sub-agent steps excluded)."""
        return [
            {"name": step.tool_name, "output": step.content, "success": bool(step.success)}
            for step in self.steps
            if step.type is StepType.TOOL_RESULT and step.sub_agent is None
        ]

    @classmethod
    def from_steps(cls, steps: list[Step]) -> "AgentResult":
        """Fold a finished step sequence into a result."""
        checkpoint_id = next(
            (step.checkpoint_id for step in reversed(steps) if step.type is StepType.CHECKPOINT),
            None,
        )
        top_level = [step for step in steps if step.sub_agent is None]
        final = next((step for step in reversed(top_level) if step.type is StepType.FINAL_ANSWER), None)
        if final is not None:
            return cls(output=final.content, steps=steps, success=True, checkpoint_id=checkpoint_id)
        error = next((step for step in reversed(top_level) if step.type is StepType.ERROR), None)
        if error is not None:
            return cls(output=error.content, steps=steps, success=False, checkpoint_id=checkpoint_id)
        if checkpoint_id is not None:
            last = top_level[-1].content if top_level else ""
            return cls(output=last, steps=steps, success=True, checkpoint_id=checkpoint_id)
        return cls(output="", steps=steps, success=False)
