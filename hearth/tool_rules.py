"""Declarative constraints on tool-call sequencing within one run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from hearth.tool_calls import RESPONSE_TOOL

RuleKind = Literal["initial", "terminal", "continue_after", "max_count", "child"]


@dataclass(frozen=True)
class ToolRule:
    """One constraint on a tool.

    - ``terminal``: calling the tool ends the run
    - ``continue_after``: cancels a terminal rule for the same tool
    - ``max_count``: at most ``limit`` calls per run
    - ``child``: after the tool, steer the model toward ``children``
    - ``initial``: the first call of a run must be this tool
    """

    tool: str
    kind: RuleKind
    limit: int | None = None
    children: tuple[str, ...] = ()

    @classmethod
    def terminal(cls, tool: str) -> ToolRule:
        return cls(tool=tool, kind="terminal")

    @classmethod
    def continue_after(cls, tool: str) -> ToolRule:
        return cls(tool=tool, kind="continue_after")

    @classmethod
    def max_count(cls, tool: str, limit: int) -> ToolRule:
        return cls(tool=tool, kind="max_count", limit=max(0, int(limit)))

    @classmethod
    def child(cls, tool: str, next_tools: list[str] | tuple[str, ...]) -> ToolRule:
        return cls(tool=tool, kind="child", children=tuple(next_tools))

    @classmethod
    def initial(cls, tool: str) -> ToolRule:
        return cls(tool=tool, kind="initial")

    def describe(self) -> str:
        if self.kind == "terminal":
            return f"- `{self.tool}` ends the task."
        if self.kind == "continue_after":
            return f"- After `{self.tool}`, keep working."
        if self.kind == "max_count":
            return f"- `{self.tool}` may be called at most {self.limit} times."
        if self.kind == "child":
            return f"- After `{self.tool}`, call one of: {', '.join(self.children)}."
        return f"- Start with `{self.tool}`."


RULE_SETS: dict[str, tuple[ToolRule, ...]] = {
    "general": (
        ToolRule.terminal(RESPONSE_TOOL),
        ToolRule.max_count("core_memory_read", 10),
        ToolRule.max_count("core_memory_append", 10),
        ToolRule.max_count("file", 30),
        ToolRule.max_count("call_subordinate", 3),
    ),
    "research": (
        ToolRule.terminal(RESPONSE_TOOL),
        ToolRule.max_count("core_memory_read", 10),
        ToolRule.max_count("file", 60),
        ToolRule.max_count("call_subordinate", 6),
        ToolRule.child("call_subordinate", ["core_memory_append", RESPONSE_TOOL]),
    ),
    "coder": (
        ToolRule.terminal(RESPONSE_TOOL),
        ToolRule.max_count("file", 100),
        ToolRule.max_count("call_subordinate", 4),
        ToolRule.child("file", ["file", RESPONSE_TOOL]),
    ),
}


def rule_set(name: str | None) -> tuple[ToolRule, ...]:
    """Look up a named rule set, defaulting to `general`."""
    return RULE_SETS.get((name or "").strip().lower(), RULE_SETS["general"])


@dataclass
class RuleCheck:
    allowed: bool
    reason: str = ""
    code: str = ""


@dataclass
class ToolRuleEngine:
    """Evaluates rules against per-tool call counts. `reset()` between runs."""

    rules: list[ToolRule] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_rule_set(cls, name: str | None) -> ToolRuleEngine:
        return cls(rules=list(rule_set(name)))

    def _rules_for(self, tool: str, kind: RuleKind) -> list[ToolRule]:
        return [rule for rule in self.rules if rule.tool == tool and rule.kind == kind]

    @property
    def total_calls(self) -> int:
        return sum(self.counts.values())

    def record(self, tool: str) -> None:
        self.counts[tool] = self.counts.get(tool, 0) + 1

    def reset(self) -> None:
        self.counts.clear()

    def restore(self, counts: dict[str, int]) -> None:
        self.counts = {str(key): int(value) for key, value in counts.items()}

    def is_at_limit(self, tool: str) -> bool:
        count = self.counts.get(tool, 0)
        return any(count >= (rule.limit or 0) for rule in self._rules_for(tool, "max_count"))

    def should_terminate(self, tool: str) -> bool:
        if self._rules_for(tool, "continue_after"):
            return False
        return bool(self._rules_for(tool, "terminal"))

    def required_next_tools(self, tool: str) -> list[str]:
        children: list[str] = []
        for rule in self._rules_for(tool, "child"):
            children.extend(item for item in rule.children if item not in children)
        return children

    def check(self, tool: str) -> RuleCheck:
        """Decide whether a call may run given the calls recorded so far."""
        if self.total_calls == 0:
            initial = [rule.tool for rule in self.rules if rule.kind == "initial"]
            if initial and tool not in initial:
                return RuleCheck(
                    allowed=False,
                    reason=f"The first tool call must be one of: {', '.join(initial)}",
                    code="rule_violation",
                )
        if self.is_at_limit(tool):
            limit = min(rule.limit or 0 for rule in self._rules_for(tool, "max_count"))
            return RuleCheck(
                allowed=False,
                reason=f"Tool '{tool}' reached its limit of {limit} calls for this task",
                code="limit_reached",
            )
        return RuleCheck(allowed=True)

    def describe(self) -> str:
        if not self.rules:
            return ""
        return "## Tool Rules\n" + "\n".join(rule.describe() for rule in self.rules)
