"""Tool registry and base tool class."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, model_validator

from hearth.exceptions import (
    ToolBlockedError,
    ToolDisabledError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolTimeoutError,
    ToolValidationError,
)
from hearth.logging import get_logger

if TYPE_CHECKING:
    from hearth.core_memory import CoreMemory

log = get_logger(__name__)

_TRUE_VALUES = {"true", "yes", "1", "on"}
_FALSE_VALUES = {"false", "no", "0", "off"}


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for policy comparisons."""
    return str(value or "").strip().lower()


class RiskLevel(str, Enum):
    """How much damage a tool can do if misused."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ToolParameter(BaseModel):
    """One argument in a tool schema."""

    type: str = "string"
    description: str = ""
    enum: list[str] | None = None


class ToolSchema(BaseModel):
    """Declared arguments of a tool. Every value arrives as a string."""

    properties: dict[str, ToolParameter] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)

    def validate_arguments(self, arguments: dict[str, str]) -> list[str]:
        """Return a list of problems; empty when the arguments are acceptable."""
        problems: list[str] = []
        for key in self.required:
            if not str(arguments.get(key, "") or "").strip():
                problems.append(f"Missing required argument: {key}")

        for key, value in arguments.items():
            param = self.properties.get(key)
            if param is None or value is None or value == "":
                continue
            text = str(value).strip()
            if param.enum and text not in param.enum:
                problems.append(f"Argument '{key}' must be one of: {', '.join(param.enum)}")
            elif param.type in {"number", "integer"}:
                try:
                    number = float(text)
                except ValueError:
                    problems.append(f"Argument '{key}' must be a {param.type}")
                    continue
                if param.type == "integer" and not number.is_integer():
                    problems.append(f"Argument '{key}' must be an integer")
            elif param.type == "boolean" and text.lower() not in _TRUE_VALUES | _FALSE_VALUES:
                problems.append(f"Argument '{key}' must be true or false")
        return problems

    def to_json_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                key: param.model_dump(exclude_none=True)
                for key, param in self.properties.items()
            },
            "required": list(self.required),
        }


def parse_bool_argument(value: str | None, default: bool = False) -> bool:
    """Interpret a string argument as a boolean flag."""
    text = str(value or "").strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return default


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    output: str = ""
    error: str | None = None
    error_code: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Tool execution failed"
        if not self.success and not self.error_code:
            self.error_code = "execution_failed"
        return self

    @classmethod
    def failure(cls, error: str, code: str = "execution_failed") -> "ToolResult":
        return cls(success=False, error=error, error_code=code)

    @classmethod
    def from_error(cls, exc: ToolError) -> "ToolResult":
        return cls(success=False, error=str(exc), error_code=exc.code)

    @property
    def text(self) -> str:
        """Output on success, error message on failure."""
        if self.success:
            return self.output
        return self.error or self.output


@dataclass
class ToolContext:
    """Runtime context handed to a tool by the calling agent loop."""

    agent_id: str = ""
    agent_type: str = "general"
    memory: CoreMemory | None = None
    depth: int = 0


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    schema: ToolSchema = ToolSchema()
    timeout_seconds: float | None = None
    # Delegation tools run a nested agent loop instead of execute().
    delegation: bool = False

    @abstractmethod
    async def execute(self, arguments: dict[str, str], context: ToolContext | None = None) -> ToolResult:
        """Execute the tool.

        Args:
            arguments: String-keyed, string-valued arguments, already validated
            context: Calling agent's runtime context, when run from a loop

        Returns:
            ToolResult with success status and output
        """
        pass

    def validate(self, arguments: dict[str, str]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolValidationError if invalid
        """
        problems = self.schema.validate_arguments(arguments)
        if problems:
            raise ToolValidationError(self.name, "; ".join(problems))

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition (function-style JSON schema)."""
        return {
            "name": self.name,
            "description": self.description,
            "risk_level": self.risk_level.value,
            "parameters": self.schema.to_json_schema(),
        }

    def describe(self) -> str:
        """Render a prompt line for this tool."""
        line = f"- {self.name}: {self.description} [risk: {self.risk_level.value}]"
        if not self.schema.properties:
            return line
        args = []
        for key, param in self.schema.properties.items():
            marker = " (required)" if key in self.schema.required else ""
            hint = f" one of {'|'.join(param.enum)}" if param.enum else ""
            args.append(f"    {key}: {param.type}{marker}{hint} - {param.description}".rstrip(" -"))
        return line + "\n" + "\n".join(args)


class ToolPolicy(BaseModel):
    """Allow/deny filter for available tools."""

    allow: list[str] | None = None
    deny: list[str] = Field(default_factory=list)

    def permits(self, name: str) -> bool:
        normalized = _normalize_tool_name(name)
        if normalized in {_normalize_tool_name(item) for item in self.deny}:
            return False
        if self.allow is None:
            return True
        return normalized in {_normalize_tool_name(item) for item in self.allow}


class ToolRegistry:
    """Registry for managing available tools.

    Tracks consecutive failures per tool. A tool that fails
    `error_threshold` times in a row is disabled until `enable()` is
    called; any success resets its counter.
    """

    def __init__(
        self,
        error_threshold: int = 5,
        default_timeout: float = 60.0,
        delegation_timeout: float = 600.0,
        policy: ToolPolicy | None = None,
    ):
        self.error_threshold = max(1, int(error_threshold))
        self.default_timeout = float(default_timeout)
        self.delegation_timeout = float(delegation_timeout)
        self.policy = policy or ToolPolicy()
        self._tools: dict[str, Tool] = {}
        self._error_counts: dict[str, int] = {}
        self._disabled: set[str] = set()
        self._lock = asyncio.Lock()

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        self._error_counts.setdefault(tool.name, 0)

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def is_disabled(self, name: str) -> bool:
        return name in self._disabled

    def error_count(self, name: str) -> int:
        return self._error_counts.get(name, 0)

    def list_tools(self, include_disabled: bool = False) -> list[str]:
        """List registered tool names permitted by policy."""
        return [
            name
            for name in self._tools
            if self.policy.permits(name) and (include_disabled or name not in self._disabled)
        ]

    def get_definitions(self) -> list[dict[str, Any]]:
        return [self._tools[name].get_definition() for name in self.list_tools()]

    def describe_tools(self, exclude: set[str] | None = None) -> str:
        """Prompt section listing every callable tool."""
        exclude = exclude or set()
        return "\n".join(
            self._tools[name].describe()
            for name in self.list_tools()
            if name not in exclude
        )

    async def record_success(self, name: str) -> None:
        async with self._lock:
            if name in self._tools:
                self._error_counts[name] = 0

    async def record_failure(self, name: str) -> int:
        """Increment the failure counter; disable the tool at the threshold."""
        async with self._lock:
            if name not in self._tools:
                return 0
            count = self._error_counts.get(name, 0) + 1
            self._error_counts[name] = count
            if count >= self.error_threshold and name not in self._disabled:
                self._disabled.add(name)
                log.warning("Tool auto-disabled", tool=name, error_count=count)
            return count

    async def enable(self, name: str) -> None:
        """Re-enable a disabled tool and clear its failure counter."""
        self.get(name)
        async with self._lock:
            self._disabled.discard(name)
            self._error_counts[name] = 0
        log.info("Tool enabled", tool=name)

    async def status(self) -> list[dict[str, Any]]:
        async with self._lock:
            return [
                {
                    "name": name,
                    "description": tool.description,
                    "risk_level": tool.risk_level.value,
                    "error_count": self._error_counts.get(name, 0),
                    "disabled": name in self._disabled,
                    "allowed": self.policy.permits(name),
                }
                for name, tool in self._tools.items()
            ]

    def timeout_for(self, tool: Tool) -> float:
        if tool.timeout_seconds:
            return float(tool.timeout_seconds)
        return self.delegation_timeout if tool.delegation else self.default_timeout

    async def check_callable(self, name: str, arguments: dict[str, str]) -> Tool:
        """Resolve a tool and run the pre-invocation checks.

        Raises:
            ToolNotFoundError, ToolDisabledError, ToolBlockedError,
            ToolValidationError
        """
        tool = self.get(name)
        if name in self._disabled:
            raise ToolDisabledError(name, self._error_counts.get(name, 0))
        try:
            if not self.policy.permits(name):
                raise ToolBlockedError(name, "Blocked by tool policy")
            tool.validate(arguments)
        except ToolError:
            await self.record_failure(name)
            raise
        return tool

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def execute(
        self,
        name: str,
        arguments: dict[str, str],
        context: ToolContext | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        A tool returning a failed ToolResult counts as a failure just like
        one that raises.

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolDisabledError if tool was auto-disabled
            ToolBlockedError if tool is blocked
            ToolValidationError if arguments do not match the schema
            ToolTimeoutError if the tool runs past its timeout
            ToolExecutionError if execution fails
        """
        tool = await self.check_callable(name, arguments)
        timeout_seconds = max(1.0, self.timeout_for(tool))

        execute_task: asyncio.Task[ToolResult] | None = None
        try:
            log.info("Executing tool", tool=name, args=arguments)
            execute_task = asyncio.create_task(tool.execute(dict(arguments), context))
            done, _ = await asyncio.wait({execute_task}, timeout=timeout_seconds)
            if execute_task not in done:
                await self._cancel_task(execute_task)
                raise ToolTimeoutError(name, timeout_seconds)

            result = await execute_task
            if not isinstance(result, ToolResult):
                raise ToolExecutionError(name, "Tool returned invalid result payload")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolError:
            await self.record_failure(name)
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            await self.record_failure(name)
            raise ToolExecutionError(name, str(e)) from e

        if result.success:
            await self.record_success(name)
        else:
            await self.record_failure(name)
        log.info("Tool executed", tool=name, success=result.success)
        return result
