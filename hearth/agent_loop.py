"""Agent loop: drives one conversational turn through repeated tool calls.

States::

    idle -> prompt_assembly -> awaiting_backend -> parsing_response
         -> (invoking_tool -> awaiting_backend)* -> final_answer | error | checkpointed

Steps are yielded one at a time from an async generator. After every
step the loop yields to the event loop so that a burst of fast steps
cannot starve other runs sharing the process.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, replace
from enum import Enum
from typing import Any, AsyncIterator

from hearth.checkpoints import AgentRunCheckpoint, CheckpointStore
from hearth.config import AgentConfig
from hearth.core_memory import CoreMemory
from hearth.exceptions import CheckpointNotFoundError, LLMError, ToolError
from hearth.llm import LLMProvider, Message, ProviderConfig
from hearth.logging import get_logger
from hearth.steps import AgentResult, Step, StepType
from hearth.tool_calls import (
    RESPONSE_TOOL,
    ToolCall,
    format_tool_result,
    parse_tool_calls,
    truncate_text,
)
from hearth.tool_rules import ToolRuleEngine
from hearth.tools.delegate import agent_type_for_profile
from hearth.tools.registry import Tool, ToolContext, ToolRegistry, ToolResult

log = get_logger(__name__)

TOOL_FORMAT_INSTRUCTIONS = """## How to call tools
Reply with one tool call wrapped in tags, for example:
<tool_call>
{"tool_name": "file", "tool_args": {"action": "list", "path": "/tmp"}, "thoughts": ["I need to see the files first."]}
</tool_call>
Argument values are strings. Tool results come back in the next user message.
When the task is complete, call `response` with the final answer in `text`."""

CONTINUE_PROMPT = "Continue with the next tool call, or call `response` if the task is done."
INTERRUPTED_NOTE = "[The run was paused here. Tool calls from the previous reply without a result above were not executed.]"


class LoopState(str, Enum):
    IDLE = "idle"
    PROMPT_ASSEMBLY = "prompt_assembly"
    AWAITING_BACKEND = "awaiting_backend"
    PARSING_RESPONSE = "parsing_response"
    INVOKING_TOOL = "invoking_tool"
    FINAL_ANSWER = "final_answer"
    ERROR = "error"
    CHECKPOINTED = "checkpointed"


TERMINAL_STATES = {LoopState.FINAL_ANSWER, LoopState.ERROR, LoopState.CHECKPOINTED}


class AgentLoop:
    """One reusable orchestration instance.

    The instance owns its message history and step stream for the
    duration of a run; the worker pool hands it to one caller at a time.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        memory: CoreMemory,
        settings: AgentConfig,
        checkpoints: CheckpointStore | None = None,
        provider_config: ProviderConfig | None = None,
        agent_id: str = "agent",
        depth: int = 0,
    ):
        self.provider = provider
        self.registry = registry
        self.memory = memory
        self.settings = settings
        self.checkpoints = checkpoints
        self.default_provider_config = provider_config or ProviderConfig()
        self.agent_id = agent_id
        self.depth = depth

        self.state = LoopState.IDLE
        self.agent_type = settings.default_type
        self.provider_config = self.default_provider_config
        self.messages: list[Message] = []
        self.rules = ToolRuleEngine()
        self.user_message = ""
        self.iterations = 0
        self.tokens_used = 0
        self.checkpoint_id: str | None = None
        self._step_number = 0
        self._sub_agents_spawned = 0
        self._suspend_requested = False
        self._feedback: list[str] = []
        self._next_tools: list[str] = []

    # -- lifecycle ---------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.state not in TERMINAL_STATES and self.state is not LoopState.IDLE

    def request_suspend(self) -> None:
        """Ask the loop to checkpoint at the next step boundary."""
        self._suspend_requested = True

    def _begin(self, agent_type: str | None, provider_config: ProviderConfig | None) -> None:
        self.agent_type = (agent_type or "").strip().lower() or self.settings.default_type
        if self.agent_type not in self.settings.profiles:
            self.agent_type = self.settings.default_type
        profile = self.settings.profile(self.agent_type)
        self.rules = ToolRuleEngine.from_rule_set(profile.rule_set)
        self.provider_config = provider_config or self.default_provider_config
        self.messages = []
        self.iterations = 0
        self.tokens_used = 0
        self.checkpoint_id = None
        self._step_number = 0
        self._sub_agents_spawned = 0
        self._suspend_requested = False
        self._feedback = []
        self._next_tools = []
        self.state = LoopState.IDLE

    def _step(self, step_type: StepType, content: str = "", **kwargs: Any) -> Step:
        self._step_number += 1
        return Step(step_number=self._step_number, type=step_type, content=content, **kwargs)

    # -- prompt ------------------------------------------------------------

    def build_system_prompt(self) -> str:
        exclude = set()
        if self.depth >= self.settings.max_sub_agent_depth:
            exclude = {
                name for name in self.registry.list_tools()
                if self.registry.get(name).delegation
            }
        sections = [
            self.memory.compile(),
            "## Tools\n" + self.registry.describe_tools(exclude=exclude),
        ]
        rules = self.rules.describe()
        if rules:
            sections.append(rules)
        sections.append(TOOL_FORMAT_INSTRUCTIONS)
        return "\n\n".join(section for section in sections if section.strip())

    def _context_window(self) -> list[Message]:
        limit = max(2, int(self.settings.max_context_messages))
        if len(self.messages) <= limit:
            return list(self.messages)
        tail = self.messages[-(limit - 1):]
        # Keep alternation: the kept history starts on a user message.
        while len(tail) > 1 and tail[0].role != "user":
            tail = tail[1:]
        return [self.messages[0], *tail]

    # -- public entry points -------------------------------------------------

    async def run_streaming(
        self,
        user_message: str,
        agent_type: str | None = None,
        provider_config: ProviderConfig | None = None,
        conversation_history: list[Message] | None = None,
    ) -> AsyncIterator[Step]:
        """Run a new turn, yielding steps as they happen."""
        self._begin(agent_type, provider_config)
        self.user_message = user_message
        self.state = LoopState.PROMPT_ASSEMBLY
        self.messages = [Message(role="system", content=self.build_system_prompt())]
        for message in conversation_history or []:
            if message.role in {"user", "assistant"} and message.content:
                self.messages.append(message)
        self.messages.append(Message(role="user", content=user_message))
        log.info("Agent run started", agent=self.agent_id, agent_type=self.agent_type, depth=self.depth)

        drive = self._drive()
        try:
            async for step in drive:
                yield step
                await asyncio.sleep(0)
        finally:
            await drive.aclose()

    async def resume_streaming(self, checkpoint_id: str) -> AsyncIterator[Step]:
        """Continue a checkpointed run with a fresh step budget.

        Raises:
            CheckpointNotFoundError if the id is unknown
        """
        if self.checkpoints is None:
            raise RuntimeError("This agent has no checkpoint store")
        checkpoint = await self.checkpoints.load(checkpoint_id)

        provider_config = None
        if checkpoint.provider:
            provider_config = self.default_provider_config.with_overrides(
                checkpoint.provider.get("provider"),
                checkpoint.provider.get("model"),
            )
        self._begin(checkpoint.agent_type, provider_config)
        self.checkpoint_id = checkpoint.id
        self.user_message = checkpoint.user_message
        self.iterations = checkpoint.step_count
        self.rules.restore(checkpoint.tool_counts)
        self.messages = [Message.from_dict(item) for item in checkpoint.messages]
        self.state = LoopState.PROMPT_ASSEMBLY
        system = Message(role="system", content=self.build_system_prompt())
        if self.messages and self.messages[0].role == "system":
            self.messages[0] = system
        else:
            self.messages.insert(0, system)

        if checkpoint.status == "completed":
            self.state = LoopState.ERROR
            yield self._step(StepType.ERROR, f"Checkpoint {checkpoint.id} already completed")
            return

        checkpoint.status = "running"
        await self.checkpoints.save(checkpoint)
        log.info("Agent run resumed", agent=self.agent_id, checkpoint_id=checkpoint.id, step_count=checkpoint.step_count)

        drive = self._drive()
        try:
            async for step in drive:
                yield step
                await asyncio.sleep(0)
        finally:
            await drive.aclose()

    async def run(
        self,
        user_message: str,
        agent_type: str | None = None,
        provider_config: ProviderConfig | None = None,
        conversation_history: list[Message] | None = None,
    ) -> AgentResult:
        steps = [
            step
            async for step in self.run_streaming(user_message, agent_type, provider_config, conversation_history)
        ]
        return AgentResult.from_steps(steps)

    async def resume(self, checkpoint_id: str) -> AgentResult:
        steps = [step async for step in self.resume_streaming(checkpoint_id)]
        return AgentResult.from_steps(steps)

    async def interrupt(self, reason: str = "interrupted") -> str | None:
        """Checkpoint a run that was abandoned between steps."""
        if not self.is_running or self.checkpoints is None or not self.messages:
            return None
        self._close_turn(interrupted=True)
        checkpoint = await self._save_checkpoint("paused", reason)
        self.state = LoopState.CHECKPOINTED
        return checkpoint.id

    # -- state machine -------------------------------------------------------

    async def _drive(self) -> AsyncIterator[Step]:
        budget = max(1, self.settings.profile(self.agent_type).step_limit)
        turns = 0
        while True:
            if self._suspend_requested:
                async for step in self._checkpoint("suspended"):
                    yield step
                return
            if turns >= budget:
                async for step in self._checkpoint(f"step budget of {budget} exhausted"):
                    yield step
                return
            turns += 1
            self.iterations += 1

            self.state = LoopState.AWAITING_BACKEND
            try:
                reply = await self._call_backend()
            except LLMError as e:
                log.error("Backend call failed", agent=self.agent_id, error=str(e))
                async for step in self._fail(f"Backend error: {e}"):
                    yield step
                return
            if not reply.strip():
                async for step in self._fail("Backend returned an empty reply"):
                    yield step
                return
            self.messages.append(Message(role="assistant", content=reply))

            self.state = LoopState.PARSING_RESPONSE
            for call in parse_tool_calls(reply):
                for thought in call.thoughts:
                    yield self._step(StepType.THINK, thought, confidence=call.confidence)

                if call.name == RESPONSE_TOOL:
                    text = call.arguments.get("text", "")
                    self.rules.record(RESPONSE_TOOL)
                    if self.rules.should_terminate(RESPONSE_TOOL):
                        async for step in self._finish(text, confidence=call.confidence):
                            yield step
                        return
                    yield self._step(StepType.THINK, text)
                    self._feedback.append(f"[Tool '{RESPONSE_TOOL}' completed successfully]\n{text}")
                    continue

                self.state = LoopState.INVOKING_TOOL
                outcome: list[ToolResult] = []
                async for step in self._invoke(call, outcome):
                    yield step
                result = outcome[0]
                if result.success and self.rules.should_terminate(call.name):
                    async for step in self._finish(result.output):
                        yield step
                    return

            self._close_turn()

    def _record_result(self, name: str, result: ToolResult) -> None:
        """Queue a result for the next user message as soon as it exists."""
        shown = result.model_copy(update={
            "output": truncate_text(result.output, self.settings.max_tool_result_chars),
        })
        self._feedback.append(format_tool_result(name, shown))
        self._next_tools.extend(self.rules.required_next_tools(name))

    def _close_turn(self, interrupted: bool = False) -> None:
        """Answer the last assistant message with the results gathered so far."""
        if not self.messages or self.messages[-1].role != "assistant":
            return
        parts = list(self._feedback)
        if interrupted:
            parts.append(INTERRUPTED_NOTE)
        if self._next_tools:
            parts.append(f"Next, call one of: {', '.join(dict.fromkeys(self._next_tools))}.")
        parts.append(CONTINUE_PROMPT)
        self.messages.append(Message(role="user", content="\n\n".join(parts)))
        self._feedback = []
        self._next_tools = []

    async def _call_backend(self) -> str:
        messages = self._context_window()
        if self.settings.stream_backend:
            chunks = [chunk async for chunk in self.provider.complete_streaming(messages, self.provider_config)]
            reply = "".join(chunks)
            self.tokens_used += self.provider.count_tokens(reply)
            return reply
        response = await self.provider.complete(messages, self.provider_config)
        self.tokens_used += int(response.usage.get("total_tokens", 0) or 0)
        return response.content

    async def _invoke(self, call: ToolCall, outcome: list[ToolResult]) -> AsyncIterator[Step]:
        """Run one call (or reject it) and append its result to `outcome`."""
        yield self._step(
            StepType.TOOL_CALL,
            json.dumps(call.arguments, ensure_ascii=False),
            tool_name=call.name,
            confidence=call.confidence,
        )

        delegated_call = False
        check = self.rules.check(call.name)
        if not check.allowed:
            result = ToolResult.failure(check.reason, code=check.code)
        else:
            self.rules.record(call.name)
            context = ToolContext(
                agent_id=self.agent_id,
                agent_type=self.agent_type,
                memory=self.memory,
                depth=self.depth,
            )
            try:
                tool = self.registry.get(call.name)
                if tool.delegation:
                    await self.registry.check_callable(call.name, call.arguments)
                    delegated_call = True
                    delegated: list[ToolResult] = []
                    async for step in self._delegate(tool, call, delegated):
                        yield step
                    result = delegated[0]
                else:
                    result = await self.registry.execute(call.name, call.arguments, context)
            except ToolError as e:
                log.warning("Tool call failed", agent=self.agent_id, tool=call.name, error=str(e))
                result = ToolResult.from_error(e)

        outcome.append(result)
        if not delegated_call:
            self._record_result(call.name, result)
        yield self._step(
            StepType.TOOL_RESULT,
            result.text,
            tool_name=call.name,
            success=result.success,
        )

    async def _delegate(self, tool: Tool, call: ToolCall, outcome: list[ToolResult]) -> AsyncIterator[Step]:
        """Run a nested loop and relay its steps, tagged with the sub-agent id."""
        if self.depth >= self.settings.max_sub_agent_depth:
            await self.registry.record_failure(tool.name)
            result = ToolResult.failure("Sub-agent depth limit reached", code="rule_violation")
            outcome.append(result)
            self._record_result(tool.name, result)
            return

        self._sub_agents_spawned += 1
        child_type = agent_type_for_profile(call.arguments.get("profile"))
        child = AgentLoop(
            provider=self.provider,
            registry=self.registry,
            memory=self.memory.inherit(),
            settings=self.settings,
            checkpoints=None,
            provider_config=self.provider_config,
            agent_id=f"{self.agent_id}.sub{self._sub_agents_spawned}",
            depth=self.depth + 1,
        )
        message = call.arguments.get("message", "")
        yield self._step(
            StepType.SUB_AGENT_SPAWN,
            message,
            tool_name=tool.name,
            sub_agent=child.agent_id,
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.registry.timeout_for(tool)
        own_steps: list[Step] = []
        timed_out = False
        stream = child.run_streaming(message, child_type, self.provider_config)
        try:
            async for step in stream:
                if step.sub_agent is None:
                    own_steps.append(step)
                    step = replace(step, sub_agent=child.agent_id)
                yield step
                if loop.time() > deadline:
                    timed_out = True
                    break
        finally:
            await stream.aclose()
        self.tokens_used += child.tokens_used

        if timed_out:
            result = ToolResult.failure(f"Sub-agent {child.agent_id} timed out", code="timeout")
        else:
            child_result = AgentResult.from_steps(own_steps)
            if child_result.success:
                result = ToolResult(success=True, output=child_result.output)
            else:
                result = ToolResult.failure(child_result.output or "Sub-agent failed")
        if result.success:
            await self.registry.record_success(tool.name)
        else:
            await self.registry.record_failure(tool.name)

        outcome.append(result)
        self._record_result(tool.name, result)
        yield self._step(
            StepType.SUB_AGENT_RESULT,
            result.text,
            tool_name=tool.name,
            success=result.success,
            sub_agent=child.agent_id,
        )

    # -- terminal transitions ----------------------------------------------

    async def _finish(self, text: str, confidence: float | None = None) -> AsyncIterator[Step]:
        self.state = LoopState.FINAL_ANSWER
        log.info("Agent run finished", agent=self.agent_id, iterations=self.iterations)
        if self.checkpoint_id and self.checkpoints is not None:
            try:
                await self.checkpoints.delete(self.checkpoint_id)
            except CheckpointNotFoundError:
                log.warning("Resumed checkpoint already deleted", checkpoint_id=self.checkpoint_id)
            self.checkpoint_id = None
        yield self._step(StepType.FINAL_ANSWER, text, confidence=confidence)

    async def _fail(self, message: str) -> AsyncIterator[Step]:
        self.state = LoopState.ERROR
        if self.checkpoint_id and self.checkpoints is not None:
            await self._save_checkpoint("failed", message)
        yield self._step(StepType.ERROR, message)

    async def _checkpoint(self, reason: str) -> AsyncIterator[Step]:
        if self.checkpoints is None:
            async for step in self._fail(f"Sub-agent stopped: {reason}"):
                yield step
            return
        checkpoint = await self._save_checkpoint("paused", reason)
        self.state = LoopState.CHECKPOINTED
        yield self._step(
            StepType.CHECKPOINT,
            f"Paused after {checkpoint.step_count} steps ({reason}). Resume with checkpoint {checkpoint.id}.",
            checkpoint_id=checkpoint.id,
        )

    async def _save_checkpoint(self, status: str, reason: str) -> AgentRunCheckpoint:
        assert self.checkpoints is not None
        provider = asdict(self.provider_config)
        provider.pop("api_key", None)
        checkpoint = AgentRunCheckpoint(
            agent_type=self.agent_type,
            step_count=self.iterations,
            status=status,
            user_message=self.user_message,
            messages=[message.to_dict() for message in self.messages],
            tool_counts=dict(self.rules.counts),
            provider=provider,
            reason=reason,
        )
        if self.checkpoint_id:
            existing = None
            try:
                existing = await self.checkpoints.load(self.checkpoint_id)
            except CheckpointNotFoundError:
                existing = None
            checkpoint.id = self.checkpoint_id
            if existing is not None:
                checkpoint.created_at = existing.created_at
        await self.checkpoints.save(checkpoint)
        self.checkpoint_id = checkpoint.id
        return checkpoint
