"""HTTP/SSE daemon built directly on asyncio streams."""

from __future__ import annotations

import asyncio
import os
import secrets
import time
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable

from hearth import __version__
from hearth.agent_loop import AgentLoop
from hearth.daemon_memory_mixin import DaemonMemoryMixin
from hearth.daemon_records_mixin import DaemonRecordsMixin
from hearth.daemon_state import ConnectionGate, Metrics, SlidingWindowRateLimiter, TraceLog
from hearth.exceptions import (
    BlockNotFoundError,
    CheckpointNotFoundError,
    HTTPError,
    LLMError,
    MemoryBlockError,
    RecordNotFoundError,
    ScheduleError,
    ToolNotFoundError,
    VersionNotFoundError,
)
from hearth.http_protocol import (
    SSE_HEAD,
    HttpRequest,
    HttpResponse,
    error_response,
    format_sse,
    json_response,
    read_request,
)
from hearth.llm import Message, ProviderConfig
from hearth.logging import bind_request_context, get_logger
from hearth.steps import AgentResult, Step, StepType

if TYPE_CHECKING:
    from hearth.runtime import Runtime

log = get_logger(__name__)

PUBLIC_PATHS = frozenset({"/health", "/.well-known/agent.json"})
OUTCOME_HEADER = "X-Hearth-Outcome"

Handler = Callable[[HttpRequest, asyncio.StreamWriter], Awaitable[HttpResponse | None]]

_NOT_FOUND_ERRORS = (
    BlockNotFoundError,
    CheckpointNotFoundError,
    RecordNotFoundError,
    ToolNotFoundError,
    VersionNotFoundError,
)
_BAD_REQUEST_ERRORS = (MemoryBlockError, ScheduleError, ValueError)


class ClientDisconnected(Exception):
    """The peer went away while events were being written."""


class DaemonListener(DaemonMemoryMixin, DaemonRecordsMixin):
    """Accepts connections and routes each request to one handler.

    Handlers return a buffered HttpResponse, or None when they wrote to
    the connection themselves (event streams).
    """

    def __init__(self, runtime: Runtime):
        self.runtime = runtime
        self.settings = runtime.config.daemon
        self.pool = runtime.pool
        self.rate_limiter = SlidingWindowRateLimiter(
            self.settings.rate_limit_requests,
            self.settings.rate_limit_window_seconds,
        )
        self.gate = ConnectionGate(self.settings.max_connections)
        self.metrics = Metrics(
            backend=runtime.provider_config.provider,
            model=runtime.provider_config.model,
            latency_samples=self.settings.latency_samples,
        )
        self.trace = TraceLog(self.settings.trace_limit)
        self.started_at = time.monotonic()
        self._server: asyncio.AbstractServer | None = None
        self._routes: dict[str, Handler] = {
            "/health": self._handle_health,
            "/.well-known/agent.json": self._handle_agent_card,
            "/agent": self._handle_agent,
            "/agent/stream": self._handle_agent_stream,
            "/chat": self._handle_chat,
            "/metrics": self._handle_metrics,
            "/metrics/reset": self._handle_metrics_reset,
            "/trace": self._handle_trace,
        }
        self._routes.update(self._memory_routes())
        self._routes.update(self._record_routes())

    # -- lifecycle -----------------------------------------------------------

    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return self.settings.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.settings.host,
            self.settings.port,
            limit=max(self.settings.max_header_bytes, 2 ** 16),
        )
        log.info("Daemon listening", host=self.settings.host, port=self.port, auth=bool(self.settings.auth_token))

    async def stop(self) -> None:
        if self._server is None:
            return
        suspended = self.pool.suspend_all()
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        log.info("Daemon stopped", suspended_runs=suspended)

    # -- connection handling ---------------------------------------------------

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if not await self.gate.try_enter():
            log.warning("Connection refused: at capacity", limit=self.gate.limit)
            await self._send(writer, error_response(503, "Server busy, try again later"))
            await self._close(writer)
            return

        try:
            try:
                request = await read_request(
                    reader,
                    max_body=self.settings.max_body_bytes,
                    max_header=self.settings.max_header_bytes,
                    timeout=self.settings.read_timeout_seconds,
                )
            except HTTPError as e:
                await self._send(writer, error_response(e.status, e.message))
                return
            except asyncio.TimeoutError:
                await self._send(writer, error_response(408, "Request timed out"))
                return
            if request is None:
                return

            with bind_request_context(method=request.method, path=request.path):
                response = await self._dispatch(request, writer)
                if response is not None:
                    await self._send(writer, response)
        except (ConnectionError, ClientDisconnected) as e:
            log.debug("Client disconnected", error=str(e))
        finally:
            await self.gate.leave()
            await self._close(writer)

    async def _send(self, writer: asyncio.StreamWriter, response: HttpResponse) -> None:
        try:
            writer.write(response.encode())
            await writer.drain()
        except ConnectionError as e:
            log.debug("Response write failed", error=str(e))

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        try:
            writer.close()
            await writer.wait_closed()
        except ConnectionError:
            pass

    def _authorized(self, request: HttpRequest) -> bool:
        token = self.settings.auth_token
        if not token or request.path in PUBLIC_PATHS:
            return True
        header = request.header("authorization")
        if not header.lower().startswith("bearer "):
            return False
        return secrets.compare_digest(header[7:].strip().encode(), token.encode())

    async def _dispatch(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse | None:
        if not self._authorized(request):
            log.warning("Unauthorized request", path=request.path)
            return error_response(401, "Invalid or missing auth token")

        if not await self.rate_limiter.allow(request.path):
            limit = self.rate_limiter.max_requests
            window = int(self.rate_limiter.window_seconds)
            return error_response(429, f"Rate limit exceeded ({limit} per {window}s)")

        handler = self._routes.get(request.path)
        if handler is None:
            return error_response(404, "Not found")

        try:
            return await handler(request, writer)
        except HTTPError as e:
            return error_response(e.status, e.message)
        except _NOT_FOUND_ERRORS as e:
            return error_response(404, str(e))
        except _BAD_REQUEST_ERRORS as e:
            return error_response(400, str(e))
        except (ConnectionError, ClientDisconnected):
            raise
        except Exception as e:
            log.error("Handler failed", path=request.path, error=str(e), exc_info=True)
            await self.metrics.record_error()
            return error_response(500, "Internal server error")

    # -- request helpers -------------------------------------------------------

    @staticmethod
    def _require_method(request: HttpRequest, *methods: str) -> None:
        if request.method not in methods:
            raise HTTPError(405, f"Method {request.method} not allowed on {request.path}")

    @staticmethod
    def _message_field(body: dict[str, Any]) -> str:
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            raise HTTPError(400, "'message' field is required")
        return message.strip()

    def _provider_override(self, body: dict[str, Any]) -> ProviderConfig | None:
        provider = str(body.get("provider") or "").strip() or None
        model = str(body.get("model") or "").strip() or None
        if provider is None and model is None:
            return None
        return self.runtime.provider_config.with_overrides(provider, model)

    @staticmethod
    def _history(body: dict[str, Any]) -> list[Message]:
        raw = body.get("conversation_history") or []
        if not isinstance(raw, list):
            raise HTTPError(400, "'conversation_history' must be a list")
        return [Message.from_dict(item) for item in raw if isinstance(item, dict)]

    @staticmethod
    def _failure(message: str, **extra: Any) -> HttpResponse:
        """Agent-domain failure: still 200 so the client renders one shape."""
        payload = {"output": f"⚠️ {message}", "success": False, **extra}
        return json_response(payload, headers={OUTCOME_HEADER: "failure"})

    def _agent_payload(self, result: AgentResult) -> HttpResponse:
        payload: dict[str, Any] = {
            "output": result.output,
            "steps": len(result.steps),
            "success": result.success,
            "tool_results": result.tool_results,
        }
        if result.checkpoint_id:
            payload["checkpoint_id"] = result.checkpoint_id
        headers = {} if result.success else {OUTCOME_HEADER: "failure"}
        return json_response(payload, headers=headers)

    async def _record_run(self, worker: AgentLoop, steps: list[Step], started: float) -> None:
        calls = [step for step in steps if step.type is StepType.TOOL_CALL]
        top_level = [step for step in steps if step.sub_agent is None]
        failed = bool(top_level) and top_level[-1].type is StepType.ERROR
        await self.metrics.record_run(
            latency_ms=(time.monotonic() - started) * 1000,
            tool_calls=len(calls),
            tokens=worker.tokens_used,
            failed=failed,
        )
        for step in calls:
            await self.trace.add(f"Tool: {step.tool_name}", step.content[:80])

    # -- agent runs --------------------------------------------------------------

    async def _run_buffered(
        self,
        start: Callable[[AgentLoop], AsyncIterator[Step]],
    ) -> HttpResponse:
        started = time.monotonic()
        try:
            async with self.pool.worker() as worker:
                steps = [step async for step in start(worker)]
                await self._record_run(worker, steps, started)
        except Exception as e:
            log.error("Agent run failed", error=str(e), exc_info=True)
            await self.metrics.record_error()
            return self._failure(str(e), steps=0, tool_results=[])

        result = AgentResult.from_steps(steps)
        await self.trace.add("Answer" if result.success else "Failure", result.output[:80])
        return self._agent_payload(result)

    async def _write_event(self, writer: asyncio.StreamWriter, event: str, data: Any) -> None:
        if writer.is_closing():
            raise ClientDisconnected("connection closing")
        try:
            writer.write(format_sse(event, data))
            await writer.drain()
        except ConnectionError as e:
            raise ClientDisconnected(str(e)) from e

    async def _run_streaming(
        self,
        writer: asyncio.StreamWriter,
        start: Callable[[AgentLoop], AsyncIterator[Step]],
    ) -> None:
        """Write each step as an SSE frame, then `done`.

        A failed write stops emission for this run only; the worker is
        checkpointed (when resumable) and released either way.
        """
        try:
            writer.write(SSE_HEAD)
            if self.pool.idle_count == 0:
                writer.write(format_sse("status", {"status": "waiting", "queue_depth": self.pool.queue_depth + 1}))
            await writer.drain()
        except ConnectionError as e:
            raise ClientDisconnected(str(e)) from e

        worker = await self.pool.acquire()
        started = time.monotonic()
        steps: list[Step] = []
        disconnected = False
        stream = start(worker)
        try:
            try:
                async for step in stream:
                    steps.append(step)
                    await self._write_event(writer, "step", step.to_dict())
            except ClientDisconnected:
                disconnected = True
            except Exception as e:
                log.error("Streaming run failed", worker=worker.agent_id, error=str(e), exc_info=True)
                await self.metrics.record_error()
                failure = Step(step_number=len(steps) + 1, type=StepType.ERROR, content=f"⚠️ {e}")
                try:
                    await self._write_event(writer, "step", failure.to_dict())
                except ClientDisconnected:
                    disconnected = True
            finally:
                await stream.aclose()

            if disconnected:
                checkpoint_id = await worker.interrupt("client disconnected")
                log.info("Stream client disconnected", worker=worker.agent_id, checkpoint_id=checkpoint_id)
                await self.trace.add("Disconnected", checkpoint_id or "")
            await self._record_run(worker, steps, started)
        finally:
            await self.pool.release(worker)

        if not disconnected:
            try:
                await self._write_event(writer, "done", {})
            except ClientDisconnected:
                log.debug("Client left before done marker")

    # -- handlers ------------------------------------------------------------------

    async def _handle_health(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        return json_response({
            "status": "ok",
            "version": __version__,
            "pid": os.getpid(),
            "uptime_seconds": int(time.monotonic() - self.started_at),
            "pool": self.pool.status(),
        })

    async def _handle_agent_card(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        return json_response({
            "name": "Hearth",
            "version": __version__,
            "description": "Local-inference agent runtime with tool calling, checkpoints and versioned memory",
            "capabilities": {
                "streaming": True,
                "tools": self.runtime.registry.get_definitions(),
                "agent_types": sorted(self.runtime.config.agent.profiles),
                "memory": True,
                "sub_agents": True,
                "checkpoints": True,
                "memory_versioning": True,
            },
            "authentication": {"type": "bearer" if self.settings.auth_token else "none"},
            "endpoints": {
                "agent": "/agent",
                "stream": "/agent/stream",
                "chat": "/chat",
                "health": "/health",
                "memory": "/memory",
                "tasks": "/tasks",
                "workflows": "/workflows",
                "checkpoints": "/checkpoints",
                "card": "/.well-known/agent.json",
            },
        })

    async def _handle_agent(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        """POST /agent: run one turn and return the buffered result."""
        self._require_method(request, "POST")
        body = request.json()
        message = self._message_field(body)
        agent_type = body.get("agent_type")
        provider_config = self._provider_override(body)
        history = self._history(body)
        await self.metrics.record_request()
        await self.trace.add("Chat", message[:80])

        def start(worker: AgentLoop) -> AsyncIterator[Step]:
            return worker.run_streaming(message, agent_type, provider_config, history)

        return await self._run_buffered(start)

    async def _handle_agent_stream(self, request: HttpRequest, writer: asyncio.StreamWriter) -> None:
        """POST /agent/stream: same input as /agent, steps as server-sent events."""
        self._require_method(request, "POST")
        body = request.json()
        message = self._message_field(body)
        agent_type = body.get("agent_type")
        provider_config = self._provider_override(body)
        history = self._history(body)
        await self.metrics.record_request()
        await self.trace.add("Chat (stream)", message[:80])

        def start(worker: AgentLoop) -> AsyncIterator[Step]:
            return worker.run_streaming(message, agent_type, provider_config, history)

        await self._run_streaming(writer, start)
        return None

    async def _handle_chat(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        """POST /chat: plain backend chat, no tools."""
        self._require_method(request, "POST")
        body = request.json()
        message = self._message_field(body)
        messages = [*self._history(body), Message(role="user", content=message)]
        await self.metrics.record_request()

        started = time.monotonic()
        try:
            response = await self.runtime.provider.complete(messages, self._provider_override(body))
        except LLMError as e:
            log.error("Chat backend call failed", error=str(e))
            await self.metrics.record_error()
            return self._failure(f"Backend error: {e}")
        await self.metrics.record_run(
            latency_ms=(time.monotonic() - started) * 1000,
            tokens=int(response.usage.get("total_tokens", 0) or 0),
        )
        return json_response({"output": response.content, "success": True})

    async def _handle_metrics(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        snapshot = await self.metrics.snapshot()
        snapshot["pool"] = self.pool.status()
        snapshot["open_connections"] = self.gate.open_connections
        return json_response(snapshot)

    async def _handle_metrics_reset(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "POST")
        await self.metrics.reset()
        await self.trace.add("Metrics", "Counters reset")
        return json_response({"ok": True})

    async def _handle_trace(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        timeline = await self.trace.entries()
        return json_response({"timeline": timeline, "count": len(timeline)})
