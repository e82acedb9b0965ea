"""Checkpoint, task, workflow and tool-status routes for DaemonListener."""

import asyncio
from typing import Any, AsyncIterator

from hearth.agent_loop import AgentLoop
from hearth.exceptions import HTTPError
from hearth.http_protocol import HttpRequest, HttpResponse, json_response
from hearth.logging import get_logger
from hearth.records import RecordCollection, normalize_task_fields
from hearth.steps import Step

log = get_logger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _record_id(body: dict[str, Any]) -> str:
    record_id = str(body.get("id") or "").strip()
    if not record_id:
        raise HTTPError(400, "Missing 'id'")
    return record_id


class DaemonRecordsMixin:
    """Routes for checkpoints, thin record collections and the tool registry."""

    def _record_routes(self) -> dict[str, Any]:
        return {
            "/checkpoints": self._handle_checkpoints,
            "/checkpoints/resume": self._handle_checkpoint_resume,
            "/checkpoints/delete": self._handle_checkpoint_delete,
            "/tasks": self._handle_tasks,
            "/workflows": self._handle_workflows,
            "/tools": self._handle_tools,
            "/tools/enable": self._handle_tool_enable,
        }

    # -- checkpoints -----------------------------------------------------------

    async def _handle_checkpoints(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse | None:
        self._require_method(request, "GET", "POST")
        if request.method == "GET":
            checkpoints = await self.runtime.checkpoints.list()
            return json_response({
                "checkpoints": [checkpoint.summary() for checkpoint in checkpoints],
                "count": len(checkpoints),
            })

        body = request.json()
        action = str(body.get("action") or "").strip().lower()
        if action == "delete":
            return await self._delete_checkpoint(_record_id(body))
        if action == "resume":
            return await self._resume_checkpoint(request, writer, body)
        raise HTTPError(400, f"Unknown action '{action}'")

    async def _handle_checkpoint_delete(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "POST")
        return await self._delete_checkpoint(_record_id(request.json()))

    async def _delete_checkpoint(self, checkpoint_id: str) -> HttpResponse:
        await self.runtime.checkpoints.delete(checkpoint_id)
        await self.trace.add("Checkpoint", f"Deleted: {checkpoint_id}")
        return json_response({"ok": True, "deleted": checkpoint_id})

    async def _handle_checkpoint_resume(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse | None:
        """POST /checkpoints/resume `{id}`; add `?stream=1` for server-sent events."""
        self._require_method(request, "POST")
        return await self._resume_checkpoint(request, writer, request.json())

    async def _resume_checkpoint(
        self,
        request: HttpRequest,
        writer: asyncio.StreamWriter,
        body: dict[str, Any],
    ) -> HttpResponse | None:
        checkpoint = await self.runtime.checkpoints.load(_record_id(body))
        await self.metrics.record_request()
        await self.trace.add("Resume", f"{checkpoint.id} ({checkpoint.step_count} steps)")

        def start(worker: AgentLoop) -> AsyncIterator[Step]:
            return worker.resume_streaming(checkpoint.id)

        streaming = str(request.query.get("stream", body.get("stream", ""))).strip().lower() in _TRUTHY
        if streaming:
            await self._run_streaming(writer, start)
            return None
        return await self._run_buffered(start)

    # -- tasks and workflows -------------------------------------------------

    async def _handle_tasks(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "GET", "POST")
        tasks = self.runtime.tasks
        if request.method == "GET":
            return json_response({"tasks": await tasks.list()})

        body = request.json()
        action = str(body.get("action") or "create").strip().lower()
        if action == "create":
            if not str(body.get("name") or body.get("prompt") or "").strip():
                raise HTTPError(400, "Missing 'name' or 'prompt'")
            task = await tasks.create(normalize_task_fields(body))
            return json_response({"ok": True, "task": task})
        return await self._update_or_delete(tasks, action, body, normalize_task_fields)

    async def _handle_workflows(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "GET", "POST")
        workflows = self.runtime.workflows
        if request.method == "GET":
            return json_response({"workflows": await workflows.list()})

        body = request.json()
        action = str(body.get("action") or "create").strip().lower()
        if action == "create":
            if not str(body.get("name") or "").strip():
                raise HTTPError(400, "Missing 'name'")
            body.setdefault("steps", [])
            workflow = await workflows.create(body)
            return json_response({"ok": True, "workflow": workflow})
        return await self._update_or_delete(workflows, action, body)

    async def _update_or_delete(
        self,
        collection: RecordCollection,
        action: str,
        body: dict[str, Any],
        normalize: Any = None,
    ) -> HttpResponse:
        record_id = _record_id(body)
        if action == "update":
            fields = normalize(body) if normalize else body
            record = await collection.update(record_id, fields)
            return json_response({"ok": True, collection.kind: record})
        if action == "delete":
            await collection.delete(record_id)
            return json_response({"ok": True, "deleted": record_id})
        raise HTTPError(400, f"Unknown action '{action}'")

    # -- tools ---------------------------------------------------------------

    async def _handle_tools(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "GET")
        return json_response({"tools": await self.runtime.registry.status()})

    async def _handle_tool_enable(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        """Explicit re-enable after auto-disable; there is no timer-based recovery."""
        self._require_method(request, "POST")
        body = request.json()
        name = str(body.get("name") or "").strip()
        if not name:
            raise HTTPError(400, "Missing 'name'")
        await self.runtime.registry.enable(name)
        await self.trace.add("Tool", f"Enabled: {name}")
        return json_response({"ok": True, "name": name})
