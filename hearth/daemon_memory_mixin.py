"""Core memory, memory entry and memory version routes for DaemonListener."""

import asyncio
from typing import Any

from hearth.exceptions import HTTPError
from hearth.http_protocol import HttpRequest, HttpResponse, json_response
from hearth.logging import get_logger

log = get_logger(__name__)


def _int_param(value: Any, default: int, name: str) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise HTTPError(400, f"'{name}' must be an integer") from e


def _required(body: dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value.strip():
        raise HTTPError(400, f"'{name}' field is required")
    return value.strip()


class DaemonMemoryMixin:
    """Routes under /memory."""

    def _memory_routes(self) -> dict[str, Any]:
        return {
            "/memory": self._handle_memory,
            "/memory/entries": self._handle_memory_entries,
            "/memory/entries/tags": self._handle_memory_entry_tags,
            "/memory/versions": self._handle_memory_versions,
            "/memory/diff": self._handle_memory_diff,
            "/memory/rollback": self._handle_memory_rollback,
        }

    async def _handle_memory(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        """GET lists blocks; POST mutates one through a versioned commit.

        POST body: `{label, action?, content?, limit?, description?, old?, new?}`
        where action is upsert (default), append, replace, clear or delete.
        """
        self._require_method(request, "GET", "POST")
        memory = self.runtime.memory
        if request.method == "GET":
            return json_response({"blocks": [block.to_dict() for block in memory.blocks()]})

        body = request.json()
        label = _required(body, "label")
        action = str(body.get("action") or ("delete" if body.get("delete") else "upsert")).strip().lower()
        content = body.get("content", body.get("value"))

        if action == "upsert":
            if not isinstance(content, str):
                raise HTTPError(400, "'content' field is required")
            limit = body.get("limit")
            block = await memory.upsert(
                label,
                content,
                limit=_int_param(limit, 0, "limit") or None,
                description=body.get("description"),
            )
        elif action == "append":
            if not isinstance(content, str) or not content:
                raise HTTPError(400, "'content' field is required")
            block = await memory.append(label, content)
        elif action == "replace":
            block = await memory.replace(label, str(body.get("old", "") or ""), str(body.get("new", "") or ""))
        elif action == "clear":
            block = await memory.clear(label)
        elif action == "delete":
            await memory.delete(label)
            await self.trace.add("Memory", f"Deleted: {label}")
            return json_response({"ok": True, "deleted": label})
        else:
            raise HTTPError(400, f"Unknown action '{action}'")

        await self.trace.add("Memory", f"{action.capitalize()}: {label}")
        return json_response({"ok": True, "block": block.to_dict()})

    async def _handle_memory_entries(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "GET", "POST", "DELETE")
        entries = self.runtime.entries

        if request.method == "GET":
            query = request.query
            limit = _int_param(query.get("limit"), 50, "limit")
            if query.get("q") or query.get("type") or query.get("tag"):
                found = await entries.search(
                    query.get("q", ""),
                    memory_type=query.get("type") or None,
                    tags=query.get("tag") or None,
                    limit=limit,
                )
            else:
                found = await entries.list(limit=limit)
            return json_response({
                "entries": [entry.to_dict() for entry in found],
                "count": len(found),
                "stats": await entries.stats(),
            })

        if request.method == "DELETE":
            entry_id = request.query.get("id") or _required(request.json(), "id")
            await entries.delete(entry_id)
            return json_response({"ok": True, "deleted": entry_id})

        body = request.json()
        if body.get("id"):
            entry = await entries.update(
                str(body["id"]),
                text=body.get("text"),
                memory_type=body.get("type"),
                tags=body.get("tags"),
            )
        else:
            entry = await entries.add(_required(body, "text"), body.get("type"), body.get("tags"))
            await self.trace.add("Memory entry", entry.text[:80])
        return json_response({"ok": True, "entry": entry.to_dict()})

    async def _handle_memory_entry_tags(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "GET")
        return json_response({"tags": await self.runtime.entries.tags()})

    async def _handle_memory_versions(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "GET")
        limit = _int_param(request.query.get("limit"), 20, "limit")
        versions = await self.runtime.versions.log(limit)
        return json_response({"versions": [version.summary() for version in versions], "count": len(versions)})

    async def _handle_memory_diff(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        self._require_method(request, "GET", "POST")
        source = request.query if request.method == "GET" else request.json()
        from_id = _required(source, "from")
        to_id = _required(source, "to")
        changes = await self.runtime.versions.diff(from_id, to_id)
        return json_response({"from": from_id, "to": to_id, "changes": changes, "count": len(changes)})

    async def _handle_memory_rollback(self, request: HttpRequest, writer: asyncio.StreamWriter) -> HttpResponse:
        """Restore an older snapshot as a new version; history is kept."""
        self._require_method(request, "POST")
        version_id = _required(request.json(), "id")
        version = await self.runtime.versions.get(version_id)
        blocks = await self.runtime.versions.rollback(version.id)
        await self.runtime.memory.restore(blocks, f"Rollback to {version.id}")
        log.info("Memory rolled back", version=version.id)
        await self.trace.add("Memory", f"Rolled back to {version.id}")
        return json_response({
            "ok": True,
            "restored": version.id,
            "blocks": [block.to_dict() for block in self.runtime.memory.blocks()],
        })
