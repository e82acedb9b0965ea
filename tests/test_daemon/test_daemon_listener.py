import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import pytest

from hearth.config import Config
from hearth.exceptions import LLMAPIError
from hearth.llm import LLMProvider, LLMResponse, Message, ProviderConfig
from hearth.runtime import Runtime


def tool_call(name: str, **arguments: str) -> str:
    payload = {"tool_name": name, "tool_args": arguments}
    return f"<tool_call>\n{json.dumps(payload)}\n</tool_call>"


class ScriptedProvider(LLMProvider):
    def __init__(self, replies: list[str]):
        self.replies = list(replies)

    async def complete(self, messages: list[Message], config: ProviderConfig | None = None) -> LLMResponse:
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return LLMResponse(content=reply, usage={"total_tokens": 7})

    async def complete_streaming(self, messages: list[Message], config: ProviderConfig | None = None):
        response = await self.complete(messages, config)
        yield response.content


class BrokenProvider(LLMProvider):
    async def complete(self, messages: list[Message], config: ProviderConfig | None = None) -> LLMResponse:
        raise LLMAPIError("connection refused")

    async def complete_streaming(self, messages: list[Message], config: ProviderConfig | None = None):
        if False:
            yield ""



class GatedProvider(ScriptedProvider):
    def __init__(self, replies: list[str]):
        super().__init__(replies)
        self.calls = 0
        self.gate = asyncio.Event()

    async def complete(self, messages: list[Message], config: ProviderConfig | None = None) -> LLMResponse:
        self.calls += 1
        if self.calls > 1:
            await self.gate.wait()
        return await super().complete(messages, config)


@asynccontextmanager
async def serving(tmp_path: Path, provider: LLMProvider, **daemon_settings):
    config = Config()
    config.storage.data_dir = str(tmp_path / "data")
    config.daemon.port = 0
    for key, value in daemon_settings.items():
        setattr(config.daemon, key, value)
    runtime = await Runtime.create(config, provider=provider)
    daemon = runtime.daemon()
    await daemon.start()
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{daemon.port}", trust_env=False) as client:
            yield runtime, daemon, client
    finally:
        await daemon.stop()
        await runtime.close()


async def raw_exchange(port: int, data: bytes) -> tuple[int, dict]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(data)
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    head, _, body = response.partition(b"\r\n\r\n")
    status = int(head.split(b" ", 2)[1])
    return status, json.loads(body)


@pytest.mark.asyncio
async def test_agent_lists_files_with_one_tool_call(tmp_path: Path):
    listing = tmp_path / "listing"
    listing.mkdir()
    (listing / "notes.txt").write_text("hello", encoding="utf-8")
    provider = ScriptedProvider([
        tool_call("file", action="list", path=str(listing)),
        "The directory holds one file: notes.txt.",
    ])

    async with serving(tmp_path, provider) as (_runtime, _daemon, client):
        response = await client.post("/agent", json={"message": f"list files in {listing}"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["output"] == "The directory holds one file: notes.txt."
    assert data["steps"] >= 2
    assert len(data["tool_results"]) == 1
    assert data["tool_results"][0]["name"] == "file"
    assert "notes.txt" in data["tool_results"][0]["output"]


@pytest.mark.asyncio
async def test_auth_required_except_public_paths(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"]), auth_token="s3cret") as (_runtime, _daemon, client):
        health = await client.get("/health")
        card = await client.get("/.well-known/agent.json")
        missing = await client.get("/metrics")
        wrong = await client.get("/metrics", headers={"Authorization": "Bearer nope"})
        right = await client.get("/metrics", headers={"Authorization": "Bearer s3cret"})

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert card.json()["authentication"] == {"type": "bearer"}
    file_tool = next(tool for tool in card.json()["capabilities"]["tools"] if tool["name"] == "file")
    assert "path" in file_tool["parameters"]["properties"]
    assert missing.status_code == 401
    assert missing.json() == {"error": "Invalid or missing auth token"}
    assert wrong.status_code == 401
    assert right.status_code == 200


@pytest.mark.asyncio
async def test_oversized_body_gets_413(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"])) as (_runtime, daemon, _client):
        status, body = await raw_exchange(
            daemon.port,
            b"POST /agent HTTP/1.1\r\nHost: x\r\nContent-Length: 2000000\r\n\r\n",
        )

    assert status == 413
    assert "too large" in body["error"]


@pytest.mark.asyncio
async def test_connection_over_capacity_gets_503(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"]), max_connections=1) as (_runtime, daemon, _client):
        _idle_reader, idle_writer = await asyncio.open_connection("127.0.0.1", daemon.port)
        await asyncio.sleep(0.05)
        status, body = await raw_exchange(daemon.port, b"GET /health HTTP/1.1\r\nHost: x\r\n\r\n")
        idle_writer.close()
        await idle_writer.wait_closed()

    assert status == 503
    assert "busy" in body["error"]


@pytest.mark.asyncio
async def test_unknown_path_and_wrong_method(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"])) as (_runtime, _daemon, client):
        unknown = await client.get("/nope")
        wrong_method = await client.get("/agent")

    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Not found"}
    assert wrong_method.status_code == 405


@pytest.mark.asyncio
async def test_missing_message_and_bad_json_are_400(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"])) as (_runtime, _daemon, client):
        missing = await client.post("/agent", json={"agent_type": "general"})
        bad_json = await client.post(
            "/agent",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

    assert missing.status_code == 400
    assert missing.json() == {"error": "'message' field is required"}
    assert bad_json.status_code == 400


@pytest.mark.asyncio
async def test_backend_failure_is_200_with_failure_marker(tmp_path: Path):
    async with serving(tmp_path, BrokenProvider()) as (_runtime, _daemon, client):
        agent = await client.post("/agent", json={"message": "hi"})
        chat = await client.post("/chat", json={"message": "hi"})
        metrics = await client.get("/metrics")

    assert agent.status_code == 200
    assert agent.json()["success"] is False
    assert agent.headers["x-hearth-outcome"] == "failure"
    assert chat.status_code == 200
    assert chat.json()["output"].startswith("⚠️ Backend error")
    assert metrics.json()["errors"] == 2


@pytest.mark.asyncio
async def test_stream_frames_steps_then_done(tmp_path: Path):
    provider = ScriptedProvider([
        tool_call("core_memory_read"),
        tool_call("response", text="All read"),
    ])

    async with serving(tmp_path, provider) as (_runtime, _daemon, client):
        response = await client.post("/agent/stream", json={"message": "read memory"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [frame for frame in response.text.split("\n\n") if frame]
    events = [frame.split("\n")[0] for frame in frames]
    assert events[-1] == "event: done"
    assert frames[-1] == "event: done\ndata: {}"
    assert set(events[:-1]) == {"event: step"}

    steps = [json.loads(frame.split("\n")[1][len("data: "):]) for frame in frames[:-1]]
    assert [step["step"] for step in steps] == list(range(1, len(steps) + 1))
    assert steps[0]["type"] == "toolCall"
    assert steps[-1] == {**steps[-1], "type": "finalAnswer", "content": "All read"}


@pytest.mark.asyncio
async def test_chat_and_metrics(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["Hello there"])) as (_runtime, _daemon, client):
        chat = await client.post("/chat", json={"message": "hi"})
        metrics = await client.get("/metrics")
        reset = await client.post("/metrics/reset")
        after = await client.get("/metrics")

    assert chat.json() == {"output": "Hello there", "success": True}
    assert metrics.json()["chat_requests"] == 1
    assert metrics.json()["tokens_total"] == 7
    assert metrics.json()["pool"]["size"] == 4
    assert reset.json() == {"ok": True}
    assert after.json()["chat_requests"] == 0


@pytest.mark.asyncio
async def test_rate_limit_per_path(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"]), rate_limit_requests=2) as (_runtime, _daemon, client):
        codes = [(await client.get("/health")).status_code for _ in range(3)]
        other = await client.get("/trace")

    assert codes == [200, 200, 429]
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_memory_update_versions_and_rollback(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"])) as (_runtime, _daemon, client):
        initial = (await client.get("/memory/versions")).json()["versions"][0]["id"]
        appended = await client.post("/memory", json={"label": "human", "action": "append", "content": "Name: Sam"})
        read_only = await client.post("/memory", json={"label": "system", "action": "append", "content": "x"})
        versions = (await client.get("/memory/versions")).json()
        diff = (await client.get("/memory/diff", params={"from": initial, "to": versions["versions"][0]["id"]})).json()
        rollback = await client.post("/memory/rollback", json={"id": initial[:8]})
        blocks = {block["label"]: block for block in (await client.get("/memory")).json()["blocks"]}
        unknown = await client.post("/memory/rollback", json={"id": "ffffffffffff"})

    assert appended.json()["block"]["value"] == "Name: Sam"
    assert read_only.status_code == 400
    assert versions["count"] == 2
    assert diff["changes"] == [{"label": "human", "change": "changed", "old": "", "new": "Name: Sam"}]
    assert rollback.json()["restored"] == initial
    assert blocks["human"]["value"] == ""
    assert blocks["system"]["read_only"] is True
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_memory_entries_crud(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"])) as (_runtime, _daemon, client):
        created = (await client.post("/memory/entries", json={"text": "Sam likes tea", "tags": ["prefs"]})).json()
        found = (await client.get("/memory/entries", params={"q": "tea"})).json()
        tags = (await client.get("/memory/entries/tags")).json()
        deleted = await client.delete("/memory/entries", params={"id": created["entry"]["id"]})
        listed = (await client.get("/memory/entries")).json()

    assert created["ok"] is True
    assert found["count"] == 1
    assert found["stats"]["total"] == 1
    assert tags == {"tags": {"prefs": 1}}
    assert deleted.json()["ok"] is True
    assert listed["count"] == 0


@pytest.mark.asyncio
async def test_checkpoint_list_and_resume(tmp_path: Path):
    provider = ScriptedProvider([tool_call("core_memory_read")])

    async with serving(tmp_path, provider) as (runtime, _daemon, client):
        runtime.config.agent.profiles["general"].step_limit = 1
        paused = (await client.post("/agent", json={"message": "keep going"})).json()
        listed = (await client.get("/checkpoints")).json()

        provider.replies = [tool_call("response", text="Finished")]
        resumed = (await client.post("/checkpoints/resume", json={"id": paused["checkpoint_id"]})).json()
        after = (await client.get("/checkpoints")).json()
        unknown = await client.post("/checkpoints/resume", json={"id": "nothing"})

    assert paused["success"] is True
    assert listed["count"] == 1
    assert listed["checkpoints"][0]["id"] == paused["checkpoint_id"]
    assert resumed["success"] is True
    assert resumed["output"] == "Finished"
    assert after["count"] == 0
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_tasks_workflows_and_tools(tmp_path: Path):
    async with serving(tmp_path, ScriptedProvider(["hi"])) as (_runtime, _daemon, client):
        task = (await client.post("/tasks", json={"name": "digest", "schedule": "Daily 9:05"})).json()["task"]
        bad_schedule = await client.post("/tasks", json={"name": "x", "schedule": "sometimes"})
        tasks = (await client.get("/tasks")).json()["tasks"]
        workflow = await client.post("/workflows", json={"name": "release"})
        nameless = await client.post("/workflows", json={})
        tools = {tool["name"]: tool for tool in (await client.get("/tools")).json()["tools"]}
        enabled = await client.post("/tools/enable", json={"name": "file"})
        missing_tool = await client.post("/tools/enable", json={"name": "warp"})

    assert task["schedule"] == "daily 09:05"
    assert task["next_run_at"]
    assert bad_schedule.status_code == 400
    assert [item["id"] for item in tasks] == [task["id"]]
    assert workflow.json()["workflow"]["steps"] == []
    assert nameless.status_code == 400
    assert tools["file"]["disabled"] is False
    assert "response" in tools
    assert enabled.json() == {"ok": True, "name": "file"}
    assert missing_tool.status_code == 404


@pytest.mark.asyncio
async def test_stream_disconnect_checkpoints_run_and_releases_worker(tmp_path: Path):
    provider = GatedProvider([tool_call("core_memory_read")])

    async with serving(tmp_path, provider) as (runtime, daemon, _client):
        body = json.dumps({"message": "keep reading"}).encode()
        reader, writer = await asyncio.open_connection("127.0.0.1", daemon.port)
        writer.write(
            b"POST /agent/stream HTTP/1.1\r\nHost: localhost\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(body)}\r\n\r\n".encode()
            + body
        )
        await writer.drain()
        await asyncio.wait_for(reader.readuntil(b'"toolResult"'), timeout=5)
        writer.close()
        await writer.wait_closed()
        provider.gate.set()

        for _ in range(500):
            if runtime.pool.active_count == 0:
                break
            await asyncio.sleep(0.01)
        saved = await runtime.checkpoints.list()

        assert runtime.pool.active_count == 0
        assert runtime.pool.idle_count == runtime.pool.size
        assert len(saved) == 1
        assert saved[0].reason == "client disconnected"
        roles = [item["role"] for item in saved[0].messages]
        assert roles[0] == "system"
        assert roles[1:] == ["user", "assistant"] * ((len(roles) - 2) // 2) + ["user"]
        assert "[Tool 'core_memory_read' completed successfully]" in saved[0].messages[3]["content"]
