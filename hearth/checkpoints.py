"""Checkpoint store for paused or interrupted agent runs."""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from hearth.exceptions import CheckpointNotFoundError
from hearth.logging import get_logger

log = get_logger(__name__)

CheckpointStatus = Literal["running", "paused", "completed", "failed"]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AgentRunCheckpoint(BaseModel):
    """Durable snapshot of an in-progress agent run."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    agent_type: str = "general"
    step_count: int = 0
    status: CheckpointStatus = "paused"
    user_message: str = ""
    messages: list[dict[str, str]] = Field(default_factory=list)
    tool_counts: dict[str, int] = Field(default_factory=dict)
    provider: dict[str, Any] | None = None
    reason: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_type": self.agent_type,
            "step_count": self.step_count,
            "status": self.status,
            "user_message": self.user_message[:200],
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class CheckpointStore:
    """One JSON file per checkpoint: `<directory>/cp_<id>.json`."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()
        self._lock = asyncio.Lock()

    def _path_for(self, checkpoint_id: str) -> Path:
        safe_id = "".join(ch for ch in checkpoint_id if ch.isalnum() or ch in "-_")
        return self.directory / f"cp_{safe_id}.json"

    def _write(self, checkpoint: AgentRunCheckpoint) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(checkpoint.model_dump(mode="json"), indent=2, sort_keys=True, ensure_ascii=False)
        path = self._path_for(checkpoint.id)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)

    def _read(self, path: Path) -> AgentRunCheckpoint:
        return AgentRunCheckpoint.model_validate_json(path.read_text(encoding="utf-8"))

    def _read_all(self) -> list[AgentRunCheckpoint]:
        if not self.directory.exists():
            return []
        checkpoints: list[AgentRunCheckpoint] = []
        for path in self.directory.glob("cp_*.json"):
            try:
                checkpoints.append(self._read(path))
            except (OSError, ValueError) as e:
                log.warning("Skipping unreadable checkpoint", path=str(path), error=str(e))
        return checkpoints

    async def save(self, checkpoint: AgentRunCheckpoint) -> AgentRunCheckpoint:
        checkpoint.updated_at = _utcnow()
        async with self._lock:
            await asyncio.to_thread(self._write, checkpoint)
        log.info(
            "Checkpoint saved",
            checkpoint_id=checkpoint.id,
            status=checkpoint.status,
            step_count=checkpoint.step_count,
        )
        return checkpoint

    async def load(self, checkpoint_id: str) -> AgentRunCheckpoint:
        path = self._path_for(checkpoint_id or "")
        async with self._lock:
            if not checkpoint_id or not path.exists():
                raise CheckpointNotFoundError(checkpoint_id)
            try:
                return await asyncio.to_thread(self._read, path)
            except FileNotFoundError:
                raise CheckpointNotFoundError(checkpoint_id)

    async def list(self) -> list[AgentRunCheckpoint]:
        """All checkpoints, newest first."""
        async with self._lock:
            checkpoints = await asyncio.to_thread(self._read_all)
        checkpoints.sort(key=lambda item: item.created_at, reverse=True)
        return checkpoints

    async def delete(self, checkpoint_id: str) -> None:
        path = self._path_for(checkpoint_id or "")
        async with self._lock:
            if not checkpoint_id or not path.exists():
                raise CheckpointNotFoundError(checkpoint_id)
            await asyncio.to_thread(path.unlink)
        log.info("Checkpoint deleted", checkpoint_id=checkpoint_id)
