"""Thin JSON-file record collections (tasks, workflows)."""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hearth.exceptions import RecordNotFoundError
from hearth.logging import get_logger
from hearth.schedules import compute_next_run, parse_schedule, schedule_to_text

log = get_logger(__name__)

_RESERVED_FIELDS = {"id", "created_at", "updated_at", "action"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def normalize_task_fields(fields: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Validate a task's schedule text and derive `next_run_at`.

    Raises:
        ScheduleError if the schedule text is not understood
    """
    normalized = dict(fields)
    schedule_text = str(normalized.get("schedule", "") or "").strip()
    if "schedule" in normalized and not schedule_text:
        normalized["schedule"] = ""
        normalized["next_run_at"] = None
    elif schedule_text:
        schedule = parse_schedule(schedule_text)
        normalized["schedule"] = schedule_to_text(schedule)
        normalized["next_run_at"] = compute_next_run(schedule, now).isoformat()
    return normalized


class RecordCollection:
    """A list of dict records persisted as one JSON array."""

    def __init__(self, path: Path | str, kind: str):
        self.path = Path(path).expanduser()
        self.kind = kind
        self._lock = asyncio.Lock()

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []

    def _write(self, records: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(self.path)

    @staticmethod
    def _clean(fields: dict[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in fields.items() if key not in _RESERVED_FIELDS}

    async def list(self) -> list[dict[str, Any]]:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def get(self, record_id: str) -> dict[str, Any]:
        for record in await self.list():
            if record.get("id") == record_id:
                return record
        raise RecordNotFoundError(self.kind, record_id)

    async def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        now = _utcnow_iso()
        record = {
            "id": uuid.uuid4().hex[:8],
            **self._clean(fields),
            "created_at": now,
            "updated_at": now,
        }
        async with self._lock:
            records = await asyncio.to_thread(self._read)
            records.append(record)
            await asyncio.to_thread(self._write, records)
        log.info("Record created", kind=self.kind, record_id=record["id"])
        return record

    async def update(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            records = await asyncio.to_thread(self._read)
            for index, record in enumerate(records):
                if record.get("id") == record_id:
                    updated = {**record, **self._clean(fields), "updated_at": _utcnow_iso()}
                    records[index] = updated
                    await asyncio.to_thread(self._write, records)
                    return updated
        raise RecordNotFoundError(self.kind, record_id)

    async def delete(self, record_id: str) -> None:
        async with self._lock:
            records = await asyncio.to_thread(self._read)
            remaining = [record for record in records if record.get("id") != record_id]
            if len(remaining) == len(records):
                raise RecordNotFoundError(self.kind, record_id)
            await asyncio.to_thread(self._write, remaining)
        log.info("Record deleted", kind=self.kind, record_id=record_id)
