"""Tagged long-term memory entries with SQLite storage."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from hearth.exceptions import RecordNotFoundError
from hearth.logging import get_logger

log = get_logger(__name__)

MEMORY_TYPES = ("short_term", "long_term", "knowledge")


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def _normalize_tags(tags: list[str] | str | None) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    seen: list[str] = []
    for tag in tags:
        cleaned = str(tag).strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def _normalize_type(memory_type: str | None) -> str:
    value = (memory_type or "long_term").strip().lower()
    if value not in MEMORY_TYPES:
        raise ValueError(f"Unknown memory type '{memory_type}'. Use one of: {', '.join(MEMORY_TYPES)}")
    return value


@dataclass
class MemoryEntry:
    """A single remembered fact."""

    id: str
    text: str
    memory_type: str = "long_term"
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "type": self.memory_type,
            "tags": list(self.tags),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> MemoryEntry:
        return cls(
            id=row[0],
            text=row[1],
            memory_type=row[2],
            tags=json.loads(row[3] or "[]"),
            created_at=row[4],
            updated_at=row[5],
        )


class MemoryEntryStore:
    """Stores memory entries in SQLite."""

    _COLUMNS = "id, text, memory_type, tags, created_at, updated_at"

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS memory_entries (
                    id TEXT PRIMARY KEY,
                    text TEXT NOT NULL,
                    memory_type TEXT NOT NULL DEFAULT 'long_term',
                    tags TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_memory_entries_updated_at ON memory_entries(updated_at)"
            )
            await self._db.commit()
        return self._db

    async def add(self, text: str, memory_type: str | None = None, tags: list[str] | str | None = None) -> MemoryEntry:
        if not (text or "").strip():
            raise ValueError("Memory entry text is required")
        db = await self._ensure_db()
        entry = MemoryEntry(
            id=uuid.uuid4().hex[:12],
            text=text.strip(),
            memory_type=_normalize_type(memory_type),
            tags=_normalize_tags(tags),
        )
        await db.execute(
            f"INSERT INTO memory_entries ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (entry.id, entry.text, entry.memory_type, json.dumps(entry.tags), entry.created_at, entry.updated_at),
        )
        await db.commit()
        log.info("Memory entry added", entry_id=entry.id, memory_type=entry.memory_type)
        return entry

    async def get(self, entry_id: str) -> MemoryEntry:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {self._COLUMNS} FROM memory_entries WHERE id = ?",
            (entry_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise RecordNotFoundError("Memory entry", entry_id)
        return MemoryEntry.from_row(row)

    async def update(
        self,
        entry_id: str,
        text: str | None = None,
        memory_type: str | None = None,
        tags: list[str] | str | None = None,
    ) -> MemoryEntry:
        entry = await self.get(entry_id)
        if text is not None and text.strip():
            entry.text = text.strip()
        if memory_type is not None:
            entry.memory_type = _normalize_type(memory_type)
        if tags is not None:
            entry.tags = _normalize_tags(tags)
        entry.updated_at = _utcnow_iso()

        db = await self._ensure_db()
        await db.execute(
            "UPDATE memory_entries SET text = ?, memory_type = ?, tags = ?, updated_at = ? WHERE id = ?",
            (entry.text, entry.memory_type, json.dumps(entry.tags), entry.updated_at, entry.id),
        )
        await db.commit()
        return entry

    async def delete(self, entry_id: str) -> None:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM memory_entries WHERE id = ?", (entry_id,))
        await db.commit()
        if cursor.rowcount == 0:
            raise RecordNotFoundError("Memory entry", entry_id)
        log.info("Memory entry deleted", entry_id=entry_id)

    async def list(self, limit: int = 100) -> list[MemoryEntry]:
        """Most recently updated entries first."""
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {self._COLUMNS} FROM memory_entries ORDER BY updated_at DESC LIMIT ?",
            (max(1, int(limit)),),
        ) as cursor:
            rows = await cursor.fetchall()
        return [MemoryEntry.from_row(row) for row in rows]

    async def search(
        self,
        query: str = "",
        memory_type: str | None = None,
        tags: list[str] | str | None = None,
        limit: int = 20,
    ) -> list[MemoryEntry]:
        """Match every query word (case-insensitive) plus type/tag filters.

        Results are ranked by how many query words appear, then recency.
        """
        words = [word for word in (query or "").lower().split() if word]
        clauses: list[str] = []
        params: list[Any] = []
        for word in words:
            clauses.append("LOWER(text) LIKE ?")
            params.append(f"%{word}%")
        if memory_type:
            clauses.append("memory_type = ?")
            params.append(_normalize_type(memory_type))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {self._COLUMNS} FROM memory_entries {where} ORDER BY updated_at DESC",
            tuple(params),
        ) as cursor:
            rows = await cursor.fetchall()

        wanted_tags = set(_normalize_tags(tags))
        entries = [MemoryEntry.from_row(row) for row in rows]
        if wanted_tags:
            entries = [entry for entry in entries if wanted_tags.issubset(entry.tags)]
        entries.sort(key=lambda entry: sum(entry.text.lower().count(word) for word in words), reverse=True)
        return entries[: max(1, int(limit))]

    async def tags(self) -> dict[str, int]:
        """Tag usage counts, most used first."""
        counts: dict[str, int] = {}
        db = await self._ensure_db()
        async with db.execute("SELECT tags FROM memory_entries") as cursor:
            async for row in cursor:
                for tag in json.loads(row[0] or "[]"):
                    counts[tag] = counts.get(tag, 0) + 1
        return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))

    async def stats(self) -> dict[str, Any]:
        db = await self._ensure_db()
        by_type = {memory_type: 0 for memory_type in MEMORY_TYPES}
        async with db.execute(
            "SELECT memory_type, COUNT(*) FROM memory_entries GROUP BY memory_type"
        ) as cursor:
            async for memory_type, count in cursor:
                by_type[memory_type] = count
        return {
            "total": sum(by_type.values()),
            "by_type": by_type,
            "tags": len(await self.tags()),
        }

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
