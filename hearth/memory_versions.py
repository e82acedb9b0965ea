"""Memory version store: append-only history of core memory snapshots."""

from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hearth.core_memory import MemoryBlock
from hearth.exceptions import VersionNotFoundError
from hearth.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def content_hash(blocks: list[MemoryBlock]) -> str:
    lines = sorted(f"{block.label}:{block.value}" for block in blocks)
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


@dataclass
class MemoryVersion:
    """Immutable snapshot of every memory block."""

    id: str
    message: str
    blocks: list[dict[str, Any]]
    content_hash: str
    sequence: int
    parent_id: str | None = None
    timestamp: str = field(default_factory=_utcnow_iso)

    def snapshot(self) -> list[MemoryBlock]:
        return [MemoryBlock.model_validate(item) for item in self.blocks]

    def values(self) -> dict[str, str]:
        return {item["label"]: item.get("value", "") for item in self.blocks}

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "parent_id": self.parent_id,
            "timestamp": self.timestamp,
            "block_count": len(self.blocks),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "parent_id": self.parent_id,
            "timestamp": self.timestamp,
            "sequence": self.sequence,
            "content_hash": self.content_hash,
            "blocks": self.blocks,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryVersion:
        return cls(
            id=data["id"],
            message=data.get("message", ""),
            blocks=list(data.get("blocks", [])),
            content_hash=data.get("content_hash", ""),
            sequence=int(data.get("sequence", 0)),
            parent_id=data.get("parent_id"),
            timestamp=data.get("timestamp", _utcnow_iso()),
        )


class MemoryVersionStore:
    """Stores one JSON file per version under `directory`.

    Commits identical to the latest version are skipped. Only the newest
    `max_versions` are kept on disk.
    """

    def __init__(self, directory: Path | str, max_versions: int = 100):
        self.directory = Path(directory).expanduser()
        self.max_versions = max(1, int(max_versions))
        self._versions: list[MemoryVersion] = []
        self._loaded = False
        self._lock = asyncio.Lock()

    def _path_for(self, version_id: str) -> Path:
        return self.directory / f"v_{version_id}.json"

    def _read_all(self) -> list[MemoryVersion]:
        if not self.directory.exists():
            return []
        versions: list[MemoryVersion] = []
        for path in self.directory.glob("v_*.json"):
            try:
                versions.append(MemoryVersion.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as e:
                log.warning("Skipping unreadable memory version", path=str(path), error=str(e))
        versions.sort(key=lambda item: (item.sequence, item.timestamp))
        return versions

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._versions = await asyncio.to_thread(self._read_all)
            self._loaded = True

    def _write(self, version: MemoryVersion) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path_for(version.id).write_text(
            json.dumps(version.to_dict(), indent=2, sort_keys=True, ensure_ascii=False),
            encoding="utf-8",
        )

    def _unlink(self, version_ids: list[str]) -> None:
        for version_id in version_ids:
            self._path_for(version_id).unlink(missing_ok=True)

    async def latest(self) -> MemoryVersion | None:
        async with self._lock:
            await self._ensure_loaded()
            return self._versions[-1] if self._versions else None

    async def commit(self, blocks: list[MemoryBlock], message: str) -> str:
        """Record a snapshot and return its version id."""
        digest = content_hash(blocks)
        async with self._lock:
            await self._ensure_loaded()
            parent = self._versions[-1] if self._versions else None
            if parent is not None and parent.content_hash == digest:
                return parent.id

            timestamp = _utcnow_iso()
            sequence = parent.sequence + 1 if parent is not None else 1
            seed = f"{parent.id if parent else ''}|{sequence}|{timestamp}|{digest}"
            version = MemoryVersion(
                id=hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16],
                message=message,
                blocks=[block.model_dump() for block in blocks],
                content_hash=digest,
                sequence=sequence,
                parent_id=parent.id if parent else None,
                timestamp=timestamp,
            )
            await asyncio.to_thread(self._write, version)
            self._versions.append(version)

            overflow = len(self._versions) - self.max_versions
            if overflow > 0:
                pruned = self._versions[:overflow]
                self._versions = self._versions[overflow:]
                await asyncio.to_thread(self._unlink, [item.id for item in pruned])

            log.info("Memory version committed", version=version.id, message=message)
            return version.id

    async def log(self, limit: int = 20) -> list[MemoryVersion]:
        """Newest versions first."""
        async with self._lock:
            await self._ensure_loaded()
            return list(reversed(self._versions))[: max(0, int(limit))]

    def _find(self, version_id: str) -> MemoryVersion:
        key = (version_id or "").strip()
        if key:
            matches = [item for item in self._versions if item.id.startswith(key)]
            if len(matches) == 1:
                return matches[0]
        raise VersionNotFoundError(version_id)

    async def get(self, version_id: str) -> MemoryVersion:
        """Look up a version by id or unique id prefix."""
        async with self._lock:
            await self._ensure_loaded()
            return self._find(version_id)

    async def diff(self, from_id: str, to_id: str) -> list[dict[str, Any]]:
        """Per-label changes between two versions; unchanged labels are omitted."""
        async with self._lock:
            await self._ensure_loaded()
            old_values = self._find(from_id).values()
            new_values = self._find(to_id).values()

        changes: list[dict[str, Any]] = []
        for label in sorted(set(old_values) | set(new_values)):
            if label not in old_values:
                changes.append({"label": label, "change": "added", "old": None, "new": new_values[label]})
            elif label not in new_values:
                changes.append({"label": label, "change": "removed", "old": old_values[label], "new": None})
            elif old_values[label] != new_values[label]:
                changes.append({"label": label, "change": "changed", "old": old_values[label], "new": new_values[label]})
        return changes

    async def rollback(self, to_id: str) -> list[MemoryBlock]:
        """Return the blocks captured by `to_id`. History is left untouched."""
        version = await self.get(to_id)
        log.info("Memory rollback requested", version=version.id)
        return version.snapshot()
