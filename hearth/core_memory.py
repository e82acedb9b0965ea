"""Core memory: named, size-bounded blocks compiled into every system prompt."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from hearth.exceptions import (
    BlockNotFoundError,
    BlockOverLimitError,
    BlockReadOnlyError,
    MemoryBlockError,
)
from hearth.logging import get_logger

if TYPE_CHECKING:
    from hearth.memory_versions import MemoryVersionStore

log = get_logger(__name__)

INHERITED_LABELS = ("persona", "human", "knowledge", "capabilities")


class MemoryBlock(BaseModel):
    """A named persistent-context slot."""

    label: str
    value: str = ""
    limit: int = 2000
    description: str = ""
    read_only: bool = False

    @property
    def char_count(self) -> int:
        return len(self.value)

    @property
    def usage_percent(self) -> float:
        """Fraction of the limit in use; above 1.0 when over the limit."""
        if self.limit <= 0:
            return 0.0 if not self.value else float("inf")
        return len(self.value) / self.limit

    @property
    def is_over_limit(self) -> bool:
        return len(self.value) > self.limit

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump()
        data["char_count"] = self.char_count
        data["usage_percent"] = round(self.usage_percent, 4) if self.limit > 0 else None
        data["is_over_limit"] = self.is_over_limit
        return data


def default_blocks() -> list[MemoryBlock]:
    return [
        MemoryBlock(
            label="persona",
            value="I am Hearth, a local assistant that gets things done with tools.",
            limit=2000,
            description="Who the agent is and how it behaves.",
        ),
        MemoryBlock(
            label="human",
            limit=2000,
            description="What the agent knows about the user.",
        ),
        MemoryBlock(
            label="short_term",
            limit=1500,
            description="Scratch notes for the current task.",
        ),
        MemoryBlock(
            label="knowledge",
            limit=3000,
            description="Durable facts worth keeping across conversations.",
        ),
        MemoryBlock(
            label="system",
            value=(
                "Answer by calling tools. When the task is done, call the "
                "`response` tool with the final text."
            ),
            limit=500,
            description="Operating rules.",
            read_only=True,
        ),
        MemoryBlock(
            label="capabilities",
            value="Local files, core memory and sub-agents.",
            limit=1000,
            description="What this runtime can do.",
            read_only=True,
        ),
    ]


class CoreMemory:
    """Holds memory blocks; every mutation goes through a version commit.

    Blocks are never edited in place. A mutation builds a new block map,
    commits it to the version store, persists it, and only then swaps it in.
    A memory without a version store or path (sub-agent copies) is
    ephemeral.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        versions: MemoryVersionStore | None = None,
        blocks: list[MemoryBlock] | None = None,
    ):
        self.path = Path(path).expanduser() if path else None
        self.versions = versions
        initial = blocks if blocks is not None else default_blocks()
        self._blocks: dict[str, MemoryBlock] = {block.label: block for block in initial}
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Load persisted blocks, then make sure history has a root version."""
        if self.path is not None and self.path.exists():
            raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            data = json.loads(raw or "[]")
            async with self._lock:
                self._blocks = {
                    block.label: block
                    for block in (MemoryBlock.model_validate(item) for item in data)
                }
            log.info("Loaded core memory", path=str(self.path), blocks=len(self._blocks))
        if self.versions is not None and await self.versions.latest() is None:
            await self.versions.commit(self.blocks(), "Initial memory")

    def blocks(self) -> list[MemoryBlock]:
        return [self._blocks[label] for label in sorted(self._blocks)]

    def get(self, label: str) -> MemoryBlock:
        block = self._blocks.get(label)
        if block is None:
            raise BlockNotFoundError(label)
        return block

    def compile(self) -> str:
        """Render all blocks as tagged sections, sorted by label."""
        sections = [
            f"<{block.label}>\n{block.value}\n</{block.label}>"
            for block in self.blocks()
        ]
        return "\n\n".join(sections)

    def _writable(self, label: str) -> MemoryBlock:
        block = self.get(label)
        if block.read_only:
            raise BlockReadOnlyError(label)
        return block

    async def _commit(self, updated: dict[str, MemoryBlock], message: str) -> None:
        """Commit and persist a new block map. Caller holds the lock."""
        ordered = [updated[label] for label in sorted(updated)]
        if self.versions is not None:
            await self.versions.commit(ordered, message)
        if self.path is not None:
            payload = json.dumps([block.model_dump() for block in ordered], indent=2, ensure_ascii=False)
            await asyncio.to_thread(self._write_file, payload)
        self._blocks = updated
        log.debug("Core memory committed", message=message)

    def _write_file(self, payload: str) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(self.path)

    async def append(self, label: str, text: str) -> MemoryBlock:
        async with self._lock:
            block = self._writable(label)
            value = f"{block.value}\n{text}" if block.value else text
            if len(value) > block.limit:
                raise BlockOverLimitError(label, len(value), block.limit)
            updated = dict(self._blocks)
            updated[label] = block.model_copy(update={"value": value})
            await self._commit(updated, f"Append to {label}")
            return updated[label]

    async def replace(self, label: str, old: str, new: str) -> MemoryBlock:
        """Replace `old` with `new`; an empty `old` replaces the whole value."""
        async with self._lock:
            block = self._writable(label)
            if old:
                if old not in block.value:
                    raise MemoryBlockError(label, f"Text not found in memory block '{label}'")
                value = block.value.replace(old, new)
            else:
                value = new
            if len(value) > block.limit:
                raise BlockOverLimitError(label, len(value), block.limit)
            updated = dict(self._blocks)
            updated[label] = block.model_copy(update={"value": value})
            await self._commit(updated, f"Replace in {label}")
            return updated[label]

    async def clear(self, label: str) -> MemoryBlock:
        async with self._lock:
            block = self._writable(label)
            updated = dict(self._blocks)
            updated[label] = block.model_copy(update={"value": ""})
            await self._commit(updated, f"Clear {label}")
            return updated[label]

    async def upsert(
        self,
        label: str,
        value: str,
        limit: int | None = None,
        description: str | None = None,
    ) -> MemoryBlock:
        """Create or overwrite a block. Over-limit values are kept and flagged."""
        label = label.strip()
        if not label:
            raise MemoryBlockError(label, "Memory block label is required")
        async with self._lock:
            existing = self._blocks.get(label)
            if existing is not None and existing.read_only:
                raise BlockReadOnlyError(label)
            changes: dict[str, Any] = {"value": value}
            if limit is not None:
                changes["limit"] = int(limit)
            if description is not None:
                changes["description"] = description
            if existing is None:
                block = MemoryBlock(label=label, **changes)
                message = f"Create {label}"
            else:
                block = existing.model_copy(update=changes)
                message = f"Update {label}"
            if block.is_over_limit:
                log.warning("Memory block over limit", label=label, chars=block.char_count, limit=block.limit)
            updated = dict(self._blocks)
            updated[label] = block
            await self._commit(updated, message)
            return block

    async def delete(self, label: str) -> None:
        async with self._lock:
            self._writable(label)
            updated = {key: block for key, block in self._blocks.items() if key != label}
            await self._commit(updated, f"Delete {label}")

    async def restore(self, blocks: list[MemoryBlock], message: str) -> None:
        """Replace every block, read-only ones included (used by rollback)."""
        async with self._lock:
            await self._commit({block.label: block for block in blocks}, message)

    def inherit(self) -> CoreMemory:
        """Detached read-only copy of the shareable blocks for a sub-agent."""
        copies = [
            self._blocks[label].model_copy(update={"read_only": True})
            for label in INHERITED_LABELS
            if label in self._blocks
        ]
        copies.append(MemoryBlock(label="short_term", limit=1500, description="Sub-agent scratch notes."))
        if "system" in self._blocks:
            copies.append(self._blocks["system"])
        return CoreMemory(blocks=copies)
