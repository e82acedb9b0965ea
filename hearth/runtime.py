"""Wires configuration into live components and runs the daemon."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field

from hearth.agent_loop import AgentLoop
from hearth.agent_pool import WorkerPool
from hearth.checkpoints import CheckpointStore
from hearth.config import Config
from hearth.core_memory import CoreMemory
from hearth.daemon import DaemonListener
from hearth.llm import LLMProvider, ProviderConfig, ProviderRouter
from hearth.logging import get_logger
from hearth.memory_entries import MemoryEntryStore
from hearth.memory_versions import MemoryVersionStore
from hearth.records import RecordCollection
from hearth.tools import (
    CoreMemoryAppendTool,
    CoreMemoryReadTool,
    CoreMemoryReplaceTool,
    DelegateTaskTool,
    FileTool,
    ResponseTool,
    ToolPolicy,
    ToolRegistry,
)

log = get_logger(__name__)


def build_registry(config: Config) -> ToolRegistry:
    """Register the enabled tool set. `response` is always available."""
    settings = config.tools
    registry = ToolRegistry(
        error_threshold=settings.error_threshold,
        default_timeout=settings.timeout_seconds,
        delegation_timeout=settings.delegation_timeout_seconds,
        policy=ToolPolicy(deny=list(settings.deny)),
    )
    registry.register(ResponseTool())
    for tool_name in settings.enabled:
        if tool_name == "file":
            registry.register(FileTool(root=settings.file_root or None))
        elif tool_name == "core_memory_read":
            registry.register(CoreMemoryReadTool())
        elif tool_name == "core_memory_append":
            registry.register(CoreMemoryAppendTool())
        elif tool_name == "core_memory_replace":
            registry.register(CoreMemoryReplaceTool())
        elif tool_name == "call_subordinate":
            registry.register(DelegateTaskTool())
        elif tool_name != "response":
            log.warning("Unknown tool in config", tool=tool_name)
    return registry


@dataclass
class Runtime:
    """Every long-lived component of one daemon process."""

    config: Config
    provider: LLMProvider
    provider_config: ProviderConfig
    registry: ToolRegistry
    versions: MemoryVersionStore
    memory: CoreMemory
    checkpoints: CheckpointStore
    entries: MemoryEntryStore
    tasks: RecordCollection
    workflows: RecordCollection
    pool: WorkerPool = field(init=False)

    def __post_init__(self) -> None:
        self.pool = WorkerPool(self.new_agent, size=self.config.pool.size)

    @classmethod
    async def create(cls, config: Config, provider: LLMProvider | None = None) -> Runtime:
        """Build and load all components. `provider` overrides the backend router."""
        storage = config.storage
        storage.root.mkdir(parents=True, exist_ok=True)
        provider_config = ProviderConfig.from_model_config(config.model)
        versions = MemoryVersionStore(storage.versions_dir, max_versions=storage.max_versions)
        memory = CoreMemory(storage.core_memory_path, versions=versions)
        await memory.load()
        runtime = cls(
            config=config,
            provider=provider or ProviderRouter(provider_config, timeout=config.model.timeout_seconds),
            provider_config=provider_config,
            registry=build_registry(config),
            versions=versions,
            memory=memory,
            checkpoints=CheckpointStore(storage.checkpoints_dir),
            entries=MemoryEntryStore(storage.entries_db_path),
            tasks=RecordCollection(storage.tasks_path, "task"),
            workflows=RecordCollection(storage.workflows_path, "workflow"),
        )
        log.info(
            "Runtime ready",
            data_dir=str(storage.root),
            provider=provider_config.provider,
            model=provider_config.model,
            tools=runtime.registry.list_tools(),
        )
        return runtime

    def new_agent(self, agent_id: str) -> AgentLoop:
        return AgentLoop(
            provider=self.provider,
            registry=self.registry,
            memory=self.memory,
            settings=self.config.agent,
            checkpoints=self.checkpoints,
            provider_config=self.provider_config,
            agent_id=agent_id,
        )

    def daemon(self) -> DaemonListener:
        return DaemonListener(self)

    async def close(self) -> None:
        await self.entries.close()
        await self.provider.close()
        log.info("Runtime closed")


async def run_daemon(config: Config) -> None:
    """Serve until SIGINT/SIGTERM, then shut down cleanly."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            # Windows has no add_signal_handler for SIGTERM.
            pass

    runtime = await Runtime.create(config)
    daemon = runtime.daemon()
    await daemon.start()
    print(f"\n  Hearth daemon running at http://{config.daemon.host}:{daemon.port}")
    print("  Press Ctrl+C to stop.\n")

    try:
        await stop_event.wait()
    finally:
        print("\nShutting down...")
        await daemon.stop()
        await runtime.close()
