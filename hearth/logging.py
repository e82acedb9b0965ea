"""structlog setup shared by the daemon, the CLI and the agent loop."""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any, TextIO

import structlog

from hearth.config import LoggingConfig

_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


class _StderrWriter:
    """Writes to whatever sys.stderr is at emit time, not at configure time."""

    def write(self, text: str) -> int:
        return sys.stderr.write(text)

    def flush(self) -> None:
        sys.stderr.flush()


def _renderer(fmt: str) -> Any:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def configure_logging(config: LoggingConfig | None = None, stream: TextIO | None = None) -> None:
    """Install the processor chain; safe to call again with a new config."""
    config = config or LoggingConfig()
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, _renderer(config.format)],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or _StderrWriter()),
        cache_logger_on_first_use=False,
    )


def bind_request_context(**values: Any) -> AbstractContextManager[Any]:
    """Attach key/values to every event logged inside the block.

    Used per connection task, so concurrent requests never see each other's keys.
    """
    return structlog.contextvars.bound_contextvars(**values)


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name) if name else structlog.get_logger()
