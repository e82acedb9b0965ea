"""Shared daemon bookkeeping: rate limits, connection gate, metrics, trace.

Each class guards its own state with its own lock so that contention on
one (say, metrics) never delays another (say, the rate limiter).
"""

import asyncio
import time
from collections import deque
from datetime import UTC, datetime
from typing import Any


class SlidingWindowRateLimiter:
    """Per-key request limit over a sliding time window."""

    def __init__(self, max_requests: int = 60, window_seconds: float = 60.0):
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = float(window_seconds)
        self._hits: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str, now: float | None = None) -> bool:
        """Record a hit for `key`; False when the window is already full."""
        now = time.monotonic() if now is None else now
        cutoff = now - self.window_seconds
        async with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    async def reset(self) -> None:
        async with self._lock:
            self._hits.clear()


class ConnectionGate:
    """Counts open connections; refuses entry past the limit instead of queuing."""

    def __init__(self, limit: int = 20):
        self.limit = max(1, int(limit))
        self._open = 0
        self._lock = asyncio.Lock()

    @property
    def open_connections(self) -> int:
        return self._open

    async def try_enter(self) -> bool:
        async with self._lock:
            if self._open >= self.limit:
                return False
            self._open += 1
            return True

    async def leave(self) -> None:
        async with self._lock:
            self._open = max(0, self._open - 1)


class Metrics:
    """Request counters plus a rolling latency average."""

    def __init__(self, backend: str = "", model: str = "", latency_samples: int = 100):
        self.backend = backend
        self.model = model
        self._latency_samples = max(1, int(latency_samples))
        self._lock = asyncio.Lock()
        self._reset_counters()

    def _reset_counters(self) -> None:
        self.chat_requests = 0
        self.tool_calls = 0
        self.errors = 0
        self.tokens_total = 0
        self.started_at = time.monotonic()
        self._latencies: deque[float] = deque(maxlen=self._latency_samples)

    async def record_request(self) -> None:
        async with self._lock:
            self.chat_requests += 1

    async def record_run(
        self,
        latency_ms: float,
        tool_calls: int = 0,
        tokens: int = 0,
        failed: bool = False,
    ) -> None:
        async with self._lock:
            self._latencies.append(latency_ms)
            self.tool_calls += tool_calls
            self.tokens_total += tokens
            if failed:
                self.errors += 1

    async def record_error(self) -> None:
        async with self._lock:
            self.errors += 1

    async def reset(self) -> None:
        async with self._lock:
            self._reset_counters()

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            average = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
            return {
                "chat_requests": self.chat_requests,
                "tool_calls": self.tool_calls,
                "errors": self.errors,
                "tokens_total": self.tokens_total,
                "uptime_seconds": int(time.monotonic() - self.started_at),
                "avg_latency_ms": round(average, 2),
                "backend": self.backend,
                "model": self.model,
            }


class TraceLog:
    """Bounded timeline of notable daemon events, newest last."""

    def __init__(self, limit: int = 50):
        self._events: deque[dict[str, str]] = deque(maxlen=max(1, int(limit)))
        self._lock = asyncio.Lock()

    async def add(self, event: str, detail: str = "") -> None:
        entry = {
            "event": event,
            "detail": detail[:500],
            "timestamp": datetime.now(UTC).isoformat(),
        }
        async with self._lock:
            self._events.append(entry)

    async def entries(self) -> list[dict[str, str]]:
        async with self._lock:
            return list(self._events)
