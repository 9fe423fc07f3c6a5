"""In-memory metrics for the admin /stats command.

Simple counters suitable for a single-instance deployment. Per-user counters
are LRU-bounded so memory does not grow with the number of users seen.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any


_KIND_COUNTERS = {
    "command": "total_commands",
    "callback": "total_callbacks",
    "scheduled": "total_scheduled",
}


def _bump(counter: OrderedDict[int, int], user_id: int, limit: int) -> None:
    """Increment a per-user counter, moving the user to the most recent end."""
    counter[user_id] = counter.pop(user_id, 0) + 1
    while len(counter) > limit:
        counter.popitem(last=False)


@dataclass
class Metrics:
    """Application metrics storage.

    Tracks request counts, dispatch outcomes, latency, and per-user statistics.
    """

    # Request counters
    total_requests: int = 0
    total_errors: int = 0
    total_commands: int = 0
    total_messages: int = 0
    total_callbacks: int = 0
    total_scheduled: int = 0

    # Dispatch outcomes
    rate_limited: int = 0
    denied: int = 0
    sessions_expired: int = 0
    unmatched: int = 0

    # Command counters
    command_counts: dict[str, int] = field(default_factory=dict)
    error_counts: dict[str, int] = field(default_factory=dict)

    # Per-user counters with LRU eviction
    user_request_counts: OrderedDict[int, int] = field(default_factory=OrderedDict)
    user_error_counts: OrderedDict[int, int] = field(default_factory=OrderedDict)
    max_tracked_users: int = 1000

    # Latency tracking (last 100 handler runs)
    latencies: list[float] = field(default_factory=list)
    max_latency_samples: int = 100

    start_time: float = field(default_factory=time.time)
    last_request_time: float | None = None

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def record_request(self, user_id: int, kind: str = "message") -> None:
        """Record an inbound event.

        Args:
            user_id: Telegram user ID.
            kind: ``message``, ``command``, ``callback`` or ``scheduled``.
        """
        self.total_requests += 1
        self.last_request_time = time.time()
        _bump(self.user_request_counts, user_id, self.max_tracked_users)

        attribute = _KIND_COUNTERS.get(kind, "total_messages")
        setattr(self, attribute, getattr(self, attribute) + 1)

    def record_command(self, command: str) -> None:
        """Record a matched command by name."""
        self.command_counts[command] = self.command_counts.get(command, 0) + 1

    def record_error(self, user_id: int, error: str = "InternalFault") -> None:
        """Record a failed handler run under its error class name."""
        self.total_errors += 1
        self.error_counts[error] = self.error_counts.get(error, 0) + 1
        _bump(self.user_error_counts, user_id, self.max_tracked_users)

    def record_rate_limited(self) -> None:
        self.rate_limited += 1

    def record_denied(self) -> None:
        self.denied += 1

    def record_session_expired(self) -> None:
        self.sessions_expired += 1

    def record_unmatched(self) -> None:
        self.unmatched += 1

    def record_latency(self, latency: float) -> None:
        """Record handler latency in seconds, keeping the last N samples."""
        self.latencies.append(latency)
        if len(self.latencies) > self.max_latency_samples:
            self.latencies = self.latencies[-self.max_latency_samples :]

    async def record_latency_async(self, latency: float) -> None:
        """Record handler latency (async thread-safe version)."""
        async with self._lock:
            self.record_latency(latency)

    def get_uptime(self) -> float:
        """Get application uptime in seconds."""
        return time.time() - self.start_time

    def get_average_latency(self) -> float:
        """Get average handler latency in seconds, or 0.0 if no samples."""
        if not self.latencies:
            return 0.0
        return sum(self.latencies) / len(self.latencies)

    def get_p95_latency(self) -> float:
        """Get 95th percentile latency.

        Returns:
            P95 latency in seconds, or 0.0 if no samples.
        """
        if not self.latencies:
            return 0.0
        sorted_latencies = sorted(self.latencies)
        idx = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(idx, len(sorted_latencies) - 1)]

    def get_error_rate(self) -> float:
        """Get error rate as percentage (0-100)."""
        if self.total_requests == 0:
            return 0.0
        return (self.total_errors / self.total_requests) * 100

    def format_uptime(self) -> str:
        """Format uptime as human-readable string.

        Returns:
            Formatted uptime string (e.g., "1d 2h 30m 15s").
        """
        uptime = int(self.get_uptime())
        days = uptime // 86400
        hours = (uptime % 86400) // 3600
        minutes = (uptime % 3600) // 60
        seconds = uptime % 60

        parts = []
        if days > 0:
            parts.append(f"{days}d")
        if hours > 0:
            parts.append(f"{hours}h")
        if minutes > 0:
            parts.append(f"{minutes}m")
        parts.append(f"{seconds}s")

        return " ".join(parts)

    def top_commands(self, limit: int = 5) -> list[tuple[str, int]]:
        """Get the most used commands, most frequent first."""
        return sorted(self.command_counts.items(), key=lambda item: (-item[1], item[0]))[:limit]

    def reset(self) -> None:
        """Reset all metrics to initial values."""
        self.total_requests = 0
        self.total_errors = 0
        self.total_commands = 0
        self.total_messages = 0
        self.total_callbacks = 0
        self.total_scheduled = 0
        self.rate_limited = 0
        self.denied = 0
        self.sessions_expired = 0
        self.unmatched = 0
        self.command_counts.clear()
        self.error_counts.clear()
        self.user_request_counts.clear()
        self.user_error_counts.clear()
        self.latencies.clear()
        self.start_time = time.time()
        self.last_request_time = None


def format_stats_message(
    metrics: Metrics,
    access_mode: str,
    session_stats: dict[str, int] | None = None,
    extra: dict[str, Any] | None = None,
) -> str:
    """Format metrics as the admin /stats reply.

    Args:
        metrics: Metrics to render.
        access_mode: Current access mode value.
        session_stats: Optional output of ``SessionStore.stats()``.
        extra: Additional ``label -> value`` lines (subscriptions, jobs, windows).

    Returns:
        Plain-text statistics message.
    """
    lines = [
        "Bot statistics",
        "",
        f"Access mode: {access_mode}",
        f"Uptime: {metrics.format_uptime()}",
        "",
        "Requests:",
        f"- Total: {metrics.total_requests}",
        f"- Commands: {metrics.total_commands}",
        f"- Messages: {metrics.total_messages}",
        f"- Callbacks: {metrics.total_callbacks}",
        f"- Scheduled: {metrics.total_scheduled}",
        f"- Errors: {metrics.total_errors} ({metrics.get_error_rate():.1f}%)",
        f"- Rate limited: {metrics.rate_limited}",
        f"- Denied: {metrics.denied}",
        "",
        "Latency:",
        f"- Average: {metrics.get_average_latency() * 1000:.0f}ms",
        f"- P95: {metrics.get_p95_latency() * 1000:.0f}ms",
        "",
        f"Active users: {len(metrics.user_request_counts)}",
    ]

    top = metrics.top_commands()
    if top:
        lines.append("")
        lines.append("Top commands:")
        lines.extend(f"- /{name}: {count}" for name, count in top)

    if session_stats is not None:
        lines.append("")
        lines.append("Sessions:")
        lines.append(f"- Active: {session_stats.get('active_sessions', 0)}")
        lines.append(f"- Expired: {session_stats.get('sessions_expired', 0)}")

    if extra:
        lines.append("")
        lines.extend(f"{label}: {value}" for label, value in extra.items())

    return "\n".join(lines)
