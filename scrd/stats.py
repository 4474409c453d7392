"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time


class StatsManager:
    """
    Lifetime counters for the relay.

    Tracks:
    - Connections accepted and TLS handshake failures
    - Joins, parts and rejected name candidates
    - Messages relayed and lines/bytes written
    - Per-recipient broadcast faults
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "connections": 0,
            "handshake_failures": 0,
            "joins": 0,
            "parts": 0,
            "name_rejections": 0,
            "msgs_relayed": 0,
            "broadcast_faults": 0,
            "lines_in": 0,
            "lines_out": 0,
            "bytes_out": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, *, online: int | None = None) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"scrd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        if online is not None:
            lines.append(f"online={online}")
        lines.append(
            "conns: accepted={} handshake_failures={}".format(
                c.get("connections", 0),
                c.get("handshake_failures", 0),
            )
        )
        lines.append(
            "events: joins={} parts={} name_rejections={} msgs_relayed={}".format(
                c.get("joins", 0),
                c.get("parts", 0),
                c.get("name_rejections", 0),
                c.get("msgs_relayed", 0),
            )
        )
        lines.append(
            "io: lines_in={} lines_out={} bytes_out={} broadcast_faults={}".format(
                c.get("lines_in", 0),
                c.get("lines_out", 0),
                c.get("bytes_out", 0),
                c.get("broadcast_faults", 0),
            )
        )

        return "\n".join(lines)
