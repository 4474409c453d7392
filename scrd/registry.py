from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Protocol

from . import frames
from .sink import SinkClosed

if TYPE_CHECKING:
    from .stats import StatsManager


class Deliverable(Protocol):
    """What the registry needs from a sink."""

    def send(self, lines: str | Iterable[str]) -> None: ...

    def abort(self, reason: str) -> None: ...


class Registry:
    """
    Process-wide record of who is online.

    Holds a single mapping from claimed display name to that session's sink,
    so a sink can never be registered without its name. One re-entrant lock
    guards the mapping and every broadcast; broadcasts iterate a snapshot
    taken under that lock and only enqueue onto sinks, so a membership change
    and the roster it announces are observed by every recipient at the same
    point in its stream.
    """

    def __init__(self, stats: StatsManager | None = None) -> None:
        self.log = logging.getLogger("scrd.registry")
        self.stats = stats
        self._lock = threading.RLock()
        self._sinks: dict[str, Deliverable] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sinks)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._sinks

    def try_claim(
        self, name: str, sink: Deliverable, welcome: Sequence[str] = ()
    ) -> bool:
        """
        Atomically pair ``name`` with ``sink`` if the name is free.

        On success, and before any other claim or release can interleave,
        ``welcome`` is delivered to the claimant alone and then the join
        notice plus the full roster are broadcast to every sink (the
        claimant included). Returns False without side effects if the name
        is already held.
        """
        if not name:
            return False

        with self._lock:
            if name in self._sinks:
                return False
            self._sinks[name] = sink

            if welcome:
                self._deliver(sink, list(welcome))

            self._broadcast_locked([frames.new_user(name), *frames.roster(self._sinks)])

        self._inc("joins")
        self.log.info("Name claimed name=%r online=%s", name, len(self))
        return True

    def release(self, name: str | None, sink: Deliverable | None = None) -> bool:
        """
        Drop ``name`` and announce the departure to everyone left.

        If ``sink`` is given the name is only released while it still maps
        to that sink. Releasing an empty or unknown name is a no-op, so
        departure handling may safely run more than once.
        """
        if not name:
            return False

        with self._lock:
            current = self._sinks.get(name)
            if current is None:
                return False
            if sink is not None and current is not sink:
                return False
            del self._sinks[name]

            self._broadcast_locked([frames.remove_user(name), *frames.roster(self._sinks)])

        self._inc("parts")
        self.log.info("Name released name=%r online=%s", name, len(self))
        return True

    def broadcast(self, lines: str | Sequence[str]) -> int:
        """Deliver one batch of lines to every active sink.

        Returns the number of sinks that accepted the batch.
        """
        if isinstance(lines, str):
            lines = [lines]
        with self._lock:
            return self._broadcast_locked(list(lines))

    def roster(self) -> list[str]:
        """Names currently online, in join order."""
        with self._lock:
            return list(self._sinks)

    def sink_for(self, name: str) -> Deliverable | None:
        with self._lock:
            return self._sinks.get(name)

    def clear(self) -> list[Deliverable]:
        """Forget every session and return their sinks for teardown."""
        with self._lock:
            sinks = list(self._sinks.values())
            self._sinks.clear()
        return sinks

    def _broadcast_locked(self, lines: list[str]) -> int:
        """
        Fan ``lines`` out to a snapshot of the current sinks.

        Must be called with the registry lock held. A failing recipient does
        not stop delivery to the others; it is aborted once the loop is done
        so its own session observes the failure.
        """
        failed: list[Deliverable] = []
        delivered = 0
        for sink in list(self._sinks.values()):
            if self._deliver(sink, lines):
                delivered += 1
            else:
                failed.append(sink)

        for sink in failed:
            sink.abort("broadcast delivery failed")

        if failed:
            self._inc("broadcast_faults", len(failed))
        self._inc("lines_out", delivered * len(lines))
        return delivered

    def _deliver(self, sink: Deliverable, lines: list[str]) -> bool:
        try:
            sink.send(lines)
        except SinkClosed:
            return False
        except OSError as e:
            self.log.warning("Delivery failed sink=%r err=%s", sink, e)
            return False
        return True

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)
