from __future__ import annotations

import logging
import queue
import socket
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .codec import encode_lines

if TYPE_CHECKING:
    from .stats import StatsManager


class SinkClosed(RuntimeError):
    """Raised when a frame is offered to a sink that no longer accepts writes."""


class Sink:
    """
    Outbound endpoint of one session.

    Callers only enqueue; a dedicated writer thread performs the socket
    writes in FIFO order. This keeps registry broadcasts (which run under the
    registry lock) free of blocking I/O, so a stalled reader delays only its
    own deliveries.

    A write error, or a full queue, aborts the sink: the socket is shut down
    in both directions so the owning session's blocked read returns and the
    session tears itself down.
    """

    def __init__(
        self,
        sock: socket.socket,
        *,
        label: str,
        queue_max: int = 1024,
        stats: StatsManager | None = None,
    ) -> None:
        self.label = label
        self.log = logging.getLogger("scrd.sink")
        self.error: str | None = None

        self._sock = sock
        self._stats = stats
        self._queue: queue.Queue[bytes | None] = queue.Queue(maxsize=max(0, int(queue_max)))
        self._lock = threading.Lock()
        self._closed = False
        self._aborted = False
        self._thread = threading.Thread(
            target=self._run, name=f"scrd-sink-{label}", daemon=True
        )

    def __repr__(self) -> str:
        return f"<Sink {self.label}>"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def aborted(self) -> bool:
        return self._aborted

    def start(self) -> None:
        self._thread.start()

    def send(self, lines: str | Iterable[str]) -> None:
        """Queue one batch of lines; the batch is written contiguously."""
        if isinstance(lines, str):
            lines = (lines,)
        payload = encode_lines(lines)

        if self._closed:
            raise SinkClosed(f"sink {self.label} is closed")

        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            self.abort("send queue full")
            raise SinkClosed(f"sink {self.label} send queue full") from None

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop accepting frames and wait for queued frames to be written."""
        with self._lock:
            already = self._closed
            self._closed = True

        if not already:
            try:
                self._queue.put(None, timeout=timeout)
            except queue.Full:
                self.abort("flush timed out")

        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                self.abort("flush timed out")

    def abort(self, reason: str) -> None:
        """Drop queued frames and shut the socket down. Idempotent."""
        with self._lock:
            if self._aborted:
                return
            self._aborted = True
            self._closed = True
            self.error = reason

        self.log.info("Sink aborted sink=%s reason=%s", self.label, reason)

        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            # The writer is about to fail on the shut down socket anyway.
            pass

    def _run(self) -> None:
        while True:
            payload = self._queue.get()
            if payload is None or self._aborted:
                return
            try:
                self._sock.sendall(payload)
            except OSError as e:
                self.abort(f"write failed: {e}")
                return
            if self._stats is not None:
                self._stats.inc("bytes_out", len(payload))
