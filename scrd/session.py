from __future__ import annotations

import enum
import logging
import socket
import threading
from typing import TYPE_CHECKING

from . import frames
from .codec import LineReader, ReadResult, ReadStatus
from .config import RelayConfig
from .constants import EXIT, NAME_ACCEPTED, SUBMIT_NAME
from .sink import Sink, SinkClosed
from .util import normalize_name

if TYPE_CHECKING:
    from .registry import Registry
    from .stats import StatsManager


class SessionState(enum.Enum):
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    CLOSED = "closed"


class SessionHandler:
    """
    Drives one client connection through its lifecycle.

    NEGOTIATING
        Prompt with SUBMIT_NAME until a candidate is claimed in the
        registry. Collisions and unusable names simply re-prompt; there is
        no retry cap.
    ACTIVE
        Relay every received line other than EXIT to all sessions.
    CLOSED
        Terminal. A session that was ACTIVE echoes EXIT, releases its name
        (announcing the departure) and closes the stream. A session that
        never claimed a name only closes the stream.

    The handler owns its socket exclusively; the registry only ever sees
    the sink.
    """

    def __init__(
        self,
        registry: Registry,
        sock: socket.socket,
        *,
        config: RelayConfig | None = None,
        stats: StatsManager | None = None,
        label: str = "-",
    ) -> None:
        cfg = config if config is not None else RelayConfig()

        self.registry = registry
        self.stats = stats
        self.label = label
        self.log = logging.getLogger("scrd.session")

        self.name: str | None = None
        self.state = SessionState.NEGOTIATING

        self._sock = sock
        self._name_max_chars = int(cfg.name_max_chars)
        self.reader = LineReader(sock.makefile("rb"), max_line_bytes=cfg.max_line_bytes)
        self.sink = Sink(sock, label=label, queue_max=cfg.send_queue_max, stats=stats)

        self._close_lock = threading.Lock()
        self._closed = False

    def run(self) -> None:
        self.sink.start()
        self.log.debug("Session started session=%s", self.label)
        try:
            name = self._negotiate()
            if name is not None:
                self._relay(name)
        finally:
            self.close()

    def abort(self, reason: str) -> None:
        """Force the session to end from another thread."""
        self.sink.abort(reason)

    def close(self) -> None:
        """Run CLOSED-state handling. Safe to call more than once."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            was_active = self.state is SessionState.ACTIVE
            self.state = SessionState.CLOSED

        try:
            if was_active:
                self._send(EXIT)
                self.registry.release(self.name, self.sink)
        finally:
            self.sink.close()
            self.reader.close()
            try:
                self._sock.close()
            except OSError:
                pass

        self.log.info("Session closed session=%s name=%r", self.label, self.name)

    def _negotiate(self) -> str | None:
        while True:
            if not self._send(SUBMIT_NAME):
                return None

            result = self.reader.read_line()
            if not result.is_line:
                self._log_end(result)
                return None
            self._inc("lines_in")

            candidate = normalize_name(result.text, self._name_max_chars)
            if candidate is None:
                self._inc("name_rejections")
                self.log.debug("Unusable name session=%s name=%r", self.label, result.text)
                continue

            if self.registry.try_claim(candidate, self.sink, welcome=(NAME_ACCEPTED,)):
                self.name = candidate
                self.state = SessionState.ACTIVE
                self.log.info("Session active session=%s name=%r", self.label, candidate)
                return candidate

            self._inc("name_rejections")
            self.log.debug("Name taken session=%s name=%r", self.label, candidate)

    def _relay(self, name: str) -> None:
        while True:
            result = self.reader.read_line()
            if not result.is_line:
                self._log_end(result)
                return
            self._inc("lines_in")

            if result.text == EXIT:
                self.log.info("Client requested exit session=%s name=%r", self.label, name)
                return

            self.registry.broadcast(frames.message(name, result.text))
            self._inc("msgs_relayed")

    def _send(self, line: str) -> bool:
        try:
            self.sink.send(line)
        except SinkClosed:
            return False
        return True

    def _log_end(self, result: ReadResult) -> None:
        if result.status is ReadStatus.FAULT:
            self.log.warning(
                "Stream fault session=%s name=%r err=%s", self.label, self.name, result.error
            )
        else:
            self.log.info("Stream ended session=%s name=%r", self.label, self.name)

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)
