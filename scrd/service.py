from __future__ import annotations

import itertools
import logging
import signal
import socket
import ssl
import threading
import time

from .config import RelayConfig
from .credentials import build_server_context, describe_certificate
from .registry import Registry
from .session import SessionHandler
from .stats import StatsManager


class RelayService:
    """
    Accepts TLS connections and runs one session thread per client.

    The registry is constructed once here and handed to every session. The
    acceptor thread only accepts and spawns; the TLS handshake happens on
    the new session's thread so a slow or hostile peer never holds up the
    next accept. There is no cap on concurrent sessions.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("scrd.hub")

        self.stats_manager = StatsManager()
        self.registry = Registry(stats=self.stats_manager)

        self._ssl_context = ssl_context
        self._listener: socket.socket | None = None
        self._acceptor_thread: threading.Thread | None = None
        self._shutdown = threading.Event()

        # Live handlers, including ones still negotiating, so stop() can end them.
        self._sessions_lock = threading.Lock()
        self._sessions: set[SessionHandler] = set()
        self._conn_ids = itertools.count(1)

    @property
    def address(self) -> tuple[str, int]:
        if self._listener is None:
            raise RuntimeError("service is not started")
        host, port = self._listener.getsockname()[:2]
        return host, port

    def start(self) -> None:
        """Bind the listener and start accepting.

        Failure to load credentials or bind the port propagates.
        """
        if self._ssl_context is None:
            self._ssl_context = build_server_context(self.config)
            self.log.info("Server certificate %s", describe_certificate(self.config.cert_path))

        self._listener = socket.create_server(
            (self.config.host, int(self.config.port)),
            backlog=int(self.config.listen_backlog) or None,
        )
        # Periodic wakeups let the acceptor notice stop() promptly.
        self._listener.settimeout(0.5)
        self.stats_manager.set_start_time()

        self._acceptor_thread = threading.Thread(
            target=self._accept_loop,
            args=(self._listener, self._ssl_context),
            name="scrd-acceptor",
            daemon=True,
        )
        self._acceptor_thread.start()

        client_auth = "off"
        if self.config.require_client_cert:
            client_auth = "required"
        elif self.config.ca_path:
            client_auth = "optional"

        host, port = self.address
        self.log.info("Relay listening host=%s port=%s client_auth=%s", host, port, client_auth)

    def run_forever(self) -> None:
        if self._listener is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        if self._listener is not None:
            try:
                self._listener.close()
            except OSError:
                pass

        self.registry.clear()
        with self._sessions_lock:
            sessions = list(self._sessions)
        for handler in sessions:
            handler.abort("server shutting down")

        if self._acceptor_thread is not None and self._acceptor_thread is not threading.current_thread():
            self._acceptor_thread.join(timeout=2.0)

        self.log.info("Relay stopped\n%s", self.stats_manager.format_stats(online=0))

    def _accept_loop(self, listener: socket.socket, context: ssl.SSLContext) -> None:
        while not self._shutdown.is_set():
            try:
                conn, addr = listener.accept()
            except TimeoutError:
                continue
            except OSError as e:
                if self._shutdown.is_set():
                    break
                self.log.warning("Accept failed err=%s", e)
                continue

            self.stats_manager.inc("connections")
            label = f"{next(self._conn_ids)}@{addr[0]}:{addr[1]}"
            threading.Thread(
                target=self._serve,
                args=(conn, label, context),
                name=f"scrd-session-{label}",
                daemon=True,
            ).start()

    def _handshake(
        self, conn: socket.socket, label: str, context: ssl.SSLContext
    ) -> ssl.SSLSocket | None:
        try:
            conn.settimeout(float(self.config.handshake_timeout_s) or None)
            tls = context.wrap_socket(
                conn, server_side=True, do_handshake_on_connect=False
            )
            tls.do_handshake()
            # Sessions block on reads indefinitely; closing is the only cancellation.
            tls.settimeout(None)
        except (ssl.SSLError, OSError) as e:
            self.stats_manager.inc("handshake_failures")
            self.log.warning("TLS handshake failed conn=%s err=%s", label, e)
            try:
                conn.close()
            except OSError:
                pass
            return None

        peer = tls.getpeercert()
        if peer:
            subject = dict(item for rdn in peer.get("subject", ()) for item in rdn)
            self.log.info(
                "TLS established conn=%s cipher=%s peer_cn=%s",
                label,
                (tls.cipher() or ("-",))[0],
                subject.get("commonName", "-"),
            )
        else:
            self.log.info("TLS established conn=%s cipher=%s", label, (tls.cipher() or ("-",))[0])
        return tls

    def _serve(self, conn: socket.socket, label: str, context: ssl.SSLContext) -> None:
        tls = self._handshake(conn, label, context)
        if tls is None:
            return

        handler = SessionHandler(
            self.registry,
            tls,
            config=self.config,
            stats=self.stats_manager,
            label=label,
        )
        with self._sessions_lock:
            if self._shutdown.is_set():
                handler.close()
                return
            self._sessions.add(handler)

        try:
            handler.run()
        except Exception:
            self.log.exception("Session crashed conn=%s", label)
        finally:
            with self._sessions_lock:
                self._sessions.discard(handler)
