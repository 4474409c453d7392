"""Line-oriented terminal client for the relay."""

from __future__ import annotations

import argparse
import logging
import socket
import ssl
import sys
import threading
from collections.abc import Iterator
from dataclasses import dataclass

from . import frames
from .codec import LineReader, ReadStatus, encode_line
from .constants import (
    DEFAULT_PORT,
    EXIT,
    MESSAGE,
    NAME_ACCEPTED,
    NEW_USER,
    REMOVE_USER,
    SUBMIT_NAME,
    USERLIST_BEGIN,
    USERLIST_END,
)
from .credentials import build_client_context

USERLIST = "USERLIST"


@dataclass(frozen=True)
class ClientEvent:
    verb: str
    arg: str | None = None
    roster: tuple[str, ...] = ()


class RelayClient:
    """
    Speaks the relay wire protocol over TLS.

    Roster blocks are folded into a single ``USERLIST`` event carrying the
    enumerated names.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        *,
        ssl_context: ssl.SSLContext,
        server_hostname: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.log = logging.getLogger("scrd.client")
        self._ssl_context = ssl_context
        self._server_hostname = server_hostname or host
        self._timeout = timeout
        self._sock: ssl.SSLSocket | None = None
        self._reader: LineReader | None = None
        self._write_lock = threading.Lock()

    def __enter__(self) -> RelayClient:
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def connect(self) -> None:
        raw = socket.create_connection((self.host, self.port), timeout=self._timeout)
        try:
            self._sock = self._ssl_context.wrap_socket(raw, server_hostname=self._server_hostname)
        except (ssl.SSLError, OSError):
            raw.close()
            raise
        self._reader = LineReader(self._sock.makefile("rb"), max_line_bytes=0)
        self.log.debug("Connected host=%s port=%s cipher=%s", self.host, self.port, self._sock.cipher())

    def send(self, text: str) -> None:
        if self._sock is None:
            raise RuntimeError("client is not connected")
        with self._write_lock:
            self._sock.sendall(encode_line(text))

    def read_event(self) -> ClientEvent | None:
        """Next server event, or None once the server has closed the stream."""
        line = self._read_line()
        while line is not None:
            try:
                frame = frames.parse_frame(line)
            except ValueError:
                self.log.warning("Ignoring unexpected line %r", line)
                line = self._read_line()
                continue

            if frame.verb == USERLIST_BEGIN:
                return self._read_roster()
            return ClientEvent(frame.verb, frame.arg)
        return None

    def events(self) -> Iterator[ClientEvent]:
        while True:
            event = self.read_event()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
        self._sock = None
        self._reader = None

    def _read_line(self) -> str | None:
        if self._reader is None:
            raise RuntimeError("client is not connected")
        result = self._reader.read_line()
        if result.status is ReadStatus.FAULT:
            raise ConnectionError(result.error)
        if result.status is ReadStatus.CLOSED:
            return None
        return result.text

    def _read_roster(self) -> ClientEvent | None:
        names: list[str] = []
        while True:
            line = self._read_line()
            if line is None:
                return None
            if line == USERLIST_END:
                return ClientEvent(USERLIST, roster=tuple(names))
            names.append(line)


def format_event(event: ClientEvent) -> str | None:
    if event.verb == NEW_USER:
        return f"*** {event.arg} joined ***"
    if event.verb == REMOVE_USER:
        return f"*** {event.arg} left ***"
    if event.verb == USERLIST:
        return "online: " + (", ".join(event.roster) if event.roster else "(nobody)")
    if event.verb == MESSAGE and event.arg is not None:
        sender, text = frames.split_message(event.arg)
        return f"<{sender}> {text}"
    return None


def _print_events(client: RelayClient) -> None:
    try:
        for event in client.events():
            if event.verb == EXIT:
                break
            text = format_event(event)
            if text:
                print(text, flush=True)
    except ConnectionError as e:
        print(f"connection lost: {e}", file=sys.stderr)


def _negotiate(client: RelayClient, first_name: str | None) -> bool:
    name = first_name
    while True:
        event = client.read_event()
        if event is None:
            return False
        if event.verb == SUBMIT_NAME:
            if name is None:
                try:
                    name = input("name> ")
                except EOFError:
                    return False
            client.send(name)
            name = None
        elif event.verb == NAME_ACCEPTED:
            return True


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="scrd-client", description="Chat on an scrd relay")
    p.add_argument("--host", default="localhost", help="Relay host")
    p.add_argument("--port", type=int, default=DEFAULT_PORT, help="Relay port")
    p.add_argument("--name", default=None, help="Display name to request first")
    p.add_argument("--ca", default=None, help="CA or server certificate to trust (PEM)")
    p.add_argument("--cert", default=None, help="Client certificate for mutual TLS (PEM)")
    p.add_argument("--key", default=None, help="Client private key (PEM)")
    p.add_argument(
        "--insecure",
        action="store_true",
        help="Skip server certificate verification (development only)",
    )
    p.add_argument("--log-level", default="WARNING", help="Logging level")
    return p


def main(argv: list[str] | None = None) -> int:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=str(args.log_level).upper())

    ctx = build_client_context(
        ca_path=args.ca, cert_path=args.cert, key_path=args.key, insecure=args.insecure
    )
    client = RelayClient(args.host, args.port, ssl_context=ctx)
    try:
        client.connect()
    except (ssl.SSLError, OSError) as e:
        print(f"cannot connect to {args.host}:{args.port}: {e}", file=sys.stderr)
        return 1

    try:
        if not _negotiate(client, args.name):
            print("server closed the connection", file=sys.stderr)
            return 1

        printer = threading.Thread(target=_print_events, args=(client,), daemon=True)
        printer.start()

        for line in sys.stdin:
            text = line.rstrip("\r\n")
            client.send(text)
            if text == EXIT:
                break
        else:
            client.send(EXIT)

        printer.join(timeout=5.0)
    except (ConnectionError, OSError) as e:
        print(f"connection lost: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
