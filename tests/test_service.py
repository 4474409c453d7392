import socket
import ssl
import time
from dataclasses import replace

import pytest
from cryptography.hazmat.primitives import serialization

from scrd.client import USERLIST, ClientEvent, RelayClient, format_event
from scrd.config import RelayConfig
from scrd.credentials import (
    build_client_context,
    describe_certificate,
    issue_certificate,
    write_pem,
)
from scrd.service import RelayService


@pytest.fixture(scope="module")
def pki(tmp_path_factory):
    base = tmp_path_factory.mktemp("pki")
    ca = issue_certificate("scrd-test-ca", ca=True)
    server = issue_certificate("localhost", issuer=ca)
    client = issue_certificate("test-client", issuer=ca)

    paths = {
        "ca": base / "ca.pem",
        "server_cert": base / "server_cert.pem",
        "server_key": base / "server_key.pem",
        "client_cert": base / "client_cert.pem",
        "client_key": base / "client_key.pem",
    }
    paths["ca"].write_bytes(ca[0].public_bytes(serialization.Encoding.PEM))
    write_pem(*server, paths["server_cert"], paths["server_key"])
    write_pem(*client, paths["client_cert"], paths["client_key"])
    return {k: str(v) for k, v in paths.items()}


@pytest.fixture
def config(pki) -> RelayConfig:
    return RelayConfig(
        host="127.0.0.1",
        port=0,
        cert_path=pki["server_cert"],
        key_path=pki["server_key"],
        handshake_timeout_s=2.0,
    )


def _start(config: RelayConfig) -> RelayService:
    svc = RelayService(config)
    svc.start()
    return svc


def _client(svc: RelayService, pki, *, with_cert: bool = False) -> RelayClient:
    ctx = build_client_context(
        ca_path=pki["ca"],
        cert_path=pki["client_cert"] if with_cert else None,
        key_path=pki["client_key"] if with_cert else None,
    )
    _, port = svc.address
    client = RelayClient("127.0.0.1", port, ssl_context=ctx, server_hostname="localhost", timeout=5.0)
    client.connect()
    return client


def _join(client: RelayClient, name: str) -> list[ClientEvent]:
    assert client.read_event() == ClientEvent("SUBMIT_NAME")
    client.send(name)
    return [client.read_event() for _ in range(3)]


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_describe_certificate_reports_subject(pki) -> None:
    text = describe_certificate(pki["server_cert"])
    assert "cn=localhost" in text
    assert "expires=" in text


def test_chat_round_trip_over_tls(config, pki) -> None:
    svc = _start(config)
    alice = bob = None
    try:
        alice = _client(svc, pki)
        assert _join(alice, "alice") == [
            ClientEvent("NAME_ACCEPTED"),
            ClientEvent("NEW_USER", "alice"),
            ClientEvent(USERLIST, roster=("alice",)),
        ]

        bob = _client(svc, pki)
        assert bob.read_event() == ClientEvent("SUBMIT_NAME")
        bob.send("alice")
        assert bob.read_event() == ClientEvent("SUBMIT_NAME")
        bob.send("bob")
        assert bob.read_event() == ClientEvent("NAME_ACCEPTED")
        assert bob.read_event() == ClientEvent("NEW_USER", "bob")
        assert set(bob.read_event().roster) == {"alice", "bob"}

        assert alice.read_event() == ClientEvent("NEW_USER", "bob")
        assert set(alice.read_event().roster) == {"alice", "bob"}

        alice.send("hello")
        expected = ClientEvent("MESSAGE", "alice: hello")
        assert alice.read_event() == expected
        assert bob.read_event() == expected
        assert format_event(expected) == "<alice> hello"

        bob.send("EXIT")
        assert bob.read_event() == ClientEvent("EXIT")

        assert alice.read_event() == ClientEvent("REMOVE_USER", "bob")
        assert alice.read_event() == ClientEvent(USERLIST, roster=("alice",))
        assert svc.registry.roster() == ["alice"]
    finally:
        for c in (alice, bob):
            if c is not None:
                c.close()
        svc.stop()

    assert svc.stats_manager.get("joins") == 2
    assert svc.stats_manager.get("msgs_relayed") == 1


def test_garbage_handshake_does_not_stop_acceptor(config, pki) -> None:
    svc = _start(config)
    try:
        with socket.create_connection(svc.address, timeout=5.0) as raw:
            raw.sendall(b"this is not TLS\r\n\r\n")
            assert _wait_for(lambda: svc.stats_manager.get("handshake_failures") >= 1)

        client = _client(svc, pki)
        try:
            events = _join(client, "carol")
            assert events[0] == ClientEvent("NAME_ACCEPTED")
        finally:
            client.close()
    finally:
        svc.stop()


def test_mutual_tls_rejects_clients_without_certificate(config, pki) -> None:
    svc = _start(replace(config, ca_path=pki["ca"], require_client_cert=True))
    try:
        anonymous = None
        try:
            anonymous = _client(svc, pki)
            event = anonymous.read_event()
        except (ssl.SSLError, ConnectionError, OSError):
            event = None
        finally:
            if anonymous is not None:
                anonymous.close()
        assert event is None
        assert _wait_for(lambda: svc.stats_manager.get("handshake_failures") >= 1)

        trusted = _client(svc, pki, with_cert=True)
        try:
            assert _join(trusted, "dave")[0] == ClientEvent("NAME_ACCEPTED")
        finally:
            trusted.close()
    finally:
        svc.stop()


def test_stop_ends_live_sessions(config, pki) -> None:
    svc = _start(config)
    client = _client(svc, pki)
    try:
        _join(client, "erin")
        svc.stop()
        try:
            list(client.events())
        except ConnectionError as e:
            assert "timed out" not in str(e)
        assert svc.registry.roster() == []
    finally:
        client.close()
        svc.stop()


def test_start_without_credentials_fails() -> None:
    svc = RelayService(RelayConfig(host="127.0.0.1", port=0))
    with pytest.raises(RuntimeError):
        svc.start()
