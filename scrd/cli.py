from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import RelayConfig, load_config
from .constants import DEFAULT_PORT
from .credentials import generate_self_signed
from .logging_config import configure_logging
from .paths import (
    default_cert_path,
    default_config_path,
    default_key_path,
    ensure_private_dir,
)
from .service import RelayService


def _write_default_config(config_path: str, cert_path: str, key_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# scrd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start scrd again.

[server]

# Listening address. The port is configuration, not part of the protocol.
host = "0.0.0.0"
port = {DEFAULT_PORT}

# Server certificate chain and private key (PEM).
# A self-signed pair was generated next to this file on first run.
cert_path = {cert_path!r}
key_path = {key_path!r}
key_password = ""

# Mutual TLS.
#
# ca_path: PEM bundle used to verify client certificates. When set, clients
# may present a certificate; with require_client_cert = true they must.
ca_path = ""
require_client_cert = false

# Seconds allowed for the TLS handshake of a new connection (0 disables).
handshake_timeout_s = 10.0

listen_backlog = 16

# Display names longer than this (in characters) are refused. 0 disables.
name_max_chars = 32

# Longest accepted line in UTF-8 bytes; longer lines drop the connection.
max_line_bytes = 8192

# Outbound frames buffered per client. When a client falls this far behind
# (a slow reader, or a burst from other clients) it is disconnected.
send_queue_max = 1024

[logging]

level = "INFO"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, cert_path: str, key_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, cert_path, key_path)
        created_any = True

    if not os.path.exists(cert_path) and not os.path.exists(key_path):
        for path in (cert_path, key_path):
            storage_dir = os.path.dirname(path)
            if storage_dir:
                ensure_private_dir(Path(storage_dir))
        generate_self_signed(cert_path, key_path)
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="scrd", description="Run a secure chat relay daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--host", default=None, help="Listen address (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=None, help=f"Listen port (default: {DEFAULT_PORT})")

    p.add_argument(
        "--cert",
        default=None,
        help="Server certificate PEM (default comes from config)",
    )
    p.add_argument("--key", default=None, help="Server private key PEM")
    p.add_argument("--ca", default=None, help="CA bundle for verifying client certificates")
    p.add_argument(
        "--require-client-cert",
        action="store_true",
        help="Reject clients without a certificate signed by --ca",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    cert_path = str(args.cert) if args.cert else str(default_cert_path())
    key_path = str(args.key) if args.key else str(default_key_path())

    if _ensure_first_run_files(config_path, cert_path, key_path):
        print(
            "Created default scrd files. Review the configuration before starting:\n"
            f"- Config:      {config_path}\n"
            f"- Certificate: {cert_path}\n"
            f"- Key:         {key_path}\n"
            "\nThen re-run scrd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = RelayConfig(cert_path=cert_path, key_path=key_path)
    try:
        cfg = load_config(config_path, cfg)
    except (OSError, ValueError) as e:
        print(f"Cannot load {config_path}: {e}", file=sys.stderr)
        raise SystemExit(2) from e

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.cert is not None:
        cfg = replace(cfg, cert_path=str(args.cert))
    if args.key is not None:
        cfg = replace(cfg, key_path=str(args.key))
    if args.ca is not None:
        cfg = replace(cfg, ca_path=str(args.ca) or None)
    if args.require_client_cert:
        cfg = replace(cfg, require_client_cert=True)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    try:
        svc.start()
    except (OSError, RuntimeError, ValueError) as e:
        print(f"scrd failed to start: {e}", file=sys.stderr)
        raise SystemExit(1) from e
    svc.run_forever()


if __name__ == "__main__":
    main()
