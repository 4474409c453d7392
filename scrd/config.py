from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import DEFAULT_PORT, MAX_LINE_BYTES, NAME_MAX_CHARS


@dataclass(frozen=True)
class RelayConfig:
    config_path: str | None = None
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    cert_path: str | None = None
    key_path: str | None = None
    key_password: str | None = None
    ca_path: str | None = None
    require_client_cert: bool = False
    handshake_timeout_s: float = 10.0
    listen_backlog: int = 16
    name_max_chars: int = NAME_MAX_CHARS
    max_line_bytes: int = MAX_LINE_BYTES
    send_queue_max: int = 1024
    log_level: str = "INFO"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_OPTIONAL_STRINGS = ("cert_path", "key_path", "key_password", "ca_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayConfig, data: dict) -> RelayConfig:
    """Overlay values from a parsed TOML document onto ``base``.

    Keys may live at the top level or under ``[server]``; the ``[logging]``
    table maps onto the ``log_*`` fields. Unknown keys are ignored.
    """
    server = data.get("server") if isinstance(data, dict) else None
    if isinstance(server, dict):
        data = {**data, **server}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for key in ("level", "console", "file", "format", "datefmt"):
            if key in log_table:
                mapped[f"log_{key}"] = log_table.get(key)
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the file was loaded from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    for key in _OPTIONAL_STRINGS:
        if key in updates and updates[key] == "":
            updates[key] = None

    if "port" in updates:
        port = int(updates["port"])
        if not 0 <= port <= 65535:
            raise ValueError(f"port out of range: {port}")
        updates["port"] = port

    for key in ("listen_backlog", "name_max_chars", "max_line_bytes", "send_queue_max"):
        if key in updates:
            value = int(updates[key])
            if value < 0:
                raise ValueError(f"{key} must not be negative")
            updates[key] = value

    if "handshake_timeout_s" in updates:
        updates["handshake_timeout_s"] = float(updates["handshake_timeout_s"])

    return replace(base, **updates) if updates else base


def load_config(path: str, base: RelayConfig | None = None) -> RelayConfig:
    cfg = base if base is not None else RelayConfig()
    cfg = apply_config_data(cfg, load_toml(path))
    return replace(cfg, config_path=path)
