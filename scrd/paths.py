from __future__ import annotations

import os
from pathlib import Path


def default_scrd_dir() -> Path:
    override = os.environ.get("SCRD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".scrd"


def default_config_path() -> Path:
    return default_scrd_dir() / "scrd.toml"


def default_cert_path() -> Path:
    return default_scrd_dir() / "server_cert.pem"


def default_key_path() -> Path:
    return default_scrd_dir() / "server_key.pem"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
