from __future__ import annotations

import os

from .constants import NAME_MAX_CHARS, RESERVED_NAMES


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_name(value, max_chars: int = NAME_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Names are echoed inside roster frames, one per line.
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in s):
        return None

    if s in RESERVED_NAMES:
        return None

    return s
