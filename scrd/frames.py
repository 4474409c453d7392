from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .constants import (
    EXIT,
    MESSAGE,
    NAME_ACCEPTED,
    NEW_USER,
    REMOVE_USER,
    SUBMIT_NAME,
    USERLIST_BEGIN,
    USERLIST_END,
)

_BARE_VERBS = frozenset({SUBMIT_NAME, NAME_ACCEPTED, USERLIST_BEGIN, USERLIST_END, EXIT})
_ARG_VERBS = (NEW_USER, REMOVE_USER, MESSAGE)


def new_user(name: str) -> str:
    return f"{NEW_USER} {name}"


def remove_user(name: str) -> str:
    return f"{REMOVE_USER} {name}"


def message(name: str, text: str) -> str:
    return f"{MESSAGE} {name}: {text}"


def roster(names: Iterable[str]) -> list[str]:
    return [USERLIST_BEGIN, *names, USERLIST_END]


@dataclass(frozen=True)
class Frame:
    verb: str
    arg: str | None = None


def parse_frame(line: str) -> Frame:
    """Classify a server-to-client line.

    Names inside a roster block are not frames; callers tracking a roster
    must consume them before calling this.
    """
    if not isinstance(line, str):
        raise TypeError("frame must be a string")

    if line in _BARE_VERBS:
        return Frame(line)

    for verb in _ARG_VERBS:
        if line.startswith(verb + " "):
            return Frame(verb, line[len(verb) + 1 :])

    raise ValueError(f"unknown frame {line!r}")


def split_message(arg: str) -> tuple[str, str]:
    sender, sep, text = arg.partition(": ")
    if not sep:
        raise ValueError(f"malformed MESSAGE body {arg!r}")
    return sender, text
