"""Default device names and the rules telling them apart from manual labels."""
from __future__ import annotations

import re
from typing import Collection, Iterable

from .data import Session
from .errors import InvalidInput

# Friendly names handed out to newly discovered devices, in order
DEFAULT_DEVICE_NAMES = (
    "Hugo",
    "Egon",
    "Tom",
    "Jerry",
    "Alice",
    "Bob",
    "Charlie",
    "Diana",
    "Emma",
    "Frank",
)

_OVERFLOW_RE = re.compile(
    r"^(?:%s) \d+$" % "|".join(re.escape(name) for name in DEFAULT_DEVICE_NAMES)
)


def default_name(index: int) -> str:
    """Return the default name for the ``index``-th pattern.

    The pool wraps once exhausted: index 10 is ``"Hugo 2"``, 21 is ``"Egon 3"``.
    """
    size = len(DEFAULT_DEVICE_NAMES)
    base = DEFAULT_DEVICE_NAMES[index % size]
    if index < size:
        return base
    return f"{base} {index // size + 1}"


def next_default_name(existing: int, taken: Collection[str] = ()) -> str:
    """First default name at or after position ``existing`` not in ``taken``."""
    index = existing
    while True:
        name = default_name(index)
        if name not in taken:
            return name
        index += 1


def is_default_name(name: str | None) -> bool:
    if not name:
        return False
    return name in DEFAULT_DEVICE_NAMES or bool(_OVERFLOW_RE.match(name))


def is_manual_name(name: str | None) -> bool:
    """True for any non-blank label a human picked."""
    if name is None or not name.strip():
        return False
    return not is_default_name(name)


def _placeholders(session: Session) -> Iterable[str]:
    if session.charger_name:
        yield session.charger_name
    if session.charger_id:
        yield session.charger_id


def manual_session_name(session: Session) -> str | None:
    """The session's device name if a human assigned it.

    Hosts label fresh sessions with the charger's own name until a device is
    known, so that placeholder does not count as a manual label.
    """
    name = session.device_name
    if not is_manual_name(name):
        return None
    if name in set(_placeholders(session)):
        return None
    return name


def clean_label(name: str | None) -> str:
    """Validate a label supplied by a user."""
    if name is None or not str(name).strip():
        raise InvalidInput("Device name must not be empty")
    return str(name).strip()
