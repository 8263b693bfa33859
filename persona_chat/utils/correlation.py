from __future__ import annotations

import itertools

_SEQ = itertools.count(1)


def make_correlation_id(room_id: str | int, character_id: str | int) -> str:
    """Return a correlation id tying budget → dispatch → materialize for one reply.

    Current format: "<roomId>-<characterId>-<n>". Keep simple for grepability.
    """
    return f"{room_id}-{character_id}-{next(_SEQ)}"
