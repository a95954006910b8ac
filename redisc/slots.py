"""Hash-slot computation for keys of a redis cluster."""

from __future__ import annotations

from collections.abc import Iterable

from .crc16 import crc16

HASH_SLOTS = 16384


def slot(key: str | bytes) -> int:
    """Return the cluster hash slot of *key*, honouring ``{hash tags}``."""
    data = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    start = data.find(b"{")
    if start >= 0:
        end = data.find(b"}", start + 1)
        # an empty tag "{}" is ignored and the whole key is hashed
        if end > start + 1:
            data = data[start + 1 : end]
    return crc16(data) % HASH_SLOTS


def split_by_slot(keys: Iterable[str]) -> list[list[str]]:
    """Group *keys* by hash slot.

    Keys keep their relative order inside a group, and groups are ordered by
    ascending slot number.
    """
    groups: dict[int, list[str]] = {}
    for key in keys:
        groups.setdefault(slot(key), []).append(key)
    return [groups[s] for s in sorted(groups)]