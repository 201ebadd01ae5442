"""
Partitioned ownership.

HashRing assigns keys (trigger ids, ...) to live members with consistent
hashing so that a membership change only moves the keys of the member that
joined or left. Ownership is advisory: callers still take a per-key lease in
the StateStore before acting, which keeps a single owner while two members
briefly disagree on the ring.

Uses xxhash (fast, stable across processes unlike the builtin hash()).
"""

from __future__ import annotations

import bisect
from collections.abc import Iterable

import xxhash

DEFAULT_VNODES = 64


def stable_hash(value: str) -> int:
    """63-bit xxh64 digest, stable across processes and Python versions."""
    return xxhash.xxh64(value.encode("utf-8")).intdigest() & 0x7FFFFFFFFFFFFFFF


class HashRing:
    """
    Consistent-hash ring with virtual nodes.

    Example:
        ring = HashRing(["scheduler-a", "scheduler-b"])
        if ring.owner("prod.etl.nightly") == my_id:
            ...
    """

    def __init__(self, members: Iterable[str] = (), vnodes: int = DEFAULT_VNODES):
        if vnodes < 1:
            raise ValueError(f"vnodes must be >= 1, got {vnodes}")
        self._vnodes = vnodes
        self._members: set[str] = set()
        self._points: list[int] = []
        self._owners: list[str] = []
        for member in members:
            self._members.add(member)
        self._rebuild()

    def _rebuild(self) -> None:
        ring = sorted(
            (stable_hash(f"{member}#{index}"), member)
            for member in self._members
            for index in range(self._vnodes)
        )
        self._points = [point for point, _ in ring]
        self._owners = [member for _, member in ring]

    @property
    def members(self) -> frozenset[str]:
        return frozenset(self._members)

    def update(self, members: Iterable[str]) -> bool:
        """Replace the membership; returns True if it changed."""
        new_members = set(members)
        if new_members == self._members:
            return False
        self._members = new_members
        self._rebuild()
        return True

    def owner(self, key: str) -> str | None:
        """Member owning `key`, or None when the ring is empty."""
        if not self._points:
            return None
        index = bisect.bisect(self._points, stable_hash(key)) % len(self._points)
        return self._owners[index]

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, member: object) -> bool:
        return member in self._members

    def __repr__(self) -> str:
        return f"HashRing(members={sorted(self._members)}, vnodes={self._vnodes})"
