"""Single-writer critical sections for credential state."""

from __future__ import annotations

import asyncio


class FamilyLocks:
    """One ``asyncio.Lock`` per provider family.

    Every read-check-write on a credential's balance, status or allocation
    runs under its family lock, so writes to one family are totally ordered
    while different families proceed independently.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_family(self, family: str) -> asyncio.Lock:
        lock = self._locks.get(family)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[family] = lock
        return lock
