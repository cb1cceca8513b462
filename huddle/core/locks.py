"""Per-entity locking for membership operations.

Operations that touch the same Team or UserAccount are serialized through
``asyncio.Lock`` objects keyed by ``(kind, id)``. Locks are always taken in
one global order (teams, then users, then assets, ascending id within a kind)
so two operations touching the same pair can never wait on each other.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

import structlog

from huddle.core.errors import LockTimeout

log = structlog.get_logger()

TEAM = "team"
USER = "user"
ASSET = "asset"

_KIND_ORDER = {TEAM: 0, USER: 1, ASSET: 2}


def team_key(team_id: str) -> tuple[str, str]:
    return (TEAM, team_id)


def user_key(user_id: str) -> tuple[str, str]:
    return (USER, user_id)


def asset_key(hash: str) -> tuple[str, str]:
    return (ASSET, hash)


def lock_order(keys: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Deduplicate keys and sort them into global acquisition order."""
    return sorted(set(keys), key=lambda k: (_KIND_ORDER[k[0]], k[1]))


@dataclass
class _Entry:
    lock: asyncio.Lock
    users: int = 0


class LockManager:
    """Hands out per-entity locks with bounded waits.

    Lock objects are created on first use and dropped once no task holds or
    waits for them, so the table only grows with concurrent activity.
    """

    def __init__(self, timeout: float = 5.0):
        """Initialize the lock manager.

        Args:
            timeout: Seconds to wait for each lock before giving up
        """
        self.timeout = timeout
        self._entries: dict[tuple[str, str], _Entry] = {}

    def _checkout(self, key: tuple[str, str]) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(lock=asyncio.Lock())
            self._entries[key] = entry
        entry.users += 1
        return entry

    def _checkin(self, key: tuple[str, str]) -> None:
        entry = self._entries[key]
        entry.users -= 1
        if entry.users == 0:
            del self._entries[key]

    def is_locked(self, key: tuple[str, str]) -> bool:
        """Check whether a key is currently held."""
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @property
    def active_keys(self) -> int:
        """Number of keys held or waited on."""
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, *keys: tuple[str, str]) -> AsyncIterator[None]:
        """Acquire every key in global order and release on exit.

        Callers that already hold team locks may nest a second ``hold`` for
        user keys; the reverse nesting would break the global order.

        Raises:
            LockTimeout: If any lock is not acquired within ``timeout``
        """
        ordered = lock_order(keys)
        acquired: list[tuple[str, str]] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                try:
                    await asyncio.wait_for(entry.lock.acquire(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    self._checkin(key)
                    log.warning("lock_timeout", kind=key[0], id=key[1], timeout=self.timeout)
                    raise LockTimeout(key, self.timeout) from None
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._entries[key].lock.release()
                self._checkin(key)
