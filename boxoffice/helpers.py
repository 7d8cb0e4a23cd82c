from __future__ import annotations
import asyncio
import hmac
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


_WS = re.compile(r"\s+")


def normalize_code(code: Optional[str]) -> str:
    """Order numbers and ticket ids compare without whitespace, uppercased."""
    if not code:
        return ""
    return _WS.sub("", code).upper()


def format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"


# ----------------------------
# In-process keyed locks
# ----------------------------
class KeyedLocks:
    """
    One asyncio.Lock per key, created on demand.

    async with locks.hold("early-bird", "table"):
        ...
    Keys are acquired in sorted order so two multi-key holders never
    deadlock each other. A key's lock is dropped once nobody holds or
    waits for it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)
