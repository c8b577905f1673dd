"""
cache/store.py -- In-memory, TTL-bound cache for one-time verification codes.

Holds at most one live code per email address. Entries expire passively:
every read checks the expiry, so an entry past its TTL is treated as absent
even if the background sweep (purge_expired) has not run yet.

A single lock guards the mapping. It is held only for dict operations, never
across I/O, so unrelated addresses never wait on each other for long.
redeem() compares and deletes under that same lock -- two concurrent
redemptions of one code cannot both succeed.

Nothing here is persisted; a restart forgets every outstanding code and
users simply request a new one.

Usage:
    cache = CodeCache()
    cache.put("ann@example.com", "482913", ttl=300)
    code, found = cache.try_get("ann@example.com")
    cache.redeem("ann@example.com", "482913")   # CodeMatch.MATCHED, entry gone
    cache.purge_expired()                       # call periodically to trim old entries

Layer rule: stdlib only. No imports from api/, auth/, or core/.
"""

from __future__ import annotations

import hmac
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional

_DEFAULT_TTL = 5 * 60  # 5 minutes in seconds


class CodeMatch(str, Enum):
    MISSING = "missing"
    MISMATCH = "mismatch"
    MATCHED = "matched"


@dataclass
class _Entry:
    code: str
    created_at: float
    expires_at: float


def _key(email: str) -> str:
    return email.strip().lower()


class CodeCache:
    def __init__(self, ttl: float = _DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def put(self, email: str, code: str, ttl: Optional[float] = None) -> None:
        """Store code for email, superseding any code issued earlier."""
        now = self._clock()
        duration = self.ttl if ttl is None else ttl
        with self._lock:
            self._entries[_key(email)] = _Entry(code=code, created_at=now, expires_at=now + duration)

    def try_get(self, email: str) -> tuple[Optional[str], bool]:
        """Return (code, True) for a live entry, (None, False) otherwise."""
        key = _key(email)
        with self._lock:
            entry = self._live_entry(key)
        if entry is None:
            return None, False
        return entry.code, True

    def delete(self, email: str) -> None:
        """Remove the entry for email. Deleting an absent key is a no-op."""
        with self._lock:
            self._entries.pop(_key(email), None)

    def redeem(self, email: str, code: str) -> CodeMatch:
        """Consume the live code for email if it equals code.

        A mismatch leaves the entry in place so the user can retry within
        the remaining TTL.
        """
        key = _key(email)
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return CodeMatch.MISSING
            if not hmac.compare_digest(entry.code.encode(), code.encode()):
                return CodeMatch.MISMATCH
            del self._entries[key]
            return CodeMatch.MATCHED

    def purge_expired(self) -> int:
        """Delete all entries past their expiry. Returns number of entries removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def _live_entry(self, key: str) -> Optional[_Entry]:
        # Caller holds self._lock.
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
