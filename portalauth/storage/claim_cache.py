from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Set, Tuple

from portalauth.storage.models import CachedClaim, utcnow

Clock = Callable[[], datetime]


class ClaimCache(Protocol):
    """Short-lived, advisory store of (user, role) claims keyed by token."""

    async def get(self, token: str) -> Optional[CachedClaim]: ...

    async def put(self, token: str, claim: CachedClaim, ttl_seconds: int) -> None: ...

    async def evict(self, token: str) -> None: ...

    async def evict_user(self, user_id: str) -> int: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class MemoryClaimCache:
    """Process-local claim cache driven by an injectable clock.

    Entries expire when ``clock()`` reaches the TTL deadline recorded at
    ``put`` time, so tests can move time forward without sleeping.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._claims: Dict[str, Tuple[CachedClaim, datetime]] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def get(self, token: str) -> Optional[CachedClaim]:
        now = self._clock()
        with self._lock:
            entry = self._claims.get(token)
            if entry is None:
                return None
            claim, deadline = entry
            if deadline <= now:
                self._drop(token, claim.user_id)
                return None
            return claim

    async def put(self, token: str, claim: CachedClaim, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        deadline = self._clock() + timedelta(seconds=ttl_seconds)
        with self._lock:
            previous = self._claims.get(token)
            if previous is not None and previous[0].user_id != claim.user_id:
                self._drop(token, previous[0].user_id)
            self._claims[token] = (claim, deadline)
            self._by_user.setdefault(claim.user_id, set()).add(token)

    async def evict(self, token: str) -> None:
        with self._lock:
            entry = self._claims.get(token)
            if entry is not None:
                self._drop(token, entry[0].user_id)

    async def evict_user(self, user_id: str) -> int:
        with self._lock:
            tokens = self._by_user.pop(user_id, set())
            for token in tokens:
                self._claims.pop(token, None)
            return len(tokens)

    async def close(self) -> None:
        with self._lock:
            self._claims.clear()
            self._by_user.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._claims)

    def _drop(self, token: str, user_id: str) -> None:
        # Caller holds the lock
        self._claims.pop(token, None)
        tokens = self._by_user.get(user_id)
        if tokens is not None:
            tokens.discard(token)
            if not tokens:
                self._by_user.pop(user_id, None)
