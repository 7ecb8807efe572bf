from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from portalauth.storage.models import CachedClaim, Role

# Index sets outlive any single claim; stale members only cost a no-op DEL
_INDEX_TTL_SECONDS = 24 * 60 * 60


def _claim_key(token: str) -> str:
    # Raw bearer tokens never become Redis keys
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return f"auth:claim:{digest}"


def _user_index_key(user_id: str) -> str:
    return f"auth:user_claims:{user_id}"


def _encode_claim(claim: CachedClaim) -> str:
    return json.dumps(
        {
            "user_id": claim.user_id,
            "role": claim.role.value,
            "expires_at": claim.expires_at.isoformat(),
            "session_id": claim.session_id,
        }
    )


def _decode_claim(raw: Optional[str]) -> Optional[CachedClaim]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        return CachedClaim(
            user_id=str(data["user_id"]),
            role=Role(data["role"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            session_id=data.get("session_id"),
        )
    except (ValueError, KeyError, TypeError):
        # Unreadable entries behave as a miss and get repopulated from the store
        return None


class RedisClaimCache:
    """Claim cache shared by every API node through Redis."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, token: str) -> Optional[CachedClaim]:
        return _decode_claim(await self.client.get(_claim_key(token)))

    async def put(self, token: str, claim: CachedClaim, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        key = _claim_key(token)
        index = _user_index_key(claim.user_id)
        pipe = self.client.pipeline()
        pipe.set(key, _encode_claim(claim), ex=ttl_seconds)
        pipe.sadd(index, key)
        pipe.expire(index, _INDEX_TTL_SECONDS)
        await pipe.execute()

    async def evict(self, token: str) -> None:
        key = _claim_key(token)
        claim = _decode_claim(await self.client.get(key))
        pipe = self.client.pipeline()
        pipe.delete(key)
        if claim is not None:
            pipe.srem(_user_index_key(claim.user_id), key)
        await pipe.execute()

    async def evict_user(self, user_id: str) -> int:
        index = _user_index_key(user_id)
        keys = await self.client.smembers(index)
        pipe = self.client.pipeline()
        for key in keys:
            pipe.delete(key)
        pipe.delete(index)
        await pipe.execute()
        return len(keys)

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisClaimCache:
    """Synchronous Redis claim cache for use in tests.

    Uses a sync client so the connection is never bound to one pytest event
    loop, while exposing the same awaitable surface as RedisClaimCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, token: str) -> Optional[CachedClaim]:
        return _decode_claim(self.client.get(_claim_key(token)))

    async def put(self, token: str, claim: CachedClaim, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        key = _claim_key(token)
        index = _user_index_key(claim.user_id)
        pipe = self.client.pipeline()
        pipe.set(key, _encode_claim(claim), ex=ttl_seconds)
        pipe.sadd(index, key)
        pipe.expire(index, _INDEX_TTL_SECONDS)
        pipe.execute()

    async def evict(self, token: str) -> None:
        key = _claim_key(token)
        claim = _decode_claim(self.client.get(key))
        pipe = self.client.pipeline()
        pipe.delete(key)
        if claim is not None:
            pipe.srem(_user_index_key(claim.user_id), key)
        pipe.execute()

    async def evict_user(self, user_id: str) -> int:
        index = _user_index_key(user_id)
        keys = self.client.smembers(index)
        pipe = self.client.pipeline()
        for key in keys:
            pipe.delete(key)
        pipe.delete(index)
        pipe.execute()
        return len(keys)

    async def close(self) -> None:
        self.client.close()
