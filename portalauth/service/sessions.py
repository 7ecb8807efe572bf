from __future__ import annotations

import math
import re
import secrets
from datetime import timedelta
from typing import Optional

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import AuthenticationError, MalformedTokenError
from portalauth.service.store_calls import call_store
from portalauth.storage.base import CredentialStore
from portalauth.storage.claim_cache import ClaimCache, Clock
from portalauth.storage.errors import StoreUnavailable
from portalauth.storage.models import CachedClaim, Principal, Role, Session, utcnow

logger = get_logger(__name__)

# token_urlsafe(32) always yields 43 characters (256 bits of entropy)
TOKEN_BYTES = 32
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43}$")


def new_session_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def check_token_shape(token: str) -> None:
    if not isinstance(token, str) or not _TOKEN_PATTERN.fullmatch(token):
        raise MalformedTokenError("malformed session token")


class SessionIssuer:
    """Issues sessions and resolves bearer tokens to a principal.

    Resolution reads the claim cache first and falls back to the store on a
    miss. Claims written back to the cache always expire strictly before the
    session they were derived from.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: ClaimCache,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._session_ttl = timedelta(days=settings.session_ttl_days)

    async def _store(self, func, *args):
        return await call_store(func, *args, timeout=self.settings.store_timeout_seconds)

    async def issue(
        self,
        user_id: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        session = Session.new(
            user_id,
            new_session_token(),
            ttl=self._session_ttl,
            now=self._clock(),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        stored = await self._store(self.store.create_session, session)
        logger.info(
            "session_issued",
            user_id=user_id,
            session_id=stored.id,
            expires_at=stored.expires_at.isoformat(),
        )
        return stored

    async def resolve(self, token: str) -> Principal:
        check_token_shape(token)
        now = self._clock()

        claim = await self._cached_claim(token)
        if claim is not None and claim.expires_at > now:
            return Principal(
                user_id=claim.user_id,
                role=claim.role,
                session_id=claim.session_id,
                token=token,
                source="cache",
            )

        session = await self._store(self.store.get_session_by_token, token)
        if session is None:
            raise AuthenticationError("session not found")
        if session.is_expired(now):
            raise AuthenticationError("session expired")
        role = await self._store(self.store.get_role_by_id, session.user_id)
        if role is None:
            logger.warning("session_owner_missing", user_id=session.user_id, session_id=session.id)
            raise AuthenticationError("session not found")

        ttl = self.claim_ttl_seconds(session)
        if ttl >= 1:
            written = await self._populate_claim(
                token,
                CachedClaim(
                    user_id=session.user_id,
                    role=role,
                    expires_at=now + timedelta(seconds=ttl),
                    session_id=session.id,
                ),
                ttl,
            )
            if written:
                role = await self._confirm_claim(token, session, role)
        return Principal(
            user_id=session.user_id,
            role=role,
            session_id=session.id,
            token=token,
            source="store",
        )

    def claim_ttl_seconds(self, session: Session) -> int:
        """Whole seconds a claim may live, always below the session's remainder."""
        remaining = (session.expires_at - self._clock()).total_seconds()
        # floor(remaining) - 1 keeps the TTL strictly shorter even for whole seconds
        bound = math.floor(remaining) - 1
        return max(0, min(self.settings.claim_ttl_seconds, bound))

    async def revoke(self, user_id: str) -> int:
        """Delete every session of ``user_id`` and drop their cached claims."""
        removed = await self._store(self.store.delete_sessions_by_user, user_id)
        await self.evict_user_claims(user_id)
        logger.info("user_sessions_revoked", user_id=user_id, sessions=removed)
        return removed

    async def revoke_token(self, token: str) -> bool:
        check_token_shape(token)
        removed = await self._store(self.store.delete_session_by_token, token)
        await self.evict_claim(token)
        return removed

    async def evict_claim(self, token: str) -> None:
        try:
            await self.cache.evict(token)
        except Exception as exc:
            logger.warning("claim_eviction_failed", error=str(exc))

    async def evict_user_claims(self, user_id: str) -> Optional[int]:
        """Best-effort eviction; the claim TTL bounds staleness if this fails."""
        try:
            return await self.cache.evict_user(user_id)
        except Exception as exc:
            logger.warning("user_claim_eviction_failed", user_id=user_id, error=str(exc))
            return None

    async def _cached_claim(self, token: str) -> Optional[CachedClaim]:
        try:
            return await self.cache.get(token)
        except Exception as exc:
            # The cache is advisory; fall through to the store
            logger.warning("claim_cache_read_failed", error=str(exc))
            return None

    async def _populate_claim(self, token: str, claim: CachedClaim, ttl: int) -> bool:
        try:
            await self.cache.put(token, claim, ttl)
        except Exception as exc:
            logger.warning("claim_cache_write_failed", user_id=claim.user_id, error=str(exc))
            return False
        return True

    async def _confirm_claim(self, token: str, session: Session, role: Role) -> Role:
        """Re-read after the cache write so a concurrent revoke or role change wins.

        Revocation and role mutation both change the store before they evict.
        Any such change that landed between the first read and the write is
        visible here, and the claim that may have outlived its eviction is
        dropped.
        """
        try:
            current = await self._store(self.store.get_session_by_token, token)
            current_role = (
                await self._store(self.store.get_role_by_id, session.user_id)
                if current is not None
                else None
            )
        except StoreUnavailable:
            await self.evict_claim(token)
            raise
        if current is None or current_role is None:
            await self.evict_claim(token)
            logger.info("claim_dropped_after_revoke", user_id=session.user_id, session_id=session.id)
            raise AuthenticationError("session not found")
        if current_role != role:
            await self.evict_claim(token)
            logger.info(
                "claim_dropped_after_role_change",
                user_id=session.user_id,
                claimed_role=role.value,
                role=current_role.value,
            )
        return current_role
