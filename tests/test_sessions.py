"""Unit tests for session issuance, resolution and revocation."""

import asyncio
import time
from datetime import timedelta

import pytest

from portalauth.config import Settings
from portalauth.service.errors import AuthenticationError, MalformedTokenError
from portalauth.service.gate import AuthorizationGate, Outcome
from portalauth.service.sessions import SessionIssuer, new_session_token
from portalauth.storage.claim_cache import MemoryClaimCache
from portalauth.storage.errors import StoreUnavailable
from portalauth.storage.memory import MemoryStore
from portalauth.storage.models import CachedClaim, Role


class _CountingStore:
    """Wraps a store and counts calls per method name."""

    def __init__(self, inner):
        self._inner = inner
        self.calls = {}

    def __getattr__(self, name):
        target = getattr(self._inner, name)
        if not callable(target):
            return target

        def _wrapped(*args, **kwargs):
            self.calls[name] = self.calls.get(name, 0) + 1
            return target(*args, **kwargs)

        _wrapped.__name__ = name
        return _wrapped


class _BrokenCache:
    async def get(self, token):
        raise ConnectionError("redis down")

    async def put(self, token, claim, ttl_seconds):
        raise ConnectionError("redis down")

    async def evict(self, token):
        raise ConnectionError("redis down")

    async def evict_user(self, user_id):
        raise ConnectionError("redis down")


class _InterleavingStore(MemoryStore):
    """Runs ``hook`` once, just after the first role lookup returns.

    Store calls execute in a worker thread, so the hook lands between the
    issuer's store read and its cache write, as a concurrent request would.
    """

    def __init__(self):
        super().__init__()
        self.hook = None

    def get_role_by_id(self, user_id):
        role = super().get_role_by_id(user_id)
        hook, self.hook = self.hook, None
        if hook is not None:
            hook(user_id)
        return role


class TestIssue:
    async def test_token_entropy_and_shape(self, issuer, make_user):
        user = make_user("issue@example.com")
        first = await issuer.issue(user.id)
        second = await issuer.issue(user.id)

        assert len(first.token) == 43
        assert first.token != second.token
        assert first.id != second.id

    async def test_expiry_is_fixed_policy_duration(self, issuer, make_user, clock, settings):
        user = make_user("expiry@example.com")
        session = await issuer.issue(user.id)

        assert session.expires_at == clock() + timedelta(days=settings.session_ttl_days)
        assert session.created_at == clock()

    async def test_session_is_persisted(self, issuer, make_user, memory_store):
        user = make_user("persist@example.com")
        session = await issuer.issue(user.id, user_agent="pytest", ip_address="127.0.0.1")

        stored = memory_store.get_session_by_token(session.token)
        assert stored is not None
        assert stored.user_id == user.id
        assert stored.user_agent == "pytest"


class TestResolve:
    async def test_unknown_token_is_unauthenticated(self, issuer):
        with pytest.raises(AuthenticationError):
            await issuer.resolve(new_session_token())

    async def test_expired_session_is_unauthenticated(self, issuer, make_user, clock):
        user = make_user("expired@example.com")
        session = await issuer.issue(user.id)
        clock.advance(days=8)

        with pytest.raises(AuthenticationError):
            await issuer.resolve(session.token)

    async def test_expiry_boundary_counts_as_expired(self, issuer, make_user, clock):
        user = make_user("boundary@example.com")
        session = await issuer.issue(user.id)
        clock.now = session.expires_at

        with pytest.raises(AuthenticationError):
            await issuer.resolve(session.token)

    async def test_one_second_before_expiry_still_resolves(self, issuer, make_user, clock):
        user = make_user("almost@example.com")
        session = await issuer.issue(user.id)
        clock.now = session.expires_at - timedelta(seconds=1)

        principal = await issuer.resolve(session.token)
        assert principal.user_id == user.id

    async def test_malformed_token_rejected_before_store(self, memory_store, claim_cache, settings, clock):
        store = _CountingStore(memory_store)
        issuer = SessionIssuer(store, claim_cache, settings, clock=clock)

        for token in ["", "short", "a" * 42, "a" * 44, "!" * 43, "a b" + "c" * 40]:
            with pytest.raises(MalformedTokenError):
                await issuer.resolve(token)
        assert store.calls == {}

    async def test_miss_reads_store_then_hit_uses_cache(
        self, memory_store, claim_cache, settings, clock, make_user
    ):
        store = _CountingStore(memory_store)
        issuer = SessionIssuer(store, claim_cache, settings, clock=clock)
        user = make_user("cached@example.com")
        session = await issuer.issue(user.id)

        first = await issuer.resolve(session.token)
        second = await issuer.resolve(session.token)

        assert first.source == "store"
        assert second.source == "cache"
        assert second.session_id == session.id
        # One lookup plus one confirmation read after the claim is written
        assert store.calls["get_session_by_token"] == 2
        assert store.calls["get_role_by_id"] == 2

    async def test_deleted_owner_is_unauthenticated(self, issuer, make_user, memory_store):
        user = make_user("ghost@example.com")
        session = await issuer.issue(user.id)
        memory_store.users.pop(user.id)

        with pytest.raises(AuthenticationError):
            await issuer.resolve(session.token)

    async def test_cache_failures_fall_back_to_store(self, memory_store, settings, clock, make_user):
        issuer = SessionIssuer(memory_store, _BrokenCache(), settings, clock=clock)
        user = make_user("nocache@example.com")
        session = await issuer.issue(user.id)

        principal = await issuer.resolve(session.token)
        assert principal.source == "store"
        assert principal.role == Role.USER

    async def test_store_failure_propagates(self, claim_cache, settings, clock):
        class _DownStore:
            def get_session_by_token(self, token):
                raise StoreUnavailable("down", operation="get_session_by_token")

        issuer = SessionIssuer(_DownStore(), claim_cache, settings, clock=clock)
        with pytest.raises(StoreUnavailable):
            await issuer.resolve(new_session_token())

    async def test_store_timeout_is_store_unavailable(self, claim_cache, clock):
        class _SlowStore:
            def get_session_by_token(self, token):
                time.sleep(0.5)
                return None

        issuer = SessionIssuer(
            _SlowStore(), claim_cache, Settings(store_timeout_seconds=0.05), clock=clock
        )
        with pytest.raises(StoreUnavailable):
            await issuer.resolve(new_session_token())

    async def test_concurrent_resolves_agree(self, issuer, make_user, claim_cache):
        user = make_user("racer@example.com")
        session = await issuer.issue(user.id)

        results = await asyncio.gather(*(issuer.resolve(session.token) for _ in range(8)))

        assert {r.user_id for r in results} == {user.id}
        assert {r.role for r in results} == {Role.USER}
        assert len(claim_cache) == 1


class TestClaimTtl:
    async def test_claim_ttl_capped_by_setting(self, issuer, make_user, memory_store, settings):
        user = make_user("ttl@example.com")
        session = await issuer.issue(user.id)
        assert issuer.claim_ttl_seconds(session) == settings.claim_ttl_seconds

    async def test_claim_ttl_strictly_below_remaining_lifetime(self, issuer, make_user, clock):
        user = make_user("late@example.com")
        session = await issuer.issue(user.id)
        clock.now = session.expires_at - timedelta(seconds=120)

        ttl = issuer.claim_ttl_seconds(session)
        assert ttl < 120
        await issuer.resolve(session.token)
        claim = await issuer.cache.get(session.token)
        assert claim.expires_at < session.expires_at

    async def test_no_claim_cached_in_final_second(self, issuer, make_user, clock, claim_cache):
        user = make_user("final@example.com")
        session = await issuer.issue(user.id)
        clock.now = session.expires_at - timedelta(milliseconds=500)

        await issuer.resolve(session.token)
        assert len(claim_cache) == 0

    async def test_claim_expires_with_clock(self, issuer, make_user, clock, settings, memory_store):
        user = make_user("lag@example.com")
        session = await issuer.issue(user.id)
        await issuer.resolve(session.token)

        memory_store.update_role(user.id, Role.ADMIN)
        assert (await issuer.resolve(session.token)).role == Role.USER

        clock.advance(seconds=settings.claim_ttl_seconds)
        refreshed = await issuer.resolve(session.token)
        assert refreshed.role == Role.ADMIN
        assert refreshed.source == "store"


class TestRevoke:
    async def test_revoke_deletes_sessions_and_claims(self, issuer, make_user, claim_cache):
        user = make_user("revoke@example.com")
        other = make_user("bystander@example.com")
        sessions = [await issuer.issue(user.id) for _ in range(3)]
        keep = await issuer.issue(other.id)
        for session in sessions + [keep]:
            await issuer.resolve(session.token)

        removed = await issuer.revoke(user.id)

        assert removed == 3
        for session in sessions:
            assert await claim_cache.get(session.token) is None
            with pytest.raises(AuthenticationError):
                await issuer.resolve(session.token)
        assert (await issuer.resolve(keep.token)).user_id == other.id

    async def test_revoke_token_only_ends_one_session(self, issuer, make_user):
        user = make_user("logout@example.com")
        first = await issuer.issue(user.id)
        second = await issuer.issue(user.id)
        await issuer.resolve(first.token)

        assert await issuer.revoke_token(first.token)
        with pytest.raises(AuthenticationError):
            await issuer.resolve(first.token)
        assert (await issuer.resolve(second.token)).user_id == user.id

    async def test_revoke_survives_cache_failure(self, memory_store, settings, clock, make_user):
        issuer = SessionIssuer(memory_store, _BrokenCache(), settings, clock=clock)
        user = make_user("stubborn@example.com")
        session = await issuer.issue(user.id)

        assert await issuer.revoke(user.id) == 1
        assert memory_store.get_session_by_token(session.token) is None

    async def test_revoke_during_resolve_leaves_no_claim(self, claim_cache, settings, clock):
        store = _InterleavingStore()
        issuer = SessionIssuer(store, claim_cache, settings, clock=clock)
        gate = AuthorizationGate(store, issuer, settings)
        user = store.create_user("midflight@example.com")
        session = await issuer.issue(user.id)

        def _revoke(user_id):
            store.delete_sessions_by_user(user_id)
            # Worker thread, no running loop here
            asyncio.run(claim_cache.evict_user(user_id))

        store.hook = _revoke
        with pytest.raises(AuthenticationError):
            await issuer.resolve(session.token)

        assert len(claim_cache) == 0
        decision = await gate.decide("/dashboard", session.token)
        assert decision.outcome == Outcome.UNAUTHENTICATED

    async def test_role_change_during_resolve_wins(self, claim_cache, settings, clock):
        store = _InterleavingStore()
        issuer = SessionIssuer(store, claim_cache, settings, clock=clock)
        user = store.create_user("promoted@example.com")
        session = await issuer.issue(user.id)

        def _promote(user_id):
            store.update_role(user_id, Role.ADMIN)
            asyncio.run(claim_cache.evict_user(user_id))

        store.hook = _promote
        principal = await issuer.resolve(session.token)

        assert principal.role == Role.ADMIN
        assert await claim_cache.get(session.token) is None
        assert (await issuer.resolve(session.token)).role == Role.ADMIN


class TestMemoryClaimCache:
    async def test_put_get_and_expiry(self, clock):
        cache = MemoryClaimCache(clock=clock)
        claim = CachedClaim(user_id="u1", role=Role.ADMIN, expires_at=clock() + timedelta(seconds=10))
        await cache.put("tok", claim, 10)

        assert await cache.get("tok") == claim
        clock.advance(seconds=10)
        assert await cache.get("tok") is None
        assert len(cache) == 0

    async def test_zero_ttl_is_not_stored(self, clock):
        cache = MemoryClaimCache(clock=clock)
        claim = CachedClaim(user_id="u1", role=Role.USER, expires_at=clock())
        await cache.put("tok", claim, 0)
        assert await cache.get("tok") is None

    async def test_evict_user_only_touches_that_user(self, clock):
        cache = MemoryClaimCache(clock=clock)
        later = clock() + timedelta(minutes=5)
        await cache.put("a1", CachedClaim("alice", Role.USER, later), 60)
        await cache.put("a2", CachedClaim("alice", Role.USER, later), 60)
        await cache.put("b1", CachedClaim("bob", Role.USER, later), 60)

        assert await cache.evict_user("alice") == 2
        assert await cache.get("a1") is None
        assert await cache.get("b1") is not None
        assert await cache.evict_user("alice") == 0
