from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidInputError,
)
from portalauth.service.sessions import SessionIssuer
from portalauth.service.store_calls import call_store
from portalauth.storage.base import CredentialStore
from portalauth.storage.errors import StoreUnavailable
from portalauth.storage.models import Principal, Role, User

logger = get_logger(__name__)


class RouteAccess(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"
    ADMIN = "admin"


class Outcome(str, Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    access: RouteAccess
    principal: Optional[Principal] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == Outcome.ALLOW


DEFAULT_ROUTE_POLICIES: Tuple[Tuple[str, RouteAccess], ...] = (
    ("/", RouteAccess.PUBLIC),
    ("/sign-in", RouteAccess.PUBLIC),
    ("/sign-up", RouteAccess.PUBLIC),
    ("/v1/auth/login", RouteAccess.PUBLIC),
    ("/v1/auth/signup", RouteAccess.PUBLIC),
    ("/healthz", RouteAccess.PUBLIC),
    ("/docs", RouteAccess.PUBLIC),
    ("/openapi.json", RouteAccess.PUBLIC),
    ("/dashboard", RouteAccess.AUTHENTICATED),
    ("/visualizations", RouteAccess.AUTHENTICATED),
    ("/v1", RouteAccess.AUTHENTICATED),
    ("/admin", RouteAccess.ADMIN),
    ("/v1/admin", RouteAccess.ADMIN),
)

_SLASHES = re.compile(r"/{2,}")


def normalize_path(path: str) -> str:
    collapsed = _SLASHES.sub("/", path or "/")
    if not collapsed.startswith("/"):
        collapsed = "/" + collapsed
    if len(collapsed) > 1:
        collapsed = collapsed.rstrip("/") or "/"
    return collapsed


class RoutePolicyTable:
    """Static prefix -> access mapping, matched on whole path segments.

    The longest matching prefix wins. The root entry ``/`` matches only the
    root itself; anything unmatched falls back to ``default``.
    """

    def __init__(
        self,
        rules: Iterable[Tuple[str, RouteAccess]] = DEFAULT_ROUTE_POLICIES,
        *,
        default: RouteAccess = RouteAccess.AUTHENTICATED,
    ) -> None:
        normalized = [(normalize_path(prefix), RouteAccess(access)) for prefix, access in rules]
        self._rules: Sequence[Tuple[str, RouteAccess]] = sorted(
            normalized, key=lambda item: len(item[0]), reverse=True
        )
        self.default = default

    def lookup(self, path: str) -> RouteAccess:
        target = normalize_path(path)
        for prefix, access in self._rules:
            if prefix == "/":
                if target == "/":
                    return access
                continue
            if target == prefix or target.startswith(prefix + "/"):
                return access
        return self.default


class AuthorizationGate:
    """Request-time admit/deny decisions.

    A cached claim is enough for routes that only need an identity. Admin
    routes always pay one uncached role read against the credential store,
    and that read is what decides.
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionIssuer,
        settings: Settings,
        *,
        policies: RoutePolicyTable | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self.policies = policies or RoutePolicyTable()

    async def _store(self, func, *args):
        return await call_store(func, *args, timeout=self.settings.store_timeout_seconds)

    async def decide(self, path: str, token: Optional[str]) -> Decision:
        access = self.policies.lookup(path)
        if access == RouteAccess.PUBLIC:
            return Decision(Outcome.ALLOW, access)
        if not token:
            return Decision(Outcome.UNAUTHENTICATED, access)

        try:
            principal = await self.sessions.resolve(token)
        except (AuthenticationError, InvalidInputError):
            return Decision(Outcome.UNAUTHENTICATED, access)
        except StoreUnavailable as exc:
            logger.error(
                "authorization_store_unavailable",
                stage="resolve",
                path=path,
                operation=exc.operation,
            )
            return Decision(Outcome.UNAUTHENTICATED, access)

        if access == RouteAccess.AUTHENTICATED:
            return Decision(Outcome.ALLOW, access, principal)

        try:
            role = await self.authoritative_role(principal.user_id)
        except StoreUnavailable as exc:
            logger.error(
                "authorization_store_unavailable",
                stage="authoritative_role",
                path=path,
                user_id=principal.user_id,
                operation=exc.operation,
            )
            return Decision(Outcome.FORBIDDEN, access, principal)

        if role is not None and role != principal.role:
            # The claim lags the store; drop it so the next resolve re-reads
            await self.sessions.evict_claim(token)
            logger.info(
                "stale_claim_evicted",
                user_id=principal.user_id,
                claimed_role=principal.role.value,
                role=role.value,
            )
        if role != Role.ADMIN:
            logger.warning(
                "admin_route_denied",
                path=path,
                user_id=principal.user_id,
                claimed_role=principal.role.value,
                role=role.value if role else None,
            )
            return Decision(Outcome.FORBIDDEN, access, principal)
        return Decision(
            Outcome.ALLOW,
            access,
            replace(principal, role=role, source="authoritative"),
        )

    async def authoritative_role(self, user_id: str) -> Optional[Role]:
        """Uncached role read; never consult the claim cache here."""
        return await self._store(self.store.get_role_by_id, user_id)

    async def require_admin(self, user_id: str, *, super_admin: bool = False) -> User:
        """Authoritative admin check for an acting user, failing closed."""
        try:
            user = await self._store(self.store.get_user_by_id, user_id)
        except StoreUnavailable as exc:
            logger.error(
                "authorization_store_unavailable",
                stage="require_admin",
                user_id=user_id,
                operation=exc.operation,
            )
            raise ForbiddenError("access denied") from exc
        if user is None or user.role != Role.ADMIN:
            raise ForbiddenError("access denied")
        if super_admin and not user.super_admin:
            raise ForbiddenError("access denied")
        return user
