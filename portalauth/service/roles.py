from __future__ import annotations

from typing import Any, List

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import InvalidInputError, InvalidRoleError, NotFoundError
from portalauth.service.gate import AuthorizationGate
from portalauth.service.sessions import SessionIssuer
from portalauth.service.store_calls import call_store
from portalauth.storage.base import CredentialStore
from portalauth.storage.models import Role, User

logger = get_logger(__name__)


def parse_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    if not isinstance(value, str) or not value:
        raise InvalidRoleError("role is required", error_code="missing_role")
    try:
        return Role(value)
    except ValueError as exc:
        raise InvalidRoleError(
            "role must be one of: " + ", ".join(r.value for r in Role),
            detail={"role": value[:32]},
        ) from exc


def parse_strikes(value: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidInputError(
            "strikes must be a non-negative integer", error_code="invalid_strikes"
        )
    return value


class RoleService:
    """Administrative mutations of user role and standing."""

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionIssuer,
        gate: AuthorizationGate,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.gate = gate
        self.settings = settings

    async def _store(self, func, *args):
        return await call_store(func, *args, timeout=self.settings.store_timeout_seconds)

    async def set_role(self, acting_admin_id: str, target_user_id: str, new_role: Any) -> User:
        role = parse_role(new_role)
        actor = await self.gate.require_admin(
            acting_admin_id,
            super_admin=self.settings.require_super_admin_for_role_changes,
        )
        target = await self._store(self.store.get_user_by_id, target_user_id)
        if target is None:
            raise NotFoundError("user not found", detail={"user_id": target_user_id})

        previous = target.role
        updated = target
        if previous != role:
            updated = await self._store(self.store.update_role, target_user_id, role)
            if updated is None:
                raise NotFoundError("user not found", detail={"user_id": target_user_id})

        # Existing sessions stay valid; only their cached claims are dropped
        evicted = await self.sessions.evict_user_claims(target_user_id)
        if evicted is None:
            logger.warning(
                "role_claim_eviction_failed",
                target_user_id=target_user_id,
                claim_ttl_seconds=self.settings.claim_ttl_seconds,
            )
        logger.info(
            "user_role_updated",
            actor_id=actor.id,
            target_user_id=target_user_id,
            previous_role=previous.value,
            role=role.value,
            changed=previous != role,
            claims_evicted=evicted,
        )
        return updated

    async def set_strikes(self, acting_admin_id: str, target_user_id: str, strikes: Any) -> User:
        count = parse_strikes(strikes)
        actor = await self.gate.require_admin(acting_admin_id)
        updated = await self._store(self.store.update_strikes, target_user_id, count)
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": target_user_id})
        logger.info(
            "user_strikes_updated",
            actor_id=actor.id,
            target_user_id=target_user_id,
            strikes=count,
        )
        return updated

    async def list_users(self, acting_admin_id: str, limit: int = 100) -> List[User]:
        await self.gate.require_admin(acting_admin_id)
        return await self._store(self.store.list_users, limit)
