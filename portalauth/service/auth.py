from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Optional, Tuple

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from portalauth.service.passwords import PasswordHash, PasswordPolicy
from portalauth.service.sessions import SessionIssuer
from portalauth.service.store_calls import call_store
from portalauth.storage.base import CredentialStore
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import (
    PASSWORD_PROVIDERS,
    Credential,
    Role,
    Session,
    User,
    normalize_email,
)

logger = get_logger(__name__)

DEFAULT_PASSWORD_PROVIDER = PASSWORD_PROVIDERS[0]


class AuthService:
    """Account flows built from the password policy and the session issuer."""

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionIssuer,
        passwords: PasswordPolicy,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.passwords = passwords
        self.settings = settings

    async def _store(self, func, *args, **kwargs):
        return await call_store(
            func, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    # argon2 at the pinned cost holds 64 MiB per call; runs in a worker thread
    async def _hash(self, password: str) -> PasswordHash:
        return await asyncio.to_thread(self.passwords.hash, password)

    async def _verify(self, credential: Credential, password: str) -> bool:
        return await asyncio.to_thread(
            self.passwords.verify,
            credential.password_hash,
            password,
            credential.password_algo or "",
        )

    async def signup(
        self,
        email: str,
        password: str,
        *,
        name: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Tuple[User, Session]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        hashed = await self._hash(password)
        try:
            # Self-registration can only ever produce the base role
            user = await self._store(
                self.store.create_user_with_password,
                normalize_email(email),
                provider_id=DEFAULT_PASSWORD_PROVIDER,
                password_hash=hashed.digest,
                password_algo=hashed.algo,
                name=name,
                role=Role.USER,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        session = await self.sessions.issue(
            user.id, user_agent=user_agent, ip_address=ip_address
        )
        logger.info("user_signed_up", user_id=user.id)
        return user, session

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Tuple[User, Session]:
        user = await self._store(self.store.get_user_by_email, normalize_email(email))
        credential = await self._password_credential(user.id) if user else None
        if credential is None:
            await asyncio.to_thread(self.passwords.verify_dummy, password)
            logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError("invalid credentials")

        if not await self._verify(credential, password):
            logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise AuthenticationError("invalid credentials")

        if self.passwords.needs_rehash(credential.password_hash, credential.password_algo or ""):
            await self._upgrade_credential(credential, password)

        session = await self.sessions.issue(
            user.id, user_agent=user_agent, ip_address=ip_address
        )
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return user, session

    async def logout(self, token: str) -> None:
        await self.sessions.revoke_token(token)

    async def current_user(self, user_id: str) -> User:
        user = await self._store(self.store.get_user_by_id, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        """Replace the password credential and start over with one fresh session."""
        credential = await self._password_credential(user_id)
        if credential is None or not await self._verify(credential, current_password):
            raise AuthenticationError("current password is incorrect")

        hashed = await self._hash(new_password)
        await self._store(
            self.store.replace_credential,
            Credential.new(
                user_id,
                credential.provider_id,
                password_hash=hashed.digest,
                password_algo=hashed.algo,
            ),
        )
        revoked = await self.sessions.revoke(user_id)
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return await self.sessions.issue(
            user_id, user_agent=user_agent, ip_address=ip_address
        )

    async def _password_credential(self, user_id: str) -> Optional[Credential]:
        for provider_id in PASSWORD_PROVIDERS:
            credential = await self._store(
                self.store.get_credential_by_user_and_provider, user_id, provider_id
            )
            if credential is not None and credential.password_hash:
                return credential
        return None

    async def _upgrade_credential(self, credential: Credential, password: str) -> None:
        hashed = await self._hash(password)
        upgraded = replace(
            Credential.new(
                credential.user_id,
                credential.provider_id,
                password_hash=hashed.digest,
                password_algo=hashed.algo,
            ),
            created_at=credential.created_at,
        )
        await self._store(self.store.replace_credential, upgraded)
        logger.info(
            "password_rehashed",
            user_id=credential.user_id,
            previous_algo=credential.password_algo,
            algo=hashed.algo,
        )
