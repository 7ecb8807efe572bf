from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Canonical form used for every email write and comparison."""
    return (email or "").strip().lower()


class Role(str, Enum):
    """Closed set of portal roles."""

    USER = "user"
    ADMIN = "admin"


# Provider ids that carry a password hash; anything else is an external login
PASSWORD_PROVIDERS = ("credential", "email")


@dataclass
class User:
    id: str
    email: str
    role: Role = Role.USER
    name: Optional[str] = None
    super_admin: bool = False
    email_verified: bool = False
    strikes: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class Credential:
    id: str
    user_id: str
    provider_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        provider_id: str,
        *,
        password_hash: str | None = None,
        password_algo: str | None = None,
    ) -> "Credential":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider_id=provider_id,
            password_hash=password_hash,
            password_algo=password_algo,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Session:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        *,
        ttl: timedelta,
        now: datetime | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=token,
            user_id=user_id,
            expires_at=issued + ttl,
            created_at=issued,
            updated_at=issued,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_expired(self, now: datetime) -> bool:
        # A session expiring exactly now is already dead
        return self.expires_at <= now


@dataclass(frozen=True)
class CachedClaim:
    """Advisory (user, role) projection stored in the claim cache."""

    user_id: str
    role: Role
    expires_at: datetime
    session_id: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role
    session_id: Optional[str] = None
    token: Optional[str] = None
    # cache | store | authoritative
    source: str = "store"
