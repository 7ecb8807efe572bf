from __future__ import annotations

import hashlib
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable
from portalauth.storage.models import (
    Credential,
    Role,
    Session,
    User,
    normalize_email,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        super_admin BOOLEAN NOT NULL DEFAULT false,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        strikes INTEGER NOT NULL DEFAULT 0 CHECK (strikes >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider_id TEXT NOT NULL,
        password_hash TEXT,
        password_algo TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, provider_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        user_agent TEXT,
        ip_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
)


def _token_digest(token: str) -> str:
    # Only a digest of the bearer secret is ever written to the database
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PostgresStore:
    """Credential store backed by PostgreSQL through a psycopg pool."""

    def __init__(self, dsn: str, *, connect_timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=connect_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(
                "credential store unavailable", operation=operation
            ) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: Role = Role.USER,
        super_admin: bool = False,
        email_verified: bool = False,
    ) -> User:
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, super_admin, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        normalize_email(email),
                        name,
                        Role(role).value,
                        super_admin,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._row_to_user(row)

    def create_user_with_password(
        self,
        email: str,
        *,
        provider_id: str,
        password_hash: str,
        password_algo: str,
        name: Optional[str] = None,
        role: Role = Role.USER,
    ) -> User:
        """Insert the user and its credential in one transaction."""
        user_id = str(uuid.uuid4())
        credential = Credential.new(
            user_id, provider_id, password_hash=password_hash, password_algo=password_algo
        )
        try:
            with self._connect("create_user_with_password") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalize_email(email), name, Role(role).value),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_credential (
                        id, user_id, provider_id, password_hash, password_algo, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.user_id,
                        credential.provider_id,
                        credential.password_hash,
                        credential.password_algo,
                        credential.created_at,
                        credential.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        with self._connect("get_user_by_id") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_role_by_id(self, user_id: str) -> Optional[Role]:
        if not self._is_uuid(user_id):
            return None
        with self._connect("get_role_by_id") as conn:
            row = conn.execute("SELECT role FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return Role(row["role"]) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect("list_users") as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_role(self, user_id: str, role: Role) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        with self._connect("update_role") as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_strikes(self, user_id: str, strikes: int) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        with self._connect("update_strikes") as conn:
            row = conn.execute(
                "UPDATE app_user SET strikes = %s, updated_at = now() WHERE id = %s RETURNING *",
                (strikes, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # credentials
    def get_credential_by_user_and_provider(
        self, user_id: str, provider_id: str
    ) -> Optional[Credential]:
        if not self._is_uuid(user_id):
            return None
        with self._connect("get_credential") as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s AND provider_id = %s",
                (user_id, provider_id),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def replace_credential(self, credential: Credential) -> Credential:
        try:
            with self._connect("replace_credential") as conn:
                conn.execute(
                    "DELETE FROM user_credential WHERE user_id = %s AND provider_id = %s",
                    (credential.user_id, credential.provider_id),
                )
                row = conn.execute(
                    """
                    INSERT INTO user_credential (
                        id, user_id, provider_id, password_hash, password_algo, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        credential.id,
                        credential.user_id,
                        credential.provider_id,
                        credential.password_hash,
                        credential.password_algo,
                        credential.created_at,
                        credential.updated_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "credential owner missing", {"user_id": credential.user_id}
            ) from exc
        return self._row_to_credential(row)

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect("create_session") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, token_hash, user_id, expires_at, created_at, updated_at, user_agent, ip_address
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        _token_digest(session.token),
                        session.user_id,
                        session.expires_at,
                        session.created_at,
                        session.updated_at,
                        session.user_agent,
                        session.ip_address,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session token collision", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session owner missing", {"user_id": session.user_id}
            ) from exc
        return session

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect("get_session_by_token") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s", (_token_digest(token),)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            token=token,
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    def delete_session_by_token(self, token: str) -> bool:
        with self._connect("delete_session_by_token") as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE token_hash = %s", (_token_digest(token),)
            )
            return cur.rowcount > 0

    def delete_sessions_by_user(self, user_id: str) -> int:
        if not self._is_uuid(user_id):
            return 0
        with self._connect("delete_sessions_by_user") as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect("delete_expired_sessions") as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return cur.rowcount

    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=Role(row.get("role", "user")),
            name=row.get("name"),
            super_admin=bool(row.get("super_admin", False)),
            email_verified=bool(row.get("email_verified", False)),
            strikes=int(row.get("strikes", 0)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_credential(row: dict) -> Credential:
        return Credential(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider_id=row["provider_id"],
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )
