from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.models import (
    Credential,
    Role,
    Session,
    User,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Records are handed out as copies so callers cannot mutate store state
    behind the lock. When ``state_path`` is set the whole state is rewritten
    to that JSON file after every mutation and reloaded on start.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # (user_id, provider_id) -> Credential
        self.credentials: Dict[Tuple[str, str], Credential] = {}
        # token -> Session
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self._load_state()

    def verify_connection(self) -> None:
        return None

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
        with self._data_lock:
            user = self._insert_user(
                email,
                name=name,
                role=role,
                super_admin=super_admin,
                email_verified=email_verified,
            )
            self._persist_state()
            return replace(user)

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
        """Create a user and its password credential, both or neither."""
        with self._data_lock:
            user = self._insert_user(email, name=name, role=role)
            try:
                self._store_credential(
                    Credential.new(
                        user.id,
                        provider_id,
                        password_hash=password_hash,
                        password_algo=password_algo,
                    )
                )
            except Exception:
                self.users.pop(user.id, None)
                raise
            self._persist_state()
            return replace(user)

    def _insert_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: Role = Role.USER,
        super_admin: bool = False,
        email_verified: bool = False,
    ) -> User:
        # Caller holds _data_lock and persists
        normalized = normalize_email(email)
        if any(existing.email == normalized for existing in self.users.values()):
            raise ConstraintViolation("email already exists", {"field": "email"})
        now = utcnow()
        user = User(
            id=str(uuid.uuid4()),
            email=normalized,
            role=Role(role),
            name=name,
            super_admin=super_admin,
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )
        self.users[user.id] = user
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_role_by_id(self, user_id: str) -> Optional[Role]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.role if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [replace(u) for u in ordered[:limit]]

    def update_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_strikes(self, user_id: str, strikes: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.strikes = strikes
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    # credentials
    def get_credential_by_user_and_provider(
        self, user_id: str, provider_id: str
    ) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get((user_id, provider_id))
            return replace(credential) if credential else None

    def replace_credential(self, credential: Credential) -> Credential:
        """Install ``credential`` as the only record for its (user, provider)."""
        with self._data_lock:
            if credential.user_id not in self.users:
                raise ConstraintViolation(
                    "credential owner missing", {"user_id": credential.user_id}
                )
            self._store_credential(credential)
            self._persist_state()
            return replace(credential)

    def _store_credential(self, credential: Credential) -> None:
        # Caller holds _data_lock
        self.credentials[(credential.user_id, credential.provider_id)] = replace(credential)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session owner missing", {"user_id": session.user_id}
                )
            if session.token in self.sessions:
                raise ConstraintViolation("session token collision", {"field": "token"})
            self.sessions[session.token] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            return replace(session) if session else None

    def delete_session_by_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(token, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_sessions_by_user(self, user_id: str) -> int:
        with self._data_lock:
            stale = [tok for tok, sess in self.sessions.items() if sess.user_id == user_id]
            for tok in stale:
                self.sessions.pop(tok, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tok for tok, sess in self.sessions.items() if sess.is_expired(now)]
            for tok in stale:
                self.sessions.pop(tok, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so a crash never leaves a truncated file
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=".portal_state_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, self.state_path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {}
        for entry in data.get("credentials", []):
            credential = self._deserialize_credential(entry)
            self.credentials[(credential.user_id, credential.provider_id)] = credential
        self.sessions = {
            s["token"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            path=str(self.state_path),
        )
        return True

    @staticmethod
    def _serialize_datetime(value: datetime) -> str:
        return value.isoformat()

    @staticmethod
    def _deserialize_datetime(value: str) -> datetime:
        return datetime.fromisoformat(value)

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role.value,
            "name": user.name,
            "super_admin": user.super_admin,
            "email_verified": user.email_verified,
            "strikes": user.strikes,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=Role(data.get("role", "user")),
            name=data.get("name"),
            super_admin=bool(data.get("super_admin", False)),
            email_verified=bool(data.get("email_verified", False)),
            strikes=int(data.get("strikes", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_credential(self, credential: Credential) -> dict:
        return {
            "id": credential.id,
            "user_id": credential.user_id,
            "provider_id": credential.provider_id,
            "password_hash": credential.password_hash,
            "password_algo": credential.password_algo,
            "created_at": self._serialize_datetime(credential.created_at),
            "updated_at": self._serialize_datetime(credential.updated_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            provider_id=data["provider_id"],
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "token": session.token,
            "user_id": session.user_id,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=str(data["id"]),
            token=data["token"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )
