from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from portalauth.storage.models import Credential, Role, Session, User


class CredentialStore(Protocol):
    """Durable identity, credential and session records.

    Lookups return ``None`` for absent records. Infrastructure failures raise
    :class:`portalauth.storage.errors.StoreUnavailable`.
    """

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    def get_role_by_id(self, user_id: str) -> Optional[Role]: ...

    def update_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def get_credential_by_user_and_provider(
        self, user_id: str, provider_id: str
    ) -> Optional[Credential]: ...

    def create_session(self, session: Session) -> Session: ...

    def delete_sessions_by_user(self, user_id: str) -> int: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: Role = Role.USER,
        super_admin: bool = False,
        email_verified: bool = False,
    ) -> User: ...

    def create_user_with_password(
        self,
        email: str,
        *,
        provider_id: str,
        password_hash: str,
        password_algo: str,
        name: Optional[str] = None,
        role: Role = Role.USER,
    ) -> User: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_strikes(self, user_id: str, strikes: int) -> Optional[User]: ...

    def replace_credential(self, credential: Credential) -> Credential: ...

    def delete_session_by_token(self, token: str) -> bool: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def verify_connection(self) -> None: ...
