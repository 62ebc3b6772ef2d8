"""Storage contract shared by the memory and postgres backends."""

from __future__ import annotations

from datetime import datetime
from typing import ContextManager, Optional, Protocol

from sessiongate.storage.models import (
    Challenge,
    ChallengeFlow,
    Session,
    SessionScope,
    SessionWithUser,
    User,
)


class AuthStore(Protocol):
    def transaction(self) -> ContextManager[None]: ...

    def create_user(
        self, email: str, password_hash: str, username: Optional[str] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, user_id: str) -> None: ...

    def update_email(self, user_id: str, email: str) -> None: ...

    def create_session(
        self,
        session_id: str,
        user_id: str,
        expires_at: datetime,
        scope: SessionScope = SessionScope.AUTH,
    ) -> Session: ...

    def get_session_with_user(self, session_id: str) -> Optional[SessionWithUser]: ...

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: str) -> None: ...

    def upsert_challenge(
        self,
        flow: ChallengeFlow,
        user_id: str,
        challenge_hash: str,
        created_at: datetime,
        expires_at: datetime,
        *,
        new_email: Optional[str] = None,
    ) -> Challenge: ...

    def get_challenge(self, flow: ChallengeFlow, user_id: str) -> Optional[Challenge]: ...

    def mark_challenge_validated(
        self, flow: ChallengeFlow, user_id: str, validated_at: datetime, *, challenge_hash: str
    ) -> bool: ...

    def delete_challenge(
        self, flow: ChallengeFlow, user_id: str, *, challenge_hash: Optional[str] = None
    ) -> bool: ...

    def delete_expired_challenges(
        self, flow: ChallengeFlow, now: datetime, *, user_id: Optional[str] = None
    ) -> int: ...
