from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionScope(str, Enum):
    """What a session is allowed to do."""

    AUTH = "AUTH"
    FORGOT_PASSWORD = "FORGOT_PASSWORD"


class ChallengeFlow(str, Enum):
    """Flows sharing the challenge-response protocol."""

    EMAIL_VERIFICATION = "email_verification"
    EMAIL_UPDATE = "email_update"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    username: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, password_hash: str, username: str | None = None) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            username=username,
        )


@dataclass
class Session:
    """A stored session; ``id`` is the digest of the client's opaque token."""

    id: str
    user_id: str
    expires_at: datetime
    scope: SessionScope = SessionScope.AUTH
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionWithUser:
    """Session row joined with the owner's verification flag."""

    session: Session
    email_verified: bool


@dataclass
class Challenge:
    """Single-use, hashed verification secret owned by one user for one flow.

    ``new_email`` carries the pending address for ``EMAIL_UPDATE``;
    ``validated_at`` gates the second phase of ``PASSWORD_RESET``.
    """

    flow: ChallengeFlow
    user_id: str
    challenge_hash: str = field(repr=False)
    created_at: datetime
    expires_at: datetime
    new_email: Optional[str] = None
    validated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
