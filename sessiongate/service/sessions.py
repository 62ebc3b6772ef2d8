from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from sessiongate.config import CookieSettings
from sessiongate.logging import get_logger
from sessiongate.service.codec import new_opaque_token
from sessiongate.service.errors import AuthenticationError, ForbiddenError
from sessiongate.service.hashing import CredentialHasher
from sessiongate.storage.common import AuthStore
from sessiongate.storage.models import Session, SessionScope, utcnow

logger = get_logger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=30)


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    SESSION_ACTIVE = "session_active"
    SESSION_EXTENDED = "session_extended"


@dataclass(frozen=True)
class SessionDatum:
    """What request handlers learn about the caller's session."""

    id: Optional[str] = None
    user_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_verified: bool = False
    scope: Optional[SessionScope] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


EMPTY_SESSION = SessionDatum()


@dataclass(frozen=True)
class SessionResolution:
    state: SessionState
    datum: SessionDatum = EMPTY_SESSION


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session; ``token`` is the only copy of the plaintext."""

    token: str
    session: Session


class SessionManager:
    """Issues opaque session tokens and resolves them with sliding renewal.

    Only the SHA-256 digest of a token is stored. An ``AUTH`` session that is
    inside the last half of its validity window is pushed out to a full window
    again on resolution; ``FORGOT_PASSWORD`` sessions keep their short expiry.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        cookie: CookieSettings,
        *,
        validity: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.cookie = cookie
        self.validity = validity
        self.renewal_window = validity / 2
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def issue(
        self,
        user_id: str,
        scope: SessionScope = SessionScope.AUTH,
        *,
        expires_at: Optional[datetime] = None,
    ) -> IssuedSession:
        token = new_opaque_token()
        session = self.store.create_session(
            self.hasher.fingerprint(token),
            user_id,
            expires_at or self._now() + self.validity,
            scope,
        )
        self.logger.info(
            "session_issued", user_id=user_id, scope=scope.value, expires_at=session.expires_at.isoformat()
        )
        return IssuedSession(token=token, session=session)

    def resolve(self, token: Optional[str]) -> SessionResolution:
        if not token:
            return SessionResolution(SessionState.NO_SESSION)

        session_id = self.hasher.fingerprint(token)
        found = self.store.get_session_with_user(session_id)
        if not found:
            return SessionResolution(SessionState.NO_SESSION)

        sess = found.session
        now = self._now()
        if now >= sess.expires_at:
            self._discard_expired(sess.id)
            return SessionResolution(SessionState.NO_SESSION)

        state = SessionState.SESSION_ACTIVE
        expires_at = sess.expires_at
        if sess.scope == SessionScope.AUTH and now >= sess.expires_at - self.renewal_window:
            expires_at = now + self.validity
            self.store.update_session_expiry(sess.id, expires_at)
            state = SessionState.SESSION_EXTENDED
            self.logger.info("session_extended", user_id=sess.user_id)

        datum = SessionDatum(
            id=sess.id,
            user_id=sess.user_id,
            expires_at=expires_at,
            is_verified=found.email_verified,
            scope=sess.scope,
        )
        return SessionResolution(state, datum)

    def _discard_expired(self, session_id: str) -> None:
        try:
            self.store.delete_session(session_id)
        except Exception as exc:
            # The caller is anonymous either way; a stale row is harmless.
            self.logger.warning("expired_session_delete_failed", error=str(exc))

    def revoke(self, session_id: str) -> None:
        self.store.delete_session(session_id)
        self.logger.info("session_revoked")

    def cookie_kwargs(self, token: str, expires_at: datetime) -> dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie`` carrying ``token``."""
        kwargs: dict[str, Any] = {
            "key": self.cookie.name,
            "value": token,
            "expires": expires_at.astimezone(timezone.utc),
            "path": self.cookie.path,
            "secure": self.cookie.secure,
            "httponly": self.cookie.httponly,
            "samesite": self.cookie.samesite,
        }
        if self.cookie.domain:
            kwargs["domain"] = self.cookie.domain
        return kwargs

    def delete_cookie_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "key": self.cookie.name,
            "path": self.cookie.path,
            "secure": self.cookie.secure,
            "httponly": self.cookie.httponly,
            "samesite": self.cookie.samesite,
        }
        if self.cookie.domain:
            kwargs["domain"] = self.cookie.domain
        return kwargs


def require_session(
    datum: SessionDatum, scopes: Iterable[SessionScope] = (SessionScope.AUTH,)
) -> SessionDatum:
    if not datum.is_authenticated or datum.scope not in tuple(scopes):
        raise AuthenticationError("authentication required")
    return datum


def require_verified_email(datum: SessionDatum) -> SessionDatum:
    if not datum.is_verified:
        raise ForbiddenError("email address not verified")
    return datum
