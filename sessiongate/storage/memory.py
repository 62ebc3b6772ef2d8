from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, Optional, Tuple

from sessiongate.logging import get_logger
from sessiongate.storage.errors import ConstraintViolation
from sessiongate.storage.models import (
    Challenge,
    ChallengeFlow,
    Session,
    SessionScope,
    SessionWithUser,
    User,
)


class MemoryStore:
    """In-process backing store used for tests and local development.

    All reads and writes run under one re-entrant lock. ``transaction()`` keeps
    the lock for the whole block and restores the tables if the block raises,
    which gives callers the same all-or-nothing behaviour as the postgres store.
    Returned objects are copies so callers cannot mutate stored rows.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.challenges: Dict[Tuple[ChallengeFlow, str], Challenge] = {}
        # RLock so store methods can nest inside transaction()
        self._data_lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = (
                copy.deepcopy(self.users),
                copy.deepcopy(self.sessions),
                copy.deepcopy(self.challenges),
            )
            try:
                yield
            except BaseException:
                self.users, self.sessions, self.challenges = snapshot
                self.logger.debug("memory_transaction_rolled_back")
                raise

    # -- users ---------------------------------------------------------------

    def create_user(
        self, email: str, password_hash: str, username: Optional[str] = None
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, password_hash, username)
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.password_hash = password_hash

    def mark_email_verified(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.email_verified = True

    def update_email(self, user_id: str, email: str) -> None:
        with self._data_lock:
            if any(
                existing.email == email and existing.id != user_id
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = self.users.get(user_id)
            if user:
                user.email = email

    # -- sessions ------------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        user_id: str,
        expires_at: datetime,
        scope: SessionScope = SessionScope.AUTH,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if session_id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            sess = Session(
                id=session_id, user_id=user_id, expires_at=expires_at, scope=scope
            )
            self.sessions[session_id] = sess
            return replace(sess)

    def get_session_with_user(self, session_id: str) -> Optional[SessionWithUser]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            user = self.users.get(sess.user_id)
            if not user:
                return None
            return SessionWithUser(session=replace(sess), email_verified=user.email_verified)

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.expires_at = expires_at

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)

    def delete_user_sessions(self, user_id: str) -> None:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)

    # -- challenges ----------------------------------------------------------

    def upsert_challenge(
        self,
        flow: ChallengeFlow,
        user_id: str,
        challenge_hash: str,
        created_at: datetime,
        expires_at: datetime,
        *,
        new_email: Optional[str] = None,
    ) -> Challenge:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            challenge = Challenge(
                flow=flow,
                user_id=user_id,
                challenge_hash=challenge_hash,
                created_at=created_at,
                expires_at=expires_at,
                new_email=new_email,
            )
            self.challenges[(flow, user_id)] = challenge
            return replace(challenge)

    def get_challenge(self, flow: ChallengeFlow, user_id: str) -> Optional[Challenge]:
        with self._data_lock:
            challenge = self.challenges.get((flow, user_id))
            return replace(challenge) if challenge else None

    def mark_challenge_validated(
        self, flow: ChallengeFlow, user_id: str, validated_at: datetime, *, challenge_hash: str
    ) -> bool:
        with self._data_lock:
            challenge = self.challenges.get((flow, user_id))
            if not challenge or challenge.challenge_hash != challenge_hash:
                return False
            challenge.validated_at = validated_at
            return True

    def delete_challenge(
        self, flow: ChallengeFlow, user_id: str, *, challenge_hash: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            challenge = self.challenges.get((flow, user_id))
            if not challenge:
                return False
            if challenge_hash is not None and challenge.challenge_hash != challenge_hash:
                return False
            del self.challenges[(flow, user_id)]
            return True

    def delete_expired_challenges(
        self, flow: ChallengeFlow, now: datetime, *, user_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                key
                for key, challenge in self.challenges.items()
                if key[0] == flow
                and (user_id is None or key[1] == user_id)
                and challenge.is_expired(now)
            ]
            for key in stale:
                self.challenges.pop(key, None)
            return len(stale)
