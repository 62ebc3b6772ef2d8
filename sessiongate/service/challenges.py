from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from sessiongate.logging import get_logger
from sessiongate.service.codec import new_challenge_code
from sessiongate.service.errors import (
    ExpiredError,
    ForbiddenError,
    InvalidCodeError,
    NotFoundError,
)
from sessiongate.service.hashing import CredentialHasher
from sessiongate.storage.common import AuthStore
from sessiongate.storage.models import Challenge, ChallengeFlow, utcnow

logger = get_logger(__name__)

DEFAULT_CHALLENGE_TTL = timedelta(minutes=10)

T = TypeVar("T")


class ChallengeService:
    """Issue-then-validate protocol shared by every challenge flow.

    A user holds at most one challenge per flow: issuing again overwrites the
    row (last request wins). Only an argon2 hash of the mailed code is stored.
    A wrong code leaves the row in place; an expired one is deleted on sight.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        *,
        validity: timedelta = DEFAULT_CHALLENGE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.validity = validity
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def expires_at(self) -> datetime:
        """Expiry a challenge issued right now would get."""
        return self._now() + self.validity

    def issue(
        self,
        flow: ChallengeFlow,
        user_id: str,
        *,
        new_email: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> str:
        """Store a fresh challenge for ``(flow, user_id)`` and return its code."""
        code = new_challenge_code()
        now = self._now()
        challenge = self.store.upsert_challenge(
            flow,
            user_id,
            self.hasher.hash_password(code),
            now,
            expires_at or now + self.validity,
            new_email=new_email,
        )
        self.logger.info(
            "challenge_issued",
            flow=flow.value,
            user_id=user_id,
            expires_at=challenge.expires_at.isoformat(),
        )
        return code

    def _load_live(self, flow: ChallengeFlow, user_id: str) -> Challenge:
        challenge = self.store.get_challenge(flow, user_id)
        if not challenge:
            raise NotFoundError("no pending request")
        if challenge.is_expired(self._now()):
            self._discard(flow, user_id)
            raise ExpiredError("request has expired")
        return challenge

    def _discard(self, flow: ChallengeFlow, user_id: str) -> None:
        try:
            self.store.delete_challenge(flow, user_id)
        except Exception as exc:
            self.logger.warning(
                "expired_challenge_delete_failed",
                flow=flow.value,
                user_id=user_id,
                error=str(exc),
            )
        else:
            self.logger.info("challenge_expired", flow=flow.value, user_id=user_id)

    def check(self, flow: ChallengeFlow, user_id: str, code: str) -> Challenge:
        challenge = self._load_live(flow, user_id)
        if not self.hasher.verify_password(challenge.challenge_hash, code):
            self.logger.info("challenge_code_rejected", flow=flow.value, user_id=user_id)
            raise InvalidCodeError("invalid code")
        return challenge

    def consume(
        self,
        flow: ChallengeFlow,
        user_id: str,
        code: str,
        apply: Callable[[Challenge], T],
    ) -> T:
        """Validate ``code`` then apply its effect and delete the row atomically."""
        challenge = self.check(flow, user_id, code)
        with self.store.transaction():
            result = self._apply_and_delete(challenge, apply)
        self.logger.info("challenge_consumed", flow=flow.value, user_id=user_id)
        return result

    def _apply_and_delete(self, challenge: Challenge, apply: Callable[[Challenge], T]) -> T:
        removed = self.store.delete_challenge(
            challenge.flow, challenge.user_id, challenge_hash=challenge.challenge_hash
        )
        if not removed:
            # Consumed or replaced by a concurrent request after the check.
            raise NotFoundError("no pending request")
        return apply(challenge)

    def mark_validated(self, user_id: str, code: str) -> Challenge:
        """First phase of a password reset: prove the mailed code once."""
        challenge = self.check(ChallengeFlow.PASSWORD_RESET, user_id, code)
        now = self._now()
        marked = self.store.mark_challenge_validated(
            ChallengeFlow.PASSWORD_RESET, user_id, now, challenge_hash=challenge.challenge_hash
        )
        if not marked:
            # Replaced or consumed by a concurrent request after the check.
            raise NotFoundError("no pending request")
        challenge.validated_at = now
        self.logger.info("password_reset_code_validated", user_id=user_id)
        return challenge

    def require_validated(self, user_id: str) -> Challenge:
        """Second phase of a password reset: the row must be live and validated."""
        challenge = self._load_live(ChallengeFlow.PASSWORD_RESET, user_id)
        if challenge.validated_at is None:
            raise ForbiddenError("reset code has not been verified")
        return challenge

    def consume_validated(self, user_id: str, apply: Callable[[Challenge], T]) -> T:
        """Finish a password reset: apply ``apply`` and delete the row atomically."""
        challenge = self.require_validated(user_id)
        with self.store.transaction():
            result = self._apply_and_delete(challenge, apply)
        self.logger.info(
            "challenge_consumed", flow=ChallengeFlow.PASSWORD_RESET.value, user_id=user_id
        )
        return result

    def get_pending(self, flow: ChallengeFlow, user_id: str) -> Challenge:
        """Return the caller's live challenge; expired rows read as absent."""
        try:
            return self._load_live(flow, user_id)
        except ExpiredError:
            raise NotFoundError("no pending request") from None

    def cancel(self, flow: ChallengeFlow, user_id: str) -> bool:
        removed = self.store.delete_challenge(flow, user_id)
        if removed:
            self.logger.info("challenge_cancelled", flow=flow.value, user_id=user_id)
        return removed

    def purge_expired(self, flow: ChallengeFlow, user_id: Optional[str] = None) -> int:
        count = self.store.delete_expired_challenges(flow, self._now(), user_id=user_id)
        if count:
            self.logger.info("expired_challenges_purged", flow=flow.value, count=count)
        return count
