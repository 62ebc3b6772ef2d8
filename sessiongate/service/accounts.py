from __future__ import annotations

from typing import Optional

from sessiongate.logging import get_logger
from sessiongate.service.challenges import ChallengeService
from sessiongate.service.email import EmailService
from sessiongate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    WeakSecretError,
)
from sessiongate.service.hashing import CredentialHasher
from sessiongate.service.sessions import IssuedSession, SessionManager
from sessiongate.service.validation import normalize_email
from sessiongate.storage.common import AuthStore
from sessiongate.storage.errors import ConstraintViolation
from sessiongate.storage.models import Challenge, ChallengeFlow, SessionScope, User

logger = get_logger(__name__)


class AccountService:
    """Account-level transitions that touch users, sessions and challenges together.

    Every write path runs inside one ``store.transaction()`` so a half-applied
    transition (for example a new password hash next to the old sessions) is
    never visible. Input checks happen before the transaction opens. Codes are
    mailed only after the transaction has committed.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: CredentialHasher,
        sessions: SessionManager,
        challenges: ChallengeService,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.sessions = sessions
        self.challenges = challenges
        self.email = email or EmailService()
        self.logger = logger

    # -- helpers -------------------------------------------------------------

    def _accept_new_password(
        self, password: str, confirm_password: str, *user_inputs: Optional[str]
    ) -> str:
        password = password.strip()
        if password != confirm_password.strip():
            raise WeakSecretError("passwords do not match")
        if self.hasher.is_guessable(password, [value for value in user_inputs if value]):
            raise WeakSecretError("password is too easy to guess")
        return password

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def _deliver(self, flow: ChallengeFlow, to_email: str, code: str, user_id: str) -> None:
        if not self.email.send_challenge(flow, to_email, code):
            self.logger.warning("challenge_email_not_delivered", flow=flow.value, user_id=user_id)

    # -- sign-up / sign-in / sign-out ----------------------------------------

    def sign_up(
        self,
        email: str,
        password: str,
        confirm_password: str,
        username: Optional[str] = None,
    ) -> IssuedSession:
        normalized = normalize_email(email)
        username = username.strip() if username else None
        password = self._accept_new_password(password, confirm_password, normalized, username)

        if self.store.get_user_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})

        password_hash = self.hasher.hash_password(password)
        try:
            with self.store.transaction():
                user = self.store.create_user(normalized, password_hash, username)
                issued = self.sessions.issue(user.id)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_signed_up", user_id=user.id)
        return issued

    def sign_in(self, email: str, password: str) -> IssuedSession:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            raise NotFoundError("user not found")
        if not self.hasher.verify_password(user.password_hash, password.strip()):
            self.logger.info("sign_in_rejected", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        with self.store.transaction():
            issued = self.sessions.issue(user.id)
        self.logger.info("user_signed_in", user_id=user.id)
        return issued

    def sign_out(self, session_id: str) -> None:
        with self.store.transaction():
            self.sessions.revoke(session_id)

    def get_profile(self, user_id: str) -> User:
        return self._require_user(user_id)

    # -- password change / reset ---------------------------------------------

    def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        confirm_new_password: str,
    ) -> IssuedSession:
        user = self._require_user(user_id)
        if not self.hasher.verify_password(user.password_hash, old_password.strip()):
            raise ForbiddenError("current password is incorrect")
        password = self._accept_new_password(
            new_password, confirm_new_password, user.email, user.username
        )
        password_hash = self.hasher.hash_password(password)
        with self.store.transaction():
            self.store.update_password(user_id, password_hash)
            self.store.delete_user_sessions(user_id)
            issued = self.sessions.issue(user_id)
        self.logger.info("password_changed", user_id=user_id)
        return issued

    def request_password_reset(self, email: str) -> IssuedSession:
        """Start a reset: a short FORGOT_PASSWORD session plus a mailed code.

        The limited session expires together with the challenge.
        """
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            raise NotFoundError("user not found")

        expires_at = self.challenges.expires_at()
        with self.store.transaction():
            self.challenges.purge_expired(ChallengeFlow.PASSWORD_RESET, user.id)
            issued = self.sessions.issue(
                user.id, SessionScope.FORGOT_PASSWORD, expires_at=expires_at
            )
            code = self.challenges.issue(
                ChallengeFlow.PASSWORD_RESET, user.id, expires_at=expires_at
            )
        self.logger.info("password_reset_requested", user_id=user.id)
        self._deliver(ChallengeFlow.PASSWORD_RESET, user.email, code, user.id)
        return issued

    def verify_password_reset(self, user_id: str, code: str) -> None:
        self.challenges.mark_validated(user_id, code)

    def finalize_password_reset(
        self, user_id: str, password: str, confirm_password: str
    ) -> IssuedSession:
        # Gate first so a missing/expired/unvalidated request wins over input errors.
        self.challenges.require_validated(user_id)
        user = self._require_user(user_id)
        password = self._accept_new_password(
            password, confirm_password, user.email, user.username
        )
        password_hash = self.hasher.hash_password(password)

        def apply(_: Challenge) -> IssuedSession:
            self.store.update_password(user_id, password_hash)
            self.store.delete_challenge(ChallengeFlow.EMAIL_UPDATE, user_id)
            self.store.delete_user_sessions(user_id)
            return self.sessions.issue(user_id)

        issued = self.challenges.consume_validated(user_id, apply)
        self.logger.info("password_reset_finalized", user_id=user_id)
        return issued

    # -- email verification --------------------------------------------------

    def request_email_verification(self, user_id: str) -> None:
        user = self._require_user(user_id)
        with self.store.transaction():
            code = self.challenges.issue(ChallengeFlow.EMAIL_VERIFICATION, user_id)
        self._deliver(ChallengeFlow.EMAIL_VERIFICATION, user.email, code, user_id)

    def confirm_email_verification(self, user_id: str, code: str) -> None:
        def apply(_: Challenge) -> None:
            self.store.mark_email_verified(user_id)

        self.challenges.consume(ChallengeFlow.EMAIL_VERIFICATION, user_id, code, apply)
        self.logger.info("email_verified", user_id=user_id)

    # -- email update --------------------------------------------------------

    def request_email_update(self, user_id: str, new_email: str) -> None:
        normalized = normalize_email(new_email)
        user = self._require_user(user_id)
        if normalized == user.email:
            raise ValidationError(
                "new email matches the current email", detail={"field": "newEmail"}
            )
        if self.store.get_user_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "newEmail"})
        with self.store.transaction():
            code = self.challenges.issue(
                ChallengeFlow.EMAIL_UPDATE, user_id, new_email=normalized
            )
        # The code proves control of the new address, so it goes there.
        self._deliver(ChallengeFlow.EMAIL_UPDATE, normalized, code, user_id)

    def get_email_update_request(self, user_id: str) -> Challenge:
        return self.challenges.get_pending(ChallengeFlow.EMAIL_UPDATE, user_id)

    def cancel_email_update_request(self, user_id: str) -> None:
        self.challenges.cancel(ChallengeFlow.EMAIL_UPDATE, user_id)

    def confirm_email_update(self, user_id: str, code: str) -> None:
        def apply(challenge: Challenge) -> None:
            if not challenge.new_email:
                raise NotFoundError("no pending email")
            self.store.update_email(user_id, challenge.new_email)
            # In-flight resets were addressed to the old email.
            self.store.delete_challenge(ChallengeFlow.PASSWORD_RESET, user_id)

        try:
            self.challenges.consume(ChallengeFlow.EMAIL_UPDATE, user_id, code, apply)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("email_updated", user_id=user_id)
