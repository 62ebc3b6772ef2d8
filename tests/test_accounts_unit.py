"""Account flows over the in-memory store: sign-up through password reset."""

from datetime import timedelta

import pytest

from sessiongate.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidCodeError,
    NotFoundError,
    ValidationError,
    WeakSecretError,
)
from sessiongate.service.sessions import SessionState
from sessiongate.storage.models import ChallengeFlow, SessionScope

STRONG_PASSWORD = "vQ7#mZ2!pL9$wX4&"
OTHER_STRONG_PASSWORD = "Hn8^tR3@kW6*bY1%"
WEAK_PASSWORD = "password123"


@pytest.fixture
def signed_up(accounts):
    return accounts.sign_up("Alice@Example.com", STRONG_PASSWORD, STRONG_PASSWORD, "alice01")


def _user_id(signed_up):
    return signed_up.session.user_id


class TestSignUp:
    def test_creates_user_and_auth_session(self, accounts, sessions, store, signed_up):
        user = store.get_user(_user_id(signed_up))

        assert user.email == "alice@example.com"
        assert user.username == "alice01"
        assert user.email_verified is False
        assert user.password_hash != STRONG_PASSWORD
        resolution = sessions.resolve(signed_up.token)
        assert resolution.state == SessionState.SESSION_ACTIVE
        assert resolution.datum.scope == SessionScope.AUTH

    def test_normalized_duplicate_conflicts(self, accounts, store, signed_up):
        with pytest.raises(ConflictError):
            accounts.sign_up("  ALICE@example.com ", STRONG_PASSWORD, STRONG_PASSWORD)

        assert len(store.users) == 1

    def test_password_mismatch(self, accounts, store):
        with pytest.raises(WeakSecretError):
            accounts.sign_up("bob@example.com", STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

        assert store.users == {}

    def test_weak_password(self, accounts, store):
        with pytest.raises(WeakSecretError):
            accounts.sign_up("bob@example.com", WEAK_PASSWORD, WEAK_PASSWORD)

        assert store.users == {}

    def test_password_echoing_email_is_rejected(self, accounts):
        candidate = "bobthebuilder@example.com"

        with pytest.raises(WeakSecretError):
            accounts.sign_up(candidate, candidate, candidate)

    def test_invalid_email(self, accounts):
        with pytest.raises(ValidationError):
            accounts.sign_up("not-an-email", STRONG_PASSWORD, STRONG_PASSWORD)

    def test_failed_session_rolls_back_user(self, accounts, sessions, store, monkeypatch):
        def failing_issue(*args, **kwargs):
            raise RuntimeError("session store down")

        monkeypatch.setattr(sessions, "issue", failing_issue)

        with pytest.raises(RuntimeError):
            accounts.sign_up("bob@example.com", STRONG_PASSWORD, STRONG_PASSWORD)

        assert store.get_user_by_email("bob@example.com") is None


class TestSignIn:
    def test_issues_new_session(self, accounts, sessions, signed_up):
        issued = accounts.sign_in("ALICE@example.com", STRONG_PASSWORD)

        assert issued.token != signed_up.token
        assert sessions.resolve(issued.token).datum.user_id == _user_id(signed_up)

    def test_unknown_email(self, accounts):
        with pytest.raises(NotFoundError):
            accounts.sign_in("nobody@example.com", STRONG_PASSWORD)

    def test_wrong_password(self, accounts, signed_up):
        with pytest.raises(AuthenticationError):
            accounts.sign_in("alice@example.com", OTHER_STRONG_PASSWORD)

    def test_sign_out_revokes_only_that_session(self, accounts, sessions, signed_up):
        second = accounts.sign_in("alice@example.com", STRONG_PASSWORD)

        accounts.sign_out(signed_up.session.id)

        assert sessions.resolve(signed_up.token).state == SessionState.NO_SESSION
        assert sessions.resolve(second.token).state == SessionState.SESSION_ACTIVE


class TestChangePassword:
    def test_replaces_all_sessions(self, accounts, sessions, store, signed_up, hasher):
        other = accounts.sign_in("alice@example.com", STRONG_PASSWORD)

        issued = accounts.change_password(
            _user_id(signed_up), STRONG_PASSWORD, OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD
        )

        assert sessions.resolve(signed_up.token).state == SessionState.NO_SESSION
        assert sessions.resolve(other.token).state == SessionState.NO_SESSION
        assert sessions.resolve(issued.token).state == SessionState.SESSION_ACTIVE
        assert list(store.sessions) == [issued.session.id]
        assert hasher.verify_password(store.get_user(_user_id(signed_up)).password_hash, OTHER_STRONG_PASSWORD)

    def test_wrong_current_password(self, accounts, sessions, signed_up):
        with pytest.raises(ForbiddenError):
            accounts.change_password(
                _user_id(signed_up), OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD
            )

        assert sessions.resolve(signed_up.token).state == SessionState.SESSION_ACTIVE

    def test_weak_new_password(self, accounts, signed_up):
        with pytest.raises(WeakSecretError):
            accounts.change_password(_user_id(signed_up), STRONG_PASSWORD, WEAK_PASSWORD, WEAK_PASSWORD)


class TestEmailVerification:
    def test_request_and_confirm(self, accounts, store, outbox, signed_up):
        user_id = _user_id(signed_up)

        accounts.request_email_verification(user_id)
        flow, to_email, code = outbox.sent[-1]
        accounts.confirm_email_verification(user_id, code)

        assert flow == ChallengeFlow.EMAIL_VERIFICATION
        assert to_email == "alice@example.com"
        assert store.get_user(user_id).email_verified is True
        assert store.get_challenge(ChallengeFlow.EMAIL_VERIFICATION, user_id) is None

    def test_second_request_invalidates_first_code(self, accounts, store, outbox, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_email_verification(user_id)
        first = outbox.last_code()
        accounts.request_email_verification(user_id)
        second = outbox.last_code()

        with pytest.raises(InvalidCodeError):
            accounts.confirm_email_verification(user_id, first)
        accounts.confirm_email_verification(user_id, second)

        assert store.get_user(user_id).email_verified is True

    def test_expired_code(self, accounts, store, outbox, clock, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_email_verification(user_id)
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(ExpiredError):
            accounts.confirm_email_verification(user_id, outbox.last_code())

        assert store.get_user(user_id).email_verified is False
        assert store.get_challenge(ChallengeFlow.EMAIL_VERIFICATION, user_id) is None

    def test_undelivered_email_keeps_challenge(self, accounts, store, outbox, signed_up, monkeypatch):
        monkeypatch.setattr(outbox, "send_challenge", lambda flow, to_email, code: False)

        accounts.request_email_verification(_user_id(signed_up))

        assert store.get_challenge(ChallengeFlow.EMAIL_VERIFICATION, _user_id(signed_up)) is not None


class TestEmailUpdate:
    def test_code_goes_to_new_address_and_confirm_moves_email(self, accounts, store, outbox, signed_up):
        user_id = _user_id(signed_up)

        accounts.request_email_update(user_id, "Alice.New@Example.com")
        flow, to_email, code = outbox.sent[-1]
        pending = accounts.get_email_update_request(user_id)
        accounts.confirm_email_update(user_id, code)

        assert flow == ChallengeFlow.EMAIL_UPDATE
        assert to_email == "alice.new@example.com"
        assert pending.new_email == "alice.new@example.com"
        assert store.get_user(user_id).email == "alice.new@example.com"
        with pytest.raises(NotFoundError):
            accounts.get_email_update_request(user_id)

    def test_same_email_is_rejected(self, accounts, signed_up):
        with pytest.raises(ValidationError):
            accounts.request_email_update(_user_id(signed_up), "ALICE@example.com")

    def test_taken_email_conflicts(self, accounts, signed_up):
        accounts.sign_up("bob@example.com", OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

        with pytest.raises(ConflictError):
            accounts.request_email_update(_user_id(signed_up), "bob@example.com")

    def test_address_taken_before_confirm_conflicts(self, accounts, store, outbox, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_email_update(user_id, "shared@example.com")
        code = outbox.last_code(ChallengeFlow.EMAIL_UPDATE)
        accounts.sign_up("shared@example.com", OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

        with pytest.raises(ConflictError):
            accounts.confirm_email_update(user_id, code)

        assert store.get_user(user_id).email == "alice@example.com"
        assert store.get_challenge(ChallengeFlow.EMAIL_UPDATE, user_id) is not None

    def test_confirm_drops_pending_password_reset(self, accounts, store, outbox, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_password_reset("alice@example.com")
        accounts.request_email_update(user_id, "alice.new@example.com")

        accounts.confirm_email_update(user_id, outbox.last_code(ChallengeFlow.EMAIL_UPDATE))

        assert store.get_challenge(ChallengeFlow.PASSWORD_RESET, user_id) is None

    def test_cancel_is_scoped_to_caller(self, accounts, store, signed_up):
        bob = accounts.sign_up("bob@example.com", OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)
        accounts.request_email_update(_user_id(signed_up), "alice.new@example.com")

        accounts.cancel_email_update_request(_user_id(bob))
        assert store.get_challenge(ChallengeFlow.EMAIL_UPDATE, _user_id(signed_up)) is not None

        accounts.cancel_email_update_request(_user_id(signed_up))
        assert store.get_challenge(ChallengeFlow.EMAIL_UPDATE, _user_id(signed_up)) is None


class TestPasswordReset:
    def test_full_reset_flow(self, accounts, sessions, store, outbox, hasher, clock, signed_up):
        user_id = _user_id(signed_up)

        limited = accounts.request_password_reset("ALICE@example.com")
        code = outbox.last_code(ChallengeFlow.PASSWORD_RESET)
        challenge = store.get_challenge(ChallengeFlow.PASSWORD_RESET, user_id)

        assert limited.session.scope == SessionScope.FORGOT_PASSWORD
        assert limited.session.expires_at == challenge.expires_at == clock.now + timedelta(minutes=10)

        accounts.verify_password_reset(user_id, code)
        issued = accounts.finalize_password_reset(user_id, OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

        assert hasher.verify_password(store.get_user(user_id).password_hash, OTHER_STRONG_PASSWORD)
        assert sessions.resolve(signed_up.token).state == SessionState.NO_SESSION
        assert sessions.resolve(limited.token).state == SessionState.NO_SESSION
        resolution = sessions.resolve(issued.token)
        assert resolution.datum.scope == SessionScope.AUTH
        assert store.get_challenge(ChallengeFlow.PASSWORD_RESET, user_id) is None

    def test_finalize_without_verify_is_forbidden(self, accounts, store, hasher, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_password_reset("alice@example.com")

        with pytest.raises(ForbiddenError):
            accounts.finalize_password_reset(user_id, OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

        assert hasher.verify_password(store.get_user(user_id).password_hash, STRONG_PASSWORD)

    def test_finalize_without_request(self, accounts, signed_up):
        with pytest.raises(NotFoundError):
            accounts.finalize_password_reset(_user_id(signed_up), OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

    def test_weak_password_keeps_validated_request(self, accounts, store, outbox, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_password_reset("alice@example.com")
        accounts.verify_password_reset(user_id, outbox.last_code(ChallengeFlow.PASSWORD_RESET))

        with pytest.raises(WeakSecretError):
            accounts.finalize_password_reset(user_id, WEAK_PASSWORD, WEAK_PASSWORD)

        challenge = store.get_challenge(ChallengeFlow.PASSWORD_RESET, user_id)
        assert challenge is not None
        assert challenge.validated_at is not None

    def test_finalize_drops_pending_email_update(self, accounts, store, outbox, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_email_update(user_id, "alice.new@example.com")
        accounts.request_password_reset("alice@example.com")
        accounts.verify_password_reset(user_id, outbox.last_code(ChallengeFlow.PASSWORD_RESET))

        accounts.finalize_password_reset(user_id, OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)

        assert store.get_challenge(ChallengeFlow.EMAIL_UPDATE, user_id) is None

    def test_unknown_email(self, accounts):
        with pytest.raises(NotFoundError):
            accounts.request_password_reset("nobody@example.com")

    def test_request_purges_stale_row(self, accounts, store, outbox, clock, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_password_reset("alice@example.com")
        stale = outbox.last_code(ChallengeFlow.PASSWORD_RESET)
        clock.advance(minutes=20)

        accounts.request_password_reset("alice@example.com")

        with pytest.raises(InvalidCodeError):
            accounts.verify_password_reset(user_id, stale)
        accounts.verify_password_reset(user_id, outbox.last_code(ChallengeFlow.PASSWORD_RESET))

    def test_expired_code_then_finalize(self, accounts, store, outbox, clock, signed_up):
        user_id = _user_id(signed_up)
        accounts.request_password_reset("alice@example.com")
        clock.advance(minutes=11)

        with pytest.raises(ExpiredError):
            accounts.verify_password_reset(user_id, outbox.last_code(ChallengeFlow.PASSWORD_RESET))
        assert store.get_challenge(ChallengeFlow.PASSWORD_RESET, user_id) is None

        with pytest.raises(NotFoundError):
            accounts.finalize_password_reset(user_id, OTHER_STRONG_PASSWORD, OTHER_STRONG_PASSWORD)
