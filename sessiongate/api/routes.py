from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response

from sessiongate.api.schemas import (
    EmailUpdatePendingResponse,
    EmailUpdateRequest,
    Envelope,
    PasswordResetRequest,
    ProfileResponse,
    ResetPasswordRequest,
    SignInRequest,
    SignUpRequest,
    UpdatePasswordRequest,
)
from sessiongate.service.runtime import get_runtime
from sessiongate.service.sessions import (
    IssuedSession,
    SessionDatum,
    SessionState,
    require_session,
    require_verified_email,
)
from sessiongate.storage.models import SessionScope

router = APIRouter(prefix="/api/auth")

CodeQuery = Annotated[str, Query(min_length=1, max_length=128)]


def _ok(content=None) -> Envelope:
    return Envelope(success=True, error=None, content=content)


def _set_session_cookie(response: Response, issued: IssuedSession) -> None:
    runtime = get_runtime()
    response.set_cookie(
        **runtime.sessions.cookie_kwargs(issued.token, issued.session.expires_at)
    )


def current_session(request: Request, response: Response) -> SessionDatum:
    """Resolve the ``session`` cookie; re-issues the cookie when the session slid."""
    runtime = get_runtime()
    token = request.cookies.get(runtime.sessions.cookie.name)
    resolution = runtime.sessions.resolve(token)
    if resolution.state == SessionState.SESSION_EXTENDED and token:
        response.set_cookie(
            **runtime.sessions.cookie_kwargs(token, resolution.datum.expires_at)
        )
    return resolution.datum


def auth_session(datum: SessionDatum = Depends(current_session)) -> SessionDatum:
    return require_session(datum)


def verified_session(datum: SessionDatum = Depends(auth_session)) -> SessionDatum:
    return require_verified_email(datum)


def reset_session(datum: SessionDatum = Depends(current_session)) -> SessionDatum:
    return require_session(datum, scopes=(SessionScope.FORGOT_PASSWORD,))


# -- users -------------------------------------------------------------------


@router.post("/users/sign-up", response_model=Envelope, status_code=201, tags=["users"])
def sign_up(body: SignUpRequest, response: Response):
    """Create an account and sign it in."""
    runtime = get_runtime()
    issued = runtime.accounts.sign_up(
        body.email, body.password, body.confirm_password, body.username
    )
    _set_session_cookie(response, issued)
    return _ok()


@router.post("/users/sign-in", response_model=Envelope, tags=["users"])
def sign_in(body: SignInRequest, response: Response):
    runtime = get_runtime()
    issued = runtime.accounts.sign_in(body.email, body.password)
    _set_session_cookie(response, issued)
    return _ok()


@router.patch("/users/update-password", response_model=Envelope, tags=["users"])
def update_password(
    body: UpdatePasswordRequest,
    response: Response,
    datum: SessionDatum = Depends(verified_session),
):
    """Change the password; every other session of the user is signed out."""
    runtime = get_runtime()
    issued = runtime.accounts.change_password(
        datum.user_id, body.old_password, body.new_password, body.confirm_new_password
    )
    _set_session_cookie(response, issued)
    return _ok()


@router.get("/users/@me", response_model=Envelope, tags=["users"])
def get_me(datum: SessionDatum = Depends(auth_session)):
    runtime = get_runtime()
    user = runtime.accounts.get_profile(datum.user_id)
    profile = ProfileResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        email_verified=user.email_verified,
    )
    return _ok(profile.model_dump(by_alias=True))


@router.delete("/users/sign-out", response_model=Envelope, tags=["users"])
def sign_out(response: Response, datum: SessionDatum = Depends(auth_session)):
    runtime = get_runtime()
    runtime.accounts.sign_out(datum.id)
    response.delete_cookie(**runtime.sessions.delete_cookie_kwargs())
    return _ok()


# -- email verification ------------------------------------------------------


@router.post(
    "/email-verification/request",
    response_model=Envelope,
    status_code=201,
    tags=["email-verification"],
)
def request_email_verification(datum: SessionDatum = Depends(auth_session)):
    """Mail a verification code to the account's current address."""
    runtime = get_runtime()
    runtime.accounts.request_email_verification(datum.user_id)
    return _ok()


@router.patch(
    "/email-verification/request", response_model=Envelope, tags=["email-verification"]
)
def confirm_email_verification(
    code: CodeQuery, datum: SessionDatum = Depends(auth_session)
):
    runtime = get_runtime()
    runtime.accounts.confirm_email_verification(datum.user_id, code)
    return _ok()


# -- email update ------------------------------------------------------------


@router.post(
    "/email-update/request", response_model=Envelope, status_code=201, tags=["email-update"]
)
def request_email_update(
    body: EmailUpdateRequest, datum: SessionDatum = Depends(verified_session)
):
    """Mail a code to the new address; the change applies once it is confirmed."""
    runtime = get_runtime()
    runtime.accounts.request_email_update(datum.user_id, body.new_email)
    return _ok()


@router.get("/email-update/request", response_model=Envelope, tags=["email-update"])
def get_email_update_request(datum: SessionDatum = Depends(auth_session)):
    runtime = get_runtime()
    pending = runtime.accounts.get_email_update_request(datum.user_id)
    content = EmailUpdatePendingResponse(
        new_email=pending.new_email, expiration=pending.expires_at
    )
    return _ok(content.model_dump(by_alias=True, mode="json"))


@router.delete("/email-update/request", response_model=Envelope, tags=["email-update"])
def cancel_email_update_request(datum: SessionDatum = Depends(auth_session)):
    runtime = get_runtime()
    runtime.accounts.cancel_email_update_request(datum.user_id)
    return _ok()


@router.patch("/email-update/validate", response_model=Envelope, tags=["email-update"])
def confirm_email_update(
    code: CodeQuery, datum: SessionDatum = Depends(auth_session)
):
    runtime = get_runtime()
    runtime.accounts.confirm_email_update(datum.user_id, code)
    return _ok()


# -- password reset ----------------------------------------------------------


@router.post(
    "/password-reset/request",
    response_model=Envelope,
    status_code=201,
    tags=["password-reset"],
)
def request_password_reset(body: PasswordResetRequest, response: Response):
    """Start a reset; the response carries a short-lived reset-only session."""
    runtime = get_runtime()
    issued = runtime.accounts.request_password_reset(body.email)
    _set_session_cookie(response, issued)
    return _ok()


@router.patch(
    "/password-reset/verify",
    response_model=Envelope,
    status_code=201,
    tags=["password-reset"],
)
def verify_password_reset(
    code: CodeQuery, datum: SessionDatum = Depends(reset_session)
):
    runtime = get_runtime()
    runtime.accounts.verify_password_reset(datum.user_id, code)
    return _ok()


@router.post(
    "/password-reset/reset",
    response_model=Envelope,
    status_code=201,
    tags=["password-reset"],
)
def reset_password(
    body: ResetPasswordRequest,
    response: Response,
    datum: SessionDatum = Depends(reset_session),
):
    runtime = get_runtime()
    issued = runtime.accounts.finalize_password_reset(
        datum.user_id, body.password, body.confirm_password
    )
    _set_session_cookie(response, issued)
    return _ok()
