from typing import Any

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession
from webauthn.helpers import bytes_to_base64url

from cuddly_auth.core.config import settings
from cuddly_auth.core.dependencies import get_optional_session_user, require_passkey_owner
from cuddly_auth.core.rate_limit import client_ip, per_identifier_limiter
from cuddly_auth.core.sessions import set_session_cookie
from cuddly_auth.db.session import get_session
from cuddly_auth.schemas.auth import AuthResponse, UserResponse
from cuddly_auth.schemas.webauthn import (
    AuthenticatorSummary,
    AuthOptionsRequest,
    OptionsResponse,
    RegisterOptionsRequest,
    VerifyAuthenticationRequest,
    VerifyRegistrationRequest,
    VerifyRegistrationResponse,
)
from cuddly_auth.services import passkeys as passkeys_service

router = APIRouter(prefix="/auth/webauthn", tags=["webauthn"])

passkey_login_rate_limit = per_identifier_limiter(client_ip, settings.auth_rate_limit_login, 60)


@router.post("/register-options", response_model=OptionsResponse)
async def registration_options(
    payload: RegisterOptionsRequest,
    session: AsyncSession = Depends(get_session),
    session_user: dict[str, Any] | None = Depends(get_optional_session_user),
) -> OptionsResponse:
    """Options for adding a passkey to `userID`.

    Requires the session of that same user (401 otherwise) while
    `webauthn_registration_requires_session` is on; with it off the endpoint only
    answers 400 for a bad body and 404 for an unknown user.
    """
    await require_passkey_owner(session, session_user, payload.user_id)
    options, challenge = await passkeys_service.generate_registration_options_for_user(session, payload.user_id)
    return OptionsResponse(options=options, challenge=challenge)


@router.post("/verify-registration", response_model=VerifyRegistrationResponse)
async def verify_registration(
    payload: VerifyRegistrationRequest,
    session: AsyncSession = Depends(get_session),
    session_user: dict[str, Any] | None = Depends(get_optional_session_user),
) -> VerifyRegistrationResponse:
    """Store the attested passkey. Same session rule as `registration_options`."""
    await require_passkey_owner(session, session_user, payload.user_id)
    authenticator = await passkeys_service.register_authenticator(
        session,
        user_id=payload.user_id,
        credential=payload.response,
        expected_challenge=payload.expected_challenge,
    )
    return VerifyRegistrationResponse(
        success=True,
        verified=True,
        authenticator=AuthenticatorSummary(
            id=authenticator.id,
            credential_id=bytes_to_base64url(authenticator.credential_id),
        ),
    )


@router.post("/auth-options", response_model=OptionsResponse)
async def authentication_options(
    payload: AuthOptionsRequest | None = None,
    session: AsyncSession = Depends(get_session),
    _: None = Depends(passkey_login_rate_limit),
) -> OptionsResponse:
    email = payload.user_email.strip() if payload and payload.user_email else None
    options, challenge = await passkeys_service.generate_authentication_options_for_email(session, email or None)
    return OptionsResponse(options=options, challenge=challenge)


@router.post("/verify-authentication", response_model=AuthResponse)
async def verify_authentication(
    payload: VerifyAuthenticationRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
    _: None = Depends(passkey_login_rate_limit),
) -> AuthResponse:
    user = await passkeys_service.verify_authentication(
        session,
        credential=payload.response,
        expected_challenge=payload.expected_challenge,
    )
    set_session_cookie(response, user)
    return AuthResponse(user=UserResponse.model_validate(user))
