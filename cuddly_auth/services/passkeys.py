from __future__ import annotations

import json
import logging
import uuid
from typing import Any
from urllib.parse import urlsplit

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import joinedload
from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from cuddly_auth.core.config import settings
from cuddly_auth.core.errors import (
    AlreadyExists,
    NotFound,
    UnknownCredential,
    VerificationFailed,
    passkey_authentication_failed,
)
from cuddly_auth.models.authenticator import Authenticator
from cuddly_auth.models.challenge import ChallengePurpose
from cuddly_auth.models.user import User
from cuddly_auth.services import auth as auth_service
from cuddly_auth.services import challenges

logger = logging.getLogger(__name__)


def rp_id() -> str:
    if settings.webauthn_rp_id:
        return settings.webauthn_rp_id.strip()
    host = urlsplit(settings.frontend_origin).hostname
    return host or "localhost"


def rp_name() -> str:
    return settings.webauthn_rp_name.strip() or settings.app_name


def allowed_origins() -> list[str]:
    origins = [o.rstrip("/") for o in settings.webauthn_allowed_origins if o.strip()]
    front = settings.frontend_origin.rstrip("/")
    if front and front not in origins:
        origins.append(front)
    return origins


def _known_transports(values: Any) -> list[AuthenticatorTransport]:
    transports: list[AuthenticatorTransport] = []
    for value in values or []:
        try:
            transports.append(AuthenticatorTransport(value))
        except ValueError:
            continue
    return transports


def _descriptor(authenticator: Authenticator) -> PublicKeyCredentialDescriptor:
    return PublicKeyCredentialDescriptor(
        id=authenticator.credential_id,
        transports=_known_transports(authenticator.transports) or None,
    )


def _client_transports(credential: dict[str, Any]) -> list[str]:
    response = credential.get("response")
    raw = response.get("transports") if isinstance(response, dict) else None
    if not isinstance(raw, list):
        return []
    return [t for t in raw if isinstance(t, str)]


def counter_advances(stored: int, reported: int) -> bool:
    """Clone detection: the signature counter must strictly increase.

    Authenticators that do not implement a counter report 0 on every use; that
    is accepted only while the stored value is also 0.
    """
    if reported == 0 and stored == 0:
        return True
    return reported > stored


async def generate_registration_options_for_user(session: AsyncSession, user_id: uuid.UUID) -> tuple[dict, str]:
    user = await auth_service.get_user(session, user_id)
    if user is None:
        raise NotFound()

    options = generate_registration_options(
        rp_id=rp_id(),
        rp_name=rp_name(),
        user_id=user.id.bytes,
        user_name=user.email,
        user_display_name=user.name or user.email,
        timeout=settings.webauthn_timeout_ms,
        attestation=AttestationConveyancePreference.NONE,
        authenticator_selection=AuthenticatorSelectionCriteria(
            authenticator_attachment=AuthenticatorAttachment.PLATFORM,
            resident_key=ResidentKeyRequirement.PREFERRED,
            user_verification=UserVerificationRequirement.PREFERRED,
        ),
        exclude_credentials=[_descriptor(a) for a in user.authenticators],
    )
    challenge = bytes_to_base64url(options.challenge)
    await challenges.issue_challenge(
        session, challenge=challenge, purpose=ChallengePurpose.registration, user_id=user.id
    )
    return json.loads(options_to_json(options)), challenge


async def register_authenticator(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    credential: dict[str, Any],
    expected_challenge: str,
) -> Authenticator:
    user = await auth_service.get_user(session, user_id)
    if user is None:
        raise NotFound()

    pending = await challenges.consume_challenge(
        session, challenge=expected_challenge, purpose=ChallengePurpose.registration, user_id=user.id
    )
    if pending is None:
        logger.info("passkey_registration_failed", extra={"user_id": str(user.id), "reason": "challenge"})
        raise VerificationFailed()

    try:
        verified = verify_registration_response(
            credential=credential,
            expected_challenge=base64url_to_bytes(expected_challenge),
            expected_rp_id=rp_id(),
            expected_origin=allowed_origins(),
        )
    except Exception as exc:
        logger.info("passkey_registration_failed", extra={"user_id": str(user.id), "reason": "attestation"})
        raise VerificationFailed() from exc

    authenticator = Authenticator(
        user_id=user.id,
        credential_id=bytes(verified.credential_id),
        credential_public_key=bytes(verified.credential_public_key),
        counter=int(verified.sign_count),
        transports=_client_transports(credential),
    )
    session.add(authenticator)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise AlreadyExists("Authenticator already registered") from exc
    await session.refresh(authenticator)
    logger.info(
        "passkey_registered",
        extra={"user_id": str(user.id), "authenticator_id": str(authenticator.id)},
    )
    return authenticator


async def generate_authentication_options_for_email(session: AsyncSession, email: str | None) -> tuple[dict, str]:
    user: User | None = None
    if email:
        candidate = await auth_service.get_user_by_email(session, email)
        if candidate is not None and candidate.authenticators:
            user = candidate

    options = generate_authentication_options(
        rp_id=rp_id(),
        timeout=settings.webauthn_timeout_ms,
        allow_credentials=[_descriptor(a) for a in user.authenticators] if user else None,
        user_verification=UserVerificationRequirement.PREFERRED,
    )
    challenge = bytes_to_base64url(options.challenge)
    await challenges.issue_challenge(
        session,
        challenge=challenge,
        purpose=ChallengePurpose.authentication,
        user_id=user.id if user else None,
    )
    payload = json.loads(options_to_json(options))
    if user is None:
        # Discoverable flow: let the authenticator offer any credential it holds.
        payload.pop("allowCredentials", None)
    return payload, challenge


def _credential_id_from_payload(credential: dict[str, Any]) -> bytes | None:
    raw = credential.get("rawId") or credential.get("id")
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        credential_id = base64url_to_bytes(raw.strip())
    except Exception:
        return None
    return credential_id or None


async def _load_authenticator(session: AsyncSession, credential_id: bytes) -> Authenticator | None:
    result = await session.execute(
        select(Authenticator)
        .options(joinedload(Authenticator.user))
        .where(Authenticator.credential_id == credential_id)
        .execution_options(populate_existing=True)
    )
    return result.unique().scalar_one_or_none()


async def verify_authentication(
    session: AsyncSession,
    *,
    credential: dict[str, Any],
    expected_challenge: str,
) -> User:
    pending = await challenges.consume_challenge(
        session, challenge=expected_challenge, purpose=ChallengePurpose.authentication
    )
    if pending is None:
        logger.info("passkey_authentication_failed", extra={"reason": "challenge"})
        raise passkey_authentication_failed()

    credential_id = _credential_id_from_payload(credential)
    authenticator = await _load_authenticator(session, credential_id) if credential_id else None
    if authenticator is None or (pending.user_id is not None and pending.user_id != authenticator.user_id):
        logger.info("passkey_authentication_failed", extra={"reason": "unknown_credential"})
        raise UnknownCredential()

    stored = int(authenticator.counter)
    try:
        verified = verify_authentication_response(
            credential=credential,
            expected_challenge=base64url_to_bytes(expected_challenge),
            expected_rp_id=rp_id(),
            expected_origin=allowed_origins(),
            credential_public_key=authenticator.credential_public_key,
            credential_current_sign_count=stored,
        )
    except Exception as exc:
        logger.info(
            "passkey_authentication_failed",
            extra={"reason": "assertion", "authenticator_id": str(authenticator.id)},
        )
        raise passkey_authentication_failed() from exc

    reported = int(verified.new_sign_count)
    if not counter_advances(stored, reported):
        logger.warning(
            "passkey_counter_regression",
            extra={"authenticator_id": str(authenticator.id), "stored": stored, "reported": reported},
        )
        raise passkey_authentication_failed()

    if reported > stored:
        advanced = await session.execute(
            update(Authenticator)
            .where(Authenticator.id == authenticator.id, Authenticator.counter < reported)
            .values(counter=reported)
            .execution_options(synchronize_session=False)
        )
        if advanced.rowcount != 1:
            await session.rollback()
            logger.warning("passkey_counter_race", extra={"authenticator_id": str(authenticator.id)})
            raise passkey_authentication_failed()
        await session.commit()

    logger.info(
        "passkey_authentication_succeeded",
        extra={"user_id": str(authenticator.user_id), "authenticator_id": str(authenticator.id)},
    )
    return authenticator.user
