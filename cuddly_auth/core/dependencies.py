import uuid
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from cuddly_auth.core.config import settings
from cuddly_auth.core.errors import NotAuthenticated, NotFound
from cuddly_auth.core.sessions import read_session
from cuddly_auth.models.user import User
from cuddly_auth.services import auth as auth_service


async def get_optional_session_user(request: Request) -> dict[str, Any] | None:
    payload = read_session(request)
    return payload["user"] if payload else None


def ensure_session_owns(session_user: dict[str, Any] | None, user_id: uuid.UUID) -> None:
    """Passkeys may only be attached to the account of the signed-in user."""
    if not settings.webauthn_registration_requires_session:
        return
    if session_user is None or session_user.get("id") != str(user_id):
        raise NotAuthenticated()


async def require_passkey_owner(
    session: AsyncSession, session_user: dict[str, Any] | None, user_id: uuid.UUID
) -> User:
    user = await auth_service.get_user(session, user_id)
    if user is None:
        raise NotFound()
    ensure_session_owns(session_user, user.id)
    return user
