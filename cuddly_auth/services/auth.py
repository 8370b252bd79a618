import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from cuddly_auth.core import security
from cuddly_auth.core.errors import AlreadyExists, invalid_credentials
from cuddly_auth.models.user import User
from cuddly_auth.schemas.auth import RegisterRequest

logger = logging.getLogger(__name__)

_placeholder_digest: str | None = None


async def _placeholder_hash() -> str:
    """Digest verified against when there is no real one, computed once off the event loop."""
    global _placeholder_digest
    if _placeholder_digest is None:
        _placeholder_digest = await security.hash_password_async(uuid.uuid4().hex)
    return _placeholder_digest


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def get_user(session: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def register_user(session: AsyncSession, payload: RegisterRequest) -> User:
    if await get_user_by_email(session, payload.email):
        raise AlreadyExists()

    user = User(
        email=payload.email,
        name=payload.name,
        hashed_password=await security.hash_password_async(payload.password),
        email_verified_at=None,
    )
    session.add(user)
    try:
        await session.commit()
    except IntegrityError as exc:
        # Lost a race against a concurrent registration for the same email.
        await session.rollback()
        raise AlreadyExists() from exc
    await session.refresh(user)
    logger.info("user_registered", extra={"user_id": str(user.id)})
    return user


async def authenticate_user(session: AsyncSession, email: str, password: str) -> User:
    """Return the user for a valid email/password pair.

    Unknown email, passkey-only account and wrong password all raise the same
    ``InvalidCredentials``, and all three pay for one bcrypt verification.
    """
    user = await get_user_by_email(session, email)
    digest = user.hashed_password if user is not None else None
    valid = await security.verify_password_async(password, digest or await _placeholder_hash())
    if user is None or digest is None or not valid:
        logger.info("password_login_failed")
        raise invalid_credentials()
    logger.info("password_login_succeeded", extra={"user_id": str(user.id)})
    return user
