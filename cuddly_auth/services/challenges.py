"""Server-held WebAuthn challenges.

A challenge is issued together with the options sent to the browser, bound to
a purpose (and, for registration, to a user), and accepted back exactly once
before it expires.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from cuddly_auth.core.config import settings
from cuddly_auth.models.challenge import ChallengePurpose, WebAuthnChallenge

logger = logging.getLogger(__name__)


def _as_aware(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


async def purge_expired_challenges(session: AsyncSession, *, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        delete(WebAuthnChallenge)
        .where(WebAuthnChallenge.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)


async def issue_challenge(
    session: AsyncSession,
    *,
    challenge: str,
    purpose: ChallengePurpose,
    user_id: uuid.UUID | None = None,
) -> WebAuthnChallenge:
    now = datetime.now(timezone.utc)
    await purge_expired_challenges(session, now=now)
    record = WebAuthnChallenge(
        challenge=challenge,
        purpose=purpose,
        user_id=user_id,
        expires_at=now + timedelta(seconds=settings.webauthn_challenge_ttl_seconds),
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


async def consume_challenge(
    session: AsyncSession,
    *,
    challenge: str,
    purpose: ChallengePurpose,
    user_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> WebAuthnChallenge | None:
    """Mark a pending challenge as used and return it.

    Returns ``None`` when the challenge is unknown, already used, expired, was
    issued for another purpose, or (when ``user_id`` is given) for another user.
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(WebAuthnChallenge)
        .where(WebAuthnChallenge.challenge == challenge)
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if record is None or record.purpose != purpose or record.consumed_at is not None:
        return None
    if _as_aware(record.expires_at) <= now:
        return None
    if user_id is not None and record.user_id != user_id:
        return None

    claimed = await session.execute(
        update(WebAuthnChallenge)
        .where(WebAuthnChallenge.id == record.id, WebAuthnChallenge.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await session.rollback()
        logger.info("challenge_replay_rejected", extra={"purpose": purpose.value})
        return None
    await session.commit()
    return record
