from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from assistant0.domain.models import AuthorizationChallenge


CHALLENGE_PENDING = "pending"
CHALLENGE_APPROVED = "approved"
CHALLENGE_DENIED = "denied"
CHALLENGE_EXPIRED = "expired"
TERMINAL_STATES = frozenset({CHALLENGE_APPROVED, CHALLENGE_DENIED, CHALLENGE_EXPIRED})


async def create_challenge(session: AsyncSession, challenge: AuthorizationChallenge) -> AuthorizationChallenge:
    session.add(challenge)
    await session.flush()
    return challenge


async def get_challenge(
    session: AsyncSession,
    *,
    challenge_id: str,
    user_id: str | None = None,
) -> AuthorizationChallenge | None:
    stmt = select(AuthorizationChallenge).where(AuthorizationChallenge.id == challenge_id)
    if user_id is not None:
        # Never resolve another caller's challenge.
        stmt = stmt.where(AuthorizationChallenge.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def transition_challenge(
    session: AsyncSession,
    *,
    challenge_id: str,
    state: str,
    now: datetime,
    access_token: str | None = None,
) -> bool:
    # Conditional update so a challenge leaves pending exactly once, even under racing resumes.
    if state not in TERMINAL_STATES:
        raise ValueError(f"invalid terminal challenge state: {state}")
    values: dict[str, object] = {"state": state, "resolved_at": now}
    if state == CHALLENGE_APPROVED and access_token:
        values["access_token"] = access_token
    stmt = (
        update(AuthorizationChallenge)
        .where(
            AuthorizationChallenge.id == challenge_id,
            AuthorizationChallenge.state == CHALLENGE_PENDING,
        )
        .values(**values)
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def mark_polled(
    session: AsyncSession,
    *,
    challenge_id: str,
    now: datetime,
    poll_interval_s: float | None = None,
) -> None:
    values: dict[str, object] = {"last_polled_at": now}
    if poll_interval_s is not None:
        values["poll_interval_s"] = poll_interval_s
    await session.execute(
        update(AuthorizationChallenge)
        .where(
            AuthorizationChallenge.id == challenge_id,
            AuthorizationChallenge.state == CHALLENGE_PENDING,
        )
        .values(**values)
    )


async def consume_challenge(
    session: AsyncSession,
    *,
    challenge_id: str,
    now: datetime,
) -> tuple[bool, str | None]:
    # An approval authorizes one execution; the first consumer wins and takes its credential.
    unconsumed = (
        AuthorizationChallenge.id == challenge_id,
        AuthorizationChallenge.state == CHALLENGE_APPROVED,
        AuthorizationChallenge.consumed_at.is_(None),
    )
    row = await session.execute(
        select(AuthorizationChallenge.access_token).where(*unconsumed).with_for_update()
    )
    access_token = row.scalar_one_or_none()
    result = await session.execute(
        update(AuthorizationChallenge).where(*unconsumed).values(consumed_at=now, access_token=None)
    )
    if not result.rowcount:
        return False, None
    return True, access_token
