from __future__ import annotations

import asyncio
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
from typing import Any, Callable, Iterator
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from assistant0.core.config import Settings, get_settings
from assistant0.core.errors import (
    AuthorizationDenied,
    AuthorizationTimeout,
    ChallengeNotFoundError,
    IdentityProviderError,
)
from assistant0.domain.models import AuthorizationChallenge
from assistant0.persistence.db import Database
from assistant0.persistence.repos import challenges as challenges_repo
from assistant0.persistence.repos.challenges import (
    CHALLENGE_APPROVED,
    CHALLENGE_DENIED,
    CHALLENGE_EXPIRED,
    CHALLENGE_PENDING,
    TERMINAL_STATES,
)
from assistant0.services.auth.identity import STATUS_PENDING, IdentityProvider


logger = logging.getLogger(__name__)

ACCESS_DENIED_MESSAGE = "The user has denied the request"
TIMEOUT_MESSAGE = "The authorization request expired before the user responded"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def arguments_fingerprint(arguments: Any) -> str:
    # Canonical JSON so key order never changes which call an approval covers.
    canonical = json.dumps(arguments, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class StepUpApproval:
    challenge_id: str
    # Bearer token the provider issued with the user's approval, if any.
    access_token: str | None = None

    def __repr__(self) -> str:
        return f"StepUpApproval(challenge_id={self.challenge_id!r})"


_current_approval: ContextVar[StepUpApproval | None] = ContextVar("step_up_approval", default=None)


def current_approval() -> StepUpApproval | None:
    # The approval authorizing the tool call running in this context.
    return _current_approval.get()


@contextmanager
def approval_scope(approval: StepUpApproval | None) -> Iterator[None]:
    token = _current_approval.set(approval)
    try:
        yield
    finally:
        _current_approval.reset(token)


class StepUpFlow:
    """Two-phase out-of-band confirmation for risky tool calls.

    Phase one pushes a challenge to the caller's device and persists it as
    pending. Phase two (``resume``) may run in any later request or process: it
    loads the challenge by id and advances it at most once to approved, denied
    or expired. Nothing is held in memory between the phases.
    """

    def __init__(
        self,
        database: Database,
        identity_provider: IdentityProvider,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._database = database
        self._identity_provider = identity_provider
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now

    async def request_challenge(
        self,
        *,
        user_id: str,
        tool_name: str,
        arguments: Any,
        binding_message: str,
        scopes: list[str] | None = None,
        audience: str | None = None,
        requested_expiry_s: int | None = None,
    ) -> AuthorizationChallenge:
        scopes = list(scopes or self._settings.step_up_scopes)
        audience = audience or self._settings.shop_api_audience
        lifetime_s = int(requested_expiry_s or self._settings.step_up_requested_expiry_s)
        request = await self._identity_provider.request_async_authorization(
            user_id=user_id,
            binding_message=binding_message,
            scopes=scopes,
            audience=audience,
            requested_expiry_s=lifetime_s,
        )
        now = self._clock()
        # The provider may shorten the lifetime; never outlive what it granted.
        lifetime_s = min(lifetime_s, int(request.expires_in or lifetime_s))
        challenge = AuthorizationChallenge(
            id=uuid4().hex,
            user_id=user_id,
            tool_name=tool_name,
            arguments_fingerprint=arguments_fingerprint(arguments),
            binding_message=binding_message,
            scopes=scopes,
            audience=audience,
            state=CHALLENGE_PENDING,
            provider_request_id=request.auth_req_id,
            poll_interval_s=float(request.interval or self._settings.step_up_poll_interval_s),
            created_at=now,
            expires_at=now + timedelta(seconds=lifetime_s),
        )
        async with self._database.session() as session:
            await challenges_repo.create_challenge(session, challenge)
            await session.commit()
        logger.info(
            "step_up_challenge_issued challenge_id=%s user_id=%s tool=%s expires_in_s=%s",
            challenge.id,
            user_id,
            tool_name,
            lifetime_s,
        )
        return challenge

    async def get(self, challenge_id: str, *, user_id: str) -> AuthorizationChallenge:
        async with self._database.session() as session:
            challenge = await challenges_repo.get_challenge(session, challenge_id=challenge_id, user_id=user_id)
        if challenge is None:
            raise ChallengeNotFoundError(f"authorization challenge {challenge_id} not found")
        return challenge

    async def resume(self, challenge_id: str, *, user_id: str) -> AuthorizationChallenge:
        async with self._database.session() as session:
            challenge = await challenges_repo.get_challenge(session, challenge_id=challenge_id, user_id=user_id)
            if challenge is None:
                raise ChallengeNotFoundError(f"authorization challenge {challenge_id} not found")
            if challenge.state in TERMINAL_STATES:
                return challenge

            now = self._clock()
            if now >= _as_utc(challenge.expires_at):
                return await self._transition(session, challenge, CHALLENGE_EXPIRED, now)

            status = await self._identity_provider.poll_async_authorization(str(challenge.provider_request_id))
            if status.state == STATUS_PENDING:
                await challenges_repo.mark_polled(
                    session,
                    challenge_id=challenge.id,
                    now=now,
                    poll_interval_s=status.interval,
                )
                await session.commit()
                await session.refresh(challenge)
                return challenge
            return await self._transition(session, challenge, status.state, now, access_token=status.access_token)

    async def expire(self, challenge_id: str, *, user_id: str) -> AuthorizationChallenge:
        async with self._database.session() as session:
            challenge = await challenges_repo.get_challenge(session, challenge_id=challenge_id, user_id=user_id)
            if challenge is None:
                raise ChallengeNotFoundError(f"authorization challenge {challenge_id} not found")
            if challenge.state in TERMINAL_STATES:
                return challenge
            return await self._transition(session, challenge, CHALLENGE_EXPIRED, self._clock())

    async def consume(self, challenge_id: str) -> StepUpApproval | None:
        # Claim an approval for execution; None when it was already used.
        async with self._database.session() as session:
            consumed, access_token = await challenges_repo.consume_challenge(
                session,
                challenge_id=challenge_id,
                now=self._clock(),
            )
            await session.commit()
        if not consumed:
            logger.warning("step_up_approval_already_consumed challenge_id=%s", challenge_id)
            return None
        return StepUpApproval(challenge_id=challenge_id, access_token=access_token)

    async def wait_for_resolution(
        self,
        challenge_id: str,
        *,
        user_id: str,
        timeout_s: float | None = None,
        poll_interval_s: float | None = None,
    ) -> AuthorizationChallenge:
        # Block mode: poll until terminal. wait_for cancels the loop on timeout, so no sleep outlives it.
        if timeout_s is None:
            challenge = await self.get(challenge_id, user_id=user_id)
            timeout_s = max(0.0, (_as_utc(challenge.expires_at) - self._clock()).total_seconds())
        try:
            return await asyncio.wait_for(
                self._poll_until_resolved(challenge_id, user_id=user_id, poll_interval_s=poll_interval_s),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError:
            logger.info("step_up_wait_timed_out challenge_id=%s", challenge_id)
            return await self.expire(challenge_id, user_id=user_id)

    async def _poll_until_resolved(
        self,
        challenge_id: str,
        *,
        user_id: str,
        poll_interval_s: float | None,
    ) -> AuthorizationChallenge:
        while True:
            try:
                challenge = await self.resume(challenge_id, user_id=user_id)
            except IdentityProviderError as exc:
                # Provider outage leaves the decision pending; the deadline still applies.
                logger.warning("step_up_poll_failed challenge_id=%s", challenge_id, exc_info=exc)
                challenge = await self.get(challenge_id, user_id=user_id)
            if challenge.state in TERMINAL_STATES:
                return challenge
            await asyncio.sleep(poll_interval_s or challenge.poll_interval_s)

    async def _transition(
        self,
        session: AsyncSession,
        challenge: AuthorizationChallenge,
        state: str,
        now: datetime,
        *,
        access_token: str | None = None,
    ) -> AuthorizationChallenge:
        changed = await challenges_repo.transition_challenge(
            session,
            challenge_id=challenge.id,
            state=state,
            now=now,
            access_token=access_token,
        )
        await session.commit()
        await session.refresh(challenge)
        if changed:
            logger.info(
                "step_up_challenge_resolved challenge_id=%s user_id=%s state=%s",
                challenge.id,
                challenge.user_id,
                challenge.state,
            )
        return challenge


def challenge_matches(
    challenge: AuthorizationChallenge,
    *,
    user_id: str,
    tool_name: str,
    arguments: Any,
) -> bool:
    # An approval only covers the exact call it was bound to.
    return (
        challenge.user_id == user_id
        and challenge.tool_name == tool_name
        and challenge.arguments_fingerprint == arguments_fingerprint(arguments)
    )


def raise_for_outcome(challenge: AuthorizationChallenge) -> None:
    if challenge.state == CHALLENGE_DENIED:
        raise AuthorizationDenied(ACCESS_DENIED_MESSAGE, challenge_id=challenge.id)
    if challenge.state == CHALLENGE_EXPIRED:
        raise AuthorizationTimeout(TIMEOUT_MESSAGE, challenge_id=challenge.id)
    if challenge.state != CHALLENGE_APPROVED:
        raise ValueError(f"challenge {challenge.id} is still {challenge.state}")
