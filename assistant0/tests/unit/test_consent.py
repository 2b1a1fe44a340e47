from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from assistant0.services.auth.consent import (
    CONSENT_COMPLETED,
    CONSENT_NOT_AUTHORIZED,
    ConsentRequest,
    build_authorize_url,
    poll_consent,
)


def test_authorize_url_carries_consent_parameters(settings) -> None:
    request = ConsentRequest(
        connection="google-oauth2",
        scopes=["https://www.googleapis.com/auth/calendar.events", "openid"],
    )

    url = build_authorize_url(request, base_url="https://assistant.example.com/", settings=settings)

    parsed = urlparse(url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://assistant.example.com/auth/login"
    params = parse_qs(parsed.query)
    assert params == {
        "returnTo": ["/close"],
        "connection": ["google-oauth2"],
        "access_type": ["offline"],
        "prompt": ["consent"],
        "connection_scope": ["https://www.googleapis.com/auth/calendar.events,openid"],
    }


@pytest.mark.asyncio
async def test_poll_resumes_once_after_surface_closes() -> None:
    checks = {"count": 0}
    resumed: list[str] = []

    def is_closed() -> bool:
        checks["count"] += 1
        return checks["count"] >= 3

    async def resume() -> None:
        resumed.append("retry")

    outcome = await poll_consent(is_closed, resume, interval_s=0.01, max_wait_s=1)

    assert outcome.state == CONSENT_COMPLETED
    assert outcome.completed
    assert resumed == ["retry"]
    assert checks["count"] == 3


@pytest.mark.asyncio
async def test_poll_gives_up_as_not_authorized_and_leaves_no_tasks() -> None:
    # An abandoned surface ends the wait; it is never reported as a denial.
    resumed: list[str] = []
    before = len(asyncio.all_tasks())

    outcome = await poll_consent(lambda: False, lambda: resumed.append("x"), interval_s=0.01, max_wait_s=0.05)

    assert outcome.state == CONSENT_NOT_AUTHORIZED
    assert not outcome.completed
    assert resumed == []
    assert len(asyncio.all_tasks()) == before


@pytest.mark.asyncio
async def test_poll_accepts_async_close_checks() -> None:
    async def is_closed() -> bool:
        return True

    outcome = await poll_consent(is_closed, interval_s=0.01, max_wait_s=1)
    assert outcome.completed
