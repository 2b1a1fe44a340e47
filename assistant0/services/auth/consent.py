from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Union
from urllib.parse import urlencode, urljoin

from assistant0.core.config import Settings, get_settings


logger = logging.getLogger(__name__)

CONSENT_COMPLETED = "completed"
# Surface still open at the deadline; never treated as a denial.
CONSENT_NOT_AUTHORIZED = "not_authorized"


@dataclass(frozen=True)
class ConsentRequest:
    # Durable delegated-credential consent for one federated connection.
    connection: str
    scopes: list[str] = field(default_factory=list)
    return_to: str | None = None


@dataclass(frozen=True)
class ConsentOutcome:
    state: str
    waited_s: float

    @property
    def completed(self) -> bool:
        return self.state == CONSENT_COMPLETED


def build_authorize_url(
    request: ConsentRequest,
    *,
    base_url: str,
    authorize_path: str | None = None,
    settings: Settings | None = None,
) -> str:
    settings = settings or get_settings()
    params = {
        "returnTo": request.return_to or settings.consent_return_to,
        "connection": request.connection,
        "access_type": "offline",
        "prompt": "consent",
        "connection_scope": ",".join(request.scopes),
    }
    url = urljoin(base_url, authorize_path or settings.consent_authorize_path)
    return f"{url}?{urlencode(params)}"


IsClosed = Callable[[], Union[bool, Awaitable[bool]]]
Resume = Callable[[], Union[Any, Awaitable[Any]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def poll_consent(
    is_closed: IsClosed,
    resume: Resume | None = None,
    *,
    interval_s: float | None = None,
    max_wait_s: float | None = None,
    settings: Settings | None = None,
) -> ConsentOutcome:
    """Wait for the authorization surface to close, then resume once.

    Closing the surface is the only completion signal; whether consent was
    actually granted is discovered when the resumed operation retries its
    credential fetch. If the surface is still open after ``max_wait_s`` the
    wait ends as not authorized rather than hanging.
    """
    settings = settings or get_settings()
    interval_s = settings.consent_poll_interval_s if interval_s is None else interval_s
    max_wait_s = settings.consent_max_wait_s if max_wait_s is None else max_wait_s
    started = time.monotonic()

    async def _wait_closed() -> None:
        while not await _maybe_await(is_closed()):
            await asyncio.sleep(interval_s)

    try:
        await asyncio.wait_for(_wait_closed(), timeout=max_wait_s)
    except asyncio.TimeoutError:
        waited = time.monotonic() - started
        logger.info("consent_poll_abandoned waited_s=%.1f", waited)
        return ConsentOutcome(state=CONSENT_NOT_AUTHORIZED, waited_s=waited)

    if resume is not None:
        await _maybe_await(resume())
    return ConsentOutcome(state=CONSENT_COMPLETED, waited_s=time.monotonic() - started)
