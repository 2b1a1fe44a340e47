from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from assistant0.apps.api.deps import Caller, get_app_settings, get_caller, get_step_up_flow
from assistant0.core.config import Settings
from assistant0.core.errors import ChallengeNotFoundError, IdentityProviderError
from assistant0.domain.models import AuthorizationChallenge
from assistant0.services.auth.consent import ConsentRequest, build_authorize_url
from assistant0.services.auth.step_up import StepUpFlow


router = APIRouter(prefix="/authorization", tags=["authorization"])


class ChallengeResponse(BaseModel):
    id: str
    state: str
    tool_name: str
    binding_message: str
    expires_at: str
    resolved_at: str | None


class ConsentUrlRequest(BaseModel):
    connection: str | None = None
    scopes: list[str] = Field(default_factory=list)
    return_to: str | None = None


class ConsentUrlResponse(BaseModel):
    authorize_url: str


def _to_response(challenge: AuthorizationChallenge) -> ChallengeResponse:
    return ChallengeResponse(
        id=challenge.id,
        state=challenge.state,
        tool_name=challenge.tool_name,
        binding_message=challenge.binding_message,
        expires_at=challenge.expires_at.isoformat(),
        resolved_at=challenge.resolved_at.isoformat() if challenge.resolved_at else None,
    )


@router.get("/challenges/{challenge_id}", response_model=ChallengeResponse)
async def resume_challenge(
    challenge_id: str,
    caller: Caller = Depends(get_caller),
    step_up_flow: StepUpFlow | None = Depends(get_step_up_flow),
) -> ChallengeResponse:
    if step_up_flow is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "STEP_UP_UNAVAILABLE", "message": "No identity provider configured"},
        )
    try:
        challenge = await step_up_flow.resume(challenge_id, user_id=caller.user_id)
    except ChallengeNotFoundError as exc:
        raise HTTPException(
            status_code=404,
            detail={"code": "CHALLENGE_NOT_FOUND", "message": str(exc)},
        ) from exc
    except IdentityProviderError as exc:
        raise HTTPException(
            status_code=502,
            detail={"code": "IDENTITY_PROVIDER_ERROR", "message": str(exc)},
        ) from exc
    return _to_response(challenge)


@router.post("/consent", response_model=ConsentUrlResponse)
async def consent_url(
    payload: ConsentUrlRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    settings: Settings = Depends(get_app_settings),
) -> ConsentUrlResponse:
    consent = ConsentRequest(
        connection=payload.connection or settings.google_connection,
        scopes=payload.scopes or list(settings.google_scopes),
        return_to=payload.return_to,
    )
    url = build_authorize_url(consent, base_url=str(request.base_url), settings=settings)
    return ConsentUrlResponse(authorize_url=url)
