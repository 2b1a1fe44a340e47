from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
import httpx
from pydantic import BaseModel, Field, ValidationError

from assistant0.apps.api.deps import (
    Caller,
    get_app_settings,
    get_authorizer,
    get_caller,
    get_database,
    get_http_client,
    get_identity_provider,
    get_step_up_flow,
)
from assistant0.core.config import Settings
from assistant0.core.errors import ConsentRequiredError, IdentityProviderError
from assistant0.domain.tools import CallContext, ToolOk
from assistant0.persistence.db import Database
from assistant0.services.auth.identity import IdentityProvider
from assistant0.services.auth.step_up import StepUpFlow
from assistant0.services.authz.fga import RelationshipAuthorizer
from assistant0.services.gateway import ToolGateway
from assistant0.tools.base import ToolDependencies
from assistant0.tools.registry import build_tools


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tools", tags=["tools"])


class InvokeToolRequest(BaseModel):
    arguments: dict[str, Any] = Field(default_factory=dict)
    thread_id: str | None = None
    workspace_id: str | None = None
    # Set when re-submitting a call the user approved out of band.
    challenge_id: str | None = None


@router.post("/{tool_name}/invoke")
async def invoke_tool(
    tool_name: str,
    payload: InvokeToolRequest,
    caller: Caller = Depends(get_caller),
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
    authorizer: RelationshipAuthorizer | None = Depends(get_authorizer),
    identity_provider: IdentityProvider | None = Depends(get_identity_provider),
    step_up_flow: StepUpFlow | None = Depends(get_step_up_flow),
    http_client: httpx.AsyncClient | None = Depends(get_http_client),
) -> dict[str, Any]:
    context = CallContext(
        user_id=caller.user_id,
        user_email=caller.email,
        thread_id=payload.thread_id,
        workspace_id=payload.workspace_id,
        challenge_id=payload.challenge_id,
    )
    deps = ToolDependencies.for_context(
        context,
        settings=settings,
        database=database,
        authorizer=authorizer,
        identity_provider=identity_provider,
        refresh_token=caller.refresh_token,
        http_client=http_client,
    )
    tools = build_tools(deps)
    tool = tools.get(tool_name)
    if tool is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "TOOL_NOT_FOUND", "message": f"Unknown tool {tool_name}"},
        )

    gateway = ToolGateway(database, step_up_flow, settings)
    try:
        outcome = await gateway.invoke(tool_name, tool, payload.arguments, context)
    except ConsentRequiredError as exc:
        # The client starts the redirect/popup consent flow with these details.
        raise HTTPException(
            status_code=403,
            detail={
                "code": "CONSENT_REQUIRED",
                "message": exc.message,
                "connection": exc.connection,
                "scopes": exc.scopes,
            },
        ) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "TOOL_INPUT_INVALID",
                "message": "Tool arguments failed validation",
                "errors": exc.errors(include_url=False),
            },
        ) from exc
    except IdentityProviderError as exc:
        raise HTTPException(
            status_code=502,
            detail={"code": "IDENTITY_PROVIDER_ERROR", "message": str(exc)},
        ) from exc
    except Exception as exc:  # noqa: BLE001 - tool failures are already audited
        logger.warning("tool_invoke_failed tool=%s user_id=%s", tool_name, caller.user_id, exc_info=exc)
        raise HTTPException(
            status_code=502,
            detail={"code": "TOOL_EXECUTION_FAILED", "message": str(exc) or exc.__class__.__name__},
        ) from exc

    if isinstance(outcome, ToolOk):
        return {"status": "ok", "result": outcome.value}
    return outcome.as_result()
