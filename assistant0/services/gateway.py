from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Mapping

from assistant0.core.config import Settings, get_settings
from assistant0.core.errors import (
    AuthorizationDenied,
    AuthorizationError,
    ChallengeNotFoundError,
    IdentityProviderError,
)
from assistant0.domain.models import AuthorizationChallenge
from assistant0.domain.tools import (
    CallContext,
    StepUpRequired,
    ToolDefinition,
    ToolErr,
    ToolInvocation,
    ToolOk,
    ToolOutcome,
)
from assistant0.persistence.db import Database
from assistant0.persistence.repos.challenges import CHALLENGE_APPROVED, CHALLENGE_PENDING
from assistant0.services.audit import (
    ACTION_STEP_UP_APPROVED,
    ACTION_STEP_UP_REQUIRED,
    STATUS_PENDING,
    STATUS_SUCCESS,
    AuditTrail,
)
from assistant0.services.auth.step_up import (
    StepUpApproval,
    StepUpFlow,
    approval_scope,
    challenge_matches,
    raise_for_outcome,
)
from assistant0.services.risk import RiskAssessment, assess_risk, risk_message
from assistant0.services.telemetry import increment_counter, record_tool_duration


logger = logging.getLogger(__name__)

STEP_UP_INTERRUPT = "interrupt"
STEP_UP_BLOCK = "block"

KIND_ACCESS_DENIED = "access_denied"
KIND_AUTHORIZATION_TIMEOUT = "authorization_timeout"

DEFAULT_AGENT_ROLE = "assistant"
_AGENT_ROLES = {
    "gmailSearchTool": "communications",
    "gmailDraftTool": "communications",
    "getCalendarEventsTool": "scheduling",
    "shopOnlineTool": "commerce",
    "serpApiTool": "research",
    "getContextDocumentsTool": "knowledge",
}

Assessor = Callable[..., RiskAssessment]


def agent_role_for(tool_name: str) -> str:
    return _AGENT_ROLES.get(tool_name, DEFAULT_AGENT_ROLE)


def default_binding_message(tool_name: str) -> str:
    return f"Approve {tool_name} requested by the assistant"


def _binding_message(name: str, tool: ToolDefinition, arguments: dict[str, Any]) -> str:
    if tool.binding_message is None:
        return default_binding_message(name)
    return tool.binding_message(arguments)


class ToolGateway:
    """Wraps tools with risk assessment, step-up gating and an audit trail.

    A wrapped tool keeps the ``description``/``input_schema``/``execute`` shape
    of the original. Each call is assessed, recorded as started, gated when the
    assessment demands step-up, executed, and recorded as finished. Tool
    exceptions propagate unchanged after the failure is recorded.
    """

    def __init__(
        self,
        database: Database,
        step_up_flow: StepUpFlow | None = None,
        settings: Settings | None = None,
        *,
        assessor: Assessor = assess_risk,
    ) -> None:
        self._database = database
        self._step_up_flow = step_up_flow
        self._settings = settings or get_settings()
        self._assessor = assessor

    def wrap_tools(
        self,
        tools: Mapping[str, ToolDefinition],
        context: CallContext,
    ) -> dict[str, ToolDefinition]:
        return {name: self.wrap(name, tool, context) for name, tool in tools.items()}

    def wrap(self, name: str, tool: ToolDefinition, context: CallContext) -> ToolDefinition:
        async def execute(arguments: dict[str, Any]) -> Any:
            outcome = await self.invoke(name, tool, arguments, context)
            if isinstance(outcome, ToolOk):
                return outcome.value
            return outcome.as_result()

        return tool.with_execute(execute)

    async def invoke(
        self,
        name: str,
        tool: ToolDefinition,
        arguments: dict[str, Any],
        context: CallContext,
    ) -> ToolOutcome:
        invocation = ToolInvocation.create(name, context)
        trail = AuditTrail(self._database, invocation)
        assessment = self._assessor(name, arguments, context, settings=self._settings)
        await trail.record_start(
            agent_role=agent_role_for(name),
            risk_level=assessment.level,
            requires_step_up=assessment.requires_step_up,
            inputs=arguments,
        )
        logger.info(
            "tool_invocation_received invocation_id=%s tool=%s user_id=%s risk_level=%s score=%s step_up=%s",
            invocation.id,
            name,
            invocation.user_id,
            assessment.level,
            assessment.score,
            assessment.requires_step_up,
        )

        approval: StepUpApproval | None = None
        if assessment.requires_step_up:
            gated = await self._gate(name, tool, arguments, context, assessment, trail)
            if not isinstance(gated, StepUpApproval):
                return gated
            approval = gated

        return await self._execute(name, tool, arguments, trail, approval)

    async def _gate(
        self,
        name: str,
        tool: ToolDefinition,
        arguments: dict[str, Any],
        context: CallContext,
        assessment: RiskAssessment,
        trail: AuditTrail,
    ) -> ToolOutcome | StepUpApproval:
        # Proceeds only with an approval bound to this exact call and claimed here.
        invocation = trail.invocation
        await trail.record_control_event(
            ACTION_STEP_UP_REQUIRED,
            STATUS_PENDING,
            {"inputs": {"risk": assessment.as_dict(), "challenge_id": context.challenge_id}},
        )
        increment_counter("step_up_required_total")
        message = risk_message(assessment)
        flow = self._step_up_flow
        if flow is None:
            return StepUpRequired(message=message, risk_level=assessment.level)

        challenge: AuthorizationChallenge | None = None
        if context.challenge_id:
            try:
                challenge = await flow.resume(context.challenge_id, user_id=invocation.user_id)
            except ChallengeNotFoundError:
                logger.warning(
                    "step_up_challenge_unknown invocation_id=%s challenge_id=%s",
                    invocation.id,
                    context.challenge_id,
                )
            except IdentityProviderError as exc:
                # Provider outage while polling leaves the decision pending.
                logger.warning(
                    "step_up_resume_failed invocation_id=%s challenge_id=%s",
                    invocation.id,
                    context.challenge_id,
                    exc_info=exc,
                )
                return StepUpRequired(
                    message=message,
                    risk_level=assessment.level,
                    challenge_id=context.challenge_id,
                )
            if challenge is not None and not challenge_matches(
                challenge,
                user_id=invocation.user_id,
                tool_name=name,
                arguments=arguments,
            ):
                logger.warning(
                    "step_up_challenge_mismatch invocation_id=%s challenge_id=%s tool=%s",
                    invocation.id,
                    challenge.id,
                    name,
                )
                challenge = None
            if challenge is not None and challenge.state == CHALLENGE_APPROVED:
                approval = await flow.consume(challenge.id)
                if approval is not None:
                    return await self._approved(approval, trail)
                challenge = None

        if challenge is None:
            try:
                challenge = await flow.request_challenge(
                    user_id=invocation.user_id,
                    tool_name=name,
                    arguments=arguments,
                    binding_message=_binding_message(name, tool, arguments),
                    scopes=list(tool.scopes) or None,
                )
            except IdentityProviderError as exc:
                await trail.record_failure(exc)
                raise
            if self._settings.step_up_behavior == STEP_UP_BLOCK:
                challenge = await flow.wait_for_resolution(challenge.id, user_id=invocation.user_id)
                if challenge.state == CHALLENGE_APPROVED:
                    approval = await flow.consume(challenge.id)
                    if approval is not None:
                        return await self._approved(approval, trail)

        if challenge.state in (CHALLENGE_PENDING, CHALLENGE_APPROVED):
            return StepUpRequired(message=message, risk_level=assessment.level, challenge_id=challenge.id)

        try:
            raise_for_outcome(challenge)
        except AuthorizationError as exc:
            await trail.record_failure(exc.message)
            kind = KIND_ACCESS_DENIED if isinstance(exc, AuthorizationDenied) else KIND_AUTHORIZATION_TIMEOUT
            increment_counter(f"step_up_{challenge.state}_total")
            logger.info(
                "step_up_not_approved invocation_id=%s challenge_id=%s state=%s",
                invocation.id,
                challenge.id,
                challenge.state,
            )
            return ToolErr(kind=kind, detail=exc.message, challenge_id=challenge.id)
        # raise_for_outcome only returns for approved challenges, which were handled above.
        return StepUpRequired(message=message, risk_level=assessment.level, challenge_id=challenge.id)

    async def _approved(self, approval: StepUpApproval, trail: AuditTrail) -> StepUpApproval:
        await trail.record_control_event(
            ACTION_STEP_UP_APPROVED,
            STATUS_SUCCESS,
            {"outputs": {"challenge_id": approval.challenge_id}},
        )
        increment_counter("step_up_approved_total")
        return approval

    async def _execute(
        self,
        name: str,
        tool: ToolDefinition,
        arguments: dict[str, Any],
        trail: AuditTrail,
        approval: StepUpApproval | None = None,
    ) -> ToolOk:
        invocation = trail.invocation
        try:
            # Tools read the approval's delegated credential through current_approval().
            with approval_scope(approval):
                value = tool.execute(arguments)
                if inspect.isawaitable(value):
                    value = await value
        except Exception as exc:
            await trail.record_failure(exc)
            record_tool_duration(tool_name=name, duration_ms=trail.elapsed_ms(), outcome="failure")
            logger.warning(
                "tool_invocation_failed invocation_id=%s tool=%s error=%s",
                invocation.id,
                name,
                exc.__class__.__name__,
            )
            raise
        await trail.record_success(value)
        record_tool_duration(tool_name=name, duration_ms=trail.elapsed_ms(), outcome="success")
        logger.info("tool_invocation_succeeded invocation_id=%s tool=%s", invocation.id, name)
        return ToolOk(value=value)
