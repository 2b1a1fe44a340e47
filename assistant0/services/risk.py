from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any

from assistant0.core.config import Settings, get_settings
from assistant0.core.errors import RiskAssessmentAnomaly
from assistant0.domain.tools import CallContext


logger = logging.getLogger(__name__)

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"

FACTOR_SENSITIVE_TOOL = "sensitive_tool"
FACTOR_HIGH_RISK_ACTION = "high_risk_action"
FACTOR_HIGH_VALUE_TRANSACTION = "high_value_transaction"
FACTOR_BULK_OPERATION = "bulk_operation"

HIGH_SCORE_THRESHOLD = 70
MEDIUM_SCORE_THRESHOLD = 40

_RISK_COLORS = {RISK_HIGH: "red", RISK_MEDIUM: "yellow", RISK_LOW: "green"}


@dataclass(frozen=True)
class RiskAssessment:
    # Additive rule-based score so audit rows can explain exactly which factors fired.
    level: str
    score: int
    factors: tuple[str, ...]
    requires_step_up: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "score": self.score,
            "factors": list(self.factors),
            "requires_step_up": self.requires_step_up,
        }


def level_for_score(score: int) -> str:
    if score >= HIGH_SCORE_THRESHOLD:
        return RISK_HIGH
    if score >= MEDIUM_SCORE_THRESHOLD:
        return RISK_MEDIUM
    return RISK_LOW


def requires_step_up(level: str, factors: tuple[str, ...] | list[str]) -> bool:
    return level == RISK_HIGH or (level == RISK_MEDIUM and FACTOR_HIGH_VALUE_TRANSACTION in factors)


def _serialize_arguments(arguments: Any) -> str:
    try:
        return json.dumps(arguments, default=str).lower()
    except (TypeError, ValueError) as exc:
        raise RiskAssessmentAnomaly("tool arguments are not serializable") from exc


def _price_limit(arguments: Any) -> float | None:
    if not isinstance(arguments, dict):
        return None
    value = arguments.get("priceLimit")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    raise RiskAssessmentAnomaly("priceLimit is not numeric")


def _recipient_count(arguments: Any) -> int | None:
    if not isinstance(arguments, dict):
        return None
    recipients = arguments.get("recipients")
    if isinstance(recipients, (list, tuple)):
        return len(recipients)
    return None


def assess_risk(
    tool_name: str,
    arguments: Any,
    caller: CallContext | None = None,
    *,
    settings: Settings | None = None,
) -> RiskAssessment:
    # Pure and total: malformed arguments degrade to no extra score, never raise.
    settings = settings or get_settings()
    score = 0
    factors: list[str] = []

    if tool_name in settings.risk_sensitive_tools:
        score += settings.risk_sensitive_tool_weight
        factors.append(FACTOR_SENSITIVE_TOOL)

    # Substring scan is intentionally blunt; a recipient named "Sender" also matches.
    try:
        serialized = _serialize_arguments(arguments)
        if any(action in serialized for action in settings.risk_high_risk_actions):
            score += settings.risk_high_risk_action_weight
            factors.append(FACTOR_HIGH_RISK_ACTION)
    except RiskAssessmentAnomaly as exc:
        logger.debug("risk_assessment_anomaly tool=%s reason=%s", tool_name, exc)

    try:
        price_limit = _price_limit(arguments)
        if price_limit is not None and price_limit > settings.risk_high_value_threshold:
            score += settings.risk_high_value_weight
            factors.append(FACTOR_HIGH_VALUE_TRANSACTION)
    except RiskAssessmentAnomaly as exc:
        logger.debug("risk_assessment_anomaly tool=%s reason=%s", tool_name, exc)

    recipient_count = _recipient_count(arguments)
    if recipient_count is not None and recipient_count > settings.risk_bulk_recipient_threshold:
        score += settings.risk_bulk_operation_weight
        factors.append(FACTOR_BULK_OPERATION)

    level = level_for_score(score)
    return RiskAssessment(
        level=level,
        score=score,
        factors=tuple(factors),
        requires_step_up=requires_step_up(level, factors),
    )


def risk_message(assessment: RiskAssessment) -> str:
    if assessment.requires_step_up:
        return "This action requires additional verification for security"
    if assessment.level == RISK_MEDIUM:
        return "This action involves sensitive operations"
    return "This action has been assessed as low risk"


def risk_color(level: str) -> str:
    return _RISK_COLORS.get(level, "green")
