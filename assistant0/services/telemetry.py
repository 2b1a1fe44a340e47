from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class ToolDurationSample:
    ts: float
    tool_name: str
    duration_ms: float
    outcome: str


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_tool_samples: Deque[ToolDurationSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_tool_duration(*, tool_name: str, duration_ms: float, outcome: str) -> None:
    # Track per-tool execution time for gateway dashboards.
    _tool_samples.append(
        ToolDurationSample(
            ts=time.time(),
            tool_name=tool_name,
            duration_ms=duration_ms,
            outcome=outcome,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def get_counters() -> dict[str, int]:
    return dict(_counters)


def external_call_samples(integration: str | None = None) -> list[ExternalCallSample]:
    if integration is None:
        return list(_external_samples)
    return [sample for sample in _external_samples if sample.integration == integration]


def tool_duration_samples(tool_name: str | None = None) -> list[ToolDurationSample]:
    if tool_name is None:
        return list(_tool_samples)
    return [sample for sample in _tool_samples if sample.tool_name == tool_name]


def reset() -> None:
    # Test hook; counters are process-local.
    _external_samples.clear()
    _tool_samples.clear()
    _counters.clear()
