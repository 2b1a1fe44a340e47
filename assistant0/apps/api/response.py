from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


class ResponseMeta(BaseModel):
    request_id: str


class ErrorDetail(BaseModel):
    # Stable machine code plus a human message; details carry structured hints.
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Reuse upstream request ids so proxy and service logs line up.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
