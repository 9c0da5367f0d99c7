from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel


class UpgraderPatchRequest(BaseModel):
    upgrades_per_minute: float | None = None
    target_major_version: int | None = None


class ConfidenceOverrideRequest(BaseModel):
    confidence: Literal["broken", "low", "normal", "high"]


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
