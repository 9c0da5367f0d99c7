from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Header, Request

from fleet_upgrader.errors import ApiError
from fleet_upgrader.routes._deps import runtime_from_request, trace_id_from_request
from fleet_upgrader.runtime import MaintenanceRuntime
from fleet_upgrader.schemas import ConfidenceOverrideRequest, UpgraderPatchRequest, success_envelope
from fleet_upgrader.versions import Confidence, Version

router = APIRouter(prefix="/api/v1", tags=["upgrader"])


def _upgrader_view(runtime: MaintenanceRuntime) -> dict[str, Any]:
    upgrader = runtime.upgrader
    return {
        "upgrades_per_minute": upgrader.upgrades_per_minute(),
        "target_major_version": upgrader.target_major_version(),
        "confidence_overrides": _override_items(runtime),
        "throttle_budget": upgrader.throttle_budget(),
        "interval_seconds": upgrader.interval_seconds,
        "active": runtime.job_control.is_active(runtime.job_name),
    }


def _override_items(runtime: MaintenanceRuntime) -> list[dict[str, str]]:
    overrides = runtime.upgrader.confidence_overrides()
    return [{"version": str(version), "confidence": overrides[version].name} for version in sorted(overrides)]


@router.get("/upgrader")
def get_upgrader(request: Request):
    return success_envelope(_upgrader_view(runtime_from_request(request)), trace_id_from_request(request))


@router.patch("/upgrader")
def patch_upgrader(payload: UpgraderPatchRequest, request: Request):
    runtime = runtime_from_request(request)
    fields = payload.model_fields_set
    if not fields:
        raise ApiError(
            code="REQ_VALIDATION_FAILED",
            message="at least one of upgrades_per_minute or target_major_version is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    if "upgrades_per_minute" in fields:
        if payload.upgrades_per_minute is None:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message="upgrades_per_minute must not be null",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        runtime.upgrader.set_upgrades_per_minute(payload.upgrades_per_minute)
    if "target_major_version" in fields:
        runtime.upgrader.set_target_major_version(payload.target_major_version)
    return success_envelope(_upgrader_view(runtime), trace_id_from_request(request))


@router.get("/upgrader/confidence-overrides")
def list_confidence_overrides(request: Request):
    items = _override_items(runtime_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.put("/upgrader/confidence-overrides/{version}")
def put_confidence_override(version: str, payload: ConfidenceOverrideRequest, request: Request):
    runtime = runtime_from_request(request)
    parsed = Version.parse(version)
    confidence = Confidence.from_name(payload.confidence)
    runtime.upgrader.override_confidence(parsed, confidence)
    return success_envelope(
        {"version": str(parsed), "confidence": confidence.name},
        trace_id_from_request(request),
    )


@router.delete("/upgrader/confidence-overrides/{version}")
def delete_confidence_override(version: str, request: Request):
    parsed = Version.parse(version)
    if not runtime_from_request(request).upgrader.remove_confidence_override(parsed):
        raise ApiError(
            code="OVERRIDE_NOT_FOUND",
            message=f"no confidence override for version {parsed}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
    return success_envelope({"version": str(parsed), "removed": True}, trace_id_from_request(request))


@router.post("/internal/upgrader/run")
def run_upgrader(
    request: Request,
    x_internal_debug: str | None = Header(default=None, alias="x-internal-debug"),
):
    if x_internal_debug != "true":
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    stats = runtime_from_request(request).run_once()
    return success_envelope(stats, trace_id_from_request(request))
