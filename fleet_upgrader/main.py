from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from fleet_upgrader.config import UpgraderConfig
from fleet_upgrader.errors import ApiError
from fleet_upgrader.fleet import InMemoryFleet, InMemoryVersionStatus
from fleet_upgrader.policy_backends import create_policy_store
from fleet_upgrader.policy_store import InMemoryPolicyStore, UpgradePolicyMixin
from fleet_upgrader.routes._deps import error_response, request_id_from_request, trace_id_from_request
from fleet_upgrader.routes.upgrader import router as upgrader_router
from fleet_upgrader.runtime import MaintenanceRuntime, create_upgrader_runtime_from_env
from fleet_upgrader.schemas import success_envelope
from fleet_upgrader.snapshot import load_fleet_snapshot_file

logger = logging.getLogger(__name__)


def _create_policy_store_for_runtime(config: UpgraderConfig) -> UpgradePolicyMixin:
    try:
        return create_policy_store(config)
    except RuntimeError:
        if config.require_truestack:
            raise
        logger.warning("policy store backend %s unavailable; using memory", config.policy_backend)
        return InMemoryPolicyStore(default_upgrades_per_minute=config.default_upgrades_per_minute)


def create_runtime_from_env(environ: Mapping[str, str] | None = None) -> MaintenanceRuntime:
    env = os.environ if environ is None else environ
    config = UpgraderConfig.from_env(env)
    if config.fleet_snapshot_path:
        fleet, registry = load_fleet_snapshot_file(config.fleet_snapshot_path)
    else:
        fleet, registry = InMemoryFleet(), InMemoryVersionStatus()
    return create_upgrader_runtime_from_env(
        fleet=fleet,
        registry=registry,
        dispatcher=fleet,
        policy_store=_create_policy_store_for_runtime(config),
        environ=env,
    )


def create_app(runtime: MaintenanceRuntime | None = None) -> FastAPI:
    app = FastAPI(title="Fleet Upgrader API", version="0.1.0")
    app.state.runtime = runtime if runtime is not None else create_runtime_from_env()

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(upgrader_router)
    return app
