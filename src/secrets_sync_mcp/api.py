"""HTTP API for secret distribution.

Routes:
    POST /secrets/sync            distribute secrets from the configured source
    GET  /secrets/sync/status     sync status of the project
    POST /environments            provision dev/staging/production
    POST /secrets/validate        missing/conflict report
    GET  /health                  liveness (no authentication)

Every route except /health requires ``Authorization: Bearer <token>``
matching SECRETS_SYNC_API_TOKEN. ``X-Correlation-ID`` is read (or
generated), echoed in the response header and body, and recorded in the
audit trail. POST routes honour an optional ``Idempotency-Key`` header.

Errors use one body shape::

    {"error": {"code": "...", "message": "...", "correlationId": "..."}}
"""

import hmac
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any

import httpx
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import Field

from .context import AppContext
from .engine import (
    EnvironmentSpec,
    OperationInProgress,
    PayloadDivergence,
    PermissionDenied,
    RateLimitExhausted,
    SyncConfig,
    SyncError,
    collect,
    parse_targets,
    payload_checksum,
)
from .engine.models import CamelModel, new_id
from .formatting import to_json
from .server import open_app_context

logger = logging.getLogger(__name__)

API_VERSION = "0.4.0"
CORRELATION_HEADER = "X-Correlation-ID"
IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotent-Replayed"
API_ACTOR = "api"

# =============================================================================
# Request models
# =============================================================================


class SyncRequest(CamelModel):
    project_id: str = Field(min_length=1)
    secret_names: list[str] | None = Field(
        default=None, description="Names to distribute (default: every secret in the source)"
    )
    target_scopes: list[str] | None = Field(
        default=None, description="actions, codespaces, dependabot, environments"
    )
    force: bool = False


class EnvironmentsRequest(CamelModel):
    project_id: str = Field(min_length=1)
    environments: list[EnvironmentSpec] = Field(min_length=1, max_length=3)
    force: bool = False


class ValidateRequest(CamelModel):
    project_id: str = Field(min_length=1)
    required_secrets: list[str] = Field(min_length=1)


# =============================================================================
# Errors
# =============================================================================


class ApiError(Exception):
    """Error raised by route handlers, rendered as the standard error body."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(message)


def status_for(error: SyncError) -> int:
    """HTTP status of an engine error that escaped a route."""
    if isinstance(error, RateLimitExhausted):
        return 429
    if isinstance(error, PayloadDivergence | OperationInProgress):
        return 409
    if isinstance(error, PermissionDenied):
        return 403
    if error.code == "VALIDATION_ERROR":
        return 400
    return 500


def error_response(
    status_code: int,
    code: str,
    message: str,
    correlation_id: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "correlationId": correlation_id}},
        headers=headers,
    )


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or new_id()


# =============================================================================
# Dependencies
# =============================================================================


def get_app_context(request: Request) -> AppContext:
    app_ctx: AppContext = request.app.state.app_context
    return app_ctx


AppContextDep = Annotated[AppContext, Depends(get_app_context)]


async def require_token(
    app_ctx: AppContextDep,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests without the configured bearer token.

    The API refuses every request when no token is configured.
    """
    expected = app_ctx.config.resolve_api_token()
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if (
            expected
            and scheme.lower() == "bearer"
            and hmac.compare_digest(token.encode(), expected.encode())
        ):
            return
    raise ApiError(401, "UNAUTHORIZED", "Missing or invalid bearer token")


def _check_project(app_ctx: AppContext, project_id: str) -> None:
    if project_id != app_ctx.project_id:
        raise ApiError(404, "PROJECT_NOT_FOUND", f"Unknown project '{project_id}'")


async def _idempotent(
    request: Request,
    app_ctx: AppContext,
    operation: Callable[[], Awaitable[dict[str, Any]]],
) -> tuple[dict[str, Any], bool]:
    key = request.headers.get(IDEMPOTENCY_HEADER)
    if not key:
        return await operation(), False

    checksum = payload_checksum(await request.json())
    gate_result = await app_ctx.idempotency.run(key, checksum, operation)
    return gate_result.result, gate_result.replayed


def _respond(body: dict[str, Any], replayed: bool, status_code: int = 200) -> JSONResponse:
    headers = {REPLAY_HEADER: "true"} if replayed else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


# =============================================================================
# Application
# =============================================================================


def create_app(
    config: SyncConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Configuration (loaded via SyncConfigLoader at startup if None)
        http_client: Optional preconfigured client for the platform API
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with open_app_context(config, http_client=http_client) as app_ctx:
            if app_ctx.config.resolve_api_token() is None:
                logger.warning(
                    f"{app_ctx.config.api.token_env} is not set: all API requests will be refused"
                )
            app.state.app_context = app_ctx
            yield

    app = FastAPI(
        title="secrets-sync API",
        description="Distributes repository secrets and provisions deployment environments.",
        version=API_VERSION,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def correlation_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or new_id()
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        return error_response(exc.status_code, exc.code, exc.message, _correlation_id(request))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        # Field locations only: messages may echo submitted values
        fields = sorted({".".join(str(p) for p in e["loc"]) for e in exc.errors()})
        message = f"Invalid request: {', '.join(fields)}"
        return error_response(400, "VALIDATION_ERROR", message, _correlation_id(request))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return error_response(400, "VALIDATION_ERROR", str(exc), _correlation_id(request))

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        status_code = status_for(exc)
        headers = None
        if isinstance(exc, RateLimitExhausted):
            headers = {"X-RateLimit-Reset": str(int(exc.reset_at.timestamp()))}
        if status_code >= 500:
            logger.error(f"Request failed ({exc.code}): {exc}")
        return error_response(
            status_code, exc.code, str(exc), _correlation_id(request), headers=headers
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    authenticated = [Depends(require_token)]

    @app.get("/health", tags=["meta"])
    async def health(app_ctx: AppContextDep) -> dict[str, Any]:
        return {"status": "ok", "version": API_VERSION, "projectId": app_ctx.project_id}

    @app.post("/secrets/sync", tags=["secrets"], dependencies=authenticated)
    async def sync_secrets(
        body: SyncRequest, request: Request, app_ctx: AppContextDep
    ) -> JSONResponse:
        _check_project(app_ctx, body.project_id)
        scopes, include_environments = parse_targets(body.target_scopes)
        correlation_id = _correlation_id(request)

        async def operation() -> dict[str, Any]:
            secrets, unavailable = await collect(app_ctx.source, body.secret_names)
            result = await app_ctx.engine.distribute(
                secrets,
                target_scopes=scopes,
                include_environments=include_environments,
                force=body.force,
                unavailable=unavailable,
                actor_id=API_ACTOR,
                correlation_id=correlation_id,
            )
            return to_json(result)

        result, replayed = await _idempotent(request, app_ctx, operation)
        return _respond(result, replayed)

    @app.get("/secrets/sync/status", tags=["secrets"], dependencies=authenticated)
    async def sync_status(
        app_ctx: AppContextDep,
        project_id: Annotated[str, Query(alias="projectId", min_length=1)],
    ) -> dict[str, Any]:
        _check_project(app_ctx, project_id)
        return to_json(await app_ctx.engine.get_status())

    @app.post("/environments", tags=["environments"], dependencies=authenticated)
    async def create_environments(
        body: EnvironmentsRequest, request: Request, app_ctx: AppContextDep
    ) -> JSONResponse:
        _check_project(app_ctx, body.project_id)
        correlation_id = _correlation_id(request)

        async def operation() -> dict[str, Any]:
            result = await app_ctx.engine.create_environments(
                body.environments,
                force=body.force,
                actor_id=API_ACTOR,
                correlation_id=correlation_id,
            )
            return to_json(result)

        result, replayed = await _idempotent(request, app_ctx, operation)
        return _respond(result, replayed, status_code=207 if result["errors"] else 200)

    @app.post("/secrets/validate", tags=["secrets"], dependencies=authenticated)
    async def validate_secrets(
        body: ValidateRequest, request: Request, app_ctx: AppContextDep
    ) -> JSONResponse:
        _check_project(app_ctx, body.project_id)
        correlation_id = _correlation_id(request)

        async def operation() -> dict[str, Any]:
            report = await app_ctx.engine.validate(
                body.required_secrets, actor_id=API_ACTOR, correlation_id=correlation_id
            )
            return {**to_json(report), "correlationId": correlation_id}

        result, replayed = await _idempotent(request, app_ctx, operation)
        return _respond(result, replayed)


__all__ = [
    "ApiError",
    "EnvironmentsRequest",
    "SyncRequest",
    "ValidateRequest",
    "create_app",
    "status_for",
]
