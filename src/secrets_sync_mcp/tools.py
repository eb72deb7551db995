"""MCP tool implementations for secret distribution.

Each tool reads the engine from the lifespan context, takes flat
Annotated parameters (the docstring becomes the tool description) and
returns a JSON or markdown string. Engine errors come back as a
``{"status": "failure", "error", "code"}`` JSON string, never as a raised
exception.

Secret values never pass through tool parameters or results. Values are
read from the server's configured secret source; results carry names,
scopes and hash prefixes only.
"""

import json
from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field, ValidationError

from .context import AppContextType
from .engine import EnvironmentSpec, Operation, SyncError, collect, parse_targets
from .formatting import (
    format_environments_markdown,
    format_events_markdown,
    format_status_markdown,
    format_sync_result_markdown,
    format_validation_markdown,
    to_json,
)
from .server import mcp

MCP_ACTOR = "mcp"


def _failure(error: Exception) -> str:
    code = error.code if isinstance(error, SyncError) else "VALIDATION_ERROR"
    return json.dumps({"status": "failure", "error": str(error), "code": code})


# =============================================================================
# MCP Tools (following official SDK decorator pattern)
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Sync Secrets",
        readOnlyHint=False,
        destructiveHint=True,  # Overwrites remote secret values
        idempotentHint=True,  # Re-running with the same values converges
        openWorldHint=True,  # Writes to the remote repository
    )
)
async def sync_secrets(
    secret_names: Annotated[
        list[str] | None,
        Field(
            description="Names to distribute (default: every secret in the source)",
            max_length=500,
        ),
    ] = None,
    target_scopes: Annotated[
        list[str] | None,
        Field(
            description=(
                "Targets: actions, codespaces, dependabot, environments "
                "(default: all repository scopes and environments)"
            ),
        ),
    ] = None,
    force: Annotated[
        bool,
        Field(description="Overwrite diverged values without flagging conflicts"),
    ] = False,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """Distribute secrets from the server's secret source to GitHub. Optional: secret_names,
    target_scopes, force, format (json|markdown)."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        scopes, include_environments = parse_targets(target_scopes)
        secrets, unavailable = await collect(app_ctx.source, secret_names)
        result = await app_ctx.engine.distribute(
            secrets,
            target_scopes=scopes,
            include_environments=include_environments,
            force=force,
            unavailable=unavailable,
            actor_id=MCP_ACTOR,
        )
    except (SyncError, ValueError) as e:
        return _failure(e)

    if format == "markdown":
        return format_sync_result_markdown(result)
    return json.dumps(to_json(result))


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Sync Status",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,  # Reads local state only
    )
)
async def get_sync_status(
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """Get the project's sync status, counts and remaining quota. Optional: format."""
    app_ctx = ctx.request_context.lifespan_context
    report = await app_ctx.engine.get_status()

    if format == "markdown":
        return format_status_markdown(report)
    return json.dumps(to_json(report))


@mcp.tool(
    annotations=ToolAnnotations(
        title="Create Environments",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,  # Existing environments are updated in place
        openWorldHint=True,
    )
)
async def create_environments(
    environments: Annotated[
        list[dict[str, Any]],
        Field(
            description=(
                "Environments to provision: [{name: dev|staging|production, "
                "protectionRules?, linkedResources?}]. Secrets listed by name "
                "in secretNames are read from the secret source."
            ),
            min_length=1,
            max_length=3,
        ),
    ],
    force: Annotated[
        bool,
        Field(description="Overwrite diverged secret values"),
    ] = False,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """Create or update dev/staging/production environments with protection rules.
    Required: environments. Optional: force, format."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        specs = []
        for entry in environments:
            entry = dict(entry)
            names = entry.pop("secretNames", None) or entry.pop("secret_names", None)
            if names:
                values, unavailable = await collect(app_ctx.source, names)
                if unavailable:
                    return _failure(
                        ValueError(f"Secrets not found in source: {', '.join(unavailable)}")
                    )
                entry["secrets"] = [{"name": n, "value": v} for n, v in values.items()]
            specs.append(EnvironmentSpec.model_validate(entry))

        result = await app_ctx.engine.create_environments(
            specs, force=force, actor_id=MCP_ACTOR
        )
    except (SyncError, ValueError, ValidationError) as e:
        return _failure(e)

    if format == "markdown":
        return format_environments_markdown(result)
    return json.dumps(to_json(result))


@mcp.tool(
    annotations=ToolAnnotations(
        title="Validate Secrets",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def validate_secrets(
    required_secrets: Annotated[
        list[str],
        Field(
            description="Secret names that must exist (e.g. DATABASE_URL_PROD, API_KEY)",
            min_length=1,
            max_length=500,
        ),
    ],
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """Report missing and conflicting secrets with remediation steps.
    Required: required_secrets. Optional: format."""
    app_ctx = ctx.request_context.lifespan_context

    try:
        report = await app_ctx.engine.validate(required_secrets, actor_id=MCP_ACTOR)
    except SyncError as e:
        return _failure(e)

    if format == "markdown":
        return format_validation_markdown(report)
    return json.dumps(to_json(report))


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Sync Events",
        readOnlyHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_sync_events(
    limit: Annotated[
        int,
        Field(description="Maximum number of events, most recent first", ge=1, le=1000),
    ] = 20,
    operation: Annotated[
        Literal["create", "update", "delete", "sync_all", "validate"] | None,
        Field(description="Only events of this operation"),
    ] = None,
    correlation_id: Annotated[
        str | None,
        Field(description="Only events of one request", max_length=100),
    ] = None,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """List audit events of the project. Optional: limit, operation, correlation_id, format."""
    app_ctx = ctx.request_context.lifespan_context
    engine = app_ctx.engine

    if correlation_id:
        events = await engine.audit.get_by_correlation(correlation_id)
        events = [e for e in events if e.project_id == engine.project_id][:limit]
    else:
        events = await engine.list_events(
            limit=limit, operation=Operation(operation) if operation else None
        )

    if format == "markdown":
        return format_events_markdown(events)
    return json.dumps([to_json(event) for event in events])


__all__ = [
    "create_environments",
    "get_sync_status",
    "list_sync_events",
    "sync_secrets",
    "validate_secrets",
]
