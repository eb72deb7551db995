"""FastMCP server initialization for secrets-sync-mcp.

This module initializes the MCP server and manages shared resources via
lifespan context. All tool implementations are in the tools module.

Following the official Anthropic Python SDK patterns:
- Lifespan context manager for resource initialization and cleanup
- Context injection for tool access to shared resources
- FastMCP server with stdio transport

The resource setup (``open_app_context``) is shared with the HTTP API and
the CLI so every surface runs the same engine configuration.
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from mcp.server.fastmcp import FastMCP

from .context import AppContext, AppContextType
from .engine import (
    DotenvSecretSource,
    EnvVarSecretSource,
    IdempotencyGate,
    Redactor,
    SecretSource,
    SqliteIdempotencyStore,
    SyncConfig,
    SyncConfigLoader,
    SyncError,
    build_engine,
    install_log_redaction,
)

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "SECRETS_SYNC_LOG_LEVEL"

# Process-wide redactor: learns every secret value the engine sees and
# masks it in all log output.
redactor = Redactor()

# =============================================================================
# Logging
# =============================================================================


def configure_logging(default_level: str = "INFO") -> None:
    """Configure stderr logging with secret redaction.

    Reads SECRETS_SYNC_LOG_LEVEL (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    Logs go to stderr because stdout carries the MCP protocol.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv(LOG_LEVEL_ENV, default_level).upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid {LOG_LEVEL_ENV} '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    logging.basicConfig(
        level=getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    install_log_redaction(redactor)


# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


def create_source(config: SyncConfig) -> SecretSource:
    """Secret source for API and MCP requests: a dotenv file if configured,
    prefixed environment variables otherwise."""
    if config.source.env_file:
        return DotenvSecretSource(config.source.env_file)
    return EnvVarSecretSource(config.source.env_prefix)


@asynccontextmanager
async def open_app_context(
    config: SyncConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[AppContext]:
    """Build the engine and its companions, and close them on exit.

    Startup:
    1. Load configuration (file, env overrides, defaults)
    2. Resolve the platform token and open the state database
    3. Prune audit events past the retention window

    Raises:
        CredentialMissing: If the token, owner or repo is not configured
        ValueError: If the configuration file is invalid
    """
    config = config or SyncConfigLoader().load_config()
    engine = await build_engine(config, redactor=redactor, http_client=http_client)

    try:
        await engine.prune_events()

        source = create_source(config)
        names = await _safe_list_names(source)
        logger.info(f"Project: {engine.project_id}")
        logger.info(f"Secret source: {source.description} ({len(names)} secrets)")
        logger.info(f"State database: {engine.store.db_path}")

        yield AppContext(
            config=config,
            engine=engine,
            source=source,
            idempotency=IdempotencyGate(SqliteIdempotencyStore(engine.store)),
        )
    finally:
        await engine.aclose()


async def _safe_list_names(source: SecretSource) -> list[str]:
    # A missing dotenv file is reported per request, not at startup
    try:
        return await source.list_names()
    except SyncError as e:
        logger.warning(f"Secret source not readable yet: {e}")
        return []


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with resource initialization and cleanup.

    Environment Variables:
        GITHUB_TOKEN, GITHUB_OWNER, GITHUB_REPO: Target repository access
        SECRETS_SYNC_CONFIG: Optional config file path
        SECRETS_SYNC_SECRET_*: Secret values offered to sync_secrets

    Args:
        _server: FastMCP server instance (unused, required by FastMCP signature)

    Yields:
        AppContext with initialized resources
    """
    logger.info("Initializing MCP server resources...")
    async with open_app_context() as app_context:
        yield app_context
    logger.info("MCP server resources released")


# Initialize MCP server with lifespan management
# Following Python MCP naming convention: {service}_mcp
mcp = FastMCP("secrets_sync_mcp", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Entry point for running the MCP server.

    This function is called when the server is run directly via:
    - python -m secrets_sync_mcp
    - secrets-sync-mcp (entry point configured in pyproject.toml)
    - secrets-sync mcp

    Defaults to stdio transport for MCP protocol communication.
    """
    configure_logging()

    logger.info("Starting MCP server (press Ctrl+C to stop)...")

    try:
        # anyio.run() (used internally by mcp.run()) raises KeyboardInterrupt on SIGINT
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "mcp",
    "main",
    "AppContext",
    "AppContextType",
    "configure_logging",
    "create_source",
    "open_app_context",
    "redactor",
]
