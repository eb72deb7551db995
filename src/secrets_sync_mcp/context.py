"""Shared context types for the MCP server and the HTTP API.

This module contains context types used across server, tools and api
modules, separated to avoid circular imports.
"""

from dataclasses import dataclass

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .engine import DistributionEngine, IdempotencyGate, SecretSource, SyncConfig


@dataclass
class AppContext:
    """Application context containing shared resources.

    Created once at startup (MCP lifespan or FastAPI lifespan) and made
    available to every tool and route.
    """

    config: SyncConfig
    engine: DistributionEngine
    source: SecretSource
    idempotency: IdempotencyGate

    @property
    def project_id(self) -> str:
        return self.engine.project_id


# Type alias for MCP tool context parameter
AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType"]
