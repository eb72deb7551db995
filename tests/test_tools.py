"""Unit tests for the MCP tools, called directly with a mock context.

The mock context exposes the same request_context.lifespan_context
structure the MCP server provides, backed by a real engine talking to
the fake GitHub API.
"""

import json
from collections.abc import AsyncIterator
from unittest.mock import MagicMock

import pytest
from fake_github import FakeGitHub

from secrets_sync_mcp.engine import SyncConfig
from secrets_sync_mcp.server import open_app_context
from secrets_sync_mcp.tools import (
    create_environments,
    get_sync_status,
    list_sync_events,
    sync_secrets,
    validate_secrets,
)


@pytest.fixture
async def mock_context(served_config: SyncConfig) -> AsyncIterator[MagicMock]:
    """Mock MCP context with an AppContext for unit testing tools."""
    async with open_app_context(served_config) as app_context:
        mock_ctx = MagicMock()
        mock_ctx.request_context.lifespan_context = app_context
        yield mock_ctx


class TestSyncSecrets:
    @pytest.mark.asyncio
    async def test_sync_all_from_source(
        self, mock_context: MagicMock, fake_github: FakeGitHub
    ) -> None:
        result = json.loads(await sync_secrets(ctx=mock_context))

        assert result["syncedCount"] == 5
        assert result["skipped"] == ["GITHUB_TOKEN"]
        assert fake_github.values["environment:staging"] == {"DATABASE_URL": "postgres://b"}

    @pytest.mark.asyncio
    async def test_selected_names(self, mock_context: MagicMock, fake_github: FakeGitHub) -> None:
        result = json.loads(
            await sync_secrets(
                secret_names=["API_KEY", "UNKNOWN_KEY"],
                target_scopes=["actions"],
                ctx=mock_context,
            )
        )

        assert fake_github.puts() == ["/repos/acme/api/actions/secrets/API_KEY"]
        assert result["errors"] == [
            {
                "secretName": "UNKNOWN_KEY",
                "scope": None,
                "environment": None,
                "error": "Secret not found in source",
                "code": "SECRET_NOT_FOUND",
            }
        ]

    @pytest.mark.asyncio
    async def test_markdown(self, mock_context: MagicMock) -> None:
        result = await sync_secrets(
            secret_names=["API_KEY"], target_scopes=["actions"], format="markdown", ctx=mock_context
        )

        assert result.startswith("# Secret Distribution")
        assert "k-1234567890" not in result

    @pytest.mark.asyncio
    async def test_unknown_scope(self, mock_context: MagicMock) -> None:
        result = json.loads(await sync_secrets(target_scopes=["pages"], ctx=mock_context))

        assert result["status"] == "failure"
        assert result["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_rate_limit_failure(
        self, mock_context: MagicMock, fake_github: FakeGitHub
    ) -> None:
        fake_github.rate_remaining = 10

        result = json.loads(await sync_secrets(ctx=mock_context))

        assert result["status"] == "failure"
        assert result["code"] == "GITHUB_SECRETS_RATE_LIMIT_EXHAUSTED"


class TestCreateEnvironments:
    @pytest.mark.asyncio
    async def test_secrets_resolved_by_name(
        self, mock_context: MagicMock, fake_github: FakeGitHub
    ) -> None:
        result = json.loads(
            await create_environments(
                environments=[
                    {"name": "dev", "secretNames": ["API_KEY"]},
                    {"name": "production", "protectionRules": {"waitTimerMinutes": 30}},
                ],
                ctx=mock_context,
            )
        )

        assert result["created"] == ["dev", "production"]
        assert fake_github.values["environment:dev"] == {"API_KEY": "k-1234567890"}
        assert fake_github.environments["production"]["payload"]["wait_timer"] == 30

    @pytest.mark.asyncio
    async def test_unknown_secret_name(
        self, mock_context: MagicMock, fake_github: FakeGitHub
    ) -> None:
        result = json.loads(
            await create_environments(
                environments=[{"name": "dev", "secretNames": ["NOPE"]}], ctx=mock_context
            )
        )

        assert result["status"] == "failure"
        assert "NOPE" in result["error"]
        assert fake_github.requests == []

    @pytest.mark.asyncio
    async def test_invalid_environment(self, mock_context: MagicMock) -> None:
        result = json.loads(
            await create_environments(environments=[{"name": "qa"}], ctx=mock_context)
        )

        assert result["status"] == "failure"
        assert result["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_markdown(self, mock_context: MagicMock) -> None:
        result = await create_environments(
            environments=[{"name": "staging"}], format="markdown", ctx=mock_context
        )

        assert "**Created**: staging" in result


class TestStatusValidateEvents:
    @pytest.mark.asyncio
    async def test_status(self, mock_context: MagicMock) -> None:
        result = json.loads(await get_sync_status(ctx=mock_context))
        assert result["status"] == "never_synced"

        await sync_secrets(secret_names=["API_KEY"], target_scopes=["actions"], ctx=mock_context)
        markdown = await get_sync_status(format="markdown", ctx=mock_context)
        assert markdown.startswith("# Sync Status: synced")

    @pytest.mark.asyncio
    async def test_validate(self, mock_context: MagicMock) -> None:
        await sync_secrets(ctx=mock_context)

        result = json.loads(
            await validate_secrets(
                required_secrets=["DATABASE_URL_DEV", "DATABASE_URL_PROD"], ctx=mock_context
            )
        )

        assert result["valid"] is False
        assert result["summary"]["missingCount"] == 1
        assert result["missing"][0]["scope"] == "environment:production"

    @pytest.mark.asyncio
    async def test_validate_invalid_name(self, mock_context: MagicMock) -> None:
        result = json.loads(await validate_secrets(required_secrets=["bad"], ctx=mock_context))
        assert result["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_events(self, mock_context: MagicMock) -> None:
        await sync_secrets(secret_names=["API_KEY"], target_scopes=["actions"], ctx=mock_context)
        await validate_secrets(required_secrets=["API_KEY"], ctx=mock_context)

        events = json.loads(await list_sync_events(ctx=mock_context))
        assert [e["operation"] for e in events] == ["validate", "sync_all"]
        assert all(e["actor_id"] == "mcp" for e in events)

        only_sync = json.loads(await list_sync_events(operation="sync_all", ctx=mock_context))
        assert len(only_sync) == 1

        by_correlation = json.loads(
            await list_sync_events(correlation_id=only_sync[0]["correlation_id"], ctx=mock_context)
        )
        assert [e["id"] for e in by_correlation] == [only_sync[0]["id"]]

    @pytest.mark.asyncio
    async def test_events_markdown_empty(self, mock_context: MagicMock) -> None:
        assert await list_sync_events(format="markdown", ctx=mock_context) == (
            "No sync events recorded"
        )
