"""Shared test configuration for secrets-sync-mcp tests.

Configures test environment including:
- A stateful fake GitHub REST API on pytest-httpserver (replaces api.github.com)
- SQLite state databases under tmp_path
- Engine configuration with zero backoff delays
- Environment setup and teardown for tokens and owner/repo
"""

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from fake_github import API_TOKEN, GITHUB_TOKEN, OWNER, PROJECT_ID, REPO, FakeGitHub
from pytest_httpserver import HTTPServer

from secrets_sync_mcp.engine import (
    DistributionEngine,
    GitHubClient,
    Redactor,
    ScopeWriter,
    SealedEncryptor,
    StateStore,
    SyncConfig,
    build_engine,
    global_exclusion_seeds,
)
from secrets_sync_mcp.engine.config import (
    DistributionSettings,
    GitHubSettings,
    StateSettings,
)
from secrets_sync_mcp.engine.retry import RetryPolicy

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def github_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tokens for every test; no owner/repo or config file leaks in from the host."""
    monkeypatch.setenv("GITHUB_TOKEN", GITHUB_TOKEN)
    monkeypatch.setenv("SECRETS_SYNC_API_TOKEN", API_TOKEN)
    for name in (
        "GITHUB_OWNER",
        "GITHUB_REPO",
        "SECRETS_SYNC_CONFIG",
        "SECRETS_SYNC_STATE_DB",
        "SECRETS_SYNC_CONCURRENCY",
        "SECRETS_SYNC_SECRET_PREFIX",
        "SECRETS_SYNC_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_github(httpserver: HTTPServer) -> FakeGitHub:
    return FakeGitHub(httpserver)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(base_delay=0, jitter=0, secondary_rate_limit_delay=0)


@pytest.fixture
def config(fake_github: FakeGitHub, tmp_path: Path) -> SyncConfig:
    return SyncConfig(
        github=GitHubSettings(api_url=fake_github.url, owner=OWNER, repo=REPO),
        distribution=DistributionSettings(base_delay=0, jitter=0, secondary_rate_limit_delay=0),
        state=StateSettings(db_path=str(tmp_path / "state.db")),
    )


@pytest.fixture
async def store(tmp_path: Path) -> StateStore:
    state_store = StateStore(tmp_path / "state.db")
    await state_store.init(global_exclusion_seeds())
    return state_store


@pytest.fixture
async def engine(config: SyncConfig) -> AsyncIterator[DistributionEngine]:
    distribution_engine = await build_engine(config, redactor=Redactor())
    yield distribution_engine
    await distribution_engine.aclose()


@pytest.fixture
async def client(fake_github: FakeGitHub) -> AsyncIterator[GitHubClient]:
    async with GitHubClient(GITHUB_TOKEN, OWNER, REPO, api_url=fake_github.url) as github:
        yield github


@pytest.fixture
def writer(
    client: GitHubClient, store: StateStore, retry_policy: RetryPolicy
) -> ScopeWriter:
    return ScopeWriter(
        client,
        SealedEncryptor(client.get_public_key),
        store,
        PROJECT_ID,
        retry_policy=retry_policy,
        redactor=Redactor(),
    )


@pytest.fixture
def env_file(tmp_path: Path) -> Path:
    path = tmp_path / ".env"
    path.write_text(
        "API_KEY=k-1234567890\n"
        "DATABASE_URL_DEV=postgres://a\n"
        "DATABASE_URL_STAGING=postgres://b\n"
        "GITHUB_TOKEN=ghp_x\n"
    )
    return path


@pytest.fixture
def served_config(config: SyncConfig, env_file: Path) -> SyncConfig:
    """Config whose API and MCP secret source is the env_file dotenv."""
    return config.model_copy(
        update={"source": config.source.model_copy(update={"env_file": str(env_file)})}
    )
