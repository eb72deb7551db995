"""Tests for EnvironmentProvisioner."""

import pytest
from fake_github import PROJECT_ID, FakeGitHub
from pydantic import SecretStr

from secrets_sync_mcp.engine import (
    DEFAULT_PROTECTION,
    EnvironmentProvisioner,
    GitHubClient,
    ProtectionRules,
    ScopeWriter,
    SecretInput,
    StateStore,
)
from secrets_sync_mcp.engine.environments import build_environment_payload
from secrets_sync_mcp.engine.models import (
    EnvironmentName,
    EnvironmentStatus,
    ProvisionOutcome,
)
from secrets_sync_mcp.engine.retry import RetryPolicy


@pytest.fixture
def provisioner(
    client: GitHubClient, writer: ScopeWriter, store: StateStore, retry_policy: RetryPolicy
) -> EnvironmentProvisioner:
    return EnvironmentProvisioner(client, writer, store, PROJECT_ID, retry_policy=retry_policy)


def test_default_policy_tiers() -> None:
    assert DEFAULT_PROTECTION[EnvironmentName.DEV].required_reviewers == 0
    assert DEFAULT_PROTECTION[EnvironmentName.STAGING].required_reviewers == 1
    production = DEFAULT_PROTECTION[EnvironmentName.PRODUCTION]
    assert production.required_reviewers == 1
    assert production.restrict_to_main_branch is True


def test_payload_for_reviewers_and_branch_policy() -> None:
    payload = build_environment_payload(
        ProtectionRules(
            required_reviewers=1,
            reviewer_ids=[42],
            restrict_to_main_branch=True,
            wait_timer_minutes=5,
        )
    )

    assert payload == {
        "wait_timer": 5,
        "reviewers": [{"type": "User", "id": 42}],
        "deployment_branch_policy": {"protected_branches": True, "custom_branch_policies": False},
    }


def test_payload_without_restrictions() -> None:
    payload = build_environment_payload(ProtectionRules())
    assert payload["reviewers"] is None
    assert payload["deployment_branch_policy"] is None


class TestEnsure:
    @pytest.mark.asyncio
    async def test_creates_then_updates_same_record(
        self, provisioner: EnvironmentProvisioner, store: StateStore, fake_github: FakeGitHub
    ) -> None:
        first = await provisioner.ensure("staging")
        second = await provisioner.ensure("staging")

        assert first.outcome is ProvisionOutcome.CREATED
        assert second.outcome is ProvisionOutcome.UPDATED
        assert second.status is EnvironmentStatus.ACTIVE

        records = await store.list_environments(PROJECT_ID)
        assert [r.environment_name for r in records] == [EnvironmentName.STAGING]
        assert records[0].remote_environment_id == fake_github.environments["staging"]["id"]

    @pytest.mark.asyncio
    async def test_existing_remote_environment_reported_updated(
        self, provisioner: EnvironmentProvisioner, fake_github: FakeGitHub
    ) -> None:
        fake_github.add_environment("dev")

        result = await provisioner.ensure("dev")

        assert result.outcome is ProvisionOutcome.UPDATED

    @pytest.mark.asyncio
    async def test_production_gets_default_policy(
        self, provisioner: EnvironmentProvisioner, fake_github: FakeGitHub
    ) -> None:
        await provisioner.ensure(EnvironmentName.PRODUCTION)

        payload = fake_github.environments["production"]["payload"]
        assert payload["deployment_branch_policy"] == {
            "protected_branches": True,
            "custom_branch_policies": False,
        }

    @pytest.mark.asyncio
    async def test_stored_policy_reused(
        self, provisioner: EnvironmentProvisioner, store: StateStore, fake_github: FakeGitHub
    ) -> None:
        await provisioner.ensure("dev", ProtectionRules(wait_timer_minutes=10))
        await provisioner.ensure("dev")

        assert fake_github.environments["dev"]["payload"]["wait_timer"] == 10
        record = await store.get_environment(PROJECT_ID, EnvironmentName.DEV)
        assert record is not None
        assert record.protection_rules.wait_timer_minutes == 10

    @pytest.mark.asyncio
    async def test_writes_secrets_under_base_name(
        self, provisioner: EnvironmentProvisioner, store: StateStore, fake_github: FakeGitHub
    ) -> None:
        result = await provisioner.ensure(
            "dev",
            secrets=[SecretInput(name="DATABASE_URL", value=SecretStr("postgres://a"))],
        )

        assert result.errors == []
        assert result.secrets_written == ["DATABASE_URL"]
        assert fake_github.values["environment:dev"] == {"DATABASE_URL": "postgres://a"}

        record = await store.get_environment(PROJECT_ID, EnvironmentName.DEV)
        assert record is not None
        assert [s.name for s in record.secrets] == ["DATABASE_URL"]
        assert await store.get_mapping(PROJECT_ID, "DATABASE_URL_DEV") is not None

    @pytest.mark.asyncio
    async def test_unknown_reviewer(
        self, provisioner: EnvironmentProvisioner, store: StateStore, fake_github: FakeGitHub
    ) -> None:
        fake_github.unknown_reviewers.add(999)

        result = await provisioner.ensure(
            "production", ProtectionRules(required_reviewers=1, reviewer_ids=[999])
        )

        assert result.status is EnvironmentStatus.FAILED
        assert [e.code for e in result.errors] == ["GITHUB_ENV_REVIEWER_NOT_FOUND"]
        record = await store.get_environment(PROJECT_ID, EnvironmentName.PRODUCTION)
        assert record is not None
        assert record.status is EnvironmentStatus.FAILED

    @pytest.mark.asyncio
    async def test_failure_skips_secrets(
        self, provisioner: EnvironmentProvisioner, fake_github: FakeGitHub
    ) -> None:
        fake_github.environment_failures["staging"] = 500

        result = await provisioner.ensure(
            "staging",
            secrets=[SecretInput(name="DATABASE_URL", value=SecretStr("postgres://b"))],
        )

        assert result.status is EnvironmentStatus.FAILED
        assert result.errors[0].code == "GITHUB_ENV_CREATION_FAILED"
        assert fake_github.puts() == []

    @pytest.mark.asyncio
    async def test_failed_lookup_outcome_unknown(
        self, provisioner: EnvironmentProvisioner, store: StateStore, fake_github: FakeGitHub
    ) -> None:
        fake_github.lookup_failures["staging"] = 500

        result = await provisioner.ensure("staging")

        assert result.outcome is ProvisionOutcome.UNKNOWN
        assert result.status is EnvironmentStatus.FAILED
        assert result.errors[0].code == "GITHUB_ENV_CREATION_FAILED"
        assert "staging" not in fake_github.environments
        record = await store.get_environment(PROJECT_ID, EnvironmentName.STAGING)
        assert record is not None
        assert record.status is EnvironmentStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_lookup_of_known_environment(
        self, provisioner: EnvironmentProvisioner, fake_github: FakeGitHub
    ) -> None:
        await provisioner.ensure("dev")
        fake_github.lookup_failures["dev"] = 503

        result = await provisioner.ensure("dev")

        assert result.outcome is ProvisionOutcome.UPDATED
        assert result.status is EnvironmentStatus.FAILED

    @pytest.mark.asyncio
    async def test_permission_denied(
        self, provisioner: EnvironmentProvisioner, fake_github: FakeGitHub
    ) -> None:
        fake_github.environment_failures["dev"] = 403

        result = await provisioner.ensure("dev")

        assert result.errors[0].code == "GITHUB_ENV_PERMISSION_DENIED"


class TestDryRun:
    @pytest.mark.asyncio
    async def test_no_changes(
        self,
        client: GitHubClient,
        writer: ScopeWriter,
        store: StateStore,
        fake_github: FakeGitHub,
        retry_policy: RetryPolicy,
    ) -> None:
        writer.dry_run = True
        provisioner = EnvironmentProvisioner(
            client, writer, store, PROJECT_ID, retry_policy=retry_policy, dry_run=True
        )

        result = await provisioner.ensure(
            "dev",
            secrets=[SecretInput(name="DATABASE_URL", value=SecretStr("postgres://a"))],
        )

        assert result.outcome is ProvisionOutcome.CREATED
        assert result.secrets_written == ["DATABASE_URL"]
        assert fake_github.environments == {}
        assert [m for m, _ in fake_github.requests] == ["GET"]
        assert await store.list_environments(PROJECT_ID) == []
