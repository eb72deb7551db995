"""Tests for ConflictValidator, which works from persisted hashes only."""

import pytest
from fake_github import PROJECT_ID

from secrets_sync_mcp.engine import ConflictValidator, InvalidSecretName, StateStore, hash_value
from secrets_sync_mcp.engine.models import ScopeHash, SecretMapping, SyncStatus, utcnow
from secrets_sync_mcp.engine.validator import ALL_VALID


async def save(
    store: StateStore,
    name: str,
    scope_values: dict[str, str],
    *,
    status: SyncStatus = SyncStatus.SYNCED,
    excluded: bool = False,
) -> None:
    now = utcnow()
    hashes = {
        scope: ScopeHash(value_hash=hash_value(v), synced_at=now)
        for scope, v in scope_values.items()
    }
    await store.save_mapping(
        SecretMapping(
            project_id=PROJECT_ID,
            secret_name=name,
            value_hash=hash_value(next(iter(scope_values.values()), "")),
            target_scopes=list(scope_values),
            scope_hashes=hashes,
            sync_status=status,
            is_excluded=excluded,
        )
    )


ALL_REPO_SCOPES = {"actions": "v-1", "codespaces": "v-1", "dependabot": "v-1"}


@pytest.fixture
def validator(store: StateStore) -> ConflictValidator:
    return ConflictValidator(store, PROJECT_ID)


class TestValidate:
    @pytest.mark.asyncio
    async def test_all_valid(self, validator: ConflictValidator, store: StateStore) -> None:
        await save(store, "API_KEY", ALL_REPO_SCOPES)
        await save(store, "DATABASE_URL_DEV", {"environment:dev": "postgres://a"})

        report = await validator.validate(["API_KEY", "DATABASE_URL_DEV"])

        assert report.valid is True
        assert report.summary.total_secrets == 2
        assert report.summary.valid_count == 2
        assert report.remediation_steps == [ALL_VALID]

    @pytest.mark.asyncio
    async def test_never_distributed_is_missing_everywhere(
        self, validator: ConflictValidator
    ) -> None:
        report = await validator.validate(["API_KEY"])

        assert report.valid is False
        assert sorted(m.scope for m in report.missing) == ["actions", "codespaces", "dependabot"]
        assert report.summary.missing_count == 3
        assert len(report.remediation_steps) == 3

    @pytest.mark.asyncio
    async def test_environment_name_expected_in_its_environment(
        self, validator: ConflictValidator
    ) -> None:
        report = await validator.validate(["DATABASE_URL_PROD"])

        assert [(m.secret_name, m.scope) for m in report.missing] == [
            ("DATABASE_URL_PROD", "environment:production")
        ]

    @pytest.mark.asyncio
    async def test_partial_scopes(self, validator: ConflictValidator, store: StateStore) -> None:
        await save(store, "API_KEY", {"actions": "v-1"})

        report = await validator.validate(["API_KEY"])

        assert sorted(m.scope for m in report.missing) == ["codespaces", "dependabot"]

    @pytest.mark.asyncio
    async def test_target_scopes_narrow_expectations(
        self, validator: ConflictValidator, store: StateStore
    ) -> None:
        await save(store, "API_KEY", {"actions": "v-1"})

        report = await validator.validate(["API_KEY"], target_scopes=["actions"])

        assert report.valid is True

    @pytest.mark.asyncio
    async def test_diverged_hashes_conflict(
        self, validator: ConflictValidator, store: StateStore
    ) -> None:
        await save(store, "API_KEY", {"actions": "v-1", "codespaces": "v-2", "dependabot": "v-1"})

        report = await validator.validate(["API_KEY"])

        assert report.valid is False
        assert report.missing == []
        conflict = report.conflicts[0]
        assert conflict.scopes == ["actions", "codespaces", "dependabot"]
        assert conflict.value_hashes["codespaces"] == hash_value("v-2")[:12]
        assert "overwrite" in report.remediation_steps[0]

    @pytest.mark.asyncio
    async def test_flagged_mapping_conflicts(
        self, validator: ConflictValidator, store: StateStore
    ) -> None:
        await save(store, "API_KEY", ALL_REPO_SCOPES, status=SyncStatus.CONFLICT)

        report = await validator.validate(["API_KEY"])

        assert report.summary.conflict_count == 1

    @pytest.mark.asyncio
    async def test_excluded_never_expected(
        self, validator: ConflictValidator, store: StateStore
    ) -> None:
        await save(store, "GITHUB_TOKEN", {}, excluded=True)

        report = await validator.validate(["GITHUB_TOKEN"])

        assert report.valid is True
        assert report.summary.valid_count == 1

    @pytest.mark.asyncio
    async def test_duplicates_counted_once(
        self, validator: ConflictValidator, store: StateStore
    ) -> None:
        await save(store, "API_KEY", ALL_REPO_SCOPES)

        report = await validator.validate(["API_KEY", "API_KEY"])

        assert report.summary.total_secrets == 1

    @pytest.mark.asyncio
    async def test_invalid_name(self, validator: ConflictValidator) -> None:
        with pytest.raises(InvalidSecretName):
            await validator.validate(["api-key"])
