"""Tests for configuration loading."""

from pathlib import Path

import pytest

from secrets_sync_mcp.engine import CredentialMissing, SyncConfig, SyncConfigLoader
from secrets_sync_mcp.engine.config import DistributionSettings
from secrets_sync_mcp.engine.models import QuotaType

CONFIG_YAML = """\
version: "1.0"
github:
  owner: acme
  repo: api
  timeout: 10
distribution:
  concurrency: 4
  default_target_scopes: [actions, dependabot]
quota:
  safety_margins:
    secrets: 200
exclusions:
  - "^LOCAL_"
"""


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(CONFIG_YAML)
    return path


class TestLoader:
    def test_defaults_without_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))

        config = SyncConfigLoader().load_config()

        assert config.distribution.concurrency == 10
        assert [str(s) for s in config.distribution.target_scopes()] == [
            "actions",
            "codespaces",
            "dependabot",
        ]
        assert config.github.owner is None

    def test_explicit_path(self, config_file: Path) -> None:
        config = SyncConfigLoader(config_file).load_config()

        assert config.project_id == "acme/api"
        assert config.github.timeout == 10
        assert config.distribution.concurrency == 4
        assert config.quota.safety_margins == {QuotaType.SECRETS: 200}
        assert config.exclusions == ["^LOCAL_"]

    def test_env_var_path(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SECRETS_SYNC_CONFIG", str(config_file))

        assert SyncConfigLoader().load_config().github.repo == "api"

    def test_missing_explicit_path_uses_defaults(self, tmp_path: Path) -> None:
        config = SyncConfigLoader(tmp_path / "absent.yml").load_config()
        assert config.github.owner is None

    def test_env_overrides_file(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GITHUB_OWNER", "other")
        monkeypatch.setenv("SECRETS_SYNC_CONCURRENCY", "7")
        monkeypatch.setenv("SECRETS_SYNC_STATE_DB", "/tmp/state.db")

        config = SyncConfigLoader(config_file).load_config()

        assert config.project_id == "other/api"
        assert config.distribution.concurrency == 7
        assert config.state.db_path == "/tmp/state.db"

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yml"
        path.write_text("github: [unclosed")

        with pytest.raises(ValueError, match="Failed to load config"):
            SyncConfigLoader(path).load_config()

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError, match="YAML dictionary"):
            SyncConfigLoader(path).load_config()

    def test_validation_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yml"
        path.write_text("distribution:\n  concurrency: 0\n")

        with pytest.raises(ValueError, match="Invalid configuration"):
            SyncConfigLoader(path).load_config()

    def test_cached(self, config_file: Path) -> None:
        loader = SyncConfigLoader(config_file)
        assert loader.load_config() is loader.load_config()


class TestSyncConfig:
    def test_project_id_requires_owner_and_repo(self) -> None:
        with pytest.raises(CredentialMissing, match="GITHUB_OWNER"):
            _ = SyncConfig().project_id

    def test_token_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        assert SyncConfig().resolve_token().startswith("ghp_")

        monkeypatch.delenv("GITHUB_TOKEN")
        with pytest.raises(CredentialMissing) as exc_info:
            SyncConfig().resolve_token()
        assert exc_info.value.code == "GITHUB_SECRETS_CONFIG_ERROR"

    def test_api_token_optional(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SECRETS_SYNC_API_TOKEN")
        assert SyncConfig().resolve_api_token() is None

    def test_environment_not_a_default_target(self) -> None:
        with pytest.raises(ValueError, match="repository scopes only"):
            DistributionSettings(default_target_scopes=["environment:dev"])

    def test_retry_policy_from_settings(self) -> None:
        policy = DistributionSettings(max_attempts=5, base_delay=0.5).retry_policy()
        assert policy.max_attempts == 5
        assert policy.base_delay == 0.5
