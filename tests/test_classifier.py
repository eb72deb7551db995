"""Tests for secret name classification and exclusion patterns."""

import pytest

from secrets_sync_mcp.engine import (
    EnvironmentName,
    InvalidSecretName,
    NameClassifier,
    SecretKey,
    global_exclusion_seeds,
)
from secrets_sync_mcp.engine.classifier import source_name_for


@pytest.fixture
def classifier() -> NameClassifier:
    return NameClassifier(global_exclusion_seeds())


class TestClassify:
    @pytest.mark.parametrize(
        ("name", "base", "environment"),
        [
            ("DATABASE_URL_DEV", "DATABASE_URL", EnvironmentName.DEV),
            ("DATABASE_URL_STAGING", "DATABASE_URL", EnvironmentName.STAGING),
            ("DATABASE_URL_PROD", "DATABASE_URL", EnvironmentName.PRODUCTION),
            ("DATABASE_URL", "DATABASE_URL", None),
            ("API_KEY_PRODUCTION", "API_KEY_PRODUCTION", None),
        ],
    )
    def test_suffixes(
        self,
        classifier: NameClassifier,
        name: str,
        base: str,
        environment: EnvironmentName | None,
    ) -> None:
        assert classifier.classify(name) == SecretKey(base=base, environment=environment)

    def test_suffix_needs_a_base_name(self, classifier: NameClassifier) -> None:
        with pytest.raises(InvalidSecretName):
            classifier.classify("_DEV")
        assert classifier.classify("X_DEV").base == "X"

    def test_no_env_map_treats_suffixes_as_global(self) -> None:
        classifier = NameClassifier(map_environments=False)
        key = classifier.classify("DATABASE_URL_DEV")
        assert key.is_global
        assert key.base == "DATABASE_URL_DEV"

    @pytest.mark.parametrize("name", ["database_url", "1KEY", "API-KEY", "", "KEY WITH SPACE"])
    def test_invalid_names(self, classifier: NameClassifier, name: str) -> None:
        with pytest.raises(InvalidSecretName) as exc_info:
            classifier.classify(name)
        assert exc_info.value.code == "VALIDATION_ERROR"

    @pytest.mark.parametrize("name", ["GITHUB_APP_ID", "GITHUB_APP_ID_PROD"])
    def test_reserved_prefix(self, classifier: NameClassifier, name: str) -> None:
        with pytest.raises(InvalidSecretName, match="GITHUB_ prefix is reserved"):
            classifier.classify(name)

    @pytest.mark.parametrize(
        ("base", "environment", "expected"),
        [
            ("DATABASE_URL", EnvironmentName.PRODUCTION, "DATABASE_URL_PROD"),
            ("DATABASE_URL", EnvironmentName.STAGING, "DATABASE_URL_STAGING"),
            ("DATABASE_URL", None, "DATABASE_URL"),
        ],
    )
    def test_source_name_inverts_classify(
        self,
        classifier: NameClassifier,
        base: str,
        environment: EnvironmentName | None,
        expected: str,
    ) -> None:
        assert source_name_for(base, environment) == expected
        assert classifier.classify(expected) == SecretKey(base=base, environment=environment)


class TestExclusions:
    @pytest.mark.parametrize(
        "name",
        ["GITHUB_TOKEN", "ACTIONS_RUNTIME_TOKEN", "RUNNER_TEMP", "CI", "NPM_CONFIG_REGISTRY"],
    )
    def test_global_seeds(self, classifier: NameClassifier, name: str) -> None:
        assert classifier.is_excluded(name)

    @pytest.mark.parametrize("name", ["GITHUB_APP_KEY", "DATABASE_URL", "CI_DEPLOY_KEY"])
    def test_not_excluded(self, classifier: NameClassifier, name: str) -> None:
        assert not classifier.is_excluded(name)

    def test_patterns_match_original_name(self) -> None:
        classifier = NameClassifier(["^LEGACY_"])
        assert classifier.is_excluded("LEGACY_KEY_DEV")
        assert not classifier.is_excluded("KEY_LEGACY")

    def test_match_returns_pattern_record(self, classifier: NameClassifier) -> None:
        match = classifier.match_exclusion("GITHUB_TOKEN")
        assert match is not None
        assert match.pattern == "^GITHUB_TOKEN$"
        assert match.is_global

    def test_invalid_regex_is_ignored(self) -> None:
        classifier = NameClassifier(["(unclosed", "^SKIP_"])
        assert [p.pattern for p in classifier.patterns] == ["^SKIP_"]
        assert classifier.is_excluded("SKIP_ME")
