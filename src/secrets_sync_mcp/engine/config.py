"""Configuration for secret distribution.

Configuration file location priority:
1. Explicit path passed to SyncConfigLoader
2. SECRETS_SYNC_CONFIG environment variable
3. Standard location: ~/.secrets-sync/config.yml
4. Built-in defaults (if no config file found)

Environment variables override file values:
    GITHUB_OWNER, GITHUB_REPO         -> github.owner, github.repo
    SECRETS_SYNC_CONCURRENCY          -> distribution.concurrency
    SECRETS_SYNC_STATE_DB             -> state.db_path
    SECRETS_SYNC_SECRET_PREFIX        -> source.env_prefix

Tokens are never stored in the file. ``github.token_env`` and
``api.token_env`` name the environment variables that hold them
(GITHUB_TOKEN and SECRETS_SYNC_API_TOKEN by default).

Example config file:
```yaml
version: "1.0"

github:
  owner: acme
  repo: api
  timeout: 30

distribution:
  concurrency: 10
  max_attempts: 3
  default_target_scopes: [actions, codespaces, dependabot]

quota:
  safety_margins:
    secrets: 200

exclusions:
  - "^LOCAL_"

audit:
  retention_days: 90
```
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import CredentialMissing
from .github_client import DEFAULT_API_URL
from .models import QuotaType, Scope
from .retry import RetryPolicy
from .sources import DEFAULT_ENV_PREFIX

logger = logging.getLogger(__name__)

CONFIG_ENV = "SECRETS_SYNC_CONFIG"

# ===========================================================================
# Configuration Models
# ===========================================================================


class GitHubSettings(BaseModel):
    """Target repository and API connection."""

    api_url: str = Field(default=DEFAULT_API_URL, description="REST API base URL")
    owner: str | None = Field(default=None, description="Repository owner (user or org)")
    repo: str | None = Field(default=None, description="Repository name")
    token_env: str = Field(
        default="GITHUB_TOKEN",
        description="Environment variable holding the access token",
    )
    timeout: float = Field(default=30.0, gt=0, le=300, description="Request timeout in seconds")


class DistributionSettings(BaseModel):
    """Write parallelism and retry schedule."""

    concurrency: int = Field(default=10, ge=1, le=50, description="Parallel scope writes")
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=1.0, ge=0, description="First backoff delay in seconds")
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=32.0, ge=0)
    jitter: float = Field(default=1.0, ge=0, description="Upper bound of random extra delay")
    secondary_rate_limit_delay: float = Field(
        default=60.0,
        ge=0,
        description="Wait after a secondary rate limit without Retry-After",
    )
    default_target_scopes: list[str] = Field(
        default_factory=lambda: ["actions", "codespaces", "dependabot"],
        description="Scopes that receive global secrets",
    )
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Overall deadline for one distribution run in seconds",
    )

    @field_validator("default_target_scopes")
    @classmethod
    def validate_scopes(cls, v: list[str]) -> list[str]:
        for scope in v:
            if Scope.parse(scope).is_environment:
                raise ValueError(
                    f"default_target_scopes lists repository scopes only, got '{scope}'"
                )
        return v

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
            secondary_rate_limit_delay=self.secondary_rate_limit_delay,
        )

    def target_scopes(self) -> list[Scope]:
        return [Scope.parse(s) for s in self.default_target_scopes]


class QuotaSettings(BaseModel):
    safety_margins: dict[QuotaType, int] = Field(
        default_factory=dict, description="Per-class margin overrides"
    )
    default_limits: dict[QuotaType, int] = Field(
        default_factory=dict, description="Assumed window size before the first refresh"
    )
    freshness_seconds: int = Field(default=300, ge=0)


class AuditSettings(BaseModel):
    retention_days: int = Field(default=90, ge=1)


class StateSettings(BaseModel):
    db_path: str | None = Field(default=None, description="SQLite state database path")


class ApiSettings(BaseModel):
    token_env: str = Field(
        default="SECRETS_SYNC_API_TOKEN",
        description="Environment variable holding the bearer token of the HTTP API",
    )
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)


class SourceSettings(BaseModel):
    env_prefix: str = Field(default=DEFAULT_ENV_PREFIX)
    env_file: str | None = Field(
        default=None, description="Dotenv file used instead of environment variables"
    )


class SyncConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(default="1.0", description="Configuration schema version")
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    distribution: DistributionSettings = Field(default_factory=DistributionSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    exclusions: list[str] = Field(
        default_factory=list, description="Extra global exclusion patterns"
    )
    audit: AuditSettings = Field(default_factory=AuditSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    source: SourceSettings = Field(default_factory=SourceSettings)

    @property
    def project_id(self) -> str:
        """``owner/repo`` of the target repository.

        Raises:
            CredentialMissing: If owner or repo is not configured
        """
        if not self.github.owner:
            raise CredentialMissing("GITHUB_OWNER", "Pass --owner or set GITHUB_OWNER")
        if not self.github.repo:
            raise CredentialMissing("GITHUB_REPO", "Pass --repo or set GITHUB_REPO")
        return f"{self.github.owner}/{self.github.repo}"

    def resolve_token(self) -> str:
        """Read the platform access token from its environment variable.

        Raises:
            CredentialMissing: If the variable is unset or empty
        """
        token = os.getenv(self.github.token_env)
        if not token:
            raise CredentialMissing(
                self.github.token_env,
                "Export a token with the repo and secrets permissions",
            )
        return token

    def resolve_api_token(self) -> str | None:
        return os.getenv(self.api.token_env) or None


# ===========================================================================
# Configuration Loader
# ===========================================================================


class SyncConfigLoader:
    """Loader for distribution configuration from YAML file.

    Usage:
        ```python
        loader = SyncConfigLoader()
        config = loader.load_config()
        token = config.resolve_token()
        ```

    The loaded config is cached; call once during startup.
    """

    def __init__(self, config_path: str | Path | None = None):
        self._config: SyncConfig | None = None
        self._explicit_path = Path(config_path) if config_path else None

    def get_config_path(self) -> Path | None:
        """Determine config file path using priority order.

        Returns:
            Path to config file, or None if file doesn't exist
        """
        # Priority 1: Explicit path
        if self._explicit_path:
            if self._explicit_path.exists():
                return self._explicit_path
            logger.warning(f"Explicit config path does not exist: {self._explicit_path}")
            return None

        # Priority 2: Environment variable
        env_path_str = os.getenv(CONFIG_ENV)
        if env_path_str:
            env_path = Path(env_path_str).expanduser()
            if env_path.exists():
                return env_path
            logger.warning(f"{CONFIG_ENV} path does not exist: {env_path}")
            return None

        # Priority 3: Standard location
        standard_path = Path.home() / ".secrets-sync" / "config.yml"
        if standard_path.exists():
            return standard_path

        return None

    def load_config(self) -> SyncConfig:
        """Load and validate configuration, then apply environment overrides.

        Raises:
            ValueError: If the config file is invalid or fails validation
        """
        if self._config is not None:
            return self._config

        config_path = self.get_config_path()
        raw_config: dict[str, Any] = {}

        if config_path is None:
            logger.info("No config file found, using defaults")
        else:
            logger.info(f"Loading config from: {config_path}")
            try:
                with open(config_path, encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Failed to load config from {config_path}: {e}") from e

            if loaded is not None and not isinstance(loaded, dict):
                raise ValueError(
                    f"Failed to load config from {config_path}: "
                    "config file must contain a YAML dictionary"
                )
            raw_config = loaded or {}

        _apply_env_overrides(raw_config)

        try:
            config = SyncConfig(**raw_config)
        except ValidationError as e:
            source = config_path or "defaults"
            raise ValueError(f"Invalid configuration ({source}): {e}") from e

        self._config = config
        return config


def _apply_env_overrides(raw_config: dict[str, Any]) -> None:
    overrides = (
        ("GITHUB_OWNER", "github", "owner"),
        ("GITHUB_REPO", "github", "repo"),
        ("SECRETS_SYNC_CONCURRENCY", "distribution", "concurrency"),
        ("SECRETS_SYNC_STATE_DB", "state", "db_path"),
        ("SECRETS_SYNC_SECRET_PREFIX", "source", "env_prefix"),
    )
    for env_var, section, key in overrides:
        value = os.getenv(env_var)
        if value:
            section_data = raw_config.setdefault(section, {})
            if not isinstance(section_data, dict):
                raise ValueError(f"Config section '{section}' must be a mapping")
            section_data[key] = value
            logger.debug(f"{env_var} overrides {section}.{key}")


__all__ = [
    "ApiSettings",
    "AuditSettings",
    "DistributionSettings",
    "GitHubSettings",
    "QuotaSettings",
    "SourceSettings",
    "StateSettings",
    "SyncConfig",
    "SyncConfigLoader",
]
