"""Secret name classification and exclusion.

A secret name either targets every repository-wide scope (global) or one
deployment environment, signalled by a suffix:

    DATABASE_URL          -> base DATABASE_URL, global
    DATABASE_URL_DEV      -> base DATABASE_URL, environment dev
    DATABASE_URL_STAGING  -> base DATABASE_URL, environment staging
    DATABASE_URL_PROD     -> base DATABASE_URL, environment production

Exclusion patterns are evaluated against the original name, before any
suffix is stripped, so ``^GITHUB_TOKEN`` also excludes ``GITHUB_TOKEN_DEV``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from .exceptions import InvalidSecretName
from .models import SECRET_NAME_PATTERN, EnvironmentName, ExclusionPattern, SecretKey

logger = logging.getLogger(__name__)

# GitHub refuses secret names with this prefix
RESERVED_PREFIX = "GITHUB_"

# First match wins.
ENVIRONMENT_SUFFIXES: tuple[tuple[str, EnvironmentName], ...] = (
    ("_DEV", EnvironmentName.DEV),
    ("_STAGING", EnvironmentName.STAGING),
    ("_PROD", EnvironmentName.PRODUCTION),
)

GLOBAL_EXCLUSION_SEEDS: tuple[tuple[str, str], ...] = (
    ("^GITHUB_TOKEN$", "Provided automatically by GitHub Actions"),
    ("^ACTIONS_.*", "Reserved GitHub Actions prefix"),
    ("^RUNNER_.*", "Reserved runner prefix"),
    ("^CI$", "Set by every CI runner"),
    ("^GITHUB_WORKSPACE$", "Set by GitHub Actions"),
    ("^GITHUB_SHA$", "Set by GitHub Actions"),
    ("^GITHUB_REF$", "Set by GitHub Actions"),
    ("^PNPM_", "Package manager configuration, not a secret"),
    ("^NPM_", "Package manager configuration, not a secret"),
)


def global_exclusion_seeds() -> list[ExclusionPattern]:
    return [
        ExclusionPattern(id=f"global:{pattern}", pattern=pattern, reason=reason, is_global=True)
        for pattern, reason in GLOBAL_EXCLUSION_SEEDS
    ]


def source_name_for(base: str, environment: EnvironmentName | None) -> str:
    """Inverse of classify: the original name for a base name and environment."""
    if environment is None:
        return base
    suffix = next(s for s, env in ENVIRONMENT_SUFFIXES if env is environment)
    return f"{base}{suffix}"


class NameClassifier:
    """Parses secret names and applies exclusion patterns.

    Args:
        patterns: Global and project exclusion patterns
        map_environments: When False every name is treated as global

    Example:
        >>> classifier = NameClassifier(global_exclusion_seeds())
        >>> classifier.classify("API_KEY_PROD")
        SecretKey(base='API_KEY', environment=<EnvironmentName.PRODUCTION: 'production'>)
        >>> classifier.is_excluded("GITHUB_TOKEN")
        True
    """

    def __init__(
        self,
        patterns: Iterable[ExclusionPattern | str] = (),
        map_environments: bool = True,
    ) -> None:
        self.map_environments = map_environments
        self._compiled: list[tuple[re.Pattern[str], ExclusionPattern]] = []
        for pattern in patterns:
            self.add_pattern(pattern)

    def add_pattern(self, pattern: ExclusionPattern | str) -> None:
        """Add an exclusion pattern. Invalid regexes are logged and ignored."""
        if isinstance(pattern, str):
            source = pattern
            record = None
        else:
            source = pattern.pattern
            record = pattern

        try:
            compiled = re.compile(source)
        except re.error as e:
            logger.warning(f"Ignoring invalid exclusion pattern '{source}': {e}")
            return

        if record is None:
            record = ExclusionPattern(
                id=f"adhoc:{source}", pattern=source, reason="Ad-hoc exclusion", is_global=True
            )
        self._compiled.append((compiled, record))

    @property
    def patterns(self) -> list[ExclusionPattern]:
        return [record for _, record in self._compiled]

    def classify(self, name: str) -> SecretKey:
        """Split a secret name into its base name and target environment.

        Raises:
            InvalidSecretName: If the name does not match ^[A-Z][A-Z0-9_]*$ or
                uses the reserved GITHUB_ prefix
        """
        if not SECRET_NAME_PATTERN.match(name):
            raise InvalidSecretName(name)
        if name.startswith(RESERVED_PREFIX):
            raise InvalidSecretName(name, f"the {RESERVED_PREFIX} prefix is reserved by GitHub")

        if self.map_environments:
            for suffix, environment in ENVIRONMENT_SUFFIXES:
                if name.endswith(suffix) and len(name) > len(suffix):
                    return SecretKey(base=name[: -len(suffix)], environment=environment)

        return SecretKey(base=name)

    def match_exclusion(self, name: str) -> ExclusionPattern | None:
        """Return the first exclusion pattern matching the original name."""
        for compiled, record in self._compiled:
            if compiled.search(name):
                return record
        return None

    def is_excluded(self, name: str) -> bool:
        return self.match_exclusion(name) is not None


__all__ = [
    "ENVIRONMENT_SUFFIXES",
    "GLOBAL_EXCLUSION_SEEDS",
    "RESERVED_PREFIX",
    "NameClassifier",
    "global_exclusion_seeds",
    "source_name_for",
]
