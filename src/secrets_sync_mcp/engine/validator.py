"""Cross-scope validation of distributed secrets.

Works from the hashes persisted at write time, so it needs no network
access: a value edited directly on the platform stays invisible until the
next distribution writes over it.

Expectations per required name:
    - environment-suffixed names (``API_KEY_PROD``) must exist in their
      environment scope under the base name
    - every other name must exist in each target scope
      (default: actions, codespaces, dependabot)
    - excluded names are never expected anywhere

A secret is in conflict when its scopes hold two or more distinct hashes,
or when its mapping was flagged ``conflict`` by an unforced overwrite.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .classifier import NameClassifier
from .models import (
    GLOBAL_SCOPES,
    MissingSecret,
    Scope,
    SecretConflict,
    SecretMapping,
    SyncStatus,
    ValidationReport,
    ValidationSummary,
)
from .store import StateStore

logger = logging.getLogger(__name__)

HASH_PREFIX_LENGTH = 12
ALL_VALID = "All secrets valid. No action required."


class ConflictValidator:
    """Reports missing and conflicting secrets of one project.

    Example:
        >>> validator = ConflictValidator(store, "acme/api")
        >>> report = await validator.validate(["DATABASE_URL_DEV", "API_KEY"])
        >>> report.valid, report.summary.missing_count
        (False, 3)
    """

    def __init__(
        self,
        store: StateStore,
        project_id: str,
        classifier: NameClassifier | None = None,
    ) -> None:
        self._store = store
        self.project_id = project_id
        self._classifier = classifier or NameClassifier()

    async def validate(
        self,
        required_names: Iterable[str],
        target_scopes: Iterable[Scope | str] | None = None,
    ) -> ValidationReport:
        """Build the report for ``required_names``.

        Raises:
            InvalidSecretName: If a required name fails the naming rule
        """
        names = sorted(set(required_names))
        scopes = (
            [Scope.parse(s) for s in target_scopes] if target_scopes is not None else GLOBAL_SCOPES
        )
        global_scopes = [str(s) for s in scopes if not s.is_environment]

        missing: list[MissingSecret] = []
        conflicts: list[SecretConflict] = []
        remediation: list[str] = []
        valid_count = 0

        for name in names:
            key = self._classifier.classify(name)
            expected = (
                global_scopes if key.is_global else [str(Scope.for_environment(key.environment))]
            )
            mapping = await self._store.get_mapping(self.project_id, name)

            if mapping is not None and mapping.is_excluded:
                valid_count += 1
                continue

            name_missing = [
                scope
                for scope in expected
                if mapping is None or scope not in mapping.scope_hashes
            ]
            for scope in name_missing:
                missing.append(MissingSecret(secret_name=name, scope=scope))
                remediation.append(
                    f"Secret '{name}' is missing in scope '{scope}': "
                    "re-run distribution with this scope included"
                )

            conflict = _find_conflict(name, mapping) if mapping is not None else None
            if conflict is not None:
                conflicts.append(conflict)
                remediation.append(
                    f"Secret '{name}' has conflicting values across "
                    f"{', '.join(conflict.scopes)}: re-run distribution with overwrite "
                    f"enabled to make '{mapping.source_scope}' authoritative"
                )

            if not name_missing and conflict is None:
                valid_count += 1

        remediation.sort()
        if not remediation:
            remediation = [ALL_VALID]

        report = ValidationReport(
            valid=not missing and not conflicts,
            missing=missing,
            conflicts=conflicts,
            summary=ValidationSummary(
                total_secrets=len(names),
                missing_count=len(missing),
                conflict_count=len(conflicts),
                valid_count=valid_count,
            ),
            remediation_steps=remediation,
        )
        logger.info(
            f"Validated {len(names)} secrets for {self.project_id}: "
            f"{len(missing)} missing, {len(conflicts)} conflicting"
        )
        return report


def _find_conflict(name: str, mapping: SecretMapping) -> SecretConflict | None:
    hashes = {scope: entry.value_hash for scope, entry in mapping.scope_hashes.items()}
    distinct = set(hashes.values())
    if len(distinct) < 2 and mapping.sync_status is not SyncStatus.CONFLICT:
        return None

    scopes = sorted(hashes)
    return SecretConflict(
        secret_name=name,
        scopes=scopes,
        value_hashes={scope: hashes[scope][:HASH_PREFIX_LENGTH] for scope in scopes},
    )


__all__ = ["ALL_VALID", "ConflictValidator"]
