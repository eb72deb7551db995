"""Deployment environment provisioning.

Ensures the dev, staging and production environments exist on the
platform with their protection policy, and holds the secrets written into
them. Each environment moves through::

    absent -> provisioning -> active
                           -> failed

Re-provisioning an environment that already exists (locally or remotely)
reports ``updated`` and rewrites the same row. A failure in one
environment never affects the others, and per-secret failures never roll
back an applied policy.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from contextlib import AbstractAsyncContextManager, nullcontext
from typing import Any

from .classifier import source_name_for
from .exceptions import RemoteApiError, ReviewerNotFound, SyncError
from .github_client import GitHubClient
from .models import (
    EnvironmentName,
    EnvironmentRecord,
    EnvironmentSecret,
    EnvironmentStatus,
    ProtectionRules,
    ProvisionOutcome,
    ProvisionResult,
    QuotaType,
    Scope,
    SecretInput,
    SyncFailure,
    WriteOutcome,
    WriteStatus,
    utcnow,
)
from .quota import QuotaTracker
from .redactor import Redactor
from .retry import RetryPolicy, run_with_retry
from .store import StateStore
from .writer import ScopeWriter, hash_value

logger = logging.getLogger(__name__)

# Tiered defaults applied when neither the caller nor a stored record
# specifies a policy.
DEFAULT_PROTECTION: dict[EnvironmentName, ProtectionRules] = {
    EnvironmentName.DEV: ProtectionRules(),
    EnvironmentName.STAGING: ProtectionRules(required_reviewers=1),
    EnvironmentName.PRODUCTION: ProtectionRules(
        required_reviewers=1, restrict_to_main_branch=True
    ),
}

# GET + PUT of the environment itself
CALLS_PER_ENVIRONMENT = 2


def build_environment_payload(rules: ProtectionRules) -> dict[str, Any]:
    """Request body for PUT /repos/{owner}/{repo}/environments/{name}."""
    payload: dict[str, Any] = {
        "wait_timer": rules.wait_timer_minutes,
        "reviewers": (
            [{"type": "User", "id": reviewer_id} for reviewer_id in rules.reviewer_ids]
            if rules.reviewer_ids
            else None
        ),
        "deployment_branch_policy": (
            {"protected_branches": True, "custom_branch_policies": False}
            if rules.restrict_to_main_branch
            else None
        ),
    }
    return payload


class EnvironmentProvisioner:
    """Creates or updates deployment environments and their secrets.

    Args:
        client: Platform client
        writer: Writer used for environment-scoped secrets
        store: State store holding the EnvironmentRecords
        project_id: Project the environments belong to
        quota: Quota tracker; provisioning reserves core calls unless the
            caller already reserved for a whole batch
        retry_policy: Backoff for transient failures
        redactor: Redactor applied to error messages
        dry_run: Inspect remote state only; no PUT and no state changes
    """

    def __init__(
        self,
        client: GitHubClient,
        writer: ScopeWriter,
        store: StateStore,
        project_id: str,
        quota: QuotaTracker | None = None,
        retry_policy: RetryPolicy | None = None,
        redactor: Redactor | None = None,
        dry_run: bool = False,
    ) -> None:
        self._client = client
        self._writer = writer
        self._store = store
        self._quota = quota
        self._retry = retry_policy or RetryPolicy()
        self._redactor = redactor or Redactor()
        self.project_id = project_id
        self.dry_run = dry_run
        self._remote_exists: dict[EnvironmentName, bool] = {}

    async def ensure(
        self,
        environment_name: EnvironmentName | str,
        protection_rules: ProtectionRules | None = None,
        secrets: Sequence[SecretInput] = (),
        linked_resources: dict[str, str] | None = None,
        *,
        force: bool = False,
        reserve_quota: bool = True,
    ) -> ProvisionResult:
        """Provision one environment, then write its secrets.

        Returns:
            ProvisionResult; failures are reported in ``errors`` rather than raised

        Raises:
            RateLimitExhausted: If the quota reservation is refused
        """
        result = await self.provision(
            environment_name,
            protection_rules,
            linked_resources,
            reserve_quota=reserve_quota,
        )
        if result.status is EnvironmentStatus.FAILED or not secrets:
            return result

        outcomes = await self.write_secrets(
            result.environment_name, secrets, force=force, reserve_quota=reserve_quota
        )
        await self.record_secrets(result.environment_name, outcomes)

        errors = list(result.errors)
        errors.extend(
            SyncFailure(
                secret_name=o.secret_name,
                scope=o.scope,
                environment=result.environment_name.value,
                error=o.error or "write failed",
                code=o.code or "GITHUB_SECRETS_SYNC_FAILED",
            )
            for o in outcomes
            if o.status is WriteStatus.FAILED
        )
        written = [o.secret_name for o in outcomes if o.status is WriteStatus.WRITTEN]
        return result.model_copy(update={"errors": errors, "secrets_written": written})

    async def provision(
        self,
        environment_name: EnvironmentName | str,
        protection_rules: ProtectionRules | None = None,
        linked_resources: dict[str, str] | None = None,
        *,
        reserve_quota: bool = True,
    ) -> ProvisionResult:
        """Apply the protection policy of one environment."""
        name = EnvironmentName(environment_name)

        if reserve_quota and self._quota is not None:
            await self._quota.check_and_reserve(QuotaType.CORE, CALLS_PER_ENVIRONMENT)

        existing = await self._store.get_environment(self.project_id, name)
        rules = protection_rules or (
            existing.protection_rules if existing else DEFAULT_PROTECTION[name]
        )
        record = existing or EnvironmentRecord(project_id=self.project_id, environment_name=name)
        record.protection_rules = rules
        record.linked_resources = {**record.linked_resources, **(linked_resources or {})}

        try:
            remote = await run_with_retry(
                lambda: self._client.get_environment(name.value),
                self._retry,
                f"Lookup of environment {name.value}",
            )
        except SyncError as e:
            lookup_outcome = (
                ProvisionOutcome.UPDATED if existing is not None else ProvisionOutcome.UNKNOWN
            )
            return await self._fail(record, lookup_outcome, e)

        self._remote_exists[name] = remote is not None
        outcome = (
            ProvisionOutcome.UPDATED
            if existing is not None or remote is not None
            else ProvisionOutcome.CREATED
        )

        if self.dry_run:
            logger.info(f"Dry run: would {outcome.value[:-1]} environment {name.value}")
            return ProvisionResult(
                environment_name=name, outcome=outcome, status=EnvironmentStatus.ACTIVE
            )

        record.status = EnvironmentStatus.PROVISIONING
        record.error_message = None
        await self._store.save_environment(record)

        try:
            data = await self._put_policy(name, rules)
        except SyncError as e:
            return await self._fail(record, outcome, e)

        self._remote_exists[name] = True
        record.remote_environment_id = data.get("id", record.remote_environment_id)
        record.status = EnvironmentStatus.ACTIVE
        await self._store.save_environment(record)

        logger.info(
            f"Environment {name.value} {outcome.value} "
            f"(reviewers={rules.required_reviewers}, "
            f"main_only={rules.restrict_to_main_branch})"
        )
        return ProvisionResult(
            environment_name=name, outcome=outcome, status=EnvironmentStatus.ACTIVE
        )

    async def write_secrets(
        self,
        environment_name: EnvironmentName | str,
        secrets: Sequence[SecretInput],
        *,
        force: bool = False,
        reserve_quota: bool = True,
        limiter: AbstractAsyncContextManager[Any] | None = None,
    ) -> list[WriteOutcome]:
        """Write secrets into ``environment:<name>``, one task per secret."""
        return list(
            await asyncio.gather(
                *(
                    self.write_secret(
                        environment_name,
                        secret,
                        force=force,
                        reserve_quota=reserve_quota,
                        limiter=limiter,
                    )
                    for secret in secrets
                )
            )
        )

    async def write_secret(
        self,
        environment_name: EnvironmentName | str,
        secret: SecretInput,
        *,
        force: bool = False,
        reserve_quota: bool = True,
        limiter: AbstractAsyncContextManager[Any] | None = None,
    ) -> WriteOutcome:
        """Write one secret under its base name into ``environment:<name>``."""
        name = EnvironmentName(environment_name)
        scope = Scope.for_environment(name)
        value = secret.value.get_secret_value()
        source_name = source_name_for(secret.name, name)

        async with limiter or nullcontext():
            if self.dry_run and not self._remote_exists.get(name, False):
                # No public key exists before the environment does
                logger.info(f"Dry run: would write {secret.name} to {scope}")
                self._redactor.add_secret(value)
                return WriteOutcome(
                    scope=str(scope),
                    secret_name=secret.name,
                    source_name=source_name,
                    status=WriteStatus.WRITTEN,
                    value_hash=hash_value(value),
                    dry_run=True,
                )
            return await self._writer.upsert(
                scope,
                secret.name,
                value,
                source_name=source_name,
                force=force,
                reserve_quota=reserve_quota,
            )

    async def record_secrets(
        self, environment_name: EnvironmentName | str, outcomes: Iterable[WriteOutcome]
    ) -> None:
        """Note successfully written secret names on the environment record."""
        if self.dry_run:
            return

        name = EnvironmentName(environment_name)
        written = [o.secret_name for o in outcomes if o.status is WriteStatus.WRITTEN]
        if not written:
            return

        record = await self._store.get_environment(self.project_id, name)
        if record is None:
            return

        now = utcnow()
        secrets = {secret.name: secret for secret in record.secrets}
        for secret_name in written:
            secrets[secret_name] = EnvironmentSecret(name=secret_name, last_updated_at=now)
        record.secrets = sorted(secrets.values(), key=lambda s: s.name)
        await self._store.save_environment(record)

    async def _put_policy(self, name: EnvironmentName, rules: ProtectionRules) -> dict[str, Any]:
        payload = build_environment_payload(rules)
        try:
            return await run_with_retry(
                lambda: self._client.put_environment(name.value, payload),
                self._retry,
                f"Provisioning of environment {name.value}",
            )
        except RemoteApiError as e:
            if e.status_code == 422 and rules.reviewer_ids:
                raise ReviewerNotFound(name.value, rules.reviewer_ids) from e
            raise

    async def _fail(
        self, record: EnvironmentRecord, outcome: ProvisionOutcome, error: SyncError
    ) -> ProvisionResult:
        message = self._redactor.redact_text(str(error))
        logger.error(
            f"Provisioning of environment {record.environment_name.value} failed: {message}"
        )

        if not self.dry_run:
            record.status = EnvironmentStatus.FAILED
            record.error_message = message
            await self._store.save_environment(record)

        code = error.code
        if code == "GITHUB_API_ERROR":
            code = "GITHUB_ENV_CREATION_FAILED"
        return ProvisionResult(
            environment_name=record.environment_name,
            outcome=outcome,
            status=EnvironmentStatus.FAILED,
            errors=[
                SyncFailure(
                    environment=record.environment_name.value, error=message, code=code
                )
            ],
        )


__all__ = [
    "CALLS_PER_ENVIRONMENT",
    "DEFAULT_PROTECTION",
    "EnvironmentProvisioner",
    "build_environment_payload",
]
