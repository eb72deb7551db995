"""Distribution engine: converges named secrets into every target scope.

Pipeline for one run::

    names/values
      -> NameClassifier (exclude, then classify)
      -> QuotaTracker preflight (the only batch-level abort)
      -> EnvironmentProvisioner (dev, staging, production, concurrently)
      -> ScopeWriter per (scope, secret), bounded by a semaphore
      -> mapping settlement + one audit event

Global names go to each target repository scope (actions, codespaces,
dependabot by default). Environment-suffixed names go only to their
environment scope, under the base name. Nothing falls back from an
environment to a global value.

Example:
    >>> async with await build_engine(config) as engine:
    ...     result = await engine.distribute(
    ...         {"DATABASE_URL_DEV": "postgres://a", "API_KEY": "k-123"},
    ...         actor_id="cli",
    ...     )
    >>> result.synced_count
    4
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta

import httpx
from pydantic import SecretStr

from .audit import AuditRecorder
from .classifier import NameClassifier, global_exclusion_seeds
from .config import SyncConfig
from .encryption import SealedEncryptor
from .environments import CALLS_PER_ENVIRONMENT, EnvironmentProvisioner
from .exceptions import InvalidSecretName, RateLimitExhausted, SyncError
from .github_client import GitHubClient
from .models import (
    EnvironmentName,
    EnvironmentsResult,
    EnvironmentSpec,
    EnvironmentStatus,
    EventStatus,
    ExclusionPattern,
    Operation,
    ProvisionOutcome,
    ProvisionResult,
    QuotaType,
    Scope,
    SecretInput,
    SyncEvent,
    SyncFailure,
    SyncResult,
    SyncStatus,
    SyncStatusReport,
    ValidationReport,
    WriteOutcome,
    WriteStatus,
    new_id,
    utcnow,
)
from .quota import QuotaTracker
from .redactor import Redactor
from .store import StateStore
from .validator import ConflictValidator
from .writer import ScopeWriter, hash_value

logger = logging.getLogger(__name__)

ENVIRONMENTS_TARGET = "environments"
SYNC_INTERVAL = timedelta(hours=6)
TIMEOUT_CODE = "TIMEOUT"
NOT_FOUND_CODE = "SECRET_NOT_FOUND"


def parse_targets(values: Iterable[str] | None) -> tuple[list[Scope] | None, bool]:
    """Split target names into repository scopes and the environments flag.

    ``None`` means the configured default scopes plus environments. The
    pseudo-target ``environments`` enables environment-scoped names;
    ``environment:<name>`` entries are accepted as an alias for it.

    Raises:
        ValueError: If a target is unknown
    """
    if values is None:
        return None, True

    scopes: list[Scope] = []
    include_environments = False
    for value in values:
        value = value.strip()
        if not value:
            continue
        if value == ENVIRONMENTS_TARGET:
            include_environments = True
            continue
        scope = Scope.parse(value)
        if scope.is_environment:
            include_environments = True
        elif scope not in scopes:
            scopes.append(scope)
    return scopes, include_environments


@dataclass(frozen=True)
class _PlannedWrite:
    scope: Scope
    name: str
    source_name: str
    value: str

    @property
    def environment(self) -> EnvironmentName | None:
        return EnvironmentName(self.scope.environment) if self.scope.is_environment else None


class DistributionEngine:
    """Runs distributions, environment provisioning and validation for one project.

    Args:
        client: Platform client for the project's repository
        store: Initialized state store
        project_id: Project identifier (``owner/repo`` by default)
        config: Distribution settings
        redactor: Shared redactor; learns every value seen
        quota: Quota tracker (built from config when omitted)
        audit: Audit recorder (built on the store when omitted)
        dry_run: Seal values and inspect remote state, but write nothing
    """

    def __init__(
        self,
        client: GitHubClient,
        store: StateStore,
        project_id: str,
        config: SyncConfig | None = None,
        redactor: Redactor | None = None,
        quota: QuotaTracker | None = None,
        audit: AuditRecorder | None = None,
        dry_run: bool = False,
    ) -> None:
        self.config = config or SyncConfig()
        self.client = client
        self.store = store
        self.project_id = project_id
        self.dry_run = dry_run
        self.redactor = redactor or Redactor()

        self.quota = quota or QuotaTracker(
            project_id,
            store=store,
            safety_margins=self.config.quota.safety_margins,
            default_limits=self.config.quota.default_limits,
            fetch_windows=client.get_rate_limits,
            freshness_seconds=self.config.quota.freshness_seconds,
            persist=not dry_run,
        )
        if client.on_rate_limit is None:
            client.on_rate_limit = self.quota.refresh_from_headers

        retry_policy = self.config.distribution.retry_policy()
        self.encryptor = SealedEncryptor(client.get_public_key)
        self.writer = ScopeWriter(
            client,
            self.encryptor,
            store,
            project_id,
            quota=self.quota,
            retry_policy=retry_policy,
            redactor=self.redactor,
            dry_run=dry_run,
        )
        self.provisioner = EnvironmentProvisioner(
            client,
            self.writer,
            store,
            project_id,
            quota=self.quota,
            retry_policy=retry_policy,
            redactor=self.redactor,
            dry_run=dry_run,
        )
        self.validator = ConflictValidator(store, project_id)
        self.audit = audit or AuditRecorder(store, self.redactor)

    async def __aenter__(self) -> DistributionEngine:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    # -------------------------------------------------------------------------
    # Distribution
    # -------------------------------------------------------------------------

    async def distribute(
        self,
        secrets: Mapping[str, str],
        *,
        target_scopes: Sequence[Scope | str] | None = None,
        include_environments: bool = True,
        force: bool = False,
        map_environments: bool = True,
        exclusions: Iterable[str] = (),
        unavailable: Iterable[str] = (),
        timeout: float | None = None,
        actor_id: str = "system",
        correlation_id: str | None = None,
    ) -> SyncResult:
        """Distribute every secret to its scopes and provision all environments.

        Args:
            secrets: Original name -> plaintext value
            target_scopes: Repository scopes for global names (config default if None)
            include_environments: Provision environments and write suffixed names
            force: Overwrite diverged values without flagging conflicts
            map_environments: Treat _DEV/_STAGING/_PROD suffixes as environments
            exclusions: Extra exclusion patterns for this run only
            unavailable: Requested names the secret source did not hold;
                each is reported as a failure
            timeout: Deadline for the writes; unfinished writes fail with TIMEOUT
            actor_id: Who triggered the run (recorded in the audit trail)
            correlation_id: Request correlation id (generated if omitted)

        Raises:
            RateLimitExhausted: If the quota preflight refuses the batch
        """
        return await self._run(
            secrets,
            operation=Operation.SYNC_ALL,
            environments=list(EnvironmentName) if include_environments else [],
            target_scopes=target_scopes,
            include_environments=include_environments,
            force=force,
            map_environments=map_environments,
            exclusions=exclusions,
            unavailable=unavailable,
            timeout=timeout if timeout is not None else self.config.distribution.timeout,
            actor_id=actor_id,
            correlation_id=correlation_id or new_id(),
        )

    async def sync_secret(
        self,
        name: str,
        value: str,
        *,
        target_scopes: Sequence[Scope | str] | None = None,
        force: bool = False,
        actor_id: str = "system",
        correlation_id: str | None = None,
    ) -> SyncResult:
        """Distribute one secret. Only its own environment is provisioned."""
        correlation_id = correlation_id or new_id()
        classifier = NameClassifier()
        try:
            key = classifier.classify(name)
        except InvalidSecretName as e:
            await self.audit.record(
                project_id=self.project_id,
                actor_id=actor_id,
                operation=Operation.UPDATE,
                correlation_id=correlation_id,
                secret_name=name,
                status=EventStatus.FAILURE,
                error_message=str(e),
            )
            raise

        return await self._run(
            {name: value},
            operation=Operation.UPDATE,
            environments=[] if key.environment is None else [key.environment],
            target_scopes=target_scopes,
            include_environments=True,
            force=force,
            map_environments=True,
            exclusions=(),
            unavailable=(),
            timeout=self.config.distribution.timeout,
            actor_id=actor_id,
            correlation_id=correlation_id,
            secret_name=name,
        )

    async def _run(
        self,
        secrets: Mapping[str, str],
        *,
        operation: Operation,
        environments: list[EnvironmentName],
        target_scopes: Sequence[Scope | str] | None,
        include_environments: bool,
        force: bool,
        map_environments: bool,
        exclusions: Iterable[str],
        unavailable: Iterable[str],
        timeout: float | None,
        actor_id: str,
        correlation_id: str,
        secret_name: str | None = None,
    ) -> SyncResult:
        started = time.monotonic()
        classifier = await self.classifier(exclusions, map_environments=map_environments)
        scopes = (
            [Scope.parse(s) for s in target_scopes]
            if target_scopes is not None
            else self.config.distribution.target_scopes()
        )
        repo_scopes = [s for s in scopes if not s.is_environment]

        plan: list[_PlannedWrite] = []
        outcomes: list[WriteOutcome] = []
        errors: list[SyncFailure] = []
        skipped: list[str] = []
        invalid: list[str] = []
        missing = sorted(set(unavailable) - set(secrets))
        errors.extend(
            SyncFailure(secret_name=name, error="Secret not found in source", code=NOT_FOUND_CODE)
            for name in missing
        )

        for name in sorted(secrets):
            value = secrets[name]
            self.redactor.add_secret(value)

            if classifier.match_exclusion(name) is not None:
                skipped.append(name)
                outcomes.append(
                    await self.writer.upsert(
                        repo_scopes[0] if repo_scopes else "actions", name, value, excluded=True
                    )
                )
                continue

            try:
                key = classifier.classify(name)
            except InvalidSecretName as e:
                invalid.append(name)
                errors.append(SyncFailure(secret_name=name, error=str(e), code=e.code))
                continue

            if key.environment is None:
                plan.extend(_PlannedWrite(scope, key.base, name, value) for scope in repo_scopes)
            elif include_environments:
                scope = Scope.for_environment(key.environment)
                plan.append(_PlannedWrite(scope, key.base, name, value))
            else:
                logger.info(f"Skipping {name}: environments are not targeted")
                skipped.append(name)

        try:
            await self._preflight(
                secrets_calls=len(plan),
                core_calls=len(environments) * CALLS_PER_ENVIRONMENT
                + len({w.scope for w in plan}),
            )
        except RateLimitExhausted as e:
            await self.audit.record(
                project_id=self.project_id,
                actor_id=actor_id,
                operation=operation,
                correlation_id=correlation_id,
                secret_name=secret_name,
                status=EventStatus.FAILURE,
                error_message=str(e),
                duration_ms=_elapsed_ms(started),
                metadata={
                    "quota_type": e.quota_type,
                    "remaining": e.remaining,
                    "reset_at": e.reset_at.isoformat(),
                    "planned_writes": len(plan),
                },
            )
            raise

        provisioned: dict[EnvironmentName, ProvisionResult] = {}
        if environments:
            results = await asyncio.gather(
                *(self.provisioner.provision(env, reserve_quota=False) for env in environments)
            )
            provisioned = {r.environment_name: r for r in results}

        write_outcomes = await self._execute(plan, provisioned, force=force, timeout=timeout)
        outcomes.extend(write_outcomes)

        for env, result in provisioned.items():
            env_outcomes = [o for o in write_outcomes if o.scope == str(Scope.for_environment(env))]
            await self.provisioner.record_secrets(env, env_outcomes)
            provisioned[env] = result.model_copy(
                update={
                    "secrets_written": [
                        o.secret_name for o in env_outcomes if o.status is WriteStatus.WRITTEN
                    ]
                }
            )

        by_source: dict[str, list[WriteOutcome]] = defaultdict(list)
        for outcome in write_outcomes:
            by_source[outcome.source_name].append(outcome)
        for source_name, source_outcomes in by_source.items():
            await self.writer.settle(source_name, source_outcomes)

        failed = [o for o in write_outcomes if o.status is WriteStatus.FAILED]
        written = [o for o in write_outcomes if o.status is WriteStatus.WRITTEN]
        errors.extend(
            SyncFailure(
                secret_name=o.source_name,
                scope=o.scope,
                environment=Scope.parse(o.scope).environment,
                error=o.error or "write failed",
                code=o.code or SyncError.code,
            )
            for o in failed
        )
        for result in provisioned.values():
            errors.extend(result.errors)

        conflicts = sorted({o.source_name for o in written if o.conflict})
        duration_ms = _elapsed_ms(started)
        result = SyncResult(
            synced_count=len(written),
            skipped_count=len(skipped),
            failed_count=len(failed) + len(invalid) + len(missing),
            errors=errors,
            skipped=skipped,
            conflicts=conflicts,
            environments=[provisioned[env] for env in environments if env in provisioned],
            outcomes=outcomes,
            correlation_id=correlation_id,
            duration_ms=duration_ms,
            dry_run=self.dry_run,
        )

        await self._record_run(
            result,
            operation=operation,
            actor_id=actor_id,
            secret_name=secret_name,
            invalid=invalid,
            missing=missing,
            force=force,
        )
        logger.info(
            f"Distribution finished for {self.project_id}: {result.synced_count} written, "
            f"{result.skipped_count} skipped, {result.failed_count} failed "
            f"in {duration_ms}ms (correlation_id={correlation_id})"
        )
        return result

    async def _preflight(self, *, secrets_calls: int, core_calls: int) -> None:
        if secrets_calls:
            await self.quota.check_and_reserve(QuotaType.SECRETS, secrets_calls)
        if core_calls:
            await self.quota.check_and_reserve(QuotaType.CORE, core_calls)

    async def _execute(
        self,
        plan: list[_PlannedWrite],
        provisioned: dict[EnvironmentName, ProvisionResult],
        *,
        force: bool,
        timeout: float | None,
    ) -> list[WriteOutcome]:
        """Run the planned writes with bounded parallelism and an optional deadline."""
        if not plan:
            return []

        semaphore = asyncio.Semaphore(self.config.distribution.concurrency)
        results: dict[int, WriteOutcome] = {}
        tasks: dict[asyncio.Task[WriteOutcome], int] = {}

        for index, write in enumerate(plan):
            env = write.environment
            if env is not None and env in provisioned:
                env_result = provisioned[env]
                if env_result.status is EnvironmentStatus.FAILED:
                    first = env_result.errors[0] if env_result.errors else None
                    results[index] = _failed_outcome(
                        write,
                        f"environment {env.value} could not be provisioned",
                        first.code if first else SyncError.code,
                    )
                    continue
                coro = self.provisioner.write_secret(
                    env,
                    SecretInput(name=write.name, value=SecretStr(write.value)),
                    force=force,
                    reserve_quota=False,
                    limiter=semaphore,
                )
            else:
                coro = self._limited_upsert(semaphore, write, force=force)
            tasks[asyncio.create_task(coro)] = index

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"{len(pending)} writes cancelled after {timeout}s deadline")

            for task, index in tasks.items():
                write = plan[index]
                if task in pending:
                    results[index] = _failed_outcome(
                        write, f"write timed out after {timeout}s", TIMEOUT_CODE
                    )
                    continue

                error = task.exception()
                if error is None:
                    results[index] = task.result()
                    continue

                message = self.redactor.redact_text(str(error))
                logger.error(f"Write of {write.name} to {write.scope} failed: {message}")
                code = error.code if isinstance(error, SyncError) else SyncError.code
                results[index] = _failed_outcome(write, message, code)

        return [results[index] for index in range(len(plan))]

    async def _limited_upsert(
        self, semaphore: asyncio.Semaphore, write: _PlannedWrite, *, force: bool
    ) -> WriteOutcome:
        async with semaphore:
            return await self.writer.upsert(
                write.scope,
                write.name,
                write.value,
                source_name=write.source_name,
                force=force,
                reserve_quota=False,
            )

    async def _record_run(
        self,
        result: SyncResult,
        *,
        operation: Operation,
        actor_id: str,
        secret_name: str | None,
        invalid: list[str],
        missing: list[str],
        force: bool,
    ) -> SyncEvent | None:
        affected: list[str] = []
        success_count = failure_count = 0

        for env_result in result.environments:
            affected.append(str(Scope.for_environment(env_result.environment_name)))
            if env_result.status is EnvironmentStatus.FAILED:
                failure_count += 1
            else:
                success_count += 1

        for outcome in result.outcomes:
            if outcome.status is WriteStatus.SKIPPED:
                continue
            affected.append(f"{outcome.scope}/{outcome.secret_name}")
            if outcome.status is WriteStatus.FAILED:
                failure_count += 1
            else:
                success_count += 1

        # Names rejected before any write count against the run
        for name in [*invalid, *missing]:
            affected.append(f"source/{name}")
            failure_count += 1

        status = None
        if not affected and result.errors:
            status = EventStatus.FAILURE

        error_message = None
        if result.errors:
            error_message = "; ".join(
                f"{e.secret_name or e.environment}: {e.error}" for e in result.errors[:10]
            )

        return await self.audit.record(
            project_id=self.project_id,
            actor_id=actor_id,
            operation=operation,
            correlation_id=result.correlation_id,
            affected_scopes=affected,
            success_count=success_count,
            failure_count=failure_count,
            status=status,
            secret_name=secret_name,
            error_message=error_message,
            duration_ms=result.duration_ms,
            metadata={
                "dry_run": result.dry_run,
                "force": force,
                "skipped": result.skipped,
                "conflicts": result.conflicts,
                "invalid_names": invalid,
                "unavailable_names": missing,
            },
        )

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    async def create_environments(
        self,
        specs: Sequence[EnvironmentSpec],
        *,
        force: bool = False,
        actor_id: str = "system",
        correlation_id: str | None = None,
    ) -> EnvironmentsResult:
        """Provision the given environments with their policies and secrets.

        Raises:
            ValueError: If an environment is listed twice
            RateLimitExhausted: If the quota preflight refuses the request
        """
        started = time.monotonic()
        correlation_id = correlation_id or new_id()

        names = [spec.name for spec in specs]
        duplicates = sorted({n.value for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Environments listed more than once: {', '.join(duplicates)}")

        for spec in specs:
            for secret in spec.secrets:
                self.redactor.add_secret(secret.value.get_secret_value())

        try:
            await self._preflight(
                secrets_calls=sum(len(spec.secrets) for spec in specs),
                core_calls=sum(
                    CALLS_PER_ENVIRONMENT + (1 if spec.secrets else 0) for spec in specs
                ),
            )
        except RateLimitExhausted as e:
            await self.audit.record(
                project_id=self.project_id,
                actor_id=actor_id,
                operation=Operation.CREATE,
                correlation_id=correlation_id,
                status=EventStatus.FAILURE,
                error_message=str(e),
                duration_ms=_elapsed_ms(started),
            )
            raise

        results = await asyncio.gather(
            *(
                self.provisioner.ensure(
                    spec.name,
                    spec.protection_rules,
                    spec.secrets,
                    spec.linked_resources,
                    force=force,
                    reserve_quota=False,
                )
                for spec in specs
            )
        )

        response = EnvironmentsResult(
            created=[
                r.environment_name.value
                for r in results
                if r.status is not EnvironmentStatus.FAILED
                and r.outcome is ProvisionOutcome.CREATED
            ],
            updated=[
                r.environment_name.value
                for r in results
                if r.status is not EnvironmentStatus.FAILED
                and r.outcome is ProvisionOutcome.UPDATED
            ],
            errors=[error for r in results for error in r.errors],
            environments=list(results),
            correlation_id=correlation_id,
        )

        affected: list[str] = []
        success_count = failure_count = 0
        for r, spec in zip(results, specs, strict=True):
            scope = str(Scope.for_environment(r.environment_name))
            affected.append(scope)
            if r.status is EnvironmentStatus.FAILED:
                failure_count += 1
                continue
            success_count += 1
            failed_names = {e.secret_name for e in r.errors if e.secret_name}
            for secret in spec.secrets:
                affected.append(f"{scope}/{secret.name}")
                if secret.name in failed_names:
                    failure_count += 1
                else:
                    success_count += 1

        await self.audit.record(
            project_id=self.project_id,
            actor_id=actor_id,
            operation=Operation.CREATE,
            correlation_id=correlation_id,
            affected_scopes=affected,
            success_count=success_count,
            failure_count=failure_count,
            error_message="; ".join(f"{e.environment}: {e.error}" for e in response.errors)
            or None,
            duration_ms=_elapsed_ms(started),
            metadata={"created": response.created, "updated": response.updated},
        )
        return response

    # -------------------------------------------------------------------------
    # Validation and status
    # -------------------------------------------------------------------------

    async def validate(
        self,
        required_names: Iterable[str],
        target_scopes: Sequence[Scope | str] | None = None,
        *,
        actor_id: str = "system",
        correlation_id: str | None = None,
    ) -> ValidationReport:
        """Report missing and conflicting secrets from the persisted hashes."""
        started = time.monotonic()
        correlation_id = correlation_id or new_id()
        names = list(required_names)
        scopes = (
            target_scopes if target_scopes is not None else self.config.distribution.target_scopes()
        )

        try:
            report = await self.validator.validate(names, scopes)
        except SyncError as e:
            await self.audit.record(
                project_id=self.project_id,
                actor_id=actor_id,
                operation=Operation.VALIDATE,
                correlation_id=correlation_id,
                status=EventStatus.FAILURE,
                error_message=str(e),
                duration_ms=_elapsed_ms(started),
            )
            raise

        await self.audit.record(
            project_id=self.project_id,
            actor_id=actor_id,
            operation=Operation.VALIDATE,
            correlation_id=correlation_id,
            duration_ms=_elapsed_ms(started),
            metadata={
                "valid": report.valid,
                "total_secrets": report.summary.total_secrets,
                "missing_count": report.summary.missing_count,
                "conflict_count": report.summary.conflict_count,
            },
        )
        return report

    async def get_status(self) -> SyncStatusReport:
        """Aggregate the sync state of every non-excluded mapping."""
        mappings = [m for m in await self.store.list_mappings(self.project_id) if not m.is_excluded]

        pending_count = sum(1 for m in mappings if m.sync_status is SyncStatus.PENDING)
        error_count = sum(1 for m in mappings if m.sync_status is SyncStatus.FAILED)
        conflict_count = sum(1 for m in mappings if m.sync_status is SyncStatus.CONFLICT)
        synced_times = [m.last_synced_at for m in mappings if m.last_synced_at is not None]
        last_sync_at = max(synced_times) if synced_times else None

        if not mappings:
            status = "never_synced"
        elif error_count:
            status = "error"
        elif pending_count:
            status = "pending"
        else:
            status = "synced"

        remaining = await self.quota.remaining()
        return SyncStatusReport(
            last_sync_at=last_sync_at,
            status=status,
            pending_count=pending_count,
            error_count=error_count,
            conflict_count=conflict_count,
            next_scheduled_sync_at=(last_sync_at or utcnow()) + SYNC_INTERVAL,
            quota_remaining={
                QuotaType.CORE.value: remaining.get(QuotaType.CORE.value),
                QuotaType.SECRETS.value: remaining.get(QuotaType.SECRETS.value),
            },
        )

    # -------------------------------------------------------------------------
    # Audit and exclusions
    # -------------------------------------------------------------------------

    async def list_events(
        self, limit: int = 50, operation: Operation | None = None
    ) -> list[SyncEvent]:
        return await self.audit.get_events(self.project_id, limit=limit, operation=operation)

    async def prune_events(self) -> int:
        return await self.audit.prune(self.config.audit.retention_days)

    async def add_exclusion(self, pattern: str, reason: str = "") -> bool:
        """Store a project exclusion pattern.

        Raises:
            ValueError: If the pattern is not a valid regex
        """
        return await self.store.add_exclusion(
            ExclusionPattern(project_id=self.project_id, pattern=pattern, reason=reason)
        )

    async def list_exclusions(self) -> list[ExclusionPattern]:
        return await self.store.list_exclusions(self.project_id)

    async def classifier(
        self, extra: Iterable[str] = (), *, map_environments: bool = True
    ) -> NameClassifier:
        """Classifier over stored, configured and ad-hoc exclusion patterns."""
        classifier = NameClassifier(await self.list_exclusions(), map_environments=map_environments)
        for pattern in [*self.config.exclusions, *extra]:
            classifier.add_pattern(pattern)
        return classifier


def _failed_outcome(write: _PlannedWrite, error: str, code: str) -> WriteOutcome:
    return WriteOutcome(
        scope=str(write.scope),
        secret_name=write.name,
        source_name=write.source_name,
        status=WriteStatus.FAILED,
        value_hash=hash_value(write.value),
        error=error,
        code=code,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def build_engine(
    config: SyncConfig,
    *,
    store: StateStore | None = None,
    redactor: Redactor | None = None,
    dry_run: bool = False,
    http_client: httpx.AsyncClient | None = None,
) -> DistributionEngine:
    """Create a client, initialize the state store and assemble an engine.

    Raises:
        CredentialMissing: If the token, owner or repo is not configured
    """
    project_id = config.project_id
    token = config.resolve_token()

    if store is None:
        store = StateStore(config.state.db_path)
        await store.init(global_exclusion_seeds())

    client = GitHubClient(
        token=token,
        owner=config.github.owner or "",
        repo=config.github.repo or "",
        api_url=config.github.api_url,
        timeout=config.github.timeout,
        http_client=http_client,
    )
    return DistributionEngine(
        client,
        store,
        project_id,
        config=config,
        redactor=redactor,
        dry_run=dry_run,
    )


__all__ = [
    "ENVIRONMENTS_TARGET",
    "DistributionEngine",
    "build_engine",
    "parse_targets",
]

