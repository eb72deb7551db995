"""Idempotent upsert of one secret into one scope.

For each write the value's SHA-256 is computed first; plaintext never
reaches the state store. Excluded names return ``skipped`` without any
network call. Otherwise the value is sealed for the scope, PUT to the
platform with bounded retries, and the mapping's per-scope hash history is
updated.

Conflicts: if the hash last written to this scope differs from the new
one, the new value is still written (the caller is authoritative) but the
mapping is flagged ``conflict``. The flag stays until a write with
``force=True`` acknowledges the overwrite.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Iterable

from .encryption import SealedEncryptor
from .exceptions import ConflictDetected, RemoteApiError, ScopeUnreachable, SyncError
from .github_client import GitHubClient
from .models import (
    SECRET_NAME_PATTERN,
    QuotaType,
    Scope,
    ScopeHash,
    SecretMapping,
    SyncStatus,
    WriteOutcome,
    WriteStatus,
    utcnow,
)
from .quota import QuotaTracker
from .redactor import Redactor
from .retry import RetryPolicy, run_with_retry
from .store import StateStore

logger = logging.getLogger(__name__)


def hash_value(value: str) -> str:
    """SHA-256 hex digest of a secret value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class ScopeWriter:
    """Writes secrets into scopes and keeps their mappings current.

    Args:
        client: Platform client
        encryptor: Sealed-box encryptor with key cache
        store: State store holding the mappings
        project_id: Project the mappings belong to
        quota: Quota tracker; each write reserves one ``secrets`` call
            unless the caller already reserved for a whole batch
        retry_policy: Backoff for transient failures
        redactor: Redactor that learns every value written and masks errors
        dry_run: Seal values but skip the PUT and leave state untouched
    """

    def __init__(
        self,
        client: GitHubClient,
        encryptor: SealedEncryptor,
        store: StateStore,
        project_id: str,
        quota: QuotaTracker | None = None,
        retry_policy: RetryPolicy | None = None,
        redactor: Redactor | None = None,
        dry_run: bool = False,
    ) -> None:
        self._client = client
        self._encryptor = encryptor
        self._store = store
        self._quota = quota
        self._retry = retry_policy or RetryPolicy()
        self._redactor = redactor or Redactor()
        self.project_id = project_id
        self.dry_run = dry_run
        self._locks: dict[str, asyncio.Lock] = {}

    async def upsert(
        self,
        scope: Scope | str,
        name: str,
        value: str,
        *,
        source_name: str | None = None,
        excluded: bool = False,
        force: bool = False,
        reserve_quota: bool = True,
    ) -> WriteOutcome:
        """Create or update ``name`` in ``scope``.

        Args:
            scope: Target scope
            name: Name the secret gets in the scope
            value: Plaintext value
            source_name: Original name the mapping is keyed by (defaults to name)
            excluded: Skip the write and record the mapping as excluded
            force: Overwrite without flagging a conflict
            reserve_quota: Reserve one secrets call before writing

        Returns:
            WriteOutcome with status written, skipped or failed
        """
        scope = Scope.parse(scope)
        source_name = source_name or name
        value_hash = hash_value(value)
        self._redactor.add_secret(value)

        outcome = WriteOutcome(
            scope=str(scope),
            secret_name=name,
            source_name=source_name,
            status=WriteStatus.WRITTEN,
            value_hash=value_hash,
            dry_run=self.dry_run,
        )

        if excluded:
            # Names that cannot be stored as secrets get no mapping
            if not self.dry_run and SECRET_NAME_PATTERN.match(source_name):
                await self.record_excluded(source_name, value_hash)
            logger.info(f"Skipping excluded secret {source_name}")
            return outcome.model_copy(update={"status": WriteStatus.SKIPPED})

        mapping = await self._store.get_mapping(self.project_id, source_name)
        previous = mapping.scope_hashes.get(str(scope)) if mapping else None
        conflict = previous is not None and previous.value_hash != value_hash and not force

        try:
            if reserve_quota and self._quota is not None:
                await self._quota.check_and_reserve(QuotaType.SECRETS, 1)

            if self.dry_run:
                await self._encryptor.encrypt_for(scope, value)
                logger.info(f"Dry run: would write {name} to {scope}")
                return outcome.model_copy(update={"conflict": conflict})

            await self._send(scope, name, value)
        except SyncError as e:
            message = self._redactor.redact_text(str(e))
            logger.warning(f"Failed to write {name} to {scope}: {message}")
            if not self.dry_run:
                await self._record_failure(source_name, scope, value_hash, message)
            return outcome.model_copy(
                update={
                    "status": WriteStatus.FAILED,
                    "conflict": conflict,
                    "error": message,
                    "code": e.code,
                }
            )

        await self._record_success(source_name, scope, value_hash, conflict=conflict, force=force)
        if conflict:
            logger.warning(str(ConflictDetected(source_name, str(scope))))
        else:
            logger.info(f"Wrote {name} to {scope}")

        return outcome.model_copy(update={"conflict": conflict})

    async def _send(self, scope: Scope, name: str, value: str) -> None:
        """Seal and PUT with retries.

        Raises:
            ScopeUnreachable: If the platform could not be reached on any attempt
        """
        try:
            await run_with_retry(
                lambda: self._encryptor.seal_and_send(
                    scope, value, lambda encrypted: self._client.put_secret(scope, name, encrypted)
                ),
                self._retry,
                f"Write of {name} to {scope}",
            )
        except RemoteApiError as e:
            if e.status_code is not None:
                raise
            raise ScopeUnreachable(str(scope), e.details) from e

    async def record_excluded(self, source_name: str, value_hash: str) -> None:
        async with self._lock_for(source_name):
            mapping = await self._load_or_new(source_name, value_hash, source_scope="actions")
            mapping.is_excluded = True
            mapping.value_hash = value_hash
            await self._store.save_mapping(mapping)

    async def settle(self, source_name: str, outcomes: Iterable[WriteOutcome]) -> None:
        """Fold the outcomes of one run into the mapping's overall status.

        Any failed scope leaves the mapping ``failed``; otherwise any
        conflicting scope leaves it ``conflict``.
        """
        outcomes = list(outcomes)
        failed = [o for o in outcomes if o.status is WriteStatus.FAILED]
        conflicted = [o for o in outcomes if o.conflict and o.status is WriteStatus.WRITTEN]
        if self.dry_run or not (failed or conflicted):
            return

        async with self._lock_for(source_name):
            mapping = await self._store.get_mapping(self.project_id, source_name)
            if mapping is None:
                return
            if failed:
                mapping.sync_status = SyncStatus.FAILED
                mapping.error_message = "; ".join(f"{o.scope}: {o.error}" for o in failed)
            else:
                mapping.sync_status = SyncStatus.CONFLICT
            await self._store.save_mapping(mapping)

    async def _record_success(
        self,
        source_name: str,
        scope: Scope,
        value_hash: str,
        *,
        conflict: bool,
        force: bool,
    ) -> None:
        async with self._lock_for(source_name):
            mapping = await self._load_or_new(source_name, value_hash, source_scope=str(scope))
            now = utcnow()

            mapping.scope_hashes[str(scope)] = ScopeHash(value_hash=value_hash, synced_at=now)
            if str(scope) not in mapping.target_scopes:
                mapping.target_scopes.append(str(scope))

            still_conflicting = mapping.sync_status is SyncStatus.CONFLICT and not force
            mapping.sync_status = (
                SyncStatus.CONFLICT if conflict or still_conflicting else SyncStatus.SYNCED
            )
            mapping.value_hash = value_hash
            mapping.last_synced_at = now
            mapping.is_excluded = False
            mapping.error_message = None
            await self._store.save_mapping(mapping)

    async def _record_failure(
        self, source_name: str, scope: Scope, value_hash: str, message: str
    ) -> None:
        async with self._lock_for(source_name):
            mapping = await self._load_or_new(source_name, value_hash, source_scope=str(scope))
            mapping.sync_status = SyncStatus.FAILED
            mapping.error_message = f"{scope}: {message}"
            mapping.is_excluded = False
            await self._store.save_mapping(mapping)

    async def _load_or_new(
        self, source_name: str, value_hash: str, source_scope: str
    ) -> SecretMapping:
        mapping = await self._store.get_mapping(self.project_id, source_name)
        if mapping is None:
            mapping = SecretMapping(
                project_id=self.project_id,
                secret_name=source_name,
                value_hash=value_hash,
                source_scope=source_scope,
            )
        return mapping

    def _lock_for(self, source_name: str) -> asyncio.Lock:
        return self._locks.setdefault(source_name, asyncio.Lock())


__all__ = ["ScopeWriter", "hash_value"]
