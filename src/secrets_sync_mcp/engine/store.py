"""Persistent distribution state in SQLite.

Architecture:
    - One SQLite database (WAL mode) per working directory, see state_config.py
    - Blocking sqlite3 calls run in the default thread pool executor
    - Write-through: every save is committed immediately, nothing is cached
    - List and dict columns are stored as JSON text

Tables:
    secret_mappings      (project_id, secret_name) unique, never deleted
    environment_records  (project_id, environment_name) unique
    sync_events          append-only, partitioned by month for retention
    exclusion_patterns   global seeds plus per-project patterns
    quota_records        last known window per (project_id, quota_type)
    idempotency_records  at-most-once bookkeeping for mutating operations
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from .models import (
    EnvironmentName,
    EnvironmentRecord,
    ExclusionPattern,
    IdempotencyRecord,
    IdempotencyStatus,
    Operation,
    QuotaRecord,
    QuotaType,
    SecretMapping,
    SyncEvent,
    utcnow,
)
from .state_config import StateConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS secret_mappings (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        secret_name TEXT NOT NULL,
        value_hash TEXT NOT NULL,
        source_scope TEXT NOT NULL,
        target_scopes TEXT NOT NULL,
        scope_hashes TEXT NOT NULL,
        is_excluded INTEGER NOT NULL DEFAULT 0,
        last_synced_at TEXT,
        sync_status TEXT NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (project_id, secret_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS environment_records (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        environment_name TEXT NOT NULL,
        remote_environment_id INTEGER,
        protection_rules TEXT NOT NULL,
        secrets TEXT NOT NULL,
        linked_resources TEXT NOT NULL,
        status TEXT NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (project_id, environment_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_events (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        secret_name TEXT,
        affected_scopes TEXT NOT NULL,
        status TEXT NOT NULL,
        success_count INTEGER NOT NULL,
        failure_count INTEGER NOT NULL,
        error_message TEXT,
        correlation_id TEXT NOT NULL,
        duration_ms INTEGER NOT NULL,
        metadata TEXT NOT NULL,
        created_at TEXT NOT NULL,
        partition_month TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exclusion_patterns (
        id TEXT PRIMARY KEY,
        project_id TEXT,
        pattern TEXT NOT NULL,
        reason TEXT NOT NULL,
        is_global INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quota_records (
        project_id TEXT NOT NULL,
        quota_type TEXT NOT NULL,
        remaining INTEGER NOT NULL,
        limit_value INTEGER NOT NULL,
        reset_at TEXT NOT NULL,
        last_checked_at TEXT NOT NULL,
        PRIMARY KEY (project_id, quota_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        key TEXT PRIMARY KEY,
        payload_checksum TEXT NOT NULL,
        status TEXT NOT NULL,
        result TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_mappings_project ON secret_mappings(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_project ON sync_events(project_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_events_correlation ON sync_events(correlation_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_partition ON sync_events(partition_month)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_exclusions_unique "
    "ON exclusion_patterns(COALESCE(project_id, ''), pattern)",
)


class StateStore:
    """SQLite-backed storage for mappings, environments, events and quotas.

    Supports concurrent access from several server instances via WAL mode.

    Example:
        store = StateStore(tmp_path / "state.db")
        await store.init(global_exclusion_seeds())

        await store.save_mapping(mapping)
        mapping = await store.get_mapping("acme/api", "DATABASE_URL_DEV")
        events = await store.list_events("acme/api", limit=20)
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = StateConfig.get_db_path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def init(self, seed_exclusions: Iterable[ExclusionPattern] = ()) -> None:
        """Create tables and indexes, and insert global exclusion seeds.

        Must be called before using the store. Safe to call repeatedly.
        """
        seeds = list(seed_exclusions)
        await self._run_in_executor(lambda: self._init_db(seeds))
        logger.info(f"StateStore initialized: db={self._db_path}")

    def _init_db(self, seeds: list[ExclusionPattern]) -> None:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            for statement in _SCHEMA:
                conn.execute(statement)

            now = utcnow().isoformat()
            for seed in seeds:
                conn.execute(
                    "INSERT OR IGNORE INTO exclusion_patterns VALUES (?, ?, ?, ?, ?, ?)",
                    (seed.id, seed.project_id, seed.pattern, seed.reason, int(seed.is_global), now),
                )
            conn.commit()
        finally:
            conn.close()

        logger.debug("Database schema initialized with WAL mode")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def _fetch(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Secret mappings
    # -------------------------------------------------------------------------

    async def get_mapping(self, project_id: str, secret_name: str) -> SecretMapping | None:
        rows = await self._run_in_executor(
            lambda: self._fetch(
                "SELECT * FROM secret_mappings WHERE project_id = ? AND secret_name = ?",
                (project_id, secret_name),
            )
        )
        return _mapping_from_row(rows[0]) if rows else None

    async def list_mappings(self, project_id: str) -> list[SecretMapping]:
        rows = await self._run_in_executor(
            lambda: self._fetch(
                "SELECT * FROM secret_mappings WHERE project_id = ? ORDER BY secret_name",
                (project_id,),
            )
        )
        return [_mapping_from_row(row) for row in rows]

    async def save_mapping(self, mapping: SecretMapping) -> None:
        """Insert or update a mapping, keyed by (project_id, secret_name)."""
        data = mapping.model_dump(mode="json")
        params = (
            data["id"],
            data["project_id"],
            data["secret_name"],
            data["value_hash"],
            data["source_scope"],
            json.dumps(data["target_scopes"]),
            json.dumps(data["scope_hashes"]),
            int(data["is_excluded"]),
            data["last_synced_at"],
            data["sync_status"],
            data["error_message"],
            data["created_at"],
            utcnow().isoformat(),
        )
        await self._run_in_executor(
            lambda: self._execute(
                """
                INSERT INTO secret_mappings VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (project_id, secret_name) DO UPDATE SET
                    value_hash = excluded.value_hash,
                    source_scope = excluded.source_scope,
                    target_scopes = excluded.target_scopes,
                    scope_hashes = excluded.scope_hashes,
                    is_excluded = excluded.is_excluded,
                    last_synced_at = excluded.last_synced_at,
                    sync_status = excluded.sync_status,
                    error_message = excluded.error_message,
                    updated_at = excluded.updated_at
                """,
                params,
            )
        )

    # -------------------------------------------------------------------------
    # Environments
    # -------------------------------------------------------------------------

    async def get_environment(
        self, project_id: str, environment_name: EnvironmentName
    ) -> EnvironmentRecord | None:
        rows = await self._run_in_executor(
            lambda: self._fetch(
                "SELECT * FROM environment_records WHERE project_id = ? AND environment_name = ?",
                (project_id, environment_name.value),
            )
        )
        return _environment_from_row(rows[0]) if rows else None

    async def list_environments(self, project_id: str) -> list[EnvironmentRecord]:
        rows = await self._run_in_executor(
            lambda: self._fetch(
                "SELECT * FROM environment_records WHERE project_id = ? ORDER BY environment_name",
                (project_id,),
            )
        )
        return [_environment_from_row(row) for row in rows]

    async def save_environment(self, record: EnvironmentRecord) -> None:
        """Insert or update an environment, keyed by (project_id, environment_name)."""
        data = record.model_dump(mode="json")
        params = (
            data["id"],
            data["project_id"],
            data["environment_name"],
            data["remote_environment_id"],
            json.dumps(data["protection_rules"]),
            json.dumps(data["secrets"]),
            json.dumps(data["linked_resources"]),
            data["status"],
            data["error_message"],
            data["created_at"],
            utcnow().isoformat(),
        )
        await self._run_in_executor(
            lambda: self._execute(
                """
                INSERT INTO environment_records VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (project_id, environment_name) DO UPDATE SET
                    remote_environment_id = excluded.remote_environment_id,
                    protection_rules = excluded.protection_rules,
                    secrets = excluded.secrets,
                    linked_resources = excluded.linked_resources,
                    status = excluded.status,
                    error_message = excluded.error_message,
                    updated_at = excluded.updated_at
                """,
                params,
            )
        )

    # -------------------------------------------------------------------------
    # Audit events
    # -------------------------------------------------------------------------

    async def append_event(self, event: SyncEvent) -> None:
        data = event.model_dump(mode="json")
        params = (
            data["id"],
            data["project_id"],
            data["actor_id"],
            data["operation"],
            data["secret_name"],
            json.dumps(data["affected_scopes"]),
            data["status"],
            data["success_count"],
            data["failure_count"],
            data["error_message"],
            data["correlation_id"],
            data["duration_ms"],
            json.dumps(data["metadata"], default=str),
            data["created_at"],
            data["partition_month"],
        )
        await self._run_in_executor(
            lambda: self._execute(
                "INSERT INTO sync_events VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )
        )

    async def list_events(
        self,
        project_id: str,
        limit: int = 50,
        operation: Operation | None = None,
    ) -> list[SyncEvent]:
        """Events of a project, most recent first."""
        if operation is not None:
            sql = (
                "SELECT * FROM sync_events WHERE project_id = ? AND operation = ? "
                "ORDER BY created_at DESC LIMIT ?"
            )
            params: tuple[Any, ...] = (project_id, operation.value, limit)
        else:
            sql = "SELECT * FROM sync_events WHERE project_id = ? ORDER BY created_at DESC LIMIT ?"
            params = (project_id, limit)

        rows = await self._run_in_executor(lambda: self._fetch(sql, params))
        return [_event_from_row(row) for row in rows]

    async def list_events_by_correlation(self, correlation_id: str) -> list[SyncEvent]:
        rows = await self._run_in_executor(
            lambda: self._fetch(
                "SELECT * FROM sync_events WHERE correlation_id = ? ORDER BY created_at",
                (correlation_id,),
            )
        )
        return [_event_from_row(row) for row in rows]

    async def prune_events(self, older_than: datetime) -> int:
        """Delete events created before ``older_than``.

        The partition column narrows the scan to the affected months.

        Returns:
            Number of events deleted
        """
        return await self._run_in_executor(
            lambda: self._execute(
                "DELETE FROM sync_events WHERE partition_month <= ? AND created_at < ?",
                (older_than.strftime("%Y-%m"), older_than.isoformat()),
            )
        )

    # -------------------------------------------------------------------------
    # Exclusion patterns
    # -------------------------------------------------------------------------

    async def list_exclusions(self, project_id: str | None = None) -> list[ExclusionPattern]:
        """Global patterns plus, when given, the patterns of one project."""
        rows = await self._run_in_executor(
            lambda: self._fetch(
                "SELECT * FROM exclusion_patterns WHERE project_id IS NULL OR project_id = ? "
                "ORDER BY is_global DESC, created_at, pattern",
                (project_id,),
            )
        )
        return [
            ExclusionPattern(
                id=row["id"],
                project_id=row["project_id"],
                pattern=row["pattern"],
                reason=row["reason"],
                is_global=bool(row["is_global"]),
            )
            for row in rows
        ]

    async def add_exclusion(self, pattern: ExclusionPattern) -> bool:
        """Store a pattern. Returns False if the same pattern already exists."""
        inserted = await self._run_in_executor(
            lambda: self._execute(
                "INSERT OR IGNORE INTO exclusion_patterns VALUES (?, ?, ?, ?, ?, ?)",
                (
                    pattern.id,
                    pattern.project_id,
                    pattern.pattern,
                    pattern.reason,
                    int(pattern.is_global),
                    utcnow().isoformat(),
                ),
            )
        )
        return inserted == 1

    # -------------------------------------------------------------------------
    # Quotas
    # -------------------------------------------------------------------------

    async def load_quota(self, project_id: str, quota_type: QuotaType) -> QuotaRecord | None:
        rows = await self._run_in_executor(
            lambda: self._fetch(
                "SELECT * FROM quota_records WHERE project_id = ? AND quota_type = ?",
                (project_id, quota_type.value),
            )
        )
        if not rows:
            return None

        row = rows[0]
        return QuotaRecord(
            project_id=row["project_id"],
            quota_type=QuotaType(row["quota_type"]),
            remaining=row["remaining"],
            limit=row["limit_value"],
            reset_at=datetime.fromisoformat(row["reset_at"]),
            last_checked_at=datetime.fromisoformat(row["last_checked_at"]),
        )

    async def save_quota(self, record: QuotaRecord) -> None:
        await self._run_in_executor(
            lambda: self._execute(
                "INSERT OR REPLACE INTO quota_records VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.project_id,
                    record.quota_type.value,
                    record.remaining,
                    record.limit,
                    record.reset_at.isoformat(),
                    record.last_checked_at.isoformat(),
                ),
            )
        )

    # -------------------------------------------------------------------------
    # Idempotency
    # -------------------------------------------------------------------------

    async def get_idempotency(self, key: str) -> IdempotencyRecord | None:
        rows = await self._run_in_executor(
            lambda: self._fetch("SELECT * FROM idempotency_records WHERE key = ?", (key,))
        )
        if not rows:
            return None

        row = rows[0]
        row["result"] = json.loads(row["result"]) if row["result"] else None
        return IdempotencyRecord.model_validate(row)

    async def create_idempotency(self, record: IdempotencyRecord) -> bool:
        """Insert a pending record. Returns False if the key already exists."""
        now = utcnow().isoformat()
        inserted = await self._run_in_executor(
            lambda: self._execute(
                "INSERT OR IGNORE INTO idempotency_records VALUES (?, ?, ?, ?, ?, ?)",
                (record.key, record.payload_checksum, record.status.value, None, now, now),
            )
        )
        return inserted == 1

    async def complete_idempotency(self, key: str, result: dict[str, Any]) -> None:
        await self._run_in_executor(
            lambda: self._execute(
                "UPDATE idempotency_records SET status = ?, result = ?, updated_at = ? "
                "WHERE key = ?",
                (
                    IdempotencyStatus.COMPLETED.value,
                    json.dumps(result, default=str),
                    utcnow().isoformat(),
                    key,
                ),
            )
        )

    async def delete_idempotency(self, key: str) -> None:
        await self._run_in_executor(
            lambda: self._execute("DELETE FROM idempotency_records WHERE key = ?", (key,))
        )

    async def _run_in_executor(self, func: Callable[[], T]) -> T:
        """Run blocking function in thread pool executor."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func)


def _mapping_from_row(row: dict[str, Any]) -> SecretMapping:
    row["target_scopes"] = json.loads(row["target_scopes"])
    row["scope_hashes"] = json.loads(row["scope_hashes"])
    row["is_excluded"] = bool(row["is_excluded"])
    return SecretMapping.model_validate(row)


def _environment_from_row(row: dict[str, Any]) -> EnvironmentRecord:
    row["protection_rules"] = json.loads(row["protection_rules"])
    row["secrets"] = json.loads(row["secrets"])
    row["linked_resources"] = json.loads(row["linked_resources"])
    return EnvironmentRecord.model_validate(row)


def _event_from_row(row: dict[str, Any]) -> SyncEvent:
    row["affected_scopes"] = json.loads(row["affected_scopes"])
    row["metadata"] = json.loads(row["metadata"])
    row.pop("partition_month", None)
    return SyncEvent.model_validate(row)


__all__ = ["StateStore"]
