"""Audit trail of distribution operations.

Every operation (a full distribution, a single secret update, environment
creation, a validation) produces exactly one immutable ``SyncEvent``.
Recording never raises into the caller: a failure to persist an event is
logged and the operation result is returned as usual.

Metadata and error messages pass through the Redactor before they are
stored or logged, so the trail never contains secret values.

Features:
    - Persistence in the state database, with an in-memory fallback
    - Queries by project (most recent first) and by correlation id
    - JSON export for compliance reporting
    - Summary statistics
    - Retention pruning (90 days by default)

Example:
    >>> recorder = AuditRecorder(store, redactor)
    >>> await recorder.record(
    ...     project_id="acme/api",
    ...     actor_id="cli",
    ...     operation=Operation.SYNC_ALL,
    ...     affected_scopes=["actions/API_KEY", "codespaces/API_KEY"],
    ...     success_count=2,
    ...     failure_count=0,
    ...     correlation_id=correlation_id,
    ... )
    >>> events = await recorder.get_events("acme/api")
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

from .models import EventStatus, Operation, SyncEvent, utcnow
from .redactor import Redactor
from .store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90


def derive_status(success_count: int, failure_count: int) -> EventStatus:
    if failure_count == 0:
        return EventStatus.SUCCESS
    if success_count == 0:
        return EventStatus.FAILURE
    return EventStatus.PARTIAL


class AuditRecorder:
    """Records one SyncEvent per operation.

    Args:
        store: State store for persistence; None keeps events in memory only
        redactor: Redactor applied to metadata and error messages
    """

    def __init__(self, store: StateStore | None, redactor: Redactor) -> None:
        self._store = store
        self._redactor = redactor
        self.events: list[SyncEvent] = []

    async def record(
        self,
        *,
        project_id: str,
        actor_id: str,
        operation: Operation,
        correlation_id: str,
        affected_scopes: list[str] | None = None,
        success_count: int = 0,
        failure_count: int = 0,
        status: EventStatus | None = None,
        secret_name: str | None = None,
        error_message: str | None = None,
        duration_ms: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> SyncEvent | None:
        """Append one event. Never raises.

        Args:
            status: Explicit status; derived from the counts when omitted

        Returns:
            The recorded event, or None if it could not be built or stored
        """
        try:
            event = SyncEvent(
                project_id=project_id,
                actor_id=actor_id,
                operation=operation,
                secret_name=secret_name,
                affected_scopes=list(affected_scopes or []),
                status=status or derive_status(success_count, failure_count),
                success_count=success_count,
                failure_count=failure_count,
                error_message=(
                    self._redactor.redact_text(error_message) if error_message else None
                ),
                correlation_id=correlation_id,
                duration_ms=max(0, duration_ms),
                metadata=self._redactor.redact(metadata or {}),
            )

            if self._store is not None:
                await self._store.append_event(event)
            else:
                self.events.append(event)
        except Exception:
            logger.exception(
                f"Failed to record audit event: operation={operation.value}, "
                f"correlation_id={correlation_id}"
            )
            return None

        log_level = logging.INFO if event.status is EventStatus.SUCCESS else logging.WARNING
        log_message = (
            f"Audit [{event.status.value.upper()}]: operation={event.operation.value}, "
            f"project={project_id}, actor={actor_id}, ok={success_count}, "
            f"failed={failure_count}, correlation_id={correlation_id}"
        )
        if event.error_message:
            log_message += f", error={event.error_message}"
        logger.log(log_level, log_message)

        return event

    async def get_events(
        self,
        project_id: str,
        limit: int = 50,
        operation: Operation | None = None,
    ) -> list[SyncEvent]:
        """Events of a project, most recent first."""
        if self._store is not None:
            return await self._store.list_events(project_id, limit=limit, operation=operation)

        events = [e for e in reversed(self.events) if e.project_id == project_id]
        if operation is not None:
            events = [e for e in events if e.operation is operation]
        return events[:limit]

    async def get_by_correlation(self, correlation_id: str) -> list[SyncEvent]:
        if self._store is not None:
            return await self._store.list_events_by_correlation(correlation_id)
        return [e for e in self.events if e.correlation_id == correlation_id]

    async def export_to_file(
        self, file_path: str | Path, project_id: str, limit: int = 10000
    ) -> int:
        """Write a project's events to a JSON file.

        Returns:
            Number of events exported
        """
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        events = await self.get_events(project_id, limit=limit)
        events_data = [event.model_dump(mode="json") for event in events]

        with file_path.open("w", encoding="utf-8") as f:
            json.dump(
                {
                    "audit_log_version": "1.0",
                    "project_id": project_id,
                    "total_events": len(events_data),
                    "events": events_data,
                },
                f,
                indent=2,
            )

        logger.info(f"Exported {len(events_data)} audit events to {file_path}")
        return len(events_data)

    async def get_summary(self, project_id: str, limit: int = 1000) -> dict[str, Any]:
        """Aggregate statistics over a project's recent events."""
        events = await self.get_events(project_id, limit=limit)
        if not events:
            return {
                "total_events": 0,
                "successful": 0,
                "partial": 0,
                "failed": 0,
                "operations": {},
                "last_event_at": None,
            }

        operations: dict[str, int] = {}
        for event in events:
            operations[event.operation.value] = operations.get(event.operation.value, 0) + 1

        return {
            "total_events": len(events),
            "successful": sum(1 for e in events if e.status is EventStatus.SUCCESS),
            "partial": sum(1 for e in events if e.status is EventStatus.PARTIAL),
            "failed": sum(1 for e in events if e.status is EventStatus.FAILURE),
            "operations": operations,
            "last_event_at": events[0].created_at.isoformat(),
        }

    async def prune(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete events older than the retention window."""
        cutoff = utcnow() - timedelta(days=retention_days)
        if self._store is not None:
            deleted = await self._store.prune_events(cutoff)
        else:
            before = len(self.events)
            self.events = [e for e in self.events if e.created_at >= cutoff]
            deleted = before - len(self.events)

        if deleted:
            logger.info(f"Pruned {deleted} audit events older than {retention_days} days")
        return deleted


__all__ = ["DEFAULT_RETENTION_DAYS", "AuditRecorder", "derive_status"]
