"""At-most-once execution of mutating operations.

Callers supply an idempotency key and a checksum of the request payload.
The first call with a key records it as pending, runs the operation and
stores its result. Later calls with the same key and checksum get the
stored result back without running anything. A later call with the same
key but a different checksum raises ``PayloadDivergence``.

Concurrent duplicates within one process wait on a per-key lock and then
observe the completed record. A pending record left by another process
raises ``OperationInProgress``. If the operation fails, the pending record
is removed so the caller may retry.

Stores are pluggable:
    - InMemoryIdempotencyStore: tests and single-shot CLI runs
    - SqliteIdempotencyStore: shared state across server instances
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .exceptions import OperationInProgress, PayloadDivergence
from .models import IdempotencyRecord, IdempotencyStatus, utcnow
from .store import StateStore

logger = logging.getLogger(__name__)


def payload_checksum(payload: Any) -> str:  # noqa: ANN401
    """SHA-256 of the canonical JSON form of ``payload``."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyStore(ABC):
    """Abstract base class for idempotency record storage."""

    @abstractmethod
    async def get(self, key: str) -> IdempotencyRecord | None:
        """Load a record, or None if the key is unknown."""
        ...

    @abstractmethod
    async def create_pending(self, key: str, checksum: str) -> bool:
        """Insert a pending record, return False if the key already exists."""
        ...

    @abstractmethod
    async def complete(self, key: str, result: dict[str, Any]) -> None:
        """Mark a record completed with its result."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a record."""
        ...


class InMemoryIdempotencyStore(IdempotencyStore):
    """In-memory store for development and testing.

    Thread-safe implementation using asyncio.Lock.
    """

    def __init__(self) -> None:
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> IdempotencyRecord | None:
        async with self._lock:
            return self._records.get(key)

    async def create_pending(self, key: str, checksum: str) -> bool:
        async with self._lock:
            if key in self._records:
                return False
            self._records[key] = IdempotencyRecord(key=key, payload_checksum=checksum)
            return True

    async def complete(self, key: str, result: dict[str, Any]) -> None:
        async with self._lock:
            record = self._records[key]
            self._records[key] = record.model_copy(
                update={
                    "status": IdempotencyStatus.COMPLETED,
                    "result": result,
                    "updated_at": utcnow(),
                }
            )

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._records.pop(key, None)


class SqliteIdempotencyStore(IdempotencyStore):
    """Idempotency records in the shared state database."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    async def get(self, key: str) -> IdempotencyRecord | None:
        return await self._store.get_idempotency(key)

    async def create_pending(self, key: str, checksum: str) -> bool:
        return await self._store.create_idempotency(
            IdempotencyRecord(key=key, payload_checksum=checksum)
        )

    async def complete(self, key: str, result: dict[str, Any]) -> None:
        await self._store.complete_idempotency(key, result)

    async def delete(self, key: str) -> None:
        await self._store.delete_idempotency(key)


@dataclass(frozen=True)
class GateResult:
    result: dict[str, Any]
    replayed: bool


class IdempotencyGate:
    """Runs each keyed operation at most once.

    Example:
        >>> gate = IdempotencyGate(InMemoryIdempotencyStore())
        >>> first = await gate.run("req-1", payload_checksum(body), do_sync)
        >>> again = await gate.run("req-1", payload_checksum(body), do_sync)
        >>> again.replayed, again.result == first.result
        (True, True)
    """

    def __init__(self, store: IdempotencyStore) -> None:
        self._store = store
        # Per-key locks, dropped once no caller holds or waits for them
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}

    @property
    def active_keys(self) -> int:
        """Keys with a caller running or waiting."""
        return len(self._locks)

    async def run(
        self,
        key: str,
        checksum: str,
        operation: Callable[[], Awaitable[dict[str, Any]]],
    ) -> GateResult:
        """Execute ``operation`` unless ``key`` has already completed.

        Args:
            key: Caller-chosen idempotency key
            checksum: Checksum of the request payload (see payload_checksum)
            operation: Coroutine factory producing a JSON-serializable result

        Raises:
            PayloadDivergence: Key reused with a different payload
            OperationInProgress: Key held by an unfinished operation elsewhere
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            async with lock:
                return await self._run_locked(key, checksum, operation)
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
                del self._locks[key]

    async def _run_locked(
        self,
        key: str,
        checksum: str,
        operation: Callable[[], Awaitable[dict[str, Any]]],
    ) -> GateResult:
        existing = await self._store.get(key)
        if existing is not None:
            return self._replay(existing, checksum)

        if not await self._store.create_pending(key, checksum):
            # Another process inserted the key between get and insert
            existing = await self._store.get(key)
            if existing is None:
                raise OperationInProgress(key)
            return self._replay(existing, checksum)

        try:
            result = await operation()
        except BaseException:
            await self._store.delete(key)
            raise

        await self._store.complete(key, result)
        logger.debug(f"Idempotency key '{key}' completed")
        return GateResult(result=result, replayed=False)

    @staticmethod
    def _replay(record: IdempotencyRecord, checksum: str) -> GateResult:
        if record.payload_checksum != checksum:
            raise PayloadDivergence(record.key)
        if record.status is not IdempotencyStatus.COMPLETED or record.result is None:
            raise OperationInProgress(record.key)

        logger.info(f"Replaying stored result for idempotency key '{record.key}'")
        return GateResult(result=record.result, replayed=True)


__all__ = [
    "GateResult",
    "IdempotencyGate",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "SqliteIdempotencyStore",
    "payload_checksum",
]
