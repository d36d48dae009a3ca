"""livequery public API.

This module exposes the ``LiveQueryEngine`` facade and stable top-level
imports for descriptors, records, views and the error taxonomy.

Example:
    from livequery import LiveQueryEngine, describe

    async with LiveQueryEngine.create(remote, config=config) as engine:
        view = engine.acquire(describe("task", status="open", order_by=("-created_at",)))
        cid = engine.create_record("task", {"title": "Write docs", "status": "open"})
        print([r.value("title") for r in view.snapshot])
        await engine.await_confirmation(cid)
"""

from __future__ import annotations
import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from .canonical_json import canonical_dumps, record_key
from .config import EngineConfig, load_config
from .descriptor import InsertPolicy, Query, QueryDescriptor, describe
from .errors import (
    ConfigError,
    ConflictRejection,
    CorruptPersistedState,
    IllegalTransitionError,
    LiveQueryError,
    QueryDescriptorError,
    RecordStoreError,
    Rejection,
    TransportFailure,
    UnknownOperationError,
    ValidationRejection,
)
from .operation_log import OperationKind, OperationLog, OperationState, Outcome, PendingOperation
from .persistence import HydrateReport, PersistenceAdapter, SqliteCache
from .record_store import Record, RecordStore
from .reducer import GroundTruthPage, ViewSnapshot
from .remote import FetchResult, PushChannel, PushEvent, PushKind, RemoteStore, Window
from .synchronizer import Synchronizer, Validator
from .view import QueryView

__version__ = "0.1.0"


class LiveQueryEngine:
    """High-level facade owning one record store, operation log and view registry.

    Nothing is global: two engines in one process share no state.
    """

    def __init__(
        self,
        remote: RemoteStore,
        *,
        push: Optional[PushChannel] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or EngineConfig()
        self.store = RecordStore()
        self.log = OperationLog(clock=clock)
        persistence = None
        if self.config.persistence_path:
            cache = SqliteCache(
                self.config.persistence_path,
                self.config.encryption_key_b64,
                quarantine_unreadable=True,
            )
            persistence = PersistenceAdapter(cache)
        self.sync = Synchronizer(
            self.store,
            self.log,
            remote,
            push=push,
            persistence=persistence,
            config=self.config,
            clock=clock,
            sleep=sleep,
        )
        self.hydrate_report: Optional[HydrateReport] = None
        self._started = False
        self._disposed = False

    @classmethod
    def create(
        cls,
        remote: RemoteStore,
        *,
        push: Optional[PushChannel] = None,
        config: Optional[EngineConfig] = None,
        config_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "LiveQueryEngine":
        """Build an engine and hydrate it from the local cache, if one is configured.

        Args:
            remote: Remote store the engine fetches from and submits to.
            push: Optional channel of changes made by other actors.
            config: Engine configuration; defaults apply when omitted.
            config_path: JSON config file, used when ``config`` is not given.
            clock: Wall clock in seconds (injectable for tests).
            sleep: Backoff sleep (injectable for tests).

        Returns:
            LiveQueryEngine: Hydrated, not yet started engine.

        Raises:
            ConfigError: If the config file or encryption key is invalid.
        """
        if config is None and config_path is not None:
            config = load_config(config_path)
        engine = cls(remote, push=push, config=config, clock=clock, sleep=sleep)
        engine.hydrate_report = engine.sync.hydrate()
        return engine

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start push consumption and resume operations restored from the cache."""
        if self._started:
            return
        self._started = True
        self.sync.start()

    async def dispose(self) -> None:
        """Stop background work, persist the final state and dispose every view."""
        if self._disposed:
            return
        self._disposed = True
        await self.sync.close()

    async def __aenter__(self) -> "LiveQueryEngine":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def acquire(self, descriptor: QueryDescriptor) -> QueryView:
        """Return the shared live view for ``descriptor``, fetching if stale."""
        self.start()
        return self.sync.acquire(descriptor)

    def release(self, view: QueryView) -> bool:
        return self.sync.release(view)

    def subscribe(self, view: QueryView, callback: Callable[[ViewSnapshot], None]) -> Callable[[], None]:
        return view.subscribe(callback)

    async def refresh(self, view: QueryView) -> ViewSnapshot:
        """Refetch ``view`` now and return the resulting snapshot.

        Raises:
            TransportFailure: If the fetch failed after its retries.
        """
        return await self.sync.fetch_now(view)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mutate(
        self,
        kind: Union[OperationKind, str],
        collection: str,
        payload: Mapping[str, Any],
        *,
        identity: Any = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        self.start()
        return self.sync.mutate(
            kind, collection, payload,
            identity=identity, idempotency_key=idempotency_key,
        )

    def create_record(
        self,
        collection: str,
        fields: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        return self.mutate(OperationKind.CREATE, collection, fields, idempotency_key=idempotency_key)

    def update(
        self,
        collection: str,
        identity: Any,
        diff: Mapping[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> str:
        return self.mutate(
            OperationKind.UPDATE, collection, diff,
            identity=identity, idempotency_key=idempotency_key,
        )

    def delete(self, collection: str, identity: Any, *, idempotency_key: Optional[str] = None) -> str:
        return self.mutate(
            OperationKind.DELETE, collection, {},
            identity=identity, idempotency_key=idempotency_key,
        )

    async def await_confirmation(self, correlation_id: str) -> Optional[Record]:
        return await self.sync.await_confirmation(correlation_id)

    def register_validator(self, collection: str, validator: Validator) -> None:
        self.sync.register_validator(collection, validator)

    # ------------------------------------------------------------------
    # Push / persistence
    # ------------------------------------------------------------------

    def apply_push(self, event: Union[PushEvent, Mapping[str, Any]]) -> bool:
        return self.sync.apply_push(event)

    async def flush(self) -> None:
        await self.sync.flush()

    def pending(self, collection: Optional[str] = None) -> Dict[str, PendingOperation]:
        return {op.correlation_id: op for op in self.log.pending(collection)}


__all__ = [
    # Facade
    "LiveQueryEngine",
    "EngineConfig",
    "load_config",
    # Descriptors
    "InsertPolicy",
    "Query",
    "QueryDescriptor",
    "describe",
    # State
    "Record",
    "RecordStore",
    "OperationKind",
    "OperationLog",
    "OperationState",
    "Outcome",
    "PendingOperation",
    "GroundTruthPage",
    "ViewSnapshot",
    "QueryView",
    "Synchronizer",
    # Remote seams
    "FetchResult",
    "PushChannel",
    "PushEvent",
    "PushKind",
    "RemoteStore",
    "Window",
    # Persistence
    "HydrateReport",
    "PersistenceAdapter",
    "SqliteCache",
    # Canonical JSON
    "canonical_dumps",
    "record_key",
    # Errors
    "LiveQueryError",
    "Rejection",
    "ValidationRejection",
    "ConflictRejection",
    "TransportFailure",
    "CorruptPersistedState",
    "IllegalTransitionError",
    "UnknownOperationError",
    "RecordStoreError",
    "QueryDescriptorError",
    "ConfigError",
]
