"""
persistence.py — Local cache of engine state

Three independent tables in one SQLite file:

  records        key = collection:identity   body = Record
  ground_truth   key = descriptor key        body = GroundTruthPage
  operation_log  key = correlation id        body = PendingOperation

Each row body is canonical JSON, optionally sealed with AES-256-GCM
(``enc:v1:`` + base64(nonce || ciphertext)). Every row is decoded and
schema-checked on its own, so one bad row costs exactly that row: it is
logged, deleted and reported, and hydration carries on.

This is a cache, not a system of record. Write failures are logged and
dropped; the next snapshot or the next fetch repairs the state.
"""

from __future__ import annotations
import asyncio
import base64
import binascii
import contextlib
import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .canonical_json import canonical_dumps, record_key
from .errors import ConfigError, CorruptPersistedState
from .operation_log import PendingOperation
from .record_store import Record
from .reducer import GroundTruthPage
from .schemas import GROUND_TRUTH_SCHEMA, OPERATION_SCHEMA, RECORD_SCHEMA, validation_errors

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:v1:"
NONCE_BYTES = 12

TABLES = {
    "records": RECORD_SCHEMA,
    "ground_truth": GROUND_TRUTH_SCHEMA,
    "operation_log": OPERATION_SCHEMA,
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class PersistSnapshot:
    """Changes captured at the end of one reconciliation pass.

    A value of None in ``records`` or ``pages`` deletes that row.
    ``operations`` None means the log did not change; a list replaces it.
    """
    records: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)
    pages: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)
    operations: Optional[List[Dict[str, Any]]] = None

    def merge(self, newer: "PersistSnapshot") -> None:
        self.records.update(newer.records)
        self.pages.update(newer.pages)
        if newer.operations is not None:
            self.operations = newer.operations

    @property
    def empty(self) -> bool:
        return not self.records and not self.pages and self.operations is None


@dataclass
class HydrateReport:
    records_loaded: int = 0
    pages_loaded: int = 0
    operations_loaded: int = 0
    dropped: List[str] = field(default_factory=list)
    quarantined: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records_loaded": self.records_loaded,
            "pages_loaded": self.pages_loaded,
            "operations_loaded": self.operations_loaded,
            "dropped_count": len(self.dropped),
            "dropped": self.dropped,
            "quarantined": self.quarantined,
        }


@dataclass
class HydratedState:
    records: List[Record]
    pages: Dict[str, GroundTruthPage]
    operations: List[PendingOperation]
    report: HydrateReport


# ---------------------------------------------------------------------------
# SQLite cache
# ---------------------------------------------------------------------------

class SqliteCache:
    """Synchronous row store. Safe to call from an executor thread.

    With ``quarantine_unreadable`` a file that SQLite cannot read as a
    database is renamed to ``<name>.corrupt-<unix time>`` and replaced by an
    empty cache; without it the damage surfaces as ``CorruptPersistedState``.
    """

    def __init__(
        self,
        db_path: str | Path,
        encryption_key_b64: Optional[str] = None,
        *,
        quarantine_unreadable: bool = False,
    ):
        self.db_path = Path(db_path)
        self.quarantine_unreadable = quarantine_unreadable
        self.quarantined: Optional[Path] = None
        self._aesgcm: Optional[AESGCM] = None
        if encryption_key_b64:
            try:
                self._aesgcm = AESGCM(base64.b64decode(encryption_key_b64, validate=True))
            except (binascii.Error, ValueError) as exc:
                raise ConfigError(f"encryption key must be base64 of 16, 24 or 32 bytes: {exc}") from None
        try:
            self._init_db()
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as exc:
            self._recover(exc)

    @staticmethod
    def generate_key() -> str:
        """Return a new base64 AES-256 key suitable for ``encryption_key_b64``."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            for table in TABLES:
                conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {table} (key TEXT PRIMARY KEY, body TEXT NOT NULL)"
                )

    def _recover(self, exc: sqlite3.DatabaseError) -> None:
        """Move an unreadable database file aside and start an empty one.

        Raises:
            CorruptPersistedState: If quarantining is disabled.
        """
        if not self.quarantine_unreadable:
            raise CorruptPersistedState(f"{self.db_path}: not a readable SQLite database ({exc})") from None
        target = self.db_path.with_name(f"{self.db_path.name}.corrupt-{int(time.time())}")
        logger.warning("Cache database %s is unreadable (%s); moving it to %s", self.db_path, exc, target)
        os.replace(self.db_path, target)
        self.quarantined = target
        self._init_db()

    # ------------------------------------------------------------------
    # Row encoding
    # ------------------------------------------------------------------

    def encode(self, obj: Dict[str, Any]) -> str:
        text = canonical_dumps(obj)
        if self._aesgcm is None:
            return text
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, text.encode("utf-8"), None)
        return ENCRYPTED_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decode(self, table: str, key: str, body: Union[bytes, str]) -> Dict[str, Any]:
        """Decode and validate one row body.

        Raises:
            CorruptPersistedState: If the row cannot be trusted.
        """
        context = f"{table}[{key}]"
        if isinstance(body, bytes):
            try:
                body = body.decode("utf-8")
            except UnicodeDecodeError:
                raise CorruptPersistedState(f"{context}: row body is not valid UTF-8") from None
        if body.startswith(ENCRYPTED_PREFIX):
            if self._aesgcm is None:
                raise CorruptPersistedState(f"{context}: row is encrypted but no key is configured")
            try:
                blob = base64.b64decode(body[len(ENCRYPTED_PREFIX):], validate=True)
                text = self._aesgcm.decrypt(blob[:NONCE_BYTES], blob[NONCE_BYTES:], None).decode("utf-8")
            except (binascii.Error, InvalidTag, ValueError) as exc:
                raise CorruptPersistedState(f"{context}: cannot decrypt ({type(exc).__name__})") from None
        else:
            if self._aesgcm is not None:
                raise CorruptPersistedState(f"{context}: plaintext row in an encrypted cache")
            text = body

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptPersistedState(f"{context}: invalid JSON ({exc.msg})") from None

        errors = validation_errors(data, TABLES[table])
        if errors:
            raise CorruptPersistedState(f"{context}: {errors[0]}")
        if table == "records" and record_key(data["collection"], data["identity"]) != key:
            raise CorruptPersistedState(f"{context}: row key does not match record identity")
        if table == "operation_log" and data["correlation_id"] != key:
            raise CorruptPersistedState(f"{context}: row key does not match correlation id")
        return data

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def rows(self, table: str) -> List[Tuple[str, bytes]]:
        """Return raw ``(key, body)`` pairs; bodies stay bytes until ``decode``."""
        if table not in TABLES:
            raise ValueError(f"unknown table {table!r}")
        with self._connect() as conn:
            return [
                (str(k), bytes(b))
                for k, b in conn.execute(f"SELECT key, CAST(body AS BLOB) FROM {table} ORDER BY key")
            ]

    def counts(self) -> Dict[str, int]:
        with self._connect() as conn:
            return {
                table: int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                for table in TABLES
            }

    def scan(self) -> Iterator[Tuple[str, str, Optional[Dict[str, Any]], Optional[CorruptPersistedState]]]:
        """Yield ``(table, key, data, error)`` for every row; exactly one of data/error is set."""
        for table in TABLES:
            for key, body in self.rows(table):
                try:
                    yield table, key, self.decode(table, key, body), None
                except CorruptPersistedState as exc:
                    yield table, key, None, exc

    def load(self) -> HydratedState:
        """Decode every row, dropping the ones that fail."""
        report = HydrateReport()
        records: List[Record] = []
        pages: Dict[str, GroundTruthPage] = {}
        operations: List[PendingOperation] = []
        corrupt: List[Tuple[str, str]] = []

        try:
            scanned = list(self.scan())
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as exc:
            self._recover(exc)
            scanned = []
        if self.quarantined is not None:
            report.quarantined = str(self.quarantined)

        for table, key, data, error in scanned:
            if error is not None:
                logger.warning("Dropping corrupt cache entry: %s", error)
                report.dropped.append(f"{table}:{key}")
                corrupt.append((table, key))
                continue
            if table == "records":
                records.append(Record.from_dict(data))
            elif table == "ground_truth":
                pages[key] = GroundTruthPage.from_dict(data)
            else:
                operations.append(PendingOperation.from_dict(data))

        if corrupt:
            self.delete_rows(corrupt)

        report.records_loaded = len(records)
        report.pages_loaded = len(pages)
        report.operations_loaded = len(operations)
        operations.sort(key=lambda op: op.order_key)
        return HydratedState(records, pages, operations, report)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, snapshot: PersistSnapshot) -> None:
        with self._connect() as conn:
            for table, entries in (("records", snapshot.records), ("ground_truth", snapshot.pages)):
                for key, body in entries.items():
                    if body is None:
                        conn.execute(f"DELETE FROM {table} WHERE key = ?", (key,))
                    else:
                        conn.execute(
                            f"INSERT INTO {table}(key, body) VALUES(?, ?) "
                            "ON CONFLICT(key) DO UPDATE SET body=excluded.body",
                            (key, self.encode(body)),
                        )
            if snapshot.operations is not None:
                conn.execute("DELETE FROM operation_log")
                conn.executemany(
                    "INSERT INTO operation_log(key, body) VALUES(?, ?)",
                    [(op["correlation_id"], self.encode(op)) for op in snapshot.operations],
                )

    def delete_rows(self, rows: List[Tuple[str, str]]) -> int:
        deleted = 0
        with self._connect() as conn:
            for table, key in rows:
                if table not in TABLES:
                    continue
                deleted += conn.execute(f"DELETE FROM {table} WHERE key = ?", (key,)).rowcount
        return deleted

    def purge_corrupt(self) -> List[str]:
        """Delete every row that fails to decode. Returns ``table:key`` labels."""
        corrupt = [(table, key) for table, key, _, error in self.scan() if error is not None]
        self.delete_rows(corrupt)
        return [f"{table}:{key}" for table, key in corrupt]


# ---------------------------------------------------------------------------
# Async adapter
# ---------------------------------------------------------------------------

class PersistenceAdapter:
    """Coalescing, off-loop writer in front of a ``SqliteCache``.

    ``schedule`` never blocks: snapshots queued while a write is running
    merge into one follow-up write.
    """

    def __init__(self, cache: SqliteCache):
        self.cache = cache
        self._pending: Optional[PersistSnapshot] = None
        self._task: Optional[asyncio.Task] = None

    def hydrate(self) -> HydratedState:
        state = self.cache.load()
        logger.info("Hydrated local cache %s: %s", self.cache.db_path, state.report.to_dict())
        return state

    def schedule(self, snapshot: PersistSnapshot) -> None:
        if snapshot.empty:
            return
        if self._pending is None:
            self._pending = snapshot
        else:
            self._pending.merge(snapshot)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_pending_now()
            return
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain())

    async def flush(self) -> None:
        """Wait until every scheduled snapshot has been written."""
        while self._task is not None and not self._task.done():
            await self._task
        if self._pending is not None:
            self._write_pending_now()

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._pending is not None:
            snapshot, self._pending = self._pending, None
            try:
                await loop.run_in_executor(None, self.cache.write, snapshot)
            except (sqlite3.Error, OSError):
                logger.error("Failed to persist cache snapshot to %s", self.cache.db_path, exc_info=True)

    def _write_pending_now(self) -> None:
        snapshot, self._pending = self._pending, None
        if snapshot is None:
            return
        try:
            self.cache.write(snapshot)
        except (sqlite3.Error, OSError):
            logger.error("Failed to persist cache snapshot to %s", self.cache.db_path, exc_info=True)
