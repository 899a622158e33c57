"""
Record store for File and Job entities.

This module provides the persistence layer behind the processing pipeline.
Two interchangeable back-ends implement the same contract:

- MemoryRecordStore: lock-protected dictionaries, the default for a single
  process and for tests
- SqliteRecordStore: SQLite database so records survive server restarts

Records are immutable dataclasses. ``update`` merges a partial change set over
the prior version and returns the new version; nothing else mutates a record.
"""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from omegaconf import DictConfig

from .errors import NotFoundError
from .models import FileDetail, JobDetail, JobStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FileRecord:
    """
    Persisted record of one binary artifact.

    Attributes:
        id: Unique file identifier (hex UUID)
        stored_name: Key of the bytes in blob storage
        original_name: User-facing filename, used for downloads and type sniffing
        size: Number of bytes actually stored
        content_type: Declared MIME type
        created_at: Creation timestamp (UTC)
        user_id: Owning user, None for anonymous uploads
        metadata: Provenance written by handlers; never interpreted by the store
    """

    id: str
    stored_name: str
    original_name: str
    size: int
    content_type: str
    created_at: datetime
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def extension(self) -> str:
        return Path(self.original_name).suffix.lower()

    def to_detail(self) -> FileDetail:
        return FileDetail(
            id=self.id,
            original_name=self.original_name,
            size=self.size,
            content_type=self.content_type,
            user_id=self.user_id,
            created_at=self.created_at,
            metadata=self.metadata,
        )


@dataclass(frozen=True)
class JobRecord:
    """
    Record of one processing request's lifecycle.

    Attributes:
        id: Unique job identifier (hex UUID)
        tool_id: Identifier of the operation handler to invoke
        status: Current lifecycle status
        input_file_ids: Ordered identifiers of the input files
        created_at: Job creation timestamp (UTC)
        updated_at: Refreshed on every update
        output_file_id: Produced file, set only once the job is completed
        options: Tool options as submitted (secrets redacted)
        error: Failure description for failed jobs
        user_id: Owning user, None for anonymous requests
    """

    id: str
    tool_id: str
    status: JobStatus
    input_file_ids: List[str]
    created_at: datetime
    updated_at: datetime
    output_file_id: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    user_id: Optional[str] = None

    def to_detail(self) -> JobDetail:
        return JobDetail(
            id=self.id,
            tool_id=self.tool_id,
            status=self.status,
            input_file_ids=self.input_file_ids,
            output_file_id=self.output_file_id,
            options=self.options,
            error=self.error,
            user_id=self.user_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


Record = Union[FileRecord, JobRecord]


class RecordKind(str, Enum):
    FILE = "files"
    JOB = "jobs"


RECORD_TYPES = {RecordKind.FILE: FileRecord, RecordKind.JOB: JobRecord}
IMMUTABLE_FIELDS = frozenset({"id", "created_at"})
JSON_FIELDS = frozenset({"metadata", "input_file_ids", "options"})
DATETIME_FIELDS = frozenset({"created_at", "updated_at"})


def _field_names(kind: RecordKind) -> List[str]:
    return [f.name for f in fields(RECORD_TYPES[kind])]


def _build_record(kind: RecordKind, values: Mapping[str, Any]) -> Record:
    """Assign identity and timestamps to a new record."""
    unknown = set(values) - set(_field_names(kind))
    if unknown:
        raise ValueError(f"Unknown {kind.value} fields: {sorted(unknown)}")
    if IMMUTABLE_FIELDS & set(values):
        raise ValueError("id and created_at are assigned by the store")

    now = utcnow()
    data = deepcopy(dict(values))
    data["id"] = uuid4().hex
    data["created_at"] = now
    if kind is RecordKind.JOB:
        data["updated_at"] = now
    return RECORD_TYPES[kind](**data)


def _merge_record(kind: RecordKind, record: Record, changes: Mapping[str, Any]) -> Record:
    """Apply a partial change set over a record, refreshing job timestamps."""
    forbidden = IMMUTABLE_FIELDS & set(changes)
    if forbidden:
        raise ValueError(f"Fields cannot be updated: {sorted(forbidden)}")
    unknown = set(changes) - set(_field_names(kind))
    if unknown:
        raise ValueError(f"Unknown {kind.value} fields: {sorted(unknown)}")

    data = deepcopy(dict(changes))
    if kind is RecordKind.JOB:
        data["updated_at"] = utcnow()
    return replace(record, **data)


class RecordStore(ABC):
    """
    Contract shared by every record store back-end.

    Guarantees:
        - identifiers are unique for the lifetime of the store
        - create is atomic: no partially written record is ever visible
        - update merges over the prior version and never drops fields
        - get/update/delete raise or report on unknown identifiers
    """

    @abstractmethod
    def get(self, kind: RecordKind, record_id: str) -> Record:
        """Return a record or raise NotFoundError."""

    @abstractmethod
    def create(self, kind: RecordKind, values: Mapping[str, Any]) -> Record:
        """Persist a new record and return it with its assigned id."""

    @abstractmethod
    def update(self, kind: RecordKind, record_id: str, changes: Mapping[str, Any]) -> Record:
        """Merge changes over a record and return the new version."""

    @abstractmethod
    def delete(self, kind: RecordKind, record_id: str) -> bool:
        """Delete a record, returning False if it did not exist."""

    @abstractmethod
    def list_by_owner(self, kind: RecordKind, owner: Optional[str]) -> List[Record]:
        """List records of one owner (None for anonymous), newest first."""

    # Typed conveniences used throughout the pipeline

    def get_file(self, file_id: str) -> FileRecord:
        return self.get(RecordKind.FILE, file_id)  # type: ignore[return-value]

    def create_file(self, **values: Any) -> FileRecord:
        return self.create(RecordKind.FILE, values)  # type: ignore[return-value]

    def update_file(self, file_id: str, **changes: Any) -> FileRecord:
        return self.update(RecordKind.FILE, file_id, changes)  # type: ignore[return-value]

    def delete_file(self, file_id: str) -> bool:
        return self.delete(RecordKind.FILE, file_id)

    def list_files(self, owner: Optional[str]) -> List[FileRecord]:
        return self.list_by_owner(RecordKind.FILE, owner)  # type: ignore[return-value]

    def get_job(self, job_id: str) -> JobRecord:
        return self.get(RecordKind.JOB, job_id)  # type: ignore[return-value]

    def create_job(self, **values: Any) -> JobRecord:
        return self.create(RecordKind.JOB, values)  # type: ignore[return-value]

    def update_job(self, job_id: str, **changes: Any) -> JobRecord:
        return self.update(RecordKind.JOB, job_id, changes)  # type: ignore[return-value]

    def list_jobs(self, owner: Optional[str]) -> List[JobRecord]:
        return self.list_by_owner(RecordKind.JOB, owner)  # type: ignore[return-value]

    # Owned records are invisible to everyone but their owner; anonymous ones are public

    def get_visible_file(self, file_id: str, owner: Optional[str]) -> FileRecord:
        record = self.get_file(file_id)
        if record.user_id is not None and record.user_id != owner:
            raise _not_found(RecordKind.FILE, file_id)
        return record

    def get_visible_job(self, job_id: str, owner: Optional[str]) -> JobRecord:
        record = self.get_job(job_id)
        if record.user_id is not None and record.user_id != owner:
            raise _not_found(RecordKind.JOB, job_id)
        return record


def _not_found(kind: RecordKind, record_id: str) -> NotFoundError:
    label = "File" if kind is RecordKind.FILE else "Job"
    return NotFoundError(f"{label} with ID {record_id} not found")


class MemoryRecordStore(RecordStore):
    """
    In-memory record store.

    Thread Safety:
        All reads and writes are protected by a single lock, so concurrent
        creates never collide and updates are linearizable per record.
    """

    def __init__(self) -> None:
        self._records: Dict[RecordKind, Dict[str, Record]] = {kind: {} for kind in RecordKind}
        self._lock = Lock()

    def get(self, kind: RecordKind, record_id: str) -> Record:
        with self._lock:
            record = self._records[kind].get(record_id)
        if record is None:
            raise _not_found(kind, record_id)
        return deepcopy(record)

    def create(self, kind: RecordKind, values: Mapping[str, Any]) -> Record:
        record = _build_record(kind, values)
        with self._lock:
            self._records[kind][record.id] = record
        return deepcopy(record)

    def update(self, kind: RecordKind, record_id: str, changes: Mapping[str, Any]) -> Record:
        with self._lock:
            record = self._records[kind].get(record_id)
            if record is None:
                raise _not_found(kind, record_id)
            updated = _merge_record(kind, record, changes)
            self._records[kind][record_id] = updated
        return deepcopy(updated)

    def delete(self, kind: RecordKind, record_id: str) -> bool:
        with self._lock:
            return self._records[kind].pop(record_id, None) is not None

    def list_by_owner(self, kind: RecordKind, owner: Optional[str]) -> List[Record]:
        with self._lock:
            records = [r for r in self._records[kind].values() if r.user_id == owner]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return deepcopy(records)


# Default database path
DEFAULT_DB_PATH = Path("data/records.db")


def _serialize_value(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in JSON_FIELDS:
        return json.dumps(value)
    if name in DATETIME_FIELDS:
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _deserialize_value(name: str, value: Any) -> Any:
    if name in JSON_FIELDS:
        return json.loads(value) if value else ({} if name != "input_file_ids" else [])
    if name in DATETIME_FIELDS:
        return datetime.fromisoformat(value)
    if name == "status":
        return JobStatus(value)
    return value


class SqliteRecordStore(RecordStore):
    """
    SQLite record store.

    Thread-safe: every operation opens its own connection and SQLite
    serialises writers; updates run inside an immediate transaction so the
    read-merge-write cycle is atomic.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS files (
                    id TEXT PRIMARY KEY,
                    stored_name TEXT NOT NULL,
                    original_name TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    user_id TEXT,
                    metadata TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    tool_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input_file_ids TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    output_file_id TEXT,
                    options TEXT,
                    error TEXT,
                    user_id TEXT
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_files_user_id ON files(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user_id ON jobs(user_id)")

    def _row_to_record(self, kind: RecordKind, row: sqlite3.Row) -> Record:
        """Convert a database row to a record."""
        data = {name: _deserialize_value(name, row[name]) for name in _field_names(kind)}
        return RECORD_TYPES[kind](**data)

    def _write(self, conn: sqlite3.Connection, kind: RecordKind, record: Record, insert: bool) -> None:
        names = _field_names(kind)
        values = [_serialize_value(name, getattr(record, name)) for name in names]
        if insert:
            placeholders = ", ".join("?" for _ in names)
            conn.execute(f"INSERT INTO {kind.value} ({', '.join(names)}) VALUES ({placeholders})", values)
        else:
            assignments = ", ".join(f"{name} = ?" for name in names)
            conn.execute(f"UPDATE {kind.value} SET {assignments} WHERE id = ?", [*values, record.id])

    def get(self, kind: RecordKind, record_id: str) -> Record:
        with self._get_connection() as conn:
            row = conn.execute(f"SELECT * FROM {kind.value} WHERE id = ?", (record_id,)).fetchone()
        if not row:
            raise _not_found(kind, record_id)
        return self._row_to_record(kind, row)

    def create(self, kind: RecordKind, values: Mapping[str, Any]) -> Record:
        record = _build_record(kind, values)
        with self._get_connection() as conn:
            self._write(conn, kind, record, insert=True)
        return record

    def update(self, kind: RecordKind, record_id: str, changes: Mapping[str, Any]) -> Record:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(f"SELECT * FROM {kind.value} WHERE id = ?", (record_id,)).fetchone()
            if not row:
                raise _not_found(kind, record_id)
            updated = _merge_record(kind, self._row_to_record(kind, row), changes)
            self._write(conn, kind, updated, insert=False)
        return updated

    def delete(self, kind: RecordKind, record_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {kind.value} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def list_by_owner(self, kind: RecordKind, owner: Optional[str]) -> List[Record]:
        with self._get_connection() as conn:
            if owner is None:
                rows = conn.execute(
                    f"SELECT * FROM {kind.value} WHERE user_id IS NULL ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT * FROM {kind.value} WHERE user_id = ? ORDER BY created_at DESC", (owner,)
                ).fetchall()
        return [self._row_to_record(kind, row) for row in rows]


def build_record_store(config: DictConfig) -> RecordStore:
    """Create the record store selected by ``database.backend``."""
    backend = str(config.database.backend).lower()
    if backend == "memory":
        return MemoryRecordStore()
    if backend == "sqlite":
        return SqliteRecordStore(Path(config.database.path))
    raise ValueError(f"Unknown database backend '{backend}'. Choose from: ['memory', 'sqlite']")
