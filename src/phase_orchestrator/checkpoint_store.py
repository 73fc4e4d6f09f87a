"""Durable key-value persistence for checkpoint records.

Two interchangeable backends implement ``CheckpointStore``: a SQLite table and
a directory of JSON files. Both are pure CRUD plus latest-by-key queries; all
checkpoint semantics live in ``phase_orchestrator.checkpoints``.
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator, Protocol

from pydantic import ValidationError

from .models import CheckpointRecord, OrchestrationStatus
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    def save(self, record: CheckpointRecord) -> None:
        """Insert or overwrite the record with ``record.id``."""
        ...

    def get(self, checkpoint_id: str) -> CheckpointRecord | None:
        ...

    def get_latest_by_project_id(self, project_id: str) -> CheckpointRecord | None:
        ...

    def get_latest_by_project_path(self, project_path: str) -> CheckpointRecord | None:
        ...

    def list(self, status: OrchestrationStatus | None = None) -> list[CheckpointRecord]:
        """Return records newest-first, optionally filtered by execution status."""
        ...

    def delete(self, checkpoint_id: str) -> bool:
        ...

    def delete_all_for_project(self, *, project_id: str | None = None, project_path: str | None = None) -> int:
        ...


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _require_one_project_key(project_id: str | None, project_path: str | None) -> None:
    if (project_id is None) == (project_path is None):
        raise ValueError("exactly one of project_id or project_path is required")


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoints (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    project_path TEXT NOT NULL,
    project_name TEXT NOT NULL,
    execution_state TEXT NOT NULL,
    current_phase_index INTEGER NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_project_id ON checkpoints(project_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_checkpoints_project_path ON checkpoints(project_path, updated_at);
"""

_COLUMNS = (
    "id, project_id, project_path, project_name, execution_state, "
    "current_phase_index, status, created_at, updated_at"
)


class SqliteCheckpointStore:
    """Checkpoint table in a single SQLite file (``:memory:`` is accepted)."""

    def __init__(self, path: str | Path) -> None:
        self.path = path
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SqliteCheckpointStore":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CheckpointRecord:
        try:
            return CheckpointRecord(
                id=row["id"],
                project_id=row["project_id"],
                project_path=row["project_path"],
                project_name=row["project_name"],
                serialized_execution_state=row["execution_state"],
                current_phase_index=row["current_phase_index"],
                status=row["status"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
        except ValidationError as exc:
            raise ValueError(f"checkpoint {row['id']} failed validation: {exc}") from exc

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> CheckpointRecord | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return self._row_to_record(row) if row is not None else None

    def save(self, record: CheckpointRecord) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                f"""
                INSERT INTO checkpoints ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    project_id = excluded.project_id,
                    project_path = excluded.project_path,
                    project_name = excluded.project_name,
                    execution_state = excluded.execution_state,
                    current_phase_index = excluded.current_phase_index,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.project_id,
                    record.project_path,
                    record.project_name,
                    record.serialized_execution_state,
                    record.current_phase_index,
                    record.status.value,
                    _iso(record.created_at),
                    _iso(record.updated_at),
                ),
            )

    def get(self, checkpoint_id: str) -> CheckpointRecord | None:
        return self._fetch_one(f"SELECT {_COLUMNS} FROM checkpoints WHERE id = ?", (checkpoint_id,))

    def get_latest_by_project_id(self, project_id: str) -> CheckpointRecord | None:
        return self._fetch_one(
            f"SELECT {_COLUMNS} FROM checkpoints WHERE project_id = ? "
            "ORDER BY updated_at DESC, rowid DESC LIMIT 1",
            (project_id,),
        )

    def get_latest_by_project_path(self, project_path: str) -> CheckpointRecord | None:
        return self._fetch_one(
            f"SELECT {_COLUMNS} FROM checkpoints WHERE project_path = ? "
            "ORDER BY updated_at DESC, rowid DESC LIMIT 1",
            (project_path,),
        )

    def list(self, status: OrchestrationStatus | None = None) -> list[CheckpointRecord]:
        sql = f"SELECT {_COLUMNS} FROM checkpoints"
        params: tuple[Any, ...] = ()
        if status is not None:
            sql += " WHERE status = ?"
            params = (OrchestrationStatus(status).value,)
        sql += " ORDER BY updated_at DESC, rowid DESC"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def delete(self, checkpoint_id: str) -> bool:
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM checkpoints WHERE id = ?", (checkpoint_id,))
        return cursor.rowcount > 0

    def delete_all_for_project(self, *, project_id: str | None = None, project_path: str | None = None) -> int:
        _require_one_project_key(project_id, project_path)
        column, value = ("project_id", project_id) if project_id is not None else ("project_path", project_path)
        with self._lock, self._conn:
            cursor = self._conn.execute(f"DELETE FROM checkpoints WHERE {column} = ?", (value,))
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Filesystem backend
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a same-directory temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


class FileCheckpointStore:
    """One JSON document per checkpoint under ``root``.

    Writes are atomic and serialized per checkpoint with ``fcntl`` locks so
    several processes can share the directory.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, checkpoint_id: str) -> Path:
        if not _SAFE_ID_RE.match(checkpoint_id):
            raise ValueError(f"checkpoint id contains unsafe characters: {checkpoint_id!r}")
        return self.root / f"{checkpoint_id}.json"

    def _read(self, path: Path) -> CheckpointRecord:
        text = _safe_read_json(path, "checkpoint")
        try:
            return CheckpointRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"checkpoint at {path} failed validation: {exc}") from exc

    def _iter_records(self) -> Iterator[CheckpointRecord]:
        for path in sorted(self.root.glob("*.json")):
            try:
                yield self._read(path)
            except (FileNotFoundError, ValueError) as exc:
                # Deleted by another process mid-scan, or unreadable.
                logger.warning("Skipping checkpoint file %s: %s", path, exc)

    @staticmethod
    def _newest_first(records: list[CheckpointRecord]) -> list[CheckpointRecord]:
        return sorted(records, key=lambda r: (r.updated_at, r.created_at, r.id), reverse=True)

    def save(self, record: CheckpointRecord) -> None:
        path = self._path_for(record.id)
        with _locked_file(path):
            if path.is_file():
                existing = self._read(path)
                record = record.model_copy(update={"created_at": existing.created_at})
            _atomic_write_text(path, record.model_dump_json(by_alias=True, indent=2))

    def get(self, checkpoint_id: str) -> CheckpointRecord | None:
        if not _SAFE_ID_RE.match(checkpoint_id):
            return None
        path = self._path_for(checkpoint_id)
        if not path.is_file():
            return None
        return self._read(path)

    def get_latest_by_project_id(self, project_id: str) -> CheckpointRecord | None:
        matches = [r for r in self._iter_records() if r.project_id == project_id]
        return self._newest_first(matches)[0] if matches else None

    def get_latest_by_project_path(self, project_path: str) -> CheckpointRecord | None:
        matches = [r for r in self._iter_records() if r.project_path == project_path]
        return self._newest_first(matches)[0] if matches else None

    def list(self, status: OrchestrationStatus | None = None) -> list[CheckpointRecord]:
        records = list(self._iter_records())
        if status is not None:
            wanted = OrchestrationStatus(status)
            records = [r for r in records if r.status == wanted]
        return self._newest_first(records)

    def delete(self, checkpoint_id: str) -> bool:
        if not _SAFE_ID_RE.match(checkpoint_id):
            return False
        path = self._path_for(checkpoint_id)
        with _locked_file(path):
            if not path.is_file():
                removed = False
            else:
                path.unlink()
                removed = True
        return removed

    def delete_all_for_project(self, *, project_id: str | None = None, project_path: str | None = None) -> int:
        _require_one_project_key(project_id, project_path)
        deleted = 0
        for record in list(self._iter_records()):
            if project_id is not None and record.project_id != project_id:
                continue
            if project_path is not None and record.project_path != project_path:
                continue
            if self.delete(record.id):
                deleted += 1
        return deleted


def open_checkpoint_store(settings: RuntimeSettings, repo_root: Path | None = None) -> CheckpointStore:
    """Build the backend selected by ``ORCHESTRATOR_CHECKPOINT_BACKEND``."""
    root = repo_root if repo_root is not None else Path.cwd()
    if settings.checkpoint_backend == "filesystem":
        return FileCheckpointStore(settings.checkpoint_dir_path(root))
    return SqliteCheckpointStore(settings.checkpoint_db_path(root))
