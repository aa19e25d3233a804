"""Persistent, content-addressed store of ledger records.

Two interchangeable variants are provided: :class:`SqliteLedger` (the
default) and :class:`JsonLedger`. Both hold an exclusive lock for as long as
they are open, so a second process opening the same store fails immediately
with :class:`LedgerLockedError` instead of corrupting it.

All writes made during a pass are staged in a :class:`LedgerBatch` and
applied with a single atomic commit.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from datetime import datetime
from pathlib import Path
from shutil import copy2
from typing import Optional

from pydantic import ValidationError

from reencoder.schema import Record

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "sqlite"
LEDGER_FILENAMES = {
    "sqlite": "ledger.sqlite3",
    "json": "ledger.json",
}
SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""
ITERATION_PAGE_SIZE = 500
JSON_BACKUP_LIMIT = 5
MAX_BACKUP_SUFFIX_ATTEMPTS = 99

# A staged write: a record to upsert, or None for a deletion.
Writes = Mapping[str, Optional[Record]]


class LedgerError(RuntimeError):
    """Raised when the ledger cannot be opened, read or committed."""


class LedgerLockedError(LedgerError):
    """Raised when another process already holds the ledger open."""


class RecordNotFoundError(LedgerError, KeyError):
    """Raised by :meth:`Ledger.get` when no record exists for a key."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"No ledger record for key {self.key}"


def _decode(key: str, value: str) -> Record:
    try:
        return Record.from_json(value)
    except ValidationError as exc:
        raise LedgerError(f"Corrupted ledger record {key}: {exc}") from exc


class LedgerBatch:
    """Thread-safe staging area for upserts and deletions.

    Later writes to a key replace earlier ones. Nothing reaches the store
    until :meth:`commit`, which applies every staged write or none of them.
    """

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self._lock = threading.Lock()
        self._writes: dict[str, Optional[Record]] = {}
        self._closed = False

    def _stage(self, writes: Writes) -> None:
        with self._lock:
            if self._closed:
                raise LedgerError("Batch has already been committed or discarded")
            self._writes.update(writes)

    def upsert(self, key: str, record: Record) -> None:
        self._stage({key: record})

    def delete(self, key: str) -> None:
        self._stage({key: None})

    def delete_unless_staged(self, key: str) -> None:
        """Delete ``key`` unless this batch already holds a write for it."""
        with self._lock:
            if self._closed:
                raise LedgerError("Batch has already been committed or discarded")
            self._writes.setdefault(key, None)

    def replace(self, old_key: str, new_key: str, record: Record) -> None:
        """Delete ``old_key`` and store ``record`` under ``new_key`` together."""
        if old_key == new_key:
            self._stage({new_key: record})
        else:
            self._stage({old_key: None, new_key: record})

    def __len__(self) -> int:
        with self._lock:
            return len(self._writes)

    def commit(self) -> int:
        """Apply all staged writes atomically and return how many there were."""
        with self._lock:
            if self._closed:
                raise LedgerError("Batch has already been committed or discarded")
            writes = dict(self._writes)
            self._ledger._apply(writes)
            self._writes.clear()
            self._closed = True
        logger.debug("Committed %d staged ledger write(s)", len(writes))
        return len(writes)

    def discard(self) -> None:
        with self._lock:
            dropped = len(self._writes)
            self._writes.clear()
            self._closed = True
        if dropped:
            logger.warning("Discarded %d uncommitted ledger write(s)", dropped)


class Ledger(ABC):
    """Key-value store mapping content fingerprints to records."""

    path: Path

    @abstractmethod
    def get(self, key: str) -> Record:
        """Return the record for ``key`` or raise :class:`RecordNotFoundError`."""

    @abstractmethod
    def iterate_all(self) -> Iterator[tuple[str, Record]]:
        """Lazily yield every ``(key, record)`` pair. Each call starts over."""

    @abstractmethod
    def _apply(self, writes: Writes) -> None:
        """Atomically apply ``writes`` to the store."""

    @abstractmethod
    def __len__(self) -> int: ...

    @abstractmethod
    def close(self) -> None: ...

    def upsert(self, key: str, record: Record) -> None:
        self._apply({key: record})

    def delete(self, key: str) -> None:
        self._apply({key: None})

    def batch(self) -> LedgerBatch:
        return LedgerBatch(self)

    def compact(self) -> None:
        """Reclaim space left by deleted records; a no-op by default."""

    def __enter__(self) -> Ledger:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SqliteLedger(Ledger):
    """Ledger stored in a single SQLite table of JSON-encoded records."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._closed = False
        # Worker threads share this connection; access goes through _lock.
        self.conn = sqlite3.connect(
            str(self.path),
            timeout=0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            self.conn.execute("PRAGMA locking_mode=EXCLUSIVE;")
            self.conn.execute("PRAGMA synchronous=FULL;")
            # Takes the exclusive lock now; EXCLUSIVE mode keeps it until close.
            self.conn.execute("BEGIN EXCLUSIVE")
            self.conn.execute(SQLITE_SCHEMA)
            self.conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            self.conn.close()
            if "locked" in str(exc).lower():
                raise LedgerLockedError(
                    f"Ledger {self.path} is already open in another process"
                ) from exc
            raise LedgerError(f"Unable to open ledger {self.path}: {exc}") from exc
        except sqlite3.Error as exc:
            self.conn.close()
            raise LedgerError(f"Unable to open ledger {self.path}: {exc}") from exc
        logger.info("Opened SQLite ledger at %s", self.path)

    def get(self, key: str) -> Record:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM records WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(key)
        return _decode(key, row[0])

    def iterate_all(self) -> Iterator[tuple[str, Record]]:
        last_key = ""
        while True:
            with self._lock:
                rows = self.conn.execute(
                    "SELECT key, value FROM records WHERE key > ? ORDER BY key LIMIT ?",
                    (last_key, ITERATION_PAGE_SIZE),
                ).fetchall()
            if not rows:
                return
            for key, value in rows:
                yield key, _decode(key, value)
            last_key = rows[-1][0]

    def _apply(self, writes: Writes) -> None:
        if not writes:
            return
        with self._lock:
            try:
                self.conn.execute("BEGIN")
                for key, record in writes.items():
                    if record is None:
                        self.conn.execute("DELETE FROM records WHERE key = ?", (key,))
                    else:
                        self.conn.execute(
                            "INSERT OR REPLACE INTO records (key, value) VALUES (?, ?)",
                            (key, record.to_json()),
                        )
                self.conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise LedgerError(f"Failed to commit ledger writes: {exc}") from exc

    def compact(self) -> None:
        with self._lock:
            try:
                self.conn.execute("VACUUM")
            except sqlite3.Error as exc:
                raise LedgerError(f"Failed to compact ledger {self.path}: {exc}") from exc
        logger.debug("Compacted SQLite ledger at %s", self.path)

    def __len__(self) -> int:
        with self._lock:
            (count,) = self.conn.execute("SELECT COUNT(*) FROM records").fetchone()
        return count

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.conn.close()
        logger.debug("Closed SQLite ledger at %s", self.path)


class JsonLedger(Ledger):
    """Ledger stored as one JSON object, rewritten atomically on commit.

    A sibling ``.lock`` file marks the ledger as open. Each commit first
    copies the current file into a backup directory, and a corrupted file is
    restored from the newest readable backup when the ledger is opened.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        backup_limit: int = JSON_BACKUP_LIMIT,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.path.with_name(f"{self.path.name}.lock")
        self.backup_dir = self.path.parent / f"{self.path.stem}_backups"
        self.backup_limit = backup_limit
        self._lock = threading.Lock()
        self._closed = False
        self._acquire_lock()
        try:
            self._records = self._load()
        except BaseException:
            self._release_lock()
            raise
        logger.info(
            "Opened JSON ledger at %s (%d records)", self.path, len(self._records)
        )

    def _acquire_lock(self) -> None:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise LedgerLockedError(
                f"Ledger {self.path} is already open in another process "
                f"(remove {self.lock_path} if it is stale)"
            ) from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))

    def _release_lock(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            logger.warning("Ledger lock %s disappeared before release", self.lock_path)

    @staticmethod
    def _read(path: Path) -> dict[str, Record]:
        with path.open(encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise LedgerError(f"Ledger file {path} does not contain a JSON object")
        return {key: Record.model_validate(value) for key, value in data.items()}

    def _backups(self) -> list[Path]:
        if not self.backup_dir.exists():
            return []
        entries: list[tuple[float, str, Path]] = []
        for candidate in self.backup_dir.glob(f"{self.path.stem}-*.json.bak"):
            try:
                entries.append((candidate.stat().st_mtime, candidate.name, candidate))
            except OSError:
                continue
        entries.sort(reverse=True)
        return [entry[2] for entry in entries]

    def _load(self) -> dict[str, Record]:
        if not self.path.exists():
            return {}
        try:
            return self._read(self.path)
        except (json.JSONDecodeError, ValidationError, LedgerError) as exc:
            logger.error("Ledger %s is corrupted: %s", self.path, exc)
            for backup_path in self._backups():
                try:
                    records = self._read(backup_path)
                except (json.JSONDecodeError, ValidationError, LedgerError):
                    logger.warning("Skipping corrupted ledger backup %s", backup_path)
                    continue
                copy2(backup_path, self.path)
                logger.warning("Restored ledger from backup %s", backup_path)
                return records
            raise LedgerError(
                f"Ledger {self.path} is corrupted and no valid backup was found"
            ) from exc

    def _backup(self) -> None:
        if not self.path.exists() or self.backup_limit <= 0:
            return
        backup_logger = logger.getChild("backup")
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup_path = self.backup_dir / f"{self.path.stem}-{timestamp}.json.bak"
        suffix = 1
        while backup_path.exists():
            if suffix > MAX_BACKUP_SUFFIX_ATTEMPTS:
                backup_logger.warning(
                    "Unable to determine unique ledger backup name after %d attempts",
                    MAX_BACKUP_SUFFIX_ATTEMPTS,
                )
                return
            backup_path = (
                self.backup_dir / f"{self.path.stem}-{timestamp}-{suffix:02d}.json.bak"
            )
            suffix += 1
        copy2(self.path, backup_path)
        backup_logger.debug("Created ledger backup at %s", backup_path)

        for stale in self._backups()[self.backup_limit :]:
            try:
                stale.unlink()
                backup_logger.debug("Removed old ledger backup %s", stale)
            except OSError as exc:
                backup_logger.debug("Unable to remove backup %s: %s", stale, exc)

    def _write(self, records: Mapping[str, Record]) -> None:
        data = {
            key: record.model_dump(mode="json", by_alias=True)
            for key, record in records.items()
        }
        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f"{self.path.stem}-",
                suffix=".tmp",
                delete=False,
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                json.dump(data, tmp_file, indent=2, sort_keys=True)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(temp_path, self.path)
            temp_path = None
        finally:
            if temp_path and temp_path.exists():
                temp_path.unlink()

    def get(self, key: str) -> Record:
        with self._lock:
            record = self._records.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        return record

    def iterate_all(self) -> Iterator[tuple[str, Record]]:
        with self._lock:
            snapshot = list(self._records.items())
        yield from snapshot

    def _apply(self, writes: Writes) -> None:
        if not writes:
            return
        with self._lock:
            updated = dict(self._records)
            for key, record in writes.items():
                if record is None:
                    updated.pop(key, None)
                else:
                    updated[key] = record
            try:
                self._backup()
                self._write(updated)
            except OSError as exc:
                raise LedgerError(f"Failed to commit ledger writes: {exc}") from exc
            self._records = updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._release_lock()
        logger.debug("Closed JSON ledger at %s", self.path)


BACKENDS: dict[str, type[Ledger]] = {
    "sqlite": SqliteLedger,
    "json": JsonLedger,
}


def resolve_ledger_path(path: str | os.PathLike[str], backend: str) -> Path:
    """Return the ledger file for ``path``; a directory gets the default name."""
    resolved = Path(path).expanduser()
    if resolved.is_dir():
        return resolved / LEDGER_FILENAMES[backend]
    return resolved


def open_ledger(
    path: str | os.PathLike[str], backend: str = DEFAULT_BACKEND
) -> Ledger:
    """Open the ledger at ``path`` using the named backend."""
    try:
        ledger_cls = BACKENDS[backend]
    except KeyError:
        raise ValueError(
            f"Unknown ledger backend {backend!r}; choose from {sorted(BACKENDS)}"
        ) from None
    return ledger_cls(resolve_ledger_path(path, backend))
