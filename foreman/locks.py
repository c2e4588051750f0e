"""
File-backed, expiring locks shared between scheduler processes.

One JSON file per lock name. A lock is live until ``expires_at``; after that
(or when its file cannot be parsed) it is stale and may be reclaimed by anyone.

Creation is a hard link of a fully written temp file onto the lock path, so a
lock file is never visible half written and two creators cannot both win.
Every unlink happens under a per-name ``flock`` guard after re-reading the
file, so a reclaimer can never delete a lock that was re-acquired after it
looked.
"""

from __future__ import annotations

import contextlib
import errno
import fcntl
import json
import logging
import os
import socket
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import quote, unquote

from foreman.errors import LockStorageError

logger = logging.getLogger(__name__)

GLOBAL_LOCK = "global"
JOB_LOCK_PREFIX = "job:"
LOCK_SUFFIX = ".lock"
GUARD_SUFFIX = ".guard"
TEMP_SUFFIX = ".tmp"
JOBS_SUBDIR = "jobs"
ORPHAN_TEMP_SECONDS = 3600


def job_lock_name(job_name: str) -> str:
    return f"{JOB_LOCK_PREFIX}{job_name}"


@dataclass(frozen=True)
class Lock:
    name: str
    owner_pid: int
    acquired_at: float
    expires_at: float
    hostname: str
    path: Path
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def timeout(self) -> float:
        return self.expires_at - self.acquired_at

    def is_stale(self, now: float) -> bool:
        return now > self.expires_at

    def remaining(self, now: float) -> float:
        return self.expires_at - now

    def same_owner(self, other: "Lock") -> bool:
        return (
            self.owner_pid == other.owner_pid
            and self.acquired_at == other.acquired_at
            and self.hostname == other.hostname
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pid": self.owner_pid,
            "hostname": self.hostname,
            "acquired_at": self.acquired_at,
            "expires_at": self.expires_at,
            "timeout": self.timeout,
            "metadata": self.metadata,
        }

    @staticmethod
    def from_payload(payload: Any, path: Path) -> Optional["Lock"]:
        if not isinstance(payload, dict):
            return None
        try:
            return Lock(
                name=str(payload["name"]),
                owner_pid=int(payload["pid"]),
                acquired_at=float(payload["acquired_at"]),
                expires_at=float(payload["expires_at"]),
                hostname=str(payload.get("hostname", "")),
                path=path,
                metadata=dict(payload.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class LockInfo:
    """Observed state of one lock file, for reporting."""

    name: str
    path: Path
    lock: Optional[Lock]
    status: str


class LockManager:
    def __init__(
        self,
        directory: Path,
        clock: Callable[[], float] = time.time,
        hostname: Optional[str] = None,
    ) -> None:
        self.directory = Path(directory)
        self.clock = clock
        self.hostname = hostname or socket.gethostname() or "unknown"

    def acquire(
        self,
        name: str,
        timeout: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Lock]:
        """
        Try to take ``name`` for ``timeout`` seconds.

        Returns the held Lock, or None when a live lock already exists.
        Raises LockStorageError on filesystem failures.
        """
        if timeout <= 0:
            raise ValueError(f"Lock timeout must be positive, got {timeout}.")
        path = self.path_for(name)
        self._ensure_directory(path.parent)

        now = self.clock()
        lock = Lock(
            name=name,
            owner_pid=os.getpid(),
            acquired_at=now,
            expires_at=now + timeout,
            hostname=self.hostname,
            path=path,
            metadata=dict(metadata or {}),
        )
        temp_path = self._write_temp(path.parent, lock.to_payload())
        try:
            for attempt in range(2):
                try:
                    os.link(temp_path, path)
                    logger.debug("Acquired lock %s (expires_at=%.3f)", name, lock.expires_at)
                    return lock
                except FileExistsError:
                    if attempt:
                        return None
                except OSError as exc:
                    raise LockStorageError(f"Failed to create lock file {path}: {exc}") from exc

                with self._guard(path):
                    present, current = self._read(path)
                    if present and current is not None and not current.is_stale(self.clock()):
                        return None
                    if present:
                        logger.info("Reclaiming stale lock %s", name)
                        self._unlink(path)
            return None
        finally:
            self._unlink(temp_path)

    def release(self, lock: Lock) -> bool:
        """Delete the lock file if it still records ``lock`` as its owner."""
        path = lock.path
        with self._guard(path):
            present, current = self._read(path)
            if not present or current is None or not current.same_owner(lock):
                logger.warning(
                    "Lock %s is no longer owned by pid=%s; leaving it in place.",
                    lock.name,
                    lock.owner_pid,
                )
                return False
            self._unlink(path)
        logger.debug("Released lock %s", lock.name)
        return True

    def is_locked(self, name: str) -> bool:
        present, current = self._read(self.path_for(name))
        return present and current is not None and not current.is_stale(self.clock())

    def read(self, name: str) -> Optional[Lock]:
        _, current = self._read(self.path_for(name))
        return current

    def force_release(self, name: str) -> bool:
        path = self.path_for(name)
        with self._guard(path):
            present, _ = self._read(path)
            if not present:
                return False
            self._unlink(path)
        logger.warning("Force released lock %s", name)
        return True

    def force_release_all(self) -> int:
        released = 0
        for path in self._lock_files(self.directory):
            with self._guard(path):
                if self._unlink(path):
                    released += 1
        if released:
            logger.warning("Force released %s lock(s) in %s", released, self.directory)
        return released

    def cleanup_stale(self, directory: Optional[Path] = None, keep: Iterable[Lock] = ()) -> int:
        """Remove expired or unreadable lock files; return how many were removed.

        Locks in ``keep`` are left alone even when expired; their holder is still running.
        """
        root = Path(directory) if directory is not None else self.directory
        kept = list(keep)
        cleaned = 0
        for path in self._lock_files(root):
            with self._guard(path):
                present, current = self._read(path)
                if not present:
                    continue
                if current is not None and not current.is_stale(self.clock()):
                    continue
                if current is not None and any(current.same_owner(lock) for lock in kept):
                    continue
                if self._unlink(path):
                    cleaned += 1
                    logger.info("Removed stale lock file %s", path)
        self._remove_orphan_temps(root)
        return cleaned

    def active_locks(self) -> List[LockInfo]:
        infos: List[LockInfo] = []
        now = self.clock()
        for path in self._lock_files(self.directory):
            present, current = self._read(path)
            if not present:
                continue
            if current is None:
                infos.append(LockInfo(name=self._name_from_path(path), path=path, lock=None, status="invalid"))
                continue
            status = "stale" if current.is_stale(now) else "active"
            infos.append(LockInfo(name=current.name, path=path, lock=current, status=status))
        return infos

    def path_for(self, name: str) -> Path:
        if name == GLOBAL_LOCK:
            return self.directory / f"{GLOBAL_LOCK}{LOCK_SUFFIX}"
        if name.startswith(JOB_LOCK_PREFIX):
            job_name = name[len(JOB_LOCK_PREFIX):]
            return self.directory / JOBS_SUBDIR / f"{quote(job_name, safe='')}{LOCK_SUFFIX}"
        return self.directory / f"{quote(name, safe='')}{LOCK_SUFFIX}"

    def _name_from_path(self, path: Path) -> str:
        stem = unquote(path.name[: -len(LOCK_SUFFIX)])
        if path.parent.name == JOBS_SUBDIR and path.parent.parent == self.directory:
            return job_lock_name(stem)
        return stem

    def _lock_files(self, root: Path) -> List[Path]:
        paths: List[Path] = []
        for folder in (root, root / JOBS_SUBDIR):
            try:
                entries = sorted(folder.iterdir())
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise LockStorageError(f"Failed to list lock directory {folder}: {exc}") from exc
            paths.extend(p for p in entries if p.name.endswith(LOCK_SUFFIX) and not p.name.startswith("."))
        return paths

    def _read(self, path: Path) -> Tuple[bool, Optional[Lock]]:
        """Return (file present, parsed lock or None when corrupt)."""
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False, None
        except OSError as exc:
            raise LockStorageError(f"Failed to read lock file {path}: {exc}") from exc
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Lock file %s is unreadable; treating as stale.", path)
            return True, None
        return True, Lock.from_payload(payload, path)

    def _write_temp(self, folder: Path, payload: Dict[str, Any]) -> Path:
        try:
            fd, temp_name = tempfile.mkstemp(dir=folder, prefix=".", suffix=TEMP_SUFFIX)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise LockStorageError(f"Failed to write lock record in {folder}: {exc}") from exc
        return Path(temp_name)

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise LockStorageError(f"Failed to remove {path}: {exc}") from exc
        return True

    def _remove_orphan_temps(self, root: Path) -> None:
        cutoff = time.time() - ORPHAN_TEMP_SECONDS
        for folder in (root, root / JOBS_SUBDIR):
            for temp_path in folder.glob(f".*{TEMP_SUFFIX}"):
                try:
                    if temp_path.stat().st_mtime < cutoff:
                        temp_path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise LockStorageError(f"Failed to remove orphaned temp file {temp_path}: {exc}") from exc

    def _ensure_directory(self, folder: Path) -> None:
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockStorageError(f"Failed to create lock directory {folder}: {exc}") from exc

    @contextlib.contextmanager
    def _guard(self, path: Path) -> Iterator[None]:
        guard_path = path.parent / f".{path.name}{GUARD_SUFFIX}"
        self._ensure_directory(path.parent)
        try:
            handle = open(guard_path, "a+", encoding="utf-8")
        except OSError as exc:
            raise LockStorageError(f"Failed to open lock guard {guard_path}: {exc}") from exc
        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError as exc:
                if exc.errno != errno.EINTR:
                    raise LockStorageError(f"Failed to lock guard {guard_path}: {exc}") from exc
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
