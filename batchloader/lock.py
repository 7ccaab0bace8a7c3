"""
Single-instance locking for batch loader runs.

The lock record is a file holding one process id. A record whose pid is no
longer alive is stale: the next run overwrites it and carries on. A run that
crashes before release therefore heals itself on the following run.

Replacing a stale record is serialised through a reclaim marker file created
with O_EXCL next to the record, so two runs starting together against the
same stale record cannot both take the lock.
"""

import os
import time
from pathlib import Path

import structlog

log = structlog.get_logger()

LOCK_FILE_NAME = "batchloader.lock"

# Seconds after which an empty lock record or a leftover reclaim marker is
# treated as abandoned
STALE_GRACE_SECONDS = 60
RECLAIM_ATTEMPTS = 3


class LockHeld(Exception):
    """Another live process owns the lock scope."""

    def __init__(self, path: Path, pid: int | None) -> None:
        holder = pid if pid is not None else "unknown"
        super().__init__(f"Lock {path} held by running process {holder}")
        self.path = path
        self.pid = pid


def is_process_alive(pid: int) -> bool:
    """
    Probe whether a process id denotes a live process.

    Signal 0 performs the permission and existence checks without
    delivering anything. EPERM means the process exists but belongs to
    another user, which still counts as alive.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _parse_pid(record: str | None) -> int | None:
    try:
        return int(record.strip())
    except (AttributeError, ValueError):
        return None


def _age_seconds(path: Path) -> float:
    try:
        return time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return 0.0


class LockManager:
    """Acquire and release the lock record for one lock scope."""

    def __init__(self, lock_dir: str | Path, name: str = LOCK_FILE_NAME) -> None:
        self.path = Path(lock_dir) / name
        self.reclaim_path = self.path.with_name(f"{name}.reclaim")
        self.pid = os.getpid()
        self.acquired = False

    def acquire(self) -> None:
        """
        Take the lock for the current process.

        Raises:
            LockHeld: If the record names a process that is still alive, or
                another process is creating or reclaiming the record
        """
        try:
            self._create()
        except FileExistsError:
            self._reclaim_or_raise()
        else:
            log.info("lock_acquired", path=str(self.path), pid=self.pid)

        self.acquired = True

    def _create(self) -> None:
        """Create the record with O_EXCL; raises FileExistsError if present."""
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        with os.fdopen(fd, "w") as f:
            f.write(f"{self.pid}\n")

    def _reclaim_or_raise(self) -> None:
        """
        Replace a stale record, or raise LockHeld.

        Only the process holding the reclaim marker may delete the record,
        and only after re-reading it and finding the same stale content it
        judged dead. The replacement is created with O_EXCL, so a process
        that slips in between the delete and the create wins and we back off.
        """
        for _ in range(RECLAIM_ATTEMPTS):
            observed = self._read_record()
            holder = self._check_stale(observed)

            if not self._take_reclaim_marker():
                # Another process is reclaiming the same record
                raise LockHeld(self.path, None)

            try:
                if self._read_record() != observed:
                    continue
                self.path.unlink(missing_ok=True)
                try:
                    self._create()
                except FileExistsError:
                    raise LockHeld(self.path, _parse_pid(self._read_record())) from None
            finally:
                self.reclaim_path.unlink(missing_ok=True)

            log.warning(
                "stale_lock_reclaimed",
                path=str(self.path),
                stale_pid=holder,
                pid=self.pid,
            )
            return

        raise LockHeld(self.path, _parse_pid(self._read_record()))

    def _check_stale(self, record: str | None) -> int | None:
        """Raise LockHeld unless the record is stale; return its pid if any."""
        if record is None:
            # Released between our create attempt and this read
            return None

        holder = _parse_pid(record)
        if holder is None:
            if record.strip() or _age_seconds(self.path) >= STALE_GRACE_SECONDS:
                return None
            # Empty and fresh: its creator has not written the pid yet
            raise LockHeld(self.path, None)

        if holder != self.pid and is_process_alive(holder):
            raise LockHeld(self.path, holder)
        return holder

    def _take_reclaim_marker(self) -> bool:
        try:
            fd = os.open(self.reclaim_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if _age_seconds(self.reclaim_path) < STALE_GRACE_SECONDS:
                return False
            # Left behind by a process that died mid-reclaim
            self.reclaim_path.unlink(missing_ok=True)
            return self._take_reclaim_marker()

        with os.fdopen(fd, "w") as f:
            f.write(f"{self.pid}\n")
        return True

    def _read_record(self) -> str | None:
        """Return the raw lock record, or None if there is none."""
        try:
            return self.path.read_text()
        except FileNotFoundError:
            return None

    def release(self) -> None:
        """Delete the lock record if this process holds it."""
        if not self.acquired:
            return

        try:
            self.path.unlink(missing_ok=True)
            log.info("lock_released", path=str(self.path))
        except OSError as e:
            log.error("lock_release_failed", path=str(self.path), error=str(e))
        finally:
            self.acquired = False

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
