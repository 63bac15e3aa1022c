"""
Single Instance Lock

PID-file lock so only one bot process ever owns the state file. Two
processes sharing it would double-trade and race on state writes.

The lock is released on clean exit; a lock left by a dead process is
detected and replaced.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "spot-autopilot"


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        with SingleInstanceLock("spot-autopilot"):
            run_bot()
    """

    def __init__(self, name: str = DEFAULT_LOCK_NAME, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 only checks existence
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired, False if another live instance holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            try:
                existing_pid = int(self.lock_file.read_text().strip())
            except (ValueError, OSError) as e:
                logger.warning(f"Invalid lock file, removing: {e}")
                existing_pid = None

            if existing_pid is not None and existing_pid != os.getpid() \
                    and self._is_process_running(existing_pid):
                logger.error(
                    f"Another instance is running (PID={existing_pid}). "
                    f"Lock file: {self.lock_file}"
                )
                return False
            if existing_pid is not None:
                logger.warning(f"Found stale lock file (PID={existing_pid}), replacing")

        try:
            self.lock_file.write_text(str(os.getpid()))
        except OSError as e:
            logger.error(f"Failed to create lock file: {e}")
            return False

        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self.lock_file.exists():
                self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = DEFAULT_LOCK_NAME,
                          lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock, or return None when another instance is running."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
