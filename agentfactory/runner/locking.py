"""
Lock management for the board file.

Uses flock so a CLI command and a running orchestrator never interleave
writes to the same board, and so only one orchestrator drives a board.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


POLL_INTERVAL = 0.05


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    """
    Internal helper to acquire an exclusive file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock (0 fails immediately)
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'a')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start >= timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(POLL_INTERVAL)

    try:
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()


@contextmanager
def board_lock(board_path: Path, timeout: float = 10):
    """
    Acquire the write lock for a board file, yield, release on exit.

    Held only for the duration of a single save or load.
    """
    lock_file = board_path.with_name(board_path.name + ".lock")
    with _acquire_lock(lock_file, timeout, f"board lock for {board_path.name}"):
        yield


@contextmanager
def orchestrator_lock(board_path: Path):
    """
    Claim a board for a single orchestrator process.

    Fails immediately if another orchestrator already drives this board.
    """
    lock_file = board_path.with_name(board_path.name + ".run.lock")
    with _acquire_lock(lock_file, 0, f"orchestrator lock for {board_path.name}"):
        lock_file.write_text(f"{os.getpid()}\n")
        yield
