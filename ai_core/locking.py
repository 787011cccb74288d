# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Exclusive advisory file locks built on ``fcntl.flock``.

The lock is released by the kernel when the holding process dies, so a
crashed invocation never leaves a stuck lock behind. Each acquisition opens
its own file description, which makes the lock effective between threads of
one process as well as between processes. POSIX only.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from types import TracebackType

from .errors import LockTimeout

logger = logging.getLogger(__name__)

_POLL_INTERVAL_S = 0.05


class FileLock:
    """Exclusive lock on ``path``, usable as a context manager."""

    def __init__(self, path: Path | str, timeout: float = 10.0) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._fd: int | None = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Block until the lock is held or ``timeout`` elapses.

        Raises:
            LockTimeout: If another holder keeps the lock past the timeout.
        """
        if self._fd is not None:
            raise RuntimeError(f"Lock {self.path} is already held by this object")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    logger.warning("Timeout acquiring %s after %.1fs", self.path, self.timeout)
                    raise LockTimeout(self.path, self.timeout) from None
                time.sleep(_POLL_INTERVAL_S)
            except OSError:
                os.close(fd)
                raise

        self._fd = fd
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug("Acquired lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["FileLock"]
