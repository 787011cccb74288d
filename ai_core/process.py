# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Process handles: PID files, liveness probes and signalling.

A PID file alone is never proof that a process is alive. :func:`probe`
checks the OS process table and compares the process creation time and
command line with what was recorded at launch, so a PID recycled by an
unrelated process (for example after a reboot) is reported as
:attr:`Liveness.REUSED`.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)

# psutil derives creation times from boot time and clock ticks.
_CREATE_TIME_TOLERANCE_S = 1.0


class Liveness(str, Enum):
    """Result of cross-checking a PID record against the process table."""

    ALIVE = "alive"
    DEAD = "dead"
    REUSED = "reused"


@dataclass
class PidRecord:
    """Content of a PID file."""

    pid: int
    name: str
    command: list[str] = field(default_factory=list)
    create_time: float | None = None
    started_at: float = field(default_factory=time.time)
    log_path: str | None = None
    engine_type: str | None = None
    model_name: str | None = None

    @property
    def legacy(self) -> bool:
        """True for bare-integer PID files that carry no identity."""
        return self.create_time is None and not self.command

    def uptime(self, now: float | None = None) -> float:
        return max((now or time.time()) - self.started_at, 0.0)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def parse(cls, text: str, name: str) -> PidRecord:
        """Parse PID file content; accepts JSON records and bare integers."""
        text = text.strip()
        if text.isdigit():
            record = cls(pid=int(text), name=name, started_at=0.0)
        else:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            data.setdefault("name", name)
            record = cls(**data)
        if isinstance(record.pid, bool) or not isinstance(record.pid, int) or record.pid <= 0:
            raise ValueError(f"invalid pid {record.pid!r}")
        return record


class PidFile:
    """A PID file written atomically and read defensively."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @property
    def name(self) -> str:
        return self.path.stem

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> PidRecord | None:
        """Return the record, or None when the file is missing or unreadable.

        An unreadable file is logged and treated as absent; callers remove it
        as stale.
        """
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return None
        try:
            return PidRecord.parse(text, self.name)
        except (ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable PID file %s: %s", self.path, exc)
            return None

    def write(self, record: PidRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        with open(tmp, "w") as f:
            f.write(record.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def remove(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Removed PID file %s", self.path)
        return True


def get_process(pid: int) -> psutil.Process | None:
    try:
        return psutil.Process(pid)
    except (psutil.Error, TypeError, ValueError):
        return None


def _is_live(process: psutil.Process) -> bool:
    try:
        if not process.is_running():
            return False
        if process.status() != psutil.STATUS_ZOMBIE:
            return True
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    # Reap our own zombie children so the PID is released.
    try:
        process.wait(timeout=0)
    except (psutil.TimeoutExpired, psutil.Error, ChildProcessError):
        pass
    return False


def probe(record: PidRecord) -> Liveness:
    """Cross-check ``record`` against the OS process table."""
    process = get_process(record.pid)
    if process is None or not _is_live(process):
        return Liveness.DEAD
    if record.legacy:
        return Liveness.ALIVE

    try:
        if record.create_time is not None:
            if abs(process.create_time() - record.create_time) > _CREATE_TIME_TOLERANCE_S:
                logger.info("PID %d was reused (creation time mismatch)", record.pid)
                return Liveness.REUSED
        if record.command and process.cmdline() != record.command:
            logger.info("PID %d was reused (command mismatch)", record.pid)
            return Liveness.REUSED
    except psutil.NoSuchProcess:
        return Liveness.DEAD
    except psutil.AccessDenied:
        logger.debug("Cannot verify identity of PID %d; trusting liveness", record.pid)
    return Liveness.ALIVE


def spawn(
    command: list[str],
    *,
    log_path: Path,
    env: dict[str, str] | None = None,
    cwd: Path | None = None,
) -> psutil.Process:
    """Launch ``command`` detached from the caller's session.

    stdout and stderr are appended to ``log_path``. Raises ``OSError`` (or
    ``subprocess.SubprocessError``) when the executable cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "ab") as log_file:
        popen = subprocess.Popen(
            command,
            env=env,
            cwd=str(cwd) if cwd is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            close_fds=True,
            start_new_session=True,
        )
    return psutil.Process(popen.pid)


def terminate(process: psutil.Process, timeout: float, kill_timeout: float = 5.0) -> bool:
    """Send SIGTERM, wait up to ``timeout``, then escalate to SIGKILL.

    Returns:
        True once the process is gone, False if it survived SIGKILL.
    """
    try:
        process.terminate()
        process.wait(timeout=timeout)
        logger.info("PID %d stopped gracefully", process.pid)
        return True
    except psutil.TimeoutExpired:
        logger.warning(
            "PID %d did not stop in %.1fs; force killing",
            process.pid,
            timeout,
        )
        try:
            process.kill()
            process.wait(timeout=kill_timeout)
            return True
        except psutil.NoSuchProcess:
            return True
        except psutil.Error as exc:
            logger.error("Failed to kill PID %d: %s", process.pid, exc)
            return False
    except psutil.NoSuchProcess:
        return True
    except psutil.Error as exc:
        logger.error("Error while stopping PID %d: %s", process.pid, exc)
        return False


def tail(path: Path | str | None, lines: int = 5) -> str:
    """Last ``lines`` lines of a log file, for error messages."""
    if path is None:
        return ""
    try:
        with open(path, "rb") as f:
            content = f.read()[-4096:]
    except OSError:
        return ""
    return "\n".join(content.decode(errors="replace").splitlines()[-lines:])


__all__ = [
    "Liveness",
    "PidFile",
    "PidRecord",
    "get_process",
    "probe",
    "spawn",
    "tail",
    "terminate",
]
