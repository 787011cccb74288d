# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Lifecycle management for engine worker processes.

State lives on disk so that independent command invocations agree:

- ``<pid_dir>/<instance>.pid``: the live process, see :mod:`ai_core.process`
- ``<pid_dir>/<instance>.lock``: held across every check-then-act sequence
- ``<log_dir>/<instance>.log``: stdout and stderr of the process
- the engines registry: last known status of each instance

An instance is keyed by ``(engine_type, model_name)``; an engine started
without a model is its own instance.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import psutil

from .backends import BackendRegistry, EngineBackend
from .config import AICoreConfig, EngineOptions
from .errors import HealthCheckTimeout, ModelNotFound, ProcessSpawnFailure, ProcessStopFailure
from .locking import FileLock
from .process import Liveness, PidFile, PidRecord, get_process, probe, spawn, tail, terminate
from .registry import EngineStateRegistry
from .resource_monitor import ResourceMonitor

logger = logging.getLogger(__name__)

_READY_POLL_INTERVAL_S = 0.5
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class EngineStatus(str, Enum):
    """Lifecycle states tracked for engine instances."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


class Note(str, Enum):
    """Informational outcomes of idempotent operations."""

    ALREADY_RUNNING = "AlreadyRunning"
    NOT_RUNNING = "NotRunning"


def instance_name(engine_type: str, model_name: str | None = None) -> str:
    """``<engine>`` or ``<engine>-<model>`` with filesystem-safe characters."""
    if not model_name:
        return engine_type
    return f"{engine_type}-{_UNSAFE_CHARS.sub('_', model_name)}"


@dataclass(frozen=True)
class ProcessSlot:
    """The PID, lock and log files of one supervised process."""

    name: str
    pid_file: PidFile
    lock_path: Path
    log_path: Path

    @classmethod
    def in_dir(cls, run_dir: Path, name: str, log_dir: Path | None = None) -> ProcessSlot:
        return cls(
            name=name,
            pid_file=PidFile(run_dir / f"{name}.pid"),
            lock_path=run_dir / f"{name}.lock",
            log_path=(log_dir or run_dir) / f"{name}.log",
        )


@dataclass
class EngineInstance:
    """A supervised engine process as seen on disk."""

    engine_type: str
    model_name: str | None
    pid: int | None
    start_time: float | None
    status: EngineStatus
    log_path: str | None

    @property
    def name(self) -> str:
        return instance_name(self.engine_type, self.model_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "engine_type": self.engine_type,
            "model_name": self.model_name,
            "pid": self.pid,
            "start_time": self.start_time,
            "status": self.status.value,
            "log_path": self.log_path,
        }


@dataclass
class SupervisorResult:
    """Outcome of ``start`` or ``stop``; ``note`` marks idempotent no-ops."""

    name: str
    engine_type: str
    model_name: str | None
    status: EngineStatus
    pid: int | None = None
    note: Note | None = None
    log_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "engine_type": self.engine_type,
            "model_name": self.model_name,
            "status": self.status.value,
            "pid": self.pid,
            "note": self.note.value if self.note else None,
            "log_path": self.log_path,
        }


@dataclass
class HealthReport:
    """Result of a health check for one instance."""

    name: str
    engine_type: str
    model_name: str | None
    status: EngineStatus
    pid: int | None = None
    uptime: float = 0.0
    healthy: bool = False
    note: str | None = None
    usage: dict[str, float] | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "engine_type": self.engine_type,
            "model_name": self.model_name,
            "status": self.status.value,
            "pid": self.pid,
            "uptime": round(self.uptime, 1),
            "healthy": self.healthy,
            "note": self.note,
            "usage": self.usage,
        }


class ProcessSupervisor:
    """Start, stop and health-check engine processes through PID files.

    The slot-level primitives (:meth:`lock`, :meth:`current`,
    :meth:`launch`, :meth:`confirm_started`, :meth:`terminate_slot`) are
    shared with :class:`~ai_core.plugins.PluginLifecycleManager`.
    """

    def __init__(
        self,
        config: AICoreConfig,
        *,
        engine_registry: EngineStateRegistry | None = None,
        backends: type[BackendRegistry] = BackendRegistry,
        monitor: ResourceMonitor | None = None,
    ) -> None:
        self.config = config
        self.backends = backends
        self.engine_registry = engine_registry or EngineStateRegistry(
            Path(config.state_dir) / "engines.json", lock_timeout=config.lock_timeout
        )
        self.monitor = monitor

    # ------------------------------------------------------------------
    # Slot primitives
    # ------------------------------------------------------------------
    def engine_slot(self, engine_type: str, model_name: str | None = None) -> ProcessSlot:
        return ProcessSlot.in_dir(
            Path(self.config.pid_dir),
            instance_name(engine_type, model_name),
            log_dir=Path(self.config.log_dir),
        )

    def lock(self, slot: ProcessSlot) -> FileLock:
        """Exclusive lock for the whole check-then-act sequence on ``slot``."""
        return FileLock(slot.lock_path, timeout=self.config.lock_timeout)

    def current(self, slot: ProcessSlot) -> tuple[PidRecord | None, Liveness | None]:
        """Read and verify the PID file; stale files are removed.

        Caller holds :meth:`lock`.
        """
        record = slot.pid_file.read()
        if record is None:
            if slot.pid_file.exists():
                slot.pid_file.remove()
            return None, None
        liveness = probe(record)
        if liveness is not Liveness.ALIVE:
            logger.warning(
                "Removing stale PID file for %s (PID %d, %s)",
                slot.name,
                record.pid,
                liveness.value,
            )
            slot.pid_file.remove()
        return record, liveness

    def launch(
        self,
        slot: ProcessSlot,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        engine_type: str | None = None,
        model_name: str | None = None,
    ) -> PidRecord:
        """Spawn ``command`` and write its PID file. Caller holds :meth:`lock`."""
        logger.info("Spawning %s: %s", slot.name, " ".join(command))
        try:
            process = spawn(command, log_path=slot.log_path, env=env, cwd=cwd)
        except (OSError, ValueError) as exc:
            logger.error("Failed to spawn %s: %s", slot.name, exc)
            raise ProcessSpawnFailure(slot.name, str(exc), slot.log_path) from exc

        try:
            create_time = process.create_time()
        except psutil.Error:
            create_time = None
        record = PidRecord(
            pid=process.pid,
            name=slot.name,
            command=list(command),
            create_time=create_time,
            log_path=str(slot.log_path),
            engine_type=engine_type,
            model_name=model_name,
        )
        slot.pid_file.write(record)
        logger.debug("%s registered with PID %d", slot.name, process.pid)
        return record

    def confirm_started(
        self,
        slot: ProcessSlot,
        record: PidRecord,
        *,
        ready: Callable[[], bool] | None = None,
        timeout: float | None = None,
    ) -> PidRecord:
        """Verify a freshly launched process survives its startup.

        Raises:
            ProcessSpawnFailure: The process exited during startup.
            HealthCheckTimeout: ``ready`` never returned True within
                ``timeout``; the process is killed.
        """
        time.sleep(self.config.startup_grace)
        self._ensure_alive(slot, record)
        record = self._refresh_identity(slot, record)

        if ready is None:
            return record
        timeout = self.config.startup_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while not ready():
            if time.monotonic() >= deadline:
                logger.error("%s not ready after %.1fs; killing PID %d", slot.name, timeout, record.pid)
                process = get_process(record.pid)
                if process is not None:
                    terminate(process, self.config.stop_timeout, self.config.kill_timeout)
                slot.pid_file.remove()
                raise HealthCheckTimeout(slot.name, timeout)
            time.sleep(_READY_POLL_INTERVAL_S)
            self._ensure_alive(slot, record)
        return record

    def terminate_slot(self, slot: ProcessSlot) -> PidRecord | None:
        """Stop the process of ``slot``. Caller holds :meth:`lock`.

        Returns:
            The record of the stopped process, or None if nothing was running.
        """
        record, liveness = self.current(slot)
        if record is None or liveness is not Liveness.ALIVE:
            return None

        process = get_process(record.pid)
        if process is not None:
            logger.info("Sending SIGTERM to %s (PID %d)", slot.name, record.pid)
            if not terminate(process, self.config.stop_timeout, self.config.kill_timeout):
                raise ProcessStopFailure(slot.name, record.pid)
        slot.pid_file.remove()
        return record

    def _ensure_alive(self, slot: ProcessSlot, record: PidRecord) -> None:
        if probe(record) is Liveness.ALIVE:
            return
        slot.pid_file.remove()
        output = tail(slot.log_path)
        reason = "process exited during startup"
        if output:
            reason += f": {output.splitlines()[-1]}"
        raise ProcessSpawnFailure(slot.name, reason, slot.log_path)

    def _refresh_identity(self, slot: ProcessSlot, record: PidRecord) -> PidRecord:
        # Interpreters and shebang scripts re-exec; record what the OS reports.
        process = get_process(record.pid)
        if process is None:
            return record
        try:
            cmdline = process.cmdline()
        except psutil.Error:
            return record
        if cmdline and cmdline != record.command:
            record.command = cmdline
            slot.pid_file.write(record)
        return record

    # ------------------------------------------------------------------
    # Engine API
    # ------------------------------------------------------------------
    def start(
        self,
        engine_type: str,
        model_name: str | None = None,
        options: EngineOptions | None = None,
    ) -> SupervisorResult:
        """Start an engine instance; idempotent per (engine_type, model_name).

        Raises:
            UnknownEngineType: ``engine_type`` is not catalogued.
            ModelNotFound: ``model_name`` has no storage path.
            ProcessSpawnFailure: The process could not be started.
            HealthCheckTimeout: The process never became ready.
        """
        backend = self.backends.get(engine_type)
        opts = self.config.engine_options(engine_type).merged(options)
        model_path = self.resolve_model(backend, model_name) if model_name else None
        slot = self.engine_slot(engine_type, model_name)

        logger.info("Starting AI engine: %s", slot.name)
        with self.lock(slot):
            record, liveness = self.current(slot)
            if record is not None and liveness is Liveness.ALIVE:
                logger.warning("%s is already running (PID: %d)", slot.name, record.pid)
                self.engine_registry.record_state(
                    slot.name, engine_type, model_name, EngineStatus.RUNNING, record.pid
                )
                return SupervisorResult(
                    name=slot.name,
                    engine_type=engine_type,
                    model_name=model_name,
                    status=EngineStatus.RUNNING,
                    pid=record.pid,
                    note=Note.ALREADY_RUNNING,
                    log_path=record.log_path,
                )

            command = backend.build_command(model_name, model_path, opts)
            env = backend.build_environment(opts)
            record = self.launch(
                slot, command, env=env, engine_type=engine_type, model_name=model_name
            )
            self.engine_registry.record_state(
                slot.name, engine_type, model_name, EngineStatus.STARTING, record.pid
            )
            try:
                record = self.confirm_started(
                    slot,
                    record,
                    ready=lambda: backend.check_health(record, opts),
                    timeout=opts.startup_timeout,
                )
            except (ProcessSpawnFailure, HealthCheckTimeout):
                self.engine_registry.record_state(
                    slot.name, engine_type, model_name, EngineStatus.CRASHED
                )
                raise
            self.engine_registry.record_state(
                slot.name, engine_type, model_name, EngineStatus.RUNNING, record.pid
            )

        logger.info("AI engine %s started (PID: %d)", slot.name, record.pid)
        self._advisory_sample()
        return SupervisorResult(
            name=slot.name,
            engine_type=engine_type,
            model_name=model_name,
            status=EngineStatus.RUNNING,
            pid=record.pid,
            log_path=record.log_path,
        )

    def stop(self, engine_type: str, model_name: str | None = None) -> list[SupervisorResult]:
        """Stop one instance, or every instance of ``engine_type`` without a model.

        Stopping something that is not running succeeds with
        :attr:`Note.NOT_RUNNING`.
        """
        self.backends.get(engine_type)
        targets = self._targets(engine_type, model_name)

        results: list[SupervisorResult] = []
        for name, model in targets:
            slot = self.engine_slot(engine_type, model)
            logger.info("Stopping AI engine: %s", name)
            with self.lock(slot):
                record = self.terminate_slot(slot)
                if record is not None or name in self.engine_registry:
                    self.engine_registry.record_state(name, engine_type, model, EngineStatus.STOPPED)
            if record is None:
                logger.info("AI engine %s is not running", name)
            results.append(
                SupervisorResult(
                    name=name,
                    engine_type=engine_type,
                    model_name=model,
                    status=EngineStatus.STOPPED,
                    pid=record.pid if record else None,
                    note=None if record else Note.NOT_RUNNING,
                    log_path=str(slot.log_path),
                )
            )
        return results

    def health_check(self, engine_type: str, model_name: str | None = None) -> list[HealthReport]:
        """Check one instance, or every known instance of ``engine_type``.

        A PID file naming a dead or reused process yields ``crashed`` and is
        deleted. With no instance at all a single ``stopped`` report is
        returned.
        """
        backend = self.backends.get(engine_type)
        opts = self.config.engine_options(engine_type)
        return [
            self._check_instance(backend, opts, engine_type, model)
            for _, model in self._targets(engine_type, model_name)
        ]

    def list_instances(self) -> list[EngineInstance]:
        """Every engine instance with a PID file, verified without side effects."""
        instances: list[EngineInstance] = []
        for path in sorted(Path(self.config.pid_dir).glob("*.pid")):
            record = PidFile(path).read()
            if record is None:
                continue
            engine_type = record.engine_type or record.name
            if not self.backends.contains(engine_type):
                continue
            alive = probe(record) is Liveness.ALIVE
            instances.append(
                EngineInstance(
                    engine_type=engine_type,
                    model_name=record.model_name,
                    pid=record.pid,
                    start_time=record.started_at or None,
                    status=EngineStatus.RUNNING if alive else EngineStatus.CRASHED,
                    log_path=record.log_path,
                )
            )
        return instances

    def resolve_model(self, backend: EngineBackend, model_name: str) -> Path:
        """Storage path of ``model_name``; raises ModelNotFound."""
        model_dir = Path(self.config.model_dir)
        path = backend.resolve_model_path(model_dir, model_name)
        if path is None:
            logger.error("Model not found: %s", model_dir / model_name)
            raise ModelNotFound(model_name, model_dir / model_name)
        return path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _targets(self, engine_type: str, model_name: str | None) -> list[tuple[str, str | None]]:
        """Instances addressed by ``(engine_type, model_name)``.

        With a model this is exactly one instance; without one it is every
        instance of the engine type known from PID files or the registry.
        """
        if model_name is not None:
            return [(instance_name(engine_type, model_name), model_name)]

        known: dict[str, str | None] = {}
        for path in sorted(Path(self.config.pid_dir).glob("*.pid")):
            record = PidFile(path).read()
            if record is None:
                if path.stem == engine_type:
                    known[path.stem] = None
                continue
            if record.engine_type == engine_type or (
                record.engine_type is None and path.stem == engine_type
            ):
                known[path.stem] = record.model_name
        for state in self.engine_registry.list_records(engine_type=engine_type):
            known.setdefault(state.name, state.model_name)
        if not known:
            known[instance_name(engine_type)] = None
        return sorted(known.items())

    def _check_instance(
        self,
        backend: EngineBackend,
        opts: EngineOptions,
        engine_type: str,
        model_name: str | None,
    ) -> HealthReport:
        slot = self.engine_slot(engine_type, model_name)
        report = HealthReport(
            name=slot.name,
            engine_type=engine_type,
            model_name=model_name,
            status=EngineStatus.STOPPED,
        )

        with self.lock(slot):
            record, liveness = self.current(slot)
            state = self.engine_registry.get(slot.name)

            if record is None:
                if state is not None and state.status in {
                    EngineStatus.RUNNING.value,
                    EngineStatus.STARTING.value,
                }:
                    logger.warning("%s recorded as %s but has no PID file", slot.name, state.status)
                    self.engine_registry.record_state(
                        slot.name, engine_type, model_name, EngineStatus.CRASHED
                    )
                    report.status = EngineStatus.CRASHED
                    report.note = "missing PID file"
                elif state is not None and state.status == EngineStatus.CRASHED.value:
                    report.status = EngineStatus.CRASHED
                return report

            report.pid = record.pid
            if liveness is not Liveness.ALIVE:
                logger.warning("AI engine %s crashed (PID %d %s)", slot.name, record.pid, liveness.value)
                self.engine_registry.record_state(
                    slot.name, engine_type, model_name, EngineStatus.CRASHED
                )
                report.status = EngineStatus.CRASHED
                report.note = f"process {liveness.value}"
                return report

            report.uptime = self._uptime(record)
            report.healthy = backend.check_health(record, opts)
            startup_timeout = opts.startup_timeout or self.config.startup_timeout
            if not report.healthy and report.uptime < startup_timeout:
                report.status = EngineStatus.STARTING
            else:
                report.status = EngineStatus.RUNNING
                if not report.healthy:
                    report.note = "health endpoint not responding"
            if state is None or state.status != report.status.value or state.pid != record.pid:
                self.engine_registry.record_state(
                    slot.name, engine_type, model_name, report.status, record.pid
                )

        if self.monitor is not None:
            report.usage = self.monitor.process_usage(record.pid)
        return report

    @staticmethod
    def _uptime(record: PidRecord) -> float:
        if record.started_at:
            return record.uptime()
        process = get_process(record.pid)
        if process is None:
            return 0.0
        try:
            return max(time.time() - process.create_time(), 0.0)
        except psutil.Error:
            return 0.0

    def _advisory_sample(self) -> None:
        if self.monitor is None:
            return
        try:
            self.monitor.log_sample()
        except Exception as e:
            logger.debug("Resource sampling failed: %s", e)


__all__ = [
    "EngineInstance",
    "EngineStatus",
    "HealthReport",
    "Note",
    "ProcessSlot",
    "ProcessSupervisor",
    "SupervisorResult",
    "instance_name",
]
