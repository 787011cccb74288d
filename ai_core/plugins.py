# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Install, run and remove plugin processes.

Plugins reuse the supervisor's PID-file lifecycle, keyed by plugin name in
``plugin_run_dir``. A plugin bundle is opaque: it is copied or unpacked into
``<plugin_dir>/<name>`` and its entry point is executed, nothing else is
parsed. Permission strings are recorded as metadata only; no capability
enforcement takes place.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import sys
import tempfile
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .config import AICoreConfig
from .errors import AICoreError, PluginAlreadyInstalled, PluginNotFound
from .process import Liveness, PidRecord
from .registry import PluginRecord, PluginRegistry
from .supervisor import Note, ProcessSlot, ProcessSupervisor

logger = logging.getLogger(__name__)

PLUGIN_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")
MANIFEST_NAME = "plugin.json"
_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar", ".zip")

PLUGIN_TEMPLATE = '''#!/usr/bin/env python3
"""Plugin {name} ({version})."""

import signal
import sys
import time

running = True


def _stop(signum, frame):
    global running
    running = False


def main():
    signal.signal(signal.SIGTERM, _stop)
    print("Plugin {name} started", flush=True)
    while running:
        time.sleep(1)
    print("Plugin {name} stopping", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
'''


class PluginState(str, Enum):
    """Registry states of a plugin."""

    INSTALLED = "installed"
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class PluginStatus:
    """Live view of one plugin."""

    name: str
    version: str
    state: PluginState
    pid: int | None = None
    uptime: float = 0.0
    idle: bool = False
    permissions: list[str] = field(default_factory=list)
    note: str | None = None

    @property
    def running(self) -> bool:
        return self.state is PluginState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "status": self.state.value,
            "pid": self.pid,
            "uptime": round(self.uptime, 1),
            "idle": self.idle,
            "permissions": self.permissions,
            "note": self.note,
        }


class PluginLifecycleManager:
    """Plugin install / uninstall plus start, stop and status via PID files."""

    def __init__(
        self,
        config: AICoreConfig,
        supervisor: ProcessSupervisor,
        registry: PluginRegistry | None = None,
    ) -> None:
        self.config = config
        self.supervisor = supervisor
        self.registry = registry or PluginRegistry(
            Path(config.state_dir) / "plugins.json", lock_timeout=config.lock_timeout
        )

    # ------------------------------------------------------------------
    # Install / uninstall
    # ------------------------------------------------------------------
    def install(
        self,
        source: Path | str | None = None,
        *,
        name: str | None = None,
        version: str = "latest",
        permissions: Iterable[str] = (),
        entry_point: str = "main.py",
    ) -> PluginRecord:
        """Materialise a plugin bundle and register it as ``installed``.

        Args:
            source: Directory or archive holding the bundle. Without a source
                a template plugin is generated.
            name: Plugin name; defaults to the bundle's base name.
            version: Version recorded in the manifest.
            permissions: Capability strings, stored as metadata only.
            entry_point: Executable relative to the plugin directory.

        Raises:
            PluginAlreadyInstalled: A plugin with this name exists.
            AICoreError: The name is invalid or the entry point is missing.
        """
        source_path = Path(source).expanduser() if source is not None else None
        if source_path is not None and not source_path.exists():
            raise AICoreError(f"Plugin source not found: {source_path}")
        name = name or _bundle_name(source_path)
        _validate_name(name)

        plugin_dir = Path(self.config.plugin_dir)
        target = plugin_dir / name
        with self.supervisor.lock(self.slot(name)):
            if target.exists() or name in self.registry:
                raise PluginAlreadyInstalled(name, target)

            logger.info("Installing plugin: %s (%s)", name, version)
            plugin_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{name}.", dir=plugin_dir))
            try:
                bundle = self._materialize(source_path, staging, name, version)
                if not (bundle / entry_point).is_file():
                    raise AICoreError(f"Plugin {name} has no entry point {entry_point}")
                installed_at = time.time()
                manifest = {
                    "name": name,
                    "version": version,
                    "description": f"MobileOps plugin: {name}",
                    "entry_point": entry_point,
                    "permissions": sorted(set(permissions)),
                    "installed_at": datetime.fromtimestamp(installed_at, timezone.utc).isoformat(),
                }
                (bundle / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2) + "\n")
                bundle.rename(target)
            finally:
                shutil.rmtree(staging, ignore_errors=True)

            record = PluginRecord(
                name=name,
                version=version,
                permissions=set(permissions),
                entry_point=entry_point,
                status=PluginState.INSTALLED.value,
                installed_at=installed_at,
                path=str(target),
            )
            self.registry.register(record)
        logger.info("Plugin %s installed successfully", name)
        return record

    def uninstall(self, name: str) -> None:
        """Stop the plugin, then delete its directory and record."""
        record = self.registry.get(name)
        target = Path(self.config.plugin_dir) / name
        if record is None and not target.exists():
            raise PluginNotFound(name)

        logger.info("Uninstalling plugin: %s", name)
        self._stop_slot(name)
        if target.exists():
            shutil.rmtree(target)
            logger.info("Plugin files removed")
        self.registry.remove(name)
        for suffix in (".log", ".lock"):
            (Path(self.config.plugin_run_dir) / f"{name}{suffix}").unlink(missing_ok=True)
        logger.info("Plugin %s uninstalled successfully", name)

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------
    def start(self, name: str) -> PluginStatus:
        """Start the plugin's entry point; idempotent."""
        record = self._require(name)
        slot = self.slot(name)
        plugin_path = Path(record.path or Path(self.config.plugin_dir) / name)

        logger.info("Starting plugin: %s", name)
        with self.supervisor.lock(slot):
            current, liveness = self.supervisor.current(slot)
            if current is not None and liveness is Liveness.ALIVE:
                logger.warning("Plugin %s is already running (PID: %d)", name, current.pid)
                return self._status_from(
                    record,
                    PluginState.ACTIVE,
                    current.pid,
                    current.uptime(),
                    Note.ALREADY_RUNNING.value,
                )

            command = _entry_command(plugin_path, record.entry_point)
            pid_record = self.supervisor.launch(slot, command, cwd=plugin_path)
            try:
                pid_record = self.supervisor.confirm_started(slot, pid_record)
            except AICoreError:
                self.registry.update_status(name, PluginState.INACTIVE)
                raise
            self.registry.update_status(name, PluginState.ACTIVE, pid=pid_record.pid)

        logger.info("Plugin %s started (PID: %d)", name, pid_record.pid)
        return self._status_from(record, PluginState.ACTIVE, pid_record.pid)

    def stop(self, name: str) -> PluginStatus:
        """Stop the plugin; succeeds with a NotRunning note if it is not running."""
        record = self._require(name)
        logger.info("Stopping plugin: %s", name)
        stopped = self._stop_slot(name)
        if stopped is None:
            logger.warning("Plugin %s is not running", name)
        logger.info("Plugin %s stopped", name)
        return self._status_from(
            record,
            PluginState.INACTIVE,
            stopped.pid if stopped else None,
            note=None if stopped else Note.NOT_RUNNING.value,
        )

    def status(self, name: str) -> PluginStatus:
        """Liveness of the plugin; a stale PID file is removed."""
        record = self._require(name)
        slot = self.slot(name)
        with self.supervisor.lock(slot):
            current, liveness = self.supervisor.current(slot)
            if current is None or liveness is not Liveness.ALIVE:
                note = None
                if current is not None:
                    note = f"crashed (PID {current.pid} {liveness.value})"
                    logger.warning("Plugin %s is not running; removed stale PID file", name)
                state = PluginState(record.status)
                if state is PluginState.ACTIVE:
                    self.registry.update_status(name, PluginState.INACTIVE)
                    state = PluginState.INACTIVE
                return self._status_from(record, state, note=note)

        status = self._status_from(record, PluginState.ACTIVE, current.pid, current.uptime())
        status.idle = self._is_idle(slot)
        if status.idle:
            status.note = "no log activity"
        return status

    def list_plugins(self) -> list[PluginRecord]:
        return self.registry.list_records()

    def monitor(self) -> list[PluginStatus]:
        """Status of every installed plugin."""
        logger.info("Monitoring all plugins")
        statuses = [self.status(record.name) for record in self.registry.list_records()]
        for status in statuses:
            if status.idle:
                logger.warning("Plugin %s appears inactive (no recent log activity)", status.name)
        return statuses

    def slot(self, name: str) -> ProcessSlot:
        return ProcessSlot.in_dir(Path(self.config.plugin_run_dir), name)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, name: str) -> PluginRecord:
        record = self.registry.get(name)
        if record is None:
            raise PluginNotFound(name)
        return record

    def _stop_slot(self, name: str) -> PidRecord | None:
        slot = self.slot(name)
        with self.supervisor.lock(slot):
            stopped = self.supervisor.terminate_slot(slot)
            if name in self.registry:
                self.registry.update_status(name, PluginState.INACTIVE)
        return stopped

    def _is_idle(self, slot: ProcessSlot) -> bool:
        try:
            last_activity = slot.log_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return time.time() - last_activity > self.config.plugin_inactivity_timeout

    @staticmethod
    def _materialize(source: Path | None, staging: Path, name: str, version: str) -> Path:
        bundle = staging / "bundle"
        if source is None:
            bundle.mkdir()
            entry = bundle / "main.py"
            entry.write_text(PLUGIN_TEMPLATE.format(name=name, version=version))
            entry.chmod(0o755)
        elif source.is_dir():
            shutil.copytree(source, bundle)
        else:
            try:
                shutil.unpack_archive(str(source), str(bundle))
            except (shutil.ReadError, ValueError) as exc:
                raise AICoreError(f"Cannot unpack plugin bundle {source}: {exc}") from exc
            entries = list(bundle.iterdir())
            # Hoist a single top-level directory.
            if len(entries) == 1 and entries[0].is_dir():
                inner = entries[0].rename(staging / "inner")
                bundle.rmdir()
                inner.rename(bundle)
        return bundle

    @staticmethod
    def _status_from(
        record: PluginRecord,
        state: PluginState,
        pid: int | None = None,
        uptime: float = 0.0,
        note: str | None = None,
    ) -> PluginStatus:
        return PluginStatus(
            name=record.name,
            version=record.version,
            state=state,
            pid=pid,
            uptime=uptime,
            permissions=sorted(record.permissions),
            note=note,
        )


def _entry_command(plugin_path: Path, entry_point: str) -> list[str]:
    if entry_point.endswith(".py"):
        return [sys.executable, entry_point]
    return [str(plugin_path / entry_point)]


def _bundle_name(source: Path | None) -> str:
    if source is None:
        raise AICoreError("A plugin name is required when no source is given")
    name = source.name
    for suffix in _ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def _validate_name(name: str) -> None:
    if not PLUGIN_NAME_RE.match(name):
        raise AICoreError(f"Invalid plugin name: {name!r}")


__all__ = [
    "PluginLifecycleManager",
    "PluginState",
    "PluginStatus",
]
