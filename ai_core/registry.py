# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Durable JSON registries for models, engine instances and plugins.

Every mutation is a locked read-modify-write:

1. take an exclusive ``flock`` on ``<document>.lock``
2. re-read the document from disk
3. apply the change
4. write a temporary file in the same directory, fsync, ``os.replace``

so a crash mid-write leaves either the previous or the new document, and
concurrent invocations never lose each other's updates. A document that
cannot be parsed is moved aside as ``<document>.corrupt-<timestamp>`` and
replaced by an empty one.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any, ClassVar, Generic, TypeVar

from .errors import CorruptRegistry, RecordNotFound
from .locking import FileLock

logger = logging.getLogger(__name__)

REGISTRY_VERSION = "1.0"


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------
@dataclass
class ModelRecord:
    """A model known to the AI core. Never deleted, only toggled."""

    name: str
    engine_type: str
    storage_path: str
    loaded: bool = False
    load_timestamp: float | None = None
    unload_timestamp: float | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine": self.engine_type,
            "path": self.storage_path,
            "loaded": self.loaded,
            "timestamp": self.timestamp,
            "loaded_at": self.load_timestamp,
            "unloaded_at": self.unload_timestamp,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> ModelRecord:
        return cls(
            name=name,
            engine_type=data["engine"],
            storage_path=data["path"],
            loaded=bool(data.get("loaded", False)),
            load_timestamp=data.get("loaded_at"),
            unload_timestamp=data.get("unloaded_at"),
            timestamp=data.get("timestamp", 0.0),
        )

    def apply_status(self, status: Any, now: float) -> None:
        self.loaded = bool(status)
        if self.loaded:
            self.load_timestamp = now
        else:
            self.unload_timestamp = now


@dataclass
class EngineStateRecord:
    """Last known state of one engine instance."""

    name: str
    engine_type: str
    model_name: str | None = None
    status: str = "stopped"
    pid: int | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine": self.engine_type,
            "model": self.model_name,
            "status": self.status,
            "pid": self.pid,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> EngineStateRecord:
        return cls(
            name=name,
            engine_type=data["engine"],
            model_name=data.get("model"),
            status=data.get("status", "stopped"),
            pid=data.get("pid"),
            timestamp=data.get("timestamp", 0.0),
        )

    def apply_status(self, status: Any, now: float) -> None:
        self.status = str(getattr(status, "value", status))
        if self.status != "running":
            self.pid = None


@dataclass
class PluginRecord:
    """An installed plugin. Permissions are descriptive metadata only."""

    name: str
    version: str = "latest"
    permissions: set[str] = field(default_factory=set)
    entry_point: str = "main.py"
    status: str = "installed"
    pid: int | None = None
    installed_at: float = field(default_factory=time.time)
    path: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "permissions": sorted(self.permissions),
            "entry_point": self.entry_point,
            "status": self.status,
            "pid": self.pid,
            "installed_at": self.installed_at,
            "path": self.path,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> PluginRecord:
        return cls(
            name=name,
            version=data.get("version", "latest"),
            permissions=set(data.get("permissions", [])),
            entry_point=data.get("entry_point", "main.py"),
            status=data.get("status", "installed"),
            pid=data.get("pid"),
            installed_at=data.get("installed_at", 0.0),
            path=data.get("path"),
            timestamp=data.get("timestamp", 0.0),
        )

    def apply_status(self, status: Any, now: float) -> None:
        self.status = str(getattr(status, "value", status))
        if self.status != "active":
            self.pid = None


R = TypeVar("R", ModelRecord, EngineStateRecord, PluginRecord)


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------
class JsonRegistry(Generic[R]):
    """One JSON document holding one section of named records.

    Use as a context manager, or call :meth:`open` / :meth:`close`
    explicitly.
    """

    section: ClassVar[str]
    record_type: ClassVar[type]

    def __init__(self, path: Path | str, *, lock_timeout: float = 10.0) -> None:
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._lock_path = self.path.with_name(self.path.name + ".lock")
        self._open = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> JsonRegistry[R]:
        """Create the directory and document if needed, recovering corruption."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._locked():
            if not self.path.exists():
                self._write(self._empty())
                logger.info("Initialized registry %s", self.path)
            else:
                self._load()
        self._open = True
        return self

    def flush(self) -> None:
        """Persist the directory entry of the last rename."""
        if not self.path.parent.exists():
            return
        fd = os.open(self.path.parent, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def close(self) -> None:
        if self._open:
            self.flush()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self) -> JsonRegistry[R]:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def register(self, record: R) -> R:
        """Insert or replace ``record``."""
        record.timestamp = time.time()
        with self.transaction() as entries:
            entries[record.name] = record.to_dict()
        logger.debug("Registered %s record %s", self.section, record.name)
        return record

    def update_status(self, name: str, new_status: Any, **fields: Any) -> R:
        """Change the status of ``name``; extra ``fields`` are set verbatim.

        Raises:
            RecordNotFound: If no record named ``name`` exists.
        """
        with self.transaction() as entries:
            if name not in entries:
                raise RecordNotFound(self.section, name)
            record = self.record_type.from_dict(name, entries[name])
            now = time.time()
            record.apply_status(new_status, now)
            for key, value in fields.items():
                setattr(record, key, value)
            record.timestamp = now
            entries[name] = record.to_dict()
        logger.info("Updated %s registry: %s -> %s", self.section, name, new_status)
        return record

    def query(self, name: str) -> R:
        """Return the record named ``name``; raises RecordNotFound."""
        entries = self._snapshot()
        if name not in entries:
            raise RecordNotFound(self.section, name)
        return self.record_type.from_dict(name, entries[name])

    def get(self, name: str) -> R | None:
        entries = self._snapshot()
        if name not in entries:
            return None
        return self.record_type.from_dict(name, entries[name])

    def list_records(self, predicate: Callable[[R], bool] | None = None, **match: Any) -> list[R]:
        """Records sorted by name, filtered by ``predicate`` and attribute equality."""
        records = [self.record_type.from_dict(n, d) for n, d in sorted(self._snapshot().items())]
        if match:
            records = [r for r in records if all(getattr(r, k) == v for k, v in match.items())]
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return records

    def __contains__(self, name: str) -> bool:
        return name in self._snapshot()

    @contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        """Locked read-modify-write of this registry's section."""
        with self._locked():
            document = self._load()
            entries = document[self.section]
            yield entries
            self._write(document)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _locked(self) -> FileLock:
        return FileLock(self._lock_path, timeout=self.lock_timeout)

    def _empty(self) -> dict[str, Any]:
        return {"version": REGISTRY_VERSION, self.section: {}}

    def _snapshot(self) -> dict[str, Any]:
        # Readers see whole documents only (writers rename atomically).
        try:
            return self._parse(self.path.read_text())[self.section]
        except FileNotFoundError:
            return {}
        except CorruptRegistry:
            with self._locked():
                return self._load()[self.section]

    def _parse(self, text: str) -> dict[str, Any]:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptRegistry(self.path, str(exc)) from exc
        if not isinstance(document, dict):
            raise CorruptRegistry(self.path, "top level is not an object")
        entries = document.setdefault(self.section, {})
        if not isinstance(entries, dict):
            raise CorruptRegistry(self.path, f"'{self.section}' is not an object")
        for name, data in entries.items():
            try:
                self.record_type.from_dict(name, data)
            except (KeyError, TypeError, AttributeError) as exc:
                raise CorruptRegistry(self.path, f"invalid record '{name}': {exc!r}") from exc
        document.setdefault("version", REGISTRY_VERSION)
        return document

    def _load(self) -> dict[str, Any]:
        """Read the document; caller holds the lock."""
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return self._empty()
        try:
            return self._parse(text)
        except CorruptRegistry as exc:
            backup = self._backup_corrupt()
            logger.error("%s; moved aside to %s and reinitialized", exc, backup)
            document = self._empty()
            self._write(document)
            return document

    def _backup_corrupt(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
        backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        os.replace(self.path, backup)
        return backup

    def _write(self, document: dict[str, Any]) -> None:
        """Atomically replace the document; caller holds the lock."""
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        try:
            with open(tmp, "w") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        self.flush()


class ModelRegistry(JsonRegistry[ModelRecord]):
    """``{"models": {name: {engine, path, loaded, timestamp}}}``"""

    section = "models"
    record_type = ModelRecord


class EngineStateRegistry(JsonRegistry[EngineStateRecord]):
    """``{"engines": {name: {status, timestamp}}}``"""

    section = "engines"
    record_type = EngineStateRecord

    def record_state(
        self,
        name: str,
        engine_type: str,
        model_name: str | None,
        status: Any,
        pid: int | None = None,
    ) -> EngineStateRecord:
        """Upsert the state of an engine instance."""
        record = EngineStateRecord(
            name=name,
            engine_type=engine_type,
            model_name=model_name,
            status=str(getattr(status, "value", status)),
            pid=pid,
        )
        return self.register(record)


class PluginRegistry(JsonRegistry[PluginRecord]):
    """``{"plugins": {name: {version, permissions, entry_point, status, pid}}}``"""

    section = "plugins"
    record_type = PluginRecord

    def remove(self, name: str) -> bool:
        with self.transaction() as entries:
            removed = entries.pop(name, None) is not None
        if removed:
            logger.info("Removed plugin record %s", name)
        return removed


__all__ = [
    "EngineStateRecord",
    "EngineStateRegistry",
    "JsonRegistry",
    "ModelRecord",
    "ModelRegistry",
    "PluginRecord",
    "PluginRegistry",
]
