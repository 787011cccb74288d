# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Exception taxonomy for the AI core.

``AlreadyRunning`` and ``NotRunning`` are not errors: they are reported as
:class:`ai_core.supervisor.Note` values on successful results.
"""

from __future__ import annotations

from pathlib import Path


class AICoreError(Exception):
    """Base exception for AI core errors."""

    exit_code: int = 1


class ConfigError(AICoreError):
    """Raised when a configuration file cannot be loaded."""

    exit_code = 2


class UnknownEngineType(AICoreError):
    """Raised when an engine type is not in the backend catalog."""

    def __init__(self, engine_type: str, available: list[str] | None = None):
        self.engine_type = engine_type
        self.available = sorted(available or [])
        message = f"Unknown AI engine type: {engine_type}"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class ModelNotFound(AICoreError):
    """Raised when a model's storage path does not exist."""

    def __init__(self, model_name: str, path: Path | str):
        self.model_name = model_name
        self.path = Path(path)
        super().__init__(f"Model not found: {model_name} (expected at {self.path})")


class ProcessSpawnFailure(AICoreError):
    """Raised when a worker process cannot be launched or dies while starting."""

    def __init__(self, name: str, reason: str, log_path: Path | None = None):
        self.name = name
        self.reason = reason
        self.log_path = log_path
        message = f"Failed to start {name}: {reason}"
        if log_path is not None:
            message += f" (see {log_path})"
        super().__init__(message)


class ProcessStopFailure(AICoreError):
    """Raised when a process survives both SIGTERM and SIGKILL."""

    def __init__(self, name: str, pid: int):
        self.name = name
        self.pid = pid
        super().__init__(f"Failed to stop {name} (PID {pid})")


class HealthCheckTimeout(AICoreError):
    """Raised when a started process never reports ready."""

    def __init__(self, name: str, timeout_seconds: float):
        self.name = name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{name} did not become healthy within {timeout_seconds:.1f}s")


class CorruptRegistry(AICoreError):
    """Raised when a registry document cannot be parsed."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Registry {path} is corrupt: {reason}")


class RecordNotFound(AICoreError, KeyError):
    """Raised when a registry lookup misses."""

    def __init__(self, section: str, name: str):
        self.section = section
        self.name = name
        AICoreError.__init__(self, f"No {section} record named '{name}'")

    def __str__(self) -> str:
        return str(self.args[0])


class LockTimeout(AICoreError):
    """Raised when an exclusive file lock cannot be acquired in time."""

    def __init__(self, path: Path, timeout_seconds: float):
        self.path = path
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timed out after {timeout_seconds:.1f}s waiting for lock {path}")


class ResourceThresholdExceeded(AICoreError):
    """Raised only in strict monitoring mode; violations are otherwise advisory."""

    exit_code = 3

    def __init__(self, violations: list):
        self.violations = list(violations)
        details = ", ".join(str(v) for v in self.violations)
        super().__init__(f"Resource thresholds exceeded: {details}")


class PluginNotFound(AICoreError):
    """Raised when a plugin is not installed."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Plugin not found: {name}")


class PluginAlreadyInstalled(AICoreError):
    """Raised when installing over an existing plugin."""

    def __init__(self, name: str, path: Path):
        self.name = name
        self.path = path
        super().__init__(f"Plugin {name} is already installed at {path}")


__all__ = [
    "AICoreError",
    "ConfigError",
    "CorruptRegistry",
    "HealthCheckTimeout",
    "LockTimeout",
    "ModelNotFound",
    "PluginAlreadyInstalled",
    "PluginNotFound",
    "ProcessSpawnFailure",
    "ProcessStopFailure",
    "RecordNotFound",
    "ResourceThresholdExceeded",
    "UnknownEngineType",
]
