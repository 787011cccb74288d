# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Configuration types for the AI core.

Paths default to a single home directory (``$AI_CORE_HOME`` or
``~/.mobileops``) so every component can be pointed at a temporary
directory in tests.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

ENV_HOME = "AI_CORE_HOME"
ENV_CONFIG = "AI_CORE_CONFIG"
DEFAULT_HOME = "~/.mobileops"

_DERIVED_DIRS: dict[str, str] = {
    "state_dir": "state",
    "pid_dir": "run",
    "log_dir": "log",
    "model_dir": "models",
    "plugin_dir": "plugins",
    "plugin_run_dir": "run/plugins",
}


@dataclass
class ResourceLimits:
    """Advisory utilisation thresholds, in percent."""

    cpu_pct: float = 80.0
    mem_pct: float = 85.0
    gpu_pct: float = 90.0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {"cpu_pct": self.cpu_pct, "mem_pct": self.mem_pct, "gpu_pct": self.gpu_pct}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceLimits:
        """Deserialize from dictionary."""
        try:
            return cls(**{k: float(v) for k, v in data.items()})
        except (AttributeError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid resource limits: {exc}") from exc


@dataclass
class EngineOptions:
    """Per-engine launch options.

    Attributes:
        command: Command template replacing the backend default. Items may
            use ``{python}``, ``{engine}``, ``{model_path}``, ``{model_name}``,
            ``{host}`` and ``{port}`` placeholders.
        args: Extra arguments appended to the command.
        env: Environment overrides for the spawned process.
        gpu_ids: GPUs exposed through ``CUDA_VISIBLE_DEVICES``.
        host: Address the engine binds to.
        port: HTTP port; when set, readiness is probed over HTTP.
        health_path: Path probed when ``port`` is set.
        startup_timeout: Overrides the global startup timeout.
    """

    command: list[str] | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    gpu_ids: list[int] = field(default_factory=list)
    host: str = "127.0.0.1"
    port: int | None = None
    health_path: str = "/health"
    startup_timeout: float | None = None
    explicit: frozenset[str] = field(default_factory=frozenset, init=False, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "command": list(self.command) if self.command is not None else None,
            "args": list(self.args),
            "env": dict(self.env),
            "gpu_ids": list(self.gpu_ids),
            "host": self.host,
            "port": self.port,
            "health_path": self.health_path,
            "startup_timeout": self.startup_timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineOptions:
        """Deserialize from dictionary.

        The keys present in ``data`` are remembered so that :meth:`merged`
        can tell an explicit ``port: null`` from an absent one.
        """
        try:
            data = dict(data)
            if "env" in data:
                data["env"] = {str(k): str(v) for k, v in (data["env"] or {}).items()}
            if "args" in data:
                data["args"] = [str(a) for a in data["args"] or []]
            options = cls(**data)
        except (AttributeError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid engine options: {exc}") from exc
        options.explicit = frozenset(data)
        return options

    def merged(self, override: EngineOptions | None) -> EngineOptions:
        """Return a copy with fields from ``override`` layered on top.

        A field of ``override`` wins when it was given explicitly (see
        :meth:`from_dict`) or differs from the default; ``env`` is merged
        key by key.
        """
        if override is None:
            return EngineOptions.from_dict(self.to_dict())
        defaults = EngineOptions()
        merged = self.to_dict()
        for key, value in override.to_dict().items():
            if key == "env":
                merged["env"] = {**merged["env"], **value}
            elif key in override.explicit or value != getattr(defaults, key):
                merged[key] = value
        return EngineOptions.from_dict(merged)


@dataclass
class AICoreConfig:
    """Top-level AI core configuration.

    Attributes:
        home: Base directory; unset paths are derived from it.
        state_dir: Registry documents.
        pid_dir: Engine PID and lock files.
        log_dir: Engine logs and the manager log.
        model_dir: Model storage, ``<model_dir>/<model_name>``.
        plugin_dir: Installed plugin bundles.
        plugin_run_dir: Plugin PID, lock and log files.
        stop_timeout: Grace period between SIGTERM and SIGKILL (seconds).
        kill_timeout: Wait after SIGKILL (seconds).
        startup_grace: Delay before the post-spawn liveness check (seconds).
        startup_timeout: Upper bound for HTTP readiness polling (seconds).
        lock_timeout: Upper bound for acquiring file locks (seconds).
        plugin_inactivity_timeout: Log silence after which a plugin is idle.
        limits: Advisory resource thresholds.
        engines: Per-engine launch options keyed by engine type.
    """

    home: Path = field(default_factory=lambda: Path(os.getenv(ENV_HOME, DEFAULT_HOME)).expanduser())
    state_dir: Path | None = None
    pid_dir: Path | None = None
    log_dir: Path | None = None
    model_dir: Path | None = None
    plugin_dir: Path | None = None
    plugin_run_dir: Path | None = None
    stop_timeout: float = 3.0
    kill_timeout: float = 5.0
    startup_grace: float = 0.5
    startup_timeout: float = 60.0
    lock_timeout: float = 10.0
    plugin_inactivity_timeout: float = 300.0
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    engines: dict[str, EngineOptions] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.home = Path(self.home).expanduser()
        for key, default in _DERIVED_DIRS.items():
            value = getattr(self, key)
            setattr(self, key, self.home / default if value is None else Path(value).expanduser())

    def engine_options(self, engine_type: str) -> EngineOptions:
        """Return configured options for ``engine_type`` (defaults if absent)."""
        return self.engines.get(engine_type, EngineOptions())

    def ensure_directories(self) -> None:
        """Create every managed directory."""
        for path in (
            self.state_dir,
            self.pid_dir,
            self.log_dir,
            self.model_dir,
            self.plugin_dir,
            self.plugin_run_dir,
        ):
            Path(path).mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "home": str(self.home),
            "state_dir": str(self.state_dir),
            "pid_dir": str(self.pid_dir),
            "log_dir": str(self.log_dir),
            "model_dir": str(self.model_dir),
            "plugin_dir": str(self.plugin_dir),
            "plugin_run_dir": str(self.plugin_run_dir),
            "stop_timeout": self.stop_timeout,
            "kill_timeout": self.kill_timeout,
            "startup_grace": self.startup_grace,
            "startup_timeout": self.startup_timeout,
            "lock_timeout": self.lock_timeout,
            "plugin_inactivity_timeout": self.plugin_inactivity_timeout,
            "limits": self.limits.to_dict(),
            "engines": {name: opts.to_dict() for name, opts in self.engines.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AICoreConfig:
        """Deserialize from dictionary."""
        data = data.copy()
        try:
            if "limits" in data:
                data["limits"] = ResourceLimits.from_dict(data["limits"] or {})
            if "engines" in data:
                data["engines"] = {
                    str(name): EngineOptions.from_dict(opts or {})
                    for name, opts in (data["engines"] or {}).items()
                }
            return cls(**data)
        except (AttributeError, TypeError) as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    @classmethod
    def load_yaml(cls, path: str | Path) -> AICoreConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Loaded AICoreConfig.
        """
        data = _read_yaml(path)
        return cls.from_dict(data)

    def save_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)

    @classmethod
    def discover(cls, path: str | Path | None = None, home: str | Path | None = None) -> AICoreConfig:
        """Resolve configuration the way the CLI does.

        Order: explicit ``path``, ``$AI_CORE_CONFIG``, ``<home>/config.yaml``,
        then built-in defaults. ``home`` overrides ``$AI_CORE_HOME``.
        """
        candidate = path or os.getenv(ENV_CONFIG)
        if candidate:
            config = cls.load_yaml(candidate)
            if home is not None:
                config = cls.from_dict({**_relative_paths(config), "home": home})
            return config

        base = Path(home or os.getenv(ENV_HOME, DEFAULT_HOME)).expanduser()
        default_file = base / "config.yaml"
        if default_file.is_file():
            data = _read_yaml(default_file)
            data.setdefault("home", str(base))
            return cls.from_dict(data)
        return cls(home=base)


def load_engine_options(path: str | Path) -> EngineOptions:
    """Load an :class:`EngineOptions` override file (the ``start`` config argument)."""
    return EngineOptions.from_dict(_read_yaml(path))


def _read_yaml(path: str | Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse configuration {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a mapping")
    return data


def _relative_paths(config: AICoreConfig) -> dict[str, Any]:
    # Drop derived paths so they are recomputed under a new home.
    data = config.to_dict()
    for key, default in _DERIVED_DIRS.items():
        if Path(data[key]) == config.home / default:
            data.pop(key)
    return data


__all__ = [
    "AICoreConfig",
    "EngineOptions",
    "ResourceLimits",
    "load_engine_options",
]
