# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Engine backend protocol.

Every engine type implements the same capability set:
1. Resolve where its model lives
2. Build the command and environment of its serving process
3. Check readiness of a running process
4. Declare its resource class (CPU-only or GPU-capable)

Backends are registered into :class:`~ai_core.backends.registry.BackendRegistry`
so new engine types never require touching the supervisor.
"""

from __future__ import annotations

import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from ..config import EngineOptions
    from ..process import PidRecord


class ResourceClass(str, Enum):
    """Hardware class an engine needs."""

    CPU = "cpu"
    GPU = "gpu"


@dataclass(frozen=True)
class BackendDescriptor:
    """Read-only description of a registered backend."""

    engine_type: str
    resource_class: ResourceClass
    description: str
    model_suffixes: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "engine_type": self.engine_type,
            "resource_class": self.resource_class.value,
            "description": self.description,
            "model_suffixes": list(self.model_suffixes),
        }


class EngineBackend(ABC):
    """Engine backend abstract base class."""

    engine_type: ClassVar[str]
    resource_class: ClassVar[ResourceClass] = ResourceClass.CPU
    description: ClassVar[str] = ""
    # Suffixes tried after the bare model name, e.g. "bert-base" -> "bert-base.onnx".
    model_suffixes: ClassVar[tuple[str, ...]] = ()

    def describe(self) -> BackendDescriptor:
        return BackendDescriptor(
            engine_type=self.engine_type,
            resource_class=self.resource_class,
            description=self.description,
            model_suffixes=self.model_suffixes,
        )

    def resolve_model_path(self, model_dir: Path, model_name: str) -> Path | None:
        """Return the existing storage path of ``model_name``, if any."""
        candidate = model_dir / model_name
        if candidate.exists():
            return candidate
        for suffix in self.model_suffixes:
            candidate = model_dir / f"{model_name}{suffix}"
            if candidate.exists():
                return candidate
        return None

    @abstractmethod
    def build_command(
        self,
        model_name: str | None,
        model_path: Path | None,
        options: EngineOptions,
    ) -> list[str]:
        """Command line of the serving process."""

    def build_environment(self, options: EngineOptions) -> dict[str, str]:
        env = os.environ.copy()
        if self.resource_class is ResourceClass.GPU and options.gpu_ids:
            env["CUDA_VISIBLE_DEVICES"] = ",".join(str(gpu) for gpu in options.gpu_ids)
        else:
            env.pop("CUDA_VISIBLE_DEVICES", None)
        env.update(options.env)
        return env

    def check_health(self, record: PidRecord, options: EngineOptions, timeout: float = 5.0) -> bool:
        """Readiness of a process already known to be alive.

        Engines without an HTTP port are healthy once alive.
        """
        if options.port is None:
            return True
        from .health import check_http_health

        return check_http_health(options.host, options.port, options.health_path, timeout)

    @staticmethod
    def render_command(
        template: list[str],
        *,
        engine_type: str,
        model_name: str | None,
        model_path: Path | None,
        options: EngineOptions,
    ) -> list[str]:
        values = {
            "python": sys.executable,
            "engine": engine_type,
            "model_name": model_name or "",
            "model_path": str(model_path) if model_path is not None else "",
            "host": options.host,
            "port": "" if options.port is None else str(options.port),
        }
        return [part.format(**values) for part in template]
