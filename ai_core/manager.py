# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""AI core manager: one object wiring registries, supervisor and monitor.

Every command invocation builds an :class:`AICoreManager` from an
:class:`~ai_core.config.AICoreConfig`, opens it, runs one operation and
closes it. Tests build it over a temporary directory.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Any

from .backends import BackendDescriptor, BackendRegistry
from .config import AICoreConfig, EngineOptions
from .errors import ResourceThresholdExceeded
from .plugins import PluginLifecycleManager
from .registry import EngineStateRegistry, ModelRecord, ModelRegistry, PluginRegistry
from .resource_monitor import ResourceMonitor, ResourceSample, ThresholdViolation
from .supervisor import EngineStatus, HealthReport, ProcessSupervisor, SupervisorResult, instance_name

logger = logging.getLogger(__name__)


@dataclass
class StatusReport:
    """Aggregated view returned by :meth:`AICoreManager.status`."""

    engines: list[HealthReport] = field(default_factory=list)
    models: list[ModelRecord] = field(default_factory=list)
    orphaned_models: list[str] = field(default_factory=list)
    sample: ResourceSample | None = None
    violations: list[ThresholdViolation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "engines": [report.to_dict() for report in self.engines],
            "models": [{"name": m.name, **m.to_dict()} for m in self.models],
            "orphaned_models": self.orphaned_models,
            "resources": self.sample.to_dict() if self.sample else None,
            "violations": [str(v) for v in self.violations],
        }


class AICoreManager:
    """Facade behind the CLI verbs."""

    def __init__(
        self,
        config: AICoreConfig,
        *,
        monitor: ResourceMonitor | None = None,
        backends: type[BackendRegistry] = BackendRegistry,
    ) -> None:
        self.config = config
        self.backends = backends
        state_dir = Path(config.state_dir)
        self.models = ModelRegistry(state_dir / "models.json", lock_timeout=config.lock_timeout)
        self.engines = EngineStateRegistry(state_dir / "engines.json", lock_timeout=config.lock_timeout)
        self.plugin_registry = PluginRegistry(
            state_dir / "plugins.json", lock_timeout=config.lock_timeout
        )
        self.monitor = monitor or ResourceMonitor(config.limits)
        self.supervisor = ProcessSupervisor(
            config,
            engine_registry=self.engines,
            backends=backends,
            monitor=self.monitor,
        )
        self.plugins = PluginLifecycleManager(config, self.supervisor, self.plugin_registry)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> AICoreManager:
        self.config.ensure_directories()
        for registry in (self.models, self.engines, self.plugin_registry):
            registry.open()
        logger.debug("AI core manager opened (home=%s)", self.config.home)
        return self

    def close(self) -> None:
        for registry in (self.models, self.engines, self.plugin_registry):
            registry.close()
        self.monitor.close()

    def __enter__(self) -> AICoreManager:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Engines
    # ------------------------------------------------------------------
    def start(
        self,
        engine_type: str,
        model_name: str | None = None,
        options: EngineOptions | None = None,
    ) -> SupervisorResult:
        return self.supervisor.start(engine_type, model_name, options)

    def stop(self, engine_type: str, model_name: str | None = None) -> list[SupervisorResult]:
        return self.supervisor.stop(engine_type, model_name)

    def health(self, engine_type: str | None = None, model_name: str | None = None) -> list[HealthReport]:
        """Health of one engine type, or of every engine type with known instances."""
        if engine_type is not None:
            return self.supervisor.health_check(engine_type, model_name)
        reports: list[HealthReport] = []
        for known in self._known_engine_types():
            reports.extend(self.supervisor.health_check(known))
        return reports

    def list_engines(self) -> list[tuple[BackendDescriptor, int]]:
        """Catalogued backends with their number of running instances."""
        running: dict[str, int] = {}
        for instance in self.supervisor.list_instances():
            if instance.status is EngineStatus.RUNNING:
                running[instance.engine_type] = running.get(instance.engine_type, 0) + 1
        return [(d, running.get(d.engine_type, 0)) for d in self.backends.list_descriptors()]

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    def load(self, engine_type: str, model_name: str, options: EngineOptions | None = None) -> ModelRecord:
        """Start ``engine_type`` serving ``model_name`` and mark the model loaded.

        ``ModelNotFound`` is raised before any state changes.
        """
        logger.info("Loading AI model: %s", model_name)
        backend = self.backends.get(engine_type)
        path = self.supervisor.resolve_model(backend, model_name)
        self.supervisor.start(engine_type, model_name, options)

        previous = self.models.get(model_name)
        record = ModelRecord(
            name=model_name,
            engine_type=engine_type,
            storage_path=str(path),
            loaded=True,
            load_timestamp=time.time(),
            unload_timestamp=previous.unload_timestamp if previous else None,
        )
        self.models.register(record)
        logger.info("Model %s loaded successfully", model_name)
        return record

    def unload(self, model_name: str) -> ModelRecord:
        """Stop the model's engine instance and mark the model unloaded.

        Raises:
            RecordNotFound: The model was never loaded.
        """
        record = self.models.query(model_name)
        logger.info("Unloading AI model: %s", model_name)
        self.supervisor.stop(record.engine_type, model_name)
        return self.models.update_status(model_name, False)

    def list_models(self, **match: Any) -> list[ModelRecord]:
        return self.models.list_records(**match)

    # ------------------------------------------------------------------
    # Status / monitoring
    # ------------------------------------------------------------------
    def status(self) -> StatusReport:
        """Health of every known instance, model records and a resource sample.

        Loaded models without a running engine instance are reported as
        orphaned.
        """
        report = StatusReport(engines=self.health(), models=self.list_models())
        running = {r.name for r in report.engines if r.status is EngineStatus.RUNNING}
        for model in report.models:
            if model.loaded and instance_name(model.engine_type, model.name) not in running:
                logger.warning("Model %s is marked loaded but its engine is not running", model.name)
                report.orphaned_models.append(model.name)
        report.sample, report.violations = self.monitor.log_sample()
        return report

    def monitor_resources(
        self,
        count: int = 1,
        interval: float = 1.0,
        strict: bool = False,
    ) -> list[tuple[ResourceSample, list[ThresholdViolation]]]:
        """Take ``count`` samples ``interval`` seconds apart.

        Raises:
            ResourceThresholdExceeded: Only with ``strict`` and a violation.
        """
        logger.info("Monitoring AI core resources")
        samples = []
        for index in range(max(count, 1)):
            if index:
                time.sleep(interval)
            samples.append(self.monitor.log_sample())
        violations = [v for _, found in samples for v in found]
        if strict and violations:
            raise ResourceThresholdExceeded(violations)
        return samples

    def _known_engine_types(self) -> list[str]:
        known = {state.engine_type for state in self.engines.list_records()}
        known.update(instance.engine_type for instance in self.supervisor.list_instances())
        return sorted(t for t in known if self.backends.contains(t))


__all__ = ["AICoreManager", "StatusReport"]
