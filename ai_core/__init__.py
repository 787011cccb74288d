# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""
MobileOps AI Core - supervisor for inference engines, models and plugins.

The AI core keeps long-lived engine worker processes and plugin processes
running and records on disk which models, engines and plugins are loaded,
so that independent command invocations agree on the same state:
- Engine lifecycle per (engine type, model): spawn, stop, health check
- Verified PID files (creation time and command line guard against PID reuse)
- Durable JSON registries with atomic writes and advisory file locks
- Advisory CPU / memory / GPU threshold monitoring
- Plugin install, start, stop and removal

Example:
    >>> from ai_core import AICoreConfig, AICoreManager
    >>> with AICoreManager(AICoreConfig(home="/tmp/ai-core")) as manager:
    ...     manager.start("onnx")
"""

from __future__ import annotations

__version__ = "0.1.0"

# Configuration
from .config import AICoreConfig, EngineOptions, ResourceLimits
from .errors import AICoreError

# Manager
from .manager import AICoreManager, StatusReport
from .plugins import PluginLifecycleManager, PluginState, PluginStatus
from .registry import (
    EngineStateRegistry,
    ModelRecord,
    ModelRegistry,
    PluginRecord,
    PluginRegistry,
)
from .resource_monitor import ResourceMonitor, ResourceSample, ThresholdViolation

# Engine lifecycle
from .supervisor import (
    EngineInstance,
    EngineStatus,
    HealthReport,
    Note,
    ProcessSupervisor,
    SupervisorResult,
)

__all__ = [
    "__version__",
    # Configuration
    "AICoreConfig",
    "EngineOptions",
    "ResourceLimits",
    "AICoreError",
    # Manager
    "AICoreManager",
    "StatusReport",
    # Engine lifecycle
    "ProcessSupervisor",
    "EngineInstance",
    "EngineStatus",
    "HealthReport",
    "Note",
    "SupervisorResult",
    # Registries
    "ModelRegistry",
    "EngineStateRegistry",
    "PluginRegistry",
    "ModelRecord",
    "PluginRecord",
    # Resources
    "ResourceMonitor",
    "ResourceSample",
    "ThresholdViolation",
    # Plugins
    "PluginLifecycleManager",
    "PluginState",
    "PluginStatus",
]
