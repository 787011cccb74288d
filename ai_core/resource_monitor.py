# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""CPU, memory and GPU utilisation sampling with advisory thresholds."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

import psutil

from .config import ResourceLimits

logger = logging.getLogger(__name__)

try:  # pragma: no cover - optional dependency
    import pynvml  # type: ignore
except ImportError:  # pragma: no cover - optional dependency
    pynvml = None  # type: ignore[assignment]

_ENV_DISABLE_NVML = "AI_CORE_DISABLE_NVML"
_BYTES_IN_MB = 1024**2


@dataclass(frozen=True)
class ResourceSample:
    """Point-in-time utilisation snapshot. Never persisted."""

    timestamp: float
    cpu_pct: float
    mem_pct: float
    gpu_pct: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cpu_pct": self.cpu_pct,
            "mem_pct": self.mem_pct,
            "gpu_pct": self.gpu_pct,
        }


@dataclass(frozen=True)
class ThresholdViolation:
    """A metric above its configured limit."""

    metric: str
    value: float
    limit: float

    def __str__(self) -> str:
        return f"{self.metric} {self.value:.1f}% > {self.limit:.1f}%"


class MetricsSource(Protocol):
    """Where utilisation numbers come from."""

    def cpu_percent(self) -> float: ...

    def memory_percent(self) -> float: ...

    def gpu_percent(self) -> float | None: ...


class SystemMetricsSource:
    """psutil for CPU and memory, NVML for GPU when available."""

    def __init__(self, cpu_interval: float = 0.1) -> None:
        self.cpu_interval = cpu_interval
        self._lock = threading.Lock()
        self._nvml_available = False

        if os.getenv(_ENV_DISABLE_NVML, "").lower() in {"1", "true", "yes"}:
            logger.debug("NVML explicitly disabled via environment")
            return
        if pynvml is None:
            logger.debug("pynvml not available - GPU utilisation will not be reported")
            return
        try:
            pynvml.nvmlInit()
            self._nvml_available = True
        except pynvml.NVMLError as exc:  # pragma: no cover - depends on driver state
            logger.debug("Failed to initialize NVML (%s); GPU utilisation disabled", exc)

    def cpu_percent(self) -> float:
        return float(psutil.cpu_percent(interval=self.cpu_interval))

    def memory_percent(self) -> float:
        return float(psutil.virtual_memory().percent)

    def gpu_percent(self) -> float | None:
        """Mean utilisation across GPUs, or None without NVML."""
        if not self._nvml_available:
            return None
        with self._lock:  # pragma: no cover - requires NVIDIA driver
            try:
                count = pynvml.nvmlDeviceGetCount()
                if count == 0:
                    return None
                total = 0.0
                for idx in range(count):
                    handle = pynvml.nvmlDeviceGetHandleByIndex(idx)
                    total += float(pynvml.nvmlDeviceGetUtilizationRates(handle).gpu)
                return total / count
            except pynvml.NVMLError as exc:
                logger.debug("Failed to query GPU utilisation: %s", exc)
                return None

    def close(self) -> None:
        """Release NVML handle when available."""
        if not self._nvml_available:
            return
        try:  # pragma: no cover - requires NVIDIA driver
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as exc:  # pragma: no cover
            logger.debug("nvmlShutdown failed: %s", exc)
        finally:
            self._nvml_available = False


class ResourceMonitor:
    """Samples utilisation on demand and compares it with limits.

    Violations are advisory: they are logged and returned, never acted on.
    """

    def __init__(self, limits: ResourceLimits | None = None, source: MetricsSource | None = None) -> None:
        self.limits = limits or ResourceLimits()
        self.source: MetricsSource = source or SystemMetricsSource()

    def sample(self) -> ResourceSample:
        return ResourceSample(
            timestamp=time.time(),
            cpu_pct=round(self.source.cpu_percent(), 1),
            mem_pct=round(self.source.memory_percent(), 1),
            gpu_pct=_round_optional(self.source.gpu_percent()),
        )

    def check_thresholds(
        self,
        sample: ResourceSample,
        limits: ResourceLimits | None = None,
    ) -> list[ThresholdViolation]:
        limits = limits or self.limits
        violations: list[ThresholdViolation] = []
        if sample.cpu_pct > limits.cpu_pct:
            violations.append(ThresholdViolation("cpu", sample.cpu_pct, limits.cpu_pct))
        if sample.mem_pct > limits.mem_pct:
            violations.append(ThresholdViolation("memory", sample.mem_pct, limits.mem_pct))
        if sample.gpu_pct is not None and sample.gpu_pct > limits.gpu_pct:
            violations.append(ThresholdViolation("gpu", sample.gpu_pct, limits.gpu_pct))
        for violation in violations:
            logger.warning("Resource threshold exceeded: %s", violation)
        return violations

    def log_sample(self) -> tuple[ResourceSample, list[ThresholdViolation]]:
        """Sample, log and check thresholds in one step."""
        sample = self.sample()
        gpu = "n/a" if sample.gpu_pct is None else f"{sample.gpu_pct:.1f}%"
        logger.info(
            "CPU Usage: %.1f%%, Memory Usage: %.1f%%, GPU Usage: %s",
            sample.cpu_pct,
            sample.mem_pct,
            gpu,
        )
        return sample, self.check_thresholds(sample)

    @staticmethod
    def process_usage(pid: int) -> dict[str, float] | None:
        """CPU percent and RSS of one process, or None if it is gone."""
        try:
            process = psutil.Process(pid)
            with process.oneshot():
                return {
                    "cpu_pct": float(process.cpu_percent(interval=None)),
                    "rss_mb": round(process.memory_info().rss / _BYTES_IN_MB, 1),
                }
        except psutil.Error:
            return None

    def close(self) -> None:
        close = getattr(self.source, "close", None)
        if close is not None:
            close()


def _round_optional(value: float | None) -> float | None:
    return None if value is None else round(value, 1)


__all__ = [
    "MetricsSource",
    "ResourceMonitor",
    "ResourceSample",
    "SystemMetricsSource",
    "ThresholdViolation",
]
