# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""pytest configuration for AI core tests."""

import logging
import subprocess
import sys
from pathlib import Path

import psutil
import pytest

from ai_core.config import AICoreConfig
from ai_core.manager import AICoreManager
from ai_core.resource_monitor import ResourceMonitor

# Configure logging
logging.basicConfig(level=logging.INFO)


class FakeMetricsSource:
    """Metrics source returning fixed numbers."""

    def __init__(self, cpu: float = 10.0, mem: float = 20.0, gpu: float | None = None):
        self.cpu = cpu
        self.mem = mem
        self.gpu = gpu
        self.closed = False

    def cpu_percent(self) -> float:
        return self.cpu

    def memory_percent(self) -> float:
        return self.mem

    def gpu_percent(self) -> float | None:
        return self.gpu

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def config(tmp_path: Path) -> AICoreConfig:
    """Configuration rooted in a temporary home with short timeouts."""
    cfg = AICoreConfig(
        home=tmp_path / "home",
        stop_timeout=3.0,
        kill_timeout=3.0,
        startup_grace=0.3,
        startup_timeout=15.0,
        lock_timeout=10.0,
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def metrics_source() -> FakeMetricsSource:
    return FakeMetricsSource()


@pytest.fixture
def monitor(config: AICoreConfig, metrics_source: FakeMetricsSource) -> ResourceMonitor:
    return ResourceMonitor(config.limits, source=metrics_source)


@pytest.fixture
def manager(config: AICoreConfig, monitor: ResourceMonitor):
    """Opened manager; every process it started is stopped afterwards."""
    with AICoreManager(config, monitor=monitor) as mgr:
        yield mgr
        for instance in mgr.supervisor.list_instances():
            mgr.stop(instance.engine_type, instance.model_name)
        for record in mgr.plugins.list_plugins():
            mgr.plugins.stop(record.name)


@pytest.fixture
def model_file(config: AICoreConfig):
    """Factory creating ``<model_dir>/<filename>``."""

    def _create(filename: str) -> Path:
        path = Path(config.model_dir) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"weights")
        return path

    return _create


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


@pytest.fixture
def kill_process():
    """SIGKILL a PID behind the supervisor's back and wait until it is gone."""

    def _kill(pid: int, timeout: float = 10.0) -> None:
        try:
            process = psutil.Process(pid)
            process.kill()
            process.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            pass

    return _kill
