# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Integration tests for ProcessSupervisor with real worker processes."""

import json
import os
import socket
import sys
import threading
from pathlib import Path

import psutil
import pytest

from ai_core.config import EngineOptions
from ai_core.errors import (
    HealthCheckTimeout,
    LockTimeout,
    ModelNotFound,
    ProcessSpawnFailure,
    UnknownEngineType,
)
from ai_core.locking import FileLock
from ai_core.process import PidRecord
from ai_core.supervisor import EngineStatus, Note, instance_name


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _pid_path(config, name: str) -> Path:
    return Path(config.pid_dir) / f"{name}.pid"


class TestInstanceName:
    """Tests for instance_name."""

    def test_engine_only(self) -> None:
        assert instance_name("onnx") == "onnx"

    def test_with_model(self) -> None:
        assert instance_name("tensorflow", "mobilenet_v2") == "tensorflow-mobilenet_v2"

    def test_unsafe_characters(self) -> None:
        assert instance_name("llm", "org/model v1") == "llm-org_model_v1"


class TestStart:
    """Tests for ProcessSupervisor.start."""

    def test_scenario_a_start_with_model(self, manager, config, model_file) -> None:
        """Start on a clean system: running, PID file present, health running."""
        model_file("mobilenet_v2.pb")
        result = manager.supervisor.start("tensorflow", "mobilenet_v2")

        assert result.status is EngineStatus.RUNNING
        assert result.note is None
        assert psutil.pid_exists(result.pid)
        pid_file = _pid_path(config, "tensorflow-mobilenet_v2")
        assert json.loads(pid_file.read_text())["pid"] == result.pid
        assert manager.engines.query("tensorflow-mobilenet_v2").status == "running"

        [report] = manager.supervisor.health_check("tensorflow")
        assert report.status is EngineStatus.RUNNING
        assert report.healthy is True
        assert report.pid == result.pid

    def test_start_is_idempotent(self, manager) -> None:
        """A second start reports AlreadyRunning with the same PID."""
        first = manager.supervisor.start("onnx")
        second = manager.supervisor.start("onnx")
        assert second.note is Note.ALREADY_RUNNING
        assert second.pid == first.pid
        assert second.status is EngineStatus.RUNNING

    def test_distinct_models_are_distinct_instances(self, manager, model_file) -> None:
        model_file("a.onnx")
        model_file("b.onnx")
        first = manager.supervisor.start("onnx", "a")
        second = manager.supervisor.start("onnx", "b")
        assert first.pid != second.pid
        assert {i.name for i in manager.supervisor.list_instances()} == {"onnx-a", "onnx-b"}

    def test_unknown_engine(self, manager) -> None:
        with pytest.raises(UnknownEngineType):
            manager.supervisor.start("caffe")

    def test_missing_model(self, manager, config) -> None:
        """ModelNotFound leaves no PID file or engine record behind."""
        with pytest.raises(ModelNotFound):
            manager.supervisor.start("onnx", "bert-base")
        assert list(Path(config.pid_dir).glob("*.pid")) == []
        assert manager.engines.list_records() == []

    def test_stale_pid_file_replaced(self, manager, config, dead_pid) -> None:
        """A PID file naming a dead process does not block start."""
        pid_path = _pid_path(config, "onnx")
        pid_path.write_text(str(dead_pid))
        result = manager.supervisor.start("onnx")
        assert result.note is None
        assert result.pid != dead_pid
        assert json.loads(pid_path.read_text())["pid"] == result.pid

    @pytest.mark.parametrize("content", ["null", "5.0", '"abc"', '{"pid": -3}'])
    def test_malformed_pid_file_recovered(self, manager, config, content) -> None:
        """A PID file without a usable record is removed instead of failing."""
        pid_path = _pid_path(config, "onnx")
        pid_path.write_text(content)

        assert manager.supervisor.list_instances() == []
        [report] = manager.supervisor.health_check("onnx")
        assert report.status is EngineStatus.STOPPED
        assert not pid_path.exists()

        pid_path.write_text(content)
        result = manager.supervisor.start("onnx")
        assert result.note is None
        assert json.loads(pid_path.read_text())["pid"] == result.pid
        manager.supervisor.stop("onnx")

        pid_path.write_text(content)
        [stopped] = manager.supervisor.stop("onnx")
        assert stopped.note is Note.NOT_RUNNING
        assert not pid_path.exists()

    def test_reused_pid_not_trusted(self, manager, config) -> None:
        """A live PID belonging to another program does not count as running."""
        pid_path = _pid_path(config, "onnx")
        pid_path.write_text(
            PidRecord(
                pid=os.getpid(),
                name="onnx",
                command=[sys.executable, "-m", "ai_core.worker", "--engine", "onnx"],
                create_time=psutil.Process().create_time() - 3600,
            ).to_json()
        )
        result = manager.supervisor.start("onnx")
        assert result.note is None
        assert result.pid != os.getpid()

    def test_process_exiting_during_startup(self, manager, config) -> None:
        """Death during the grace period is a ProcessSpawnFailure."""
        config.startup_grace = 2.0
        options = EngineOptions(command=["{python}", "-c", "import sys; print('boom'); sys.exit(3)"])
        with pytest.raises(ProcessSpawnFailure) as exc_info:
            manager.supervisor.start("tflite", options=options)
        assert "boom" in str(exc_info.value)
        assert not _pid_path(config, "tflite").exists()
        assert manager.engines.query("tflite").status == "crashed"

    def test_missing_executable(self, manager, config) -> None:
        options = EngineOptions(command=[str(Path(config.home) / "no-such-binary")])
        with pytest.raises(ProcessSpawnFailure):
            manager.supervisor.start("tflite", options=options)
        assert not _pid_path(config, "tflite").exists()

    def test_readiness_timeout_kills_process(self, manager, config) -> None:
        """An engine that never answers its health endpoint is killed."""
        options = EngineOptions(
            command=["{python}", "-c", "import time; time.sleep(60)"],
            port=_free_port(),
            startup_timeout=1.0,
        )
        with pytest.raises(HealthCheckTimeout):
            manager.supervisor.start("llm", options=options)
        assert not _pid_path(config, "llm").exists()
        assert manager.engines.query("llm").status == "crashed"
        assert manager.supervisor.list_instances() == []

    def test_http_readiness(self, manager) -> None:
        """With a port the worker's /health endpoint gates readiness."""
        options = EngineOptions(port=_free_port())
        result = manager.supervisor.start("vision", options=options)
        assert result.status is EngineStatus.RUNNING
        [report] = manager.supervisor.health_check("vision")
        assert report.status is EngineStatus.RUNNING

    def test_gpu_assignment_reaches_process(self, manager) -> None:
        options = EngineOptions(gpu_ids=[1])
        result = manager.supervisor.start("pytorch", options=options)
        assert psutil.Process(result.pid).environ()["CUDA_VISIBLE_DEVICES"] == "1"

    def test_concurrent_start_spawns_one_process(self, manager, config) -> None:
        """Two racing starts of the same instance produce a single process."""
        barrier = threading.Barrier(2)
        results = []
        errors = []

        def start() -> None:
            barrier.wait()
            try:
                results.append(manager.supervisor.start("neural-net"))
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=start) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len({r.pid for r in results}) == 1
        assert sorted(r.note is None for r in results) == [False, True]
        assert len(list(Path(config.pid_dir).glob("*.pid"))) == 1

    def test_lock_timeout(self, manager, config) -> None:
        """A held instance lock surfaces as LockTimeout."""
        config.lock_timeout = 0.2
        slot = manager.supervisor.engine_slot("onnx")
        with FileLock(slot.lock_path):
            with pytest.raises(LockTimeout):
                manager.supervisor.start("onnx")


class TestStop:
    """Tests for ProcessSupervisor.stop."""

    def test_scenario_b_stop_then_health(self, manager, config, model_file) -> None:
        """After stop, health reports stopped and the PID file is gone."""
        model_file("mobilenet_v2.pb")
        started = manager.supervisor.start("tensorflow", "mobilenet_v2")

        [result] = manager.supervisor.stop("tensorflow")
        assert result.status is EngineStatus.STOPPED
        assert result.pid == started.pid
        assert not psutil.pid_exists(started.pid)
        assert not _pid_path(config, "tensorflow-mobilenet_v2").exists()

        [report] = manager.supervisor.health_check("tensorflow")
        assert report.status is EngineStatus.STOPPED
        assert report.pid is None

    def test_stop_is_idempotent(self, manager) -> None:
        """Stopping something that is not running succeeds with NotRunning."""
        [result] = manager.supervisor.stop("onnx")
        assert result.note is Note.NOT_RUNNING
        manager.supervisor.start("onnx")
        manager.supervisor.stop("onnx")
        [again] = manager.supervisor.stop("onnx")
        assert again.note is Note.NOT_RUNNING

    def test_stop_stale_pid_file(self, manager, config, dead_pid) -> None:
        pid_path = _pid_path(config, "onnx")
        pid_path.write_text(str(dead_pid))
        [result] = manager.supervisor.stop("onnx")
        assert result.note is Note.NOT_RUNNING
        assert not pid_path.exists()

    def test_stop_all_instances_of_engine(self, manager, model_file) -> None:
        model_file("a.onnx")
        model_file("b.onnx")
        manager.supervisor.start("onnx", "a")
        manager.supervisor.start("onnx", "b")
        results = manager.supervisor.stop("onnx")
        assert sorted(r.name for r in results) == ["onnx-a", "onnx-b"]
        assert all(r.note is None for r in results)
        assert manager.supervisor.list_instances() == []

    def test_stop_single_model(self, manager, model_file) -> None:
        model_file("a.onnx")
        model_file("b.onnx")
        manager.supervisor.start("onnx", "a")
        manager.supervisor.start("onnx", "b")
        manager.supervisor.stop("onnx", "a")
        assert [i.name for i in manager.supervisor.list_instances()] == ["onnx-b"]

    def test_stop_escalates_to_sigkill(self, manager, config) -> None:
        """Processes ignoring SIGTERM are killed after stop_timeout."""
        config.stop_timeout = 0.5
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "time.sleep(60)\n"
        )
        started = manager.supervisor.start("tflite", options=EngineOptions(command=["{python}", "-c", script]))
        [result] = manager.supervisor.stop("tflite")
        assert result.pid == started.pid
        assert result.note is None
        assert manager.supervisor.list_instances() == []


class TestHealthCheck:
    """Tests for ProcessSupervisor.health_check."""

    def test_never_started(self, manager) -> None:
        [report] = manager.supervisor.health_check("onnx")
        assert report.status is EngineStatus.STOPPED
        assert report.healthy is False

    def test_scenario_c_external_kill(self, manager, config, model_file, kill_process) -> None:
        """A killed process is reported crashed and its PID file removed."""
        model_file("mobilenet_v2.pb")
        started = manager.supervisor.start("tensorflow", "mobilenet_v2")
        kill_process(started.pid)

        [report] = manager.supervisor.health_check("tensorflow")
        assert report.status is EngineStatus.CRASHED
        assert report.pid == started.pid
        assert not _pid_path(config, "tensorflow-mobilenet_v2").exists()
        assert manager.engines.query("tensorflow-mobilenet_v2").status == "crashed"

        restarted = manager.supervisor.start("tensorflow", "mobilenet_v2")
        assert restarted.note is None
        assert restarted.pid != started.pid
        [instance] = manager.supervisor.list_instances()
        assert instance.pid == restarted.pid
        assert instance.status is EngineStatus.RUNNING

    def test_missing_pid_file_with_running_record(self, manager, config) -> None:
        """Bookkeeping claiming running without a PID file is reported crashed."""
        manager.engines.record_state("onnx", "onnx", None, EngineStatus.RUNNING, 1)
        [report] = manager.supervisor.health_check("onnx")
        assert report.status is EngineStatus.CRASHED
        assert report.note == "missing PID file"

    def test_reports_usage_and_uptime(self, manager) -> None:
        manager.supervisor.start("onnx")
        [report] = manager.supervisor.health_check("onnx")
        assert report.uptime > 0
        assert report.usage is not None
        assert "rss_mb" in report.usage

    def test_unknown_engine(self, manager) -> None:
        with pytest.raises(UnknownEngineType):
            manager.supervisor.health_check("caffe")


class TestListInstances:
    """Tests for ProcessSupervisor.list_instances."""

    def test_lists_running_and_dead(self, manager, config, dead_pid) -> None:
        manager.supervisor.start("onnx")
        _pid_path(config, "tflite").write_text(str(dead_pid))
        instances = {i.name: i for i in manager.supervisor.list_instances()}
        assert instances["onnx"].status is EngineStatus.RUNNING
        assert instances["tflite"].status is EngineStatus.CRASHED
        assert _pid_path(config, "tflite").exists()
