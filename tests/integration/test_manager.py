# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Integration tests for AICoreManager."""

import json
from pathlib import Path

import pytest

from ai_core.errors import ModelNotFound, RecordNotFound, ResourceThresholdExceeded
from ai_core.supervisor import EngineStatus


class TestLoadUnload:
    """Tests for model load / unload."""

    def test_load_starts_engine_and_records_model(self, manager, model_file) -> None:
        path = model_file("bert-base.onnx")
        record = manager.load("onnx", "bert-base")

        assert record.loaded is True
        assert record.storage_path == str(path)
        assert record.load_timestamp is not None
        assert manager.models.query("bert-base").loaded is True
        [instance] = manager.supervisor.list_instances()
        assert instance.name == "onnx-bert-base"
        assert instance.status is EngineStatus.RUNNING

    def test_scenario_d_missing_model(self, manager, config) -> None:
        """ModelNotFound leaves the registry byte-for-byte unchanged."""
        models_path = Path(config.state_dir) / "models.json"
        before = models_path.read_text()
        with pytest.raises(ModelNotFound):
            manager.load("onnx", "bert-base")
        assert models_path.read_text() == before
        assert manager.supervisor.list_instances() == []

    def test_load_is_idempotent(self, manager, model_file) -> None:
        model_file("bert-base.onnx")
        manager.load("onnx", "bert-base")
        manager.load("onnx", "bert-base")
        assert len(manager.supervisor.list_instances()) == 1
        assert len(manager.list_models()) == 1

    def test_unload(self, manager, model_file) -> None:
        """Unload stops the model's engine and keeps the record."""
        model_file("bert-base.onnx")
        loaded = manager.load("onnx", "bert-base")
        record = manager.unload("bert-base")

        assert record.loaded is False
        assert record.unload_timestamp is not None
        assert record.load_timestamp == loaded.load_timestamp
        assert manager.supervisor.list_instances() == []
        assert [m.name for m in manager.list_models()] == ["bert-base"]

    def test_unload_unknown_model(self, manager) -> None:
        with pytest.raises(RecordNotFound):
            manager.unload("bert-base")

    def test_reload_keeps_unload_timestamp(self, manager, model_file) -> None:
        model_file("bert-base.onnx")
        manager.load("onnx", "bert-base")
        unloaded = manager.unload("bert-base")
        reloaded = manager.load("onnx", "bert-base")
        assert reloaded.loaded is True
        assert reloaded.unload_timestamp == unloaded.unload_timestamp

    def test_list_models_filter(self, manager, model_file) -> None:
        model_file("a.onnx")
        model_file("b.tflite")
        manager.load("onnx", "a")
        manager.load("tflite", "b")
        manager.unload("b")
        assert [m.name for m in manager.list_models(loaded=True)] == ["a"]


class TestStatus:
    """Tests for AICoreManager.status."""

    def test_empty(self, manager) -> None:
        report = manager.status()
        assert report.engines == []
        assert report.models == []
        assert report.sample is not None
        assert report.violations == []

    def test_reports_running_engines_and_models(self, manager, model_file) -> None:
        model_file("bert-base.onnx")
        manager.load("onnx", "bert-base")
        manager.start("tflite")

        report = manager.status()
        assert sorted(r.name for r in report.engines) == ["onnx-bert-base", "tflite"]
        assert all(r.status is EngineStatus.RUNNING for r in report.engines)
        assert report.orphaned_models == []

    def test_loaded_model_without_engine_is_flagged(self, manager, model_file, kill_process) -> None:
        """A loaded model whose engine died is reported as orphaned."""
        model_file("bert-base.onnx")
        manager.load("onnx", "bert-base")
        [instance] = manager.supervisor.list_instances()
        kill_process(instance.pid)

        report = manager.status()
        assert report.orphaned_models == ["bert-base"]
        assert report.engines[0].status is EngineStatus.CRASHED

    def test_threshold_violations_are_advisory(self, manager, metrics_source) -> None:
        metrics_source.cpu = 99.0
        report = manager.status()
        assert [v.metric for v in report.violations] == ["cpu"]

    def test_to_dict_is_json_serialisable(self, manager, model_file) -> None:
        model_file("bert-base.onnx")
        manager.load("onnx", "bert-base")
        data = json.loads(json.dumps(manager.status().to_dict()))
        assert data["models"][0]["name"] == "bert-base"
        assert data["engines"][0]["status"] == "running"


class TestEnginesAndMonitoring:
    """Tests for list_engines and monitor_resources."""

    def test_list_engines_counts_running(self, manager) -> None:
        manager.start("onnx")
        engines = {d.engine_type: running for d, running in manager.list_engines()}
        assert engines["onnx"] == 1
        assert engines["tensorflow"] == 0

    def test_monitor_samples(self, manager) -> None:
        samples = manager.monitor_resources(count=3, interval=0.0)
        assert len(samples) == 3
        assert all(violations == [] for _, violations in samples)

    def test_monitor_strict_raises(self, manager, metrics_source) -> None:
        metrics_source.mem = 99.0
        assert manager.monitor_resources(strict=False)[0][1]
        with pytest.raises(ResourceThresholdExceeded) as exc_info:
            manager.monitor_resources(strict=True)
        assert exc_info.value.exit_code == 3


class TestLifecycle:
    """Tests for open / close."""

    def test_open_creates_registries(self, config, monitor) -> None:
        from ai_core.manager import AICoreManager

        with AICoreManager(config, monitor=monitor):
            for name in ("models.json", "engines.json", "plugins.json"):
                assert (Path(config.state_dir) / name).is_file()

    def test_close_closes_monitor(self, config, monitor, metrics_source) -> None:
        from ai_core.manager import AICoreManager

        AICoreManager(config, monitor=monitor).open().close()
        assert metrics_source.closed
