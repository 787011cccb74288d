# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Integration tests for PluginLifecycleManager."""

import json
import os
import shutil
import threading
import time
from pathlib import Path

import psutil
import pytest

from ai_core.errors import AICoreError, PluginAlreadyInstalled, PluginNotFound
from ai_core.plugins import MANIFEST_NAME, PluginState
from ai_core.supervisor import Note

SLEEPER = "import time\nprint('plugin up', flush=True)\nwhile True:\n    time.sleep(1)\n"


@pytest.fixture
def plugins(manager):
    return manager.plugins


@pytest.fixture
def bundle(tmp_path: Path) -> Path:
    """A plugin bundle directory with a Python entry point."""
    path = tmp_path / "src" / "weather"
    path.mkdir(parents=True)
    (path / "main.py").write_text(SLEEPER)
    (path / "data.txt").write_text("payload")
    return path


class TestInstall:
    """Tests for plugin installation."""

    def test_install_template(self, plugins, config) -> None:
        """Without a source a template plugin is scaffolded."""
        record = plugins.install(name="hello", version="1.0", permissions=["network"])

        plugin_dir = Path(config.plugin_dir) / "hello"
        assert record.status == PluginState.INSTALLED.value
        assert record.path == str(plugin_dir)
        assert (plugin_dir / "main.py").is_file()
        manifest = json.loads((plugin_dir / MANIFEST_NAME).read_text())
        assert manifest["name"] == "hello"
        assert manifest["version"] == "1.0"
        assert manifest["permissions"] == ["network"]
        assert plugins.registry.query("hello").permissions == {"network"}

    def test_install_from_directory(self, plugins, config, bundle) -> None:
        record = plugins.install(bundle)
        assert record.name == "weather"
        assert (Path(config.plugin_dir) / "weather" / "data.txt").read_text() == "payload"

    def test_install_from_archive(self, plugins, config, bundle, tmp_path) -> None:
        """Archives are unpacked and a single top-level directory is hoisted."""
        archive = shutil.make_archive(str(tmp_path / "weather-1.2"), "gztar", bundle.parent, "weather")
        record = plugins.install(archive, name="weather", version="1.2")
        installed = Path(config.plugin_dir) / "weather"
        assert (installed / "main.py").is_file()
        assert (installed / "data.txt").is_file()
        assert record.version == "1.2"

    def test_name_from_archive(self, plugins, bundle, tmp_path) -> None:
        archive = shutil.make_archive(str(tmp_path / "radar"), "zip", bundle)
        assert plugins.install(archive).name == "radar"

    def test_already_installed(self, plugins) -> None:
        plugins.install(name="hello")
        with pytest.raises(PluginAlreadyInstalled):
            plugins.install(name="hello")

    def test_concurrent_installs_of_one_name(self, plugins, config) -> None:
        """Racing installs yield one plugin; every loser gets PluginAlreadyInstalled."""
        barrier = threading.Barrier(8)
        installed = []
        errors = []

        def install() -> None:
            barrier.wait()
            try:
                installed.append(plugins.install(name="dup"))
            except Exception as e:  # pragma: no cover - asserted below
                errors.append(e)

        threads = [threading.Thread(target=install) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(installed) == 1
        assert len(errors) == 7
        assert all(isinstance(e, PluginAlreadyInstalled) for e in errors)
        assert [p.name for p in Path(config.plugin_dir).iterdir()] == ["dup"]
        assert [r.name for r in plugins.list_plugins()] == ["dup"]

    def test_missing_entry_point(self, plugins, config, tmp_path) -> None:
        """Bundles without their entry point are rejected and nothing is left."""
        empty = tmp_path / "empty"
        empty.mkdir()
        with pytest.raises(AICoreError):
            plugins.install(empty)
        assert list(Path(config.plugin_dir).iterdir()) == []
        assert plugins.list_plugins() == []

    def test_invalid_name(self, plugins) -> None:
        with pytest.raises(AICoreError):
            plugins.install(name="../escape")

    def test_missing_source(self, plugins, tmp_path) -> None:
        with pytest.raises(AICoreError):
            plugins.install(tmp_path / "absent")


class TestRun:
    """Tests for plugin start / stop / status."""

    def test_start_and_stop(self, plugins, config, bundle) -> None:
        plugins.install(bundle)
        status = plugins.start("weather")

        assert status.state is PluginState.ACTIVE
        assert psutil.pid_exists(status.pid)
        assert Path(psutil.Process(status.pid).cwd()) == (Path(config.plugin_dir) / "weather").resolve()
        assert plugins.registry.query("weather").status == "active"
        assert (Path(config.plugin_run_dir) / "weather.pid").exists()

        stopped = plugins.stop("weather")
        assert stopped.state is PluginState.INACTIVE
        assert stopped.pid == status.pid
        assert not psutil.pid_exists(status.pid)
        assert plugins.registry.query("weather").status == "inactive"

    def test_template_plugin_runs(self, plugins, config) -> None:
        """The scaffolded template stays up until SIGTERM."""
        plugins.install(name="hello")
        status = plugins.start("hello")
        assert status.running
        assert plugins.status("hello").state is PluginState.ACTIVE
        plugins.stop("hello")
        assert "Plugin hello stopping" in (Path(config.plugin_run_dir) / "hello.log").read_text()

    def test_start_is_idempotent(self, plugins, bundle) -> None:
        plugins.install(bundle)
        first = plugins.start("weather")
        second = plugins.start("weather")
        assert second.note == Note.ALREADY_RUNNING.value
        assert second.pid == first.pid

    def test_stop_not_running(self, plugins, bundle) -> None:
        plugins.install(bundle)
        status = plugins.stop("weather")
        assert status.note == Note.NOT_RUNNING.value

    def test_unknown_plugin(self, plugins) -> None:
        for operation in (plugins.start, plugins.stop, plugins.status):
            with pytest.raises(PluginNotFound):
                operation("ghost")

    def test_crashed_plugin(self, plugins, config, bundle, kill_process) -> None:
        """A dead plugin is reported inactive and its PID file removed."""
        plugins.install(bundle)
        started = plugins.start("weather")
        kill_process(started.pid)

        status = plugins.status("weather")
        assert status.state is PluginState.INACTIVE
        assert "crashed" in status.note
        assert not (Path(config.plugin_run_dir) / "weather.pid").exists()
        assert plugins.registry.query("weather").status == "inactive"

    def test_idle_plugin_flagged(self, plugins, config, bundle) -> None:
        """A live plugin with a silent log is reported idle."""
        plugins.install(bundle)
        plugins.start("weather")
        log = Path(config.plugin_run_dir) / "weather.log"
        deadline = time.monotonic() + 10
        while "plugin up" not in log.read_text() and time.monotonic() < deadline:
            time.sleep(0.05)
        stale = time.time() - config.plugin_inactivity_timeout - 60
        os.utime(log, (stale, stale))

        [status] = plugins.monitor()
        assert status.state is PluginState.ACTIVE
        assert status.idle is True

    def test_entry_point_failure(self, plugins, tmp_path) -> None:
        source = tmp_path / "broken"
        source.mkdir()
        (source / "main.py").write_text("raise SystemExit('bad plugin')\n")
        plugins.install(source)
        plugins.config.startup_grace = 2.0
        with pytest.raises(AICoreError):
            plugins.start("broken")
        assert plugins.registry.query("broken").status == "inactive"


class TestUninstall:
    """Tests for plugin removal."""

    def test_uninstall_running_plugin(self, plugins, config, bundle) -> None:
        """Uninstall stops the plugin first, then removes files and record."""
        plugins.install(bundle)
        started = plugins.start("weather")
        plugins.uninstall("weather")

        assert not psutil.pid_exists(started.pid)
        assert not (Path(config.plugin_dir) / "weather").exists()
        assert plugins.list_plugins() == []
        assert list(Path(config.plugin_run_dir).glob("weather.*")) == []

    def test_uninstall_unknown(self, plugins) -> None:
        with pytest.raises(PluginNotFound):
            plugins.uninstall("ghost")

    def test_reinstall_after_uninstall(self, plugins) -> None:
        plugins.install(name="hello")
        plugins.uninstall("hello")
        assert plugins.install(name="hello").status == "installed"
