# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""
AI Core - CLI entry point.

Provides:
- start / stop / health: engine worker processes
- load / unload / list-models: model bookkeeping
- status / list-engines / monitor: overview and resource usage
- plugin: install, run and remove plugins

Exit status is 0 on success, including idempotent no-ops, and the error's
``exit_code`` otherwise.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any

from . import __version__
from .config import AICoreConfig, load_engine_options
from .errors import AICoreError
from .manager import AICoreManager

logger = logging.getLogger("ai_core")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MANAGER_LOG = "ai_core_manager.log"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)
    logger.setLevel(level)


def _attach_file_log(log_dir: Path) -> logging.Handler | None:
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / MANAGER_LOG)
    except OSError as e:
        logger.debug("Manager log disabled: %s", e)
        return None
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return handler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-core",
        description="MobileOps AI core - engine, model and plugin process manager",
    )
    parser.add_argument("--config", type=Path, help="Configuration YAML file")
    parser.add_argument("--home", type=Path, help="Base directory for state, logs and models")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    start_parser = subparsers.add_parser("start", help="Start an AI engine")
    start_parser.add_argument("engine", help="Engine type")
    start_parser.add_argument("model", nargs="?", help="Model to serve")
    start_parser.add_argument("options", nargs="?", type=Path, help="Engine options YAML file")
    start_parser.set_defaults(handler=_cmd_start)

    stop_parser = subparsers.add_parser("stop", help="Stop an AI engine")
    stop_parser.add_argument("engine", help="Engine type")
    stop_parser.add_argument("model", nargs="?", help="Stop only this model's instance")
    stop_parser.set_defaults(handler=_cmd_stop)

    load_parser = subparsers.add_parser("load", help="Load a model on an engine")
    load_parser.add_argument("engine", help="Engine type")
    load_parser.add_argument("model", help="Model name")
    load_parser.add_argument("options", nargs="?", type=Path, help="Engine options YAML file")
    load_parser.set_defaults(handler=_cmd_load)

    unload_parser = subparsers.add_parser("unload", help="Unload a model")
    unload_parser.add_argument("model", help="Model name")
    unload_parser.set_defaults(handler=_cmd_unload)

    status_parser = subparsers.add_parser("status", help="Show engines, models and resources")
    status_parser.set_defaults(handler=_cmd_status)

    health_parser = subparsers.add_parser("health", help="Check engine health")
    health_parser.add_argument("engine", nargs="?", help="Engine type (default: all known)")
    health_parser.add_argument("model", nargs="?", help="Model name")
    health_parser.set_defaults(handler=_cmd_health)

    engines_parser = subparsers.add_parser("list-engines", help="List supported engine types")
    engines_parser.set_defaults(handler=_cmd_list_engines)

    models_parser = subparsers.add_parser("list-models", help="List known models")
    models_parser.add_argument("--loaded", action="store_true", help="Only loaded models")
    models_parser.set_defaults(handler=_cmd_list_models)

    monitor_parser = subparsers.add_parser("monitor", help="Sample CPU, memory and GPU usage")
    monitor_parser.add_argument("--count", type=int, default=1, help="Number of samples")
    monitor_parser.add_argument("--interval", type=float, default=1.0, help="Seconds between samples")
    monitor_parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero when a threshold is exceeded",
    )
    monitor_parser.set_defaults(handler=_cmd_monitor)

    plugin_parser = subparsers.add_parser("plugin", help="Manage plugins")
    plugin_sub = plugin_parser.add_subparsers(dest="plugin_command", required=True)

    install_parser = plugin_sub.add_parser("install", help="Install a plugin")
    install_parser.add_argument("name", help="Plugin name")
    install_parser.add_argument("--source", type=Path, help="Bundle directory or archive")
    install_parser.add_argument("--version", dest="plugin_version", default="latest", help="Plugin version")
    install_parser.add_argument(
        "--permission",
        action="append",
        default=[],
        dest="permissions",
        help="Permission string (repeatable; recorded only)",
    )
    install_parser.add_argument("--entry-point", default="main.py", help="Executable inside the bundle")
    install_parser.set_defaults(handler=_cmd_plugin_install)

    for verb, handler, help_text in (
        ("uninstall", _cmd_plugin_uninstall, "Stop and remove a plugin"),
        ("start", _cmd_plugin_start, "Start a plugin"),
        ("stop", _cmd_plugin_stop, "Stop a plugin"),
        ("status", _cmd_plugin_status, "Show plugin status"),
    ):
        verb_parser = plugin_sub.add_parser(verb, help=help_text)
        verb_parser.add_argument("name", help="Plugin name")
        verb_parser.set_defaults(handler=handler)

    plugin_sub.add_parser("list", help="List installed plugins").set_defaults(handler=_cmd_plugin_list)
    plugin_sub.add_parser("monitor", help="Status of all plugins").set_defaults(
        handler=_cmd_plugin_monitor
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the ``ai-core`` command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(args.verbose)
    file_handler: logging.Handler | None = None
    try:
        config = AICoreConfig.discover(args.config, args.home)
        file_handler = _attach_file_log(Path(config.log_dir))
        with AICoreManager(config) as manager:
            return args.handler(manager, args)
    except AICoreError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return e.exit_code
    finally:
        if file_handler is not None:
            logger.removeHandler(file_handler)
            file_handler.close()


# ----------------------------------------------------------------------
# Engine commands
# ----------------------------------------------------------------------
def _cmd_start(manager: AICoreManager, args: argparse.Namespace) -> int:
    options = load_engine_options(args.options) if args.options else None
    result = manager.start(args.engine, args.model, options)
    if args.json:
        return _emit_json(result.to_dict())
    if result.note is not None:
        print(f"AI engine {result.name} is already running (PID: {result.pid})")
    else:
        print(f"AI engine {result.name} started (PID: {result.pid})")
    return 0


def _cmd_stop(manager: AICoreManager, args: argparse.Namespace) -> int:
    results = manager.stop(args.engine, args.model)
    if args.json:
        return _emit_json([r.to_dict() for r in results])
    for result in results:
        if result.note is not None:
            print(f"AI engine {result.name} is not running")
        else:
            print(f"AI engine {result.name} stopped (PID: {result.pid})")
    return 0


def _cmd_health(manager: AICoreManager, args: argparse.Namespace) -> int:
    reports = manager.health(args.engine, args.model)
    if args.json:
        return _emit_json([r.to_dict() for r in reports])
    if not reports:
        print("No AI engines known")
    for report in reports:
        print(_format_health(report.to_dict()))
    return 0


def _cmd_list_engines(manager: AICoreManager, args: argparse.Namespace) -> int:
    engines = manager.list_engines()
    if args.json:
        return _emit_json([{**d.to_dict(), "running": running} for d, running in engines])
    print(f"{'ENGINE':<12} {'CLASS':<5} {'RUNNING':>7}  DESCRIPTION")
    for descriptor, running in engines:
        print(
            f"{descriptor.engine_type:<12} {descriptor.resource_class.value:<5} "
            f"{running:>7}  {descriptor.description}"
        )
    return 0


# ----------------------------------------------------------------------
# Model commands
# ----------------------------------------------------------------------
def _cmd_load(manager: AICoreManager, args: argparse.Namespace) -> int:
    options = load_engine_options(args.options) if args.options else None
    record = manager.load(args.engine, args.model, options)
    if args.json:
        return _emit_json({"name": record.name, **record.to_dict()})
    print(f"Model {record.name} loaded on {record.engine_type} ({record.storage_path})")
    return 0


def _cmd_unload(manager: AICoreManager, args: argparse.Namespace) -> int:
    record = manager.unload(args.model)
    if args.json:
        return _emit_json({"name": record.name, **record.to_dict()})
    print(f"Model {record.name} unloaded")
    return 0


def _cmd_list_models(manager: AICoreManager, args: argparse.Namespace) -> int:
    match: dict[str, Any] = {"loaded": True} if args.loaded else {}
    models = manager.list_models(**match)
    if args.json:
        return _emit_json([{"name": m.name, **m.to_dict()} for m in models])
    if not models:
        print("No models registered")
    for model in models:
        state = "loaded" if model.loaded else "unloaded"
        print(f"{model.name:<24} {model.engine_type:<12} {state:<8} {model.storage_path}")
    return 0


# ----------------------------------------------------------------------
# Status / monitoring
# ----------------------------------------------------------------------
def _cmd_status(manager: AICoreManager, args: argparse.Namespace) -> int:
    report = manager.status()
    if args.json:
        return _emit_json(report.to_dict())

    print("=== AI Core Status ===")
    print("Engines:")
    if not report.engines:
        print("  (none)")
    for health in report.engines:
        print("  " + _format_health(health.to_dict()))
    print("Models:")
    if not report.models:
        print("  (none)")
    for model in report.models:
        state = "loaded" if model.loaded else "unloaded"
        flag = "  [no running engine]" if model.name in report.orphaned_models else ""
        print(f"  {model.name} ({model.engine_type}): {state}{flag}")
    if report.sample is not None:
        print("Resources:")
        print("  " + _format_sample(report.sample.to_dict()))
    for violation in report.violations:
        print(f"  warning: {violation}")
    return 0


def _cmd_monitor(manager: AICoreManager, args: argparse.Namespace) -> int:
    samples = manager.monitor_resources(args.count, args.interval, args.strict)
    if args.json:
        return _emit_json(
            [{**s.to_dict(), "violations": [str(v) for v in found]} for s, found in samples]
        )
    for sample, found in samples:
        print(_format_sample(sample.to_dict()))
        for violation in found:
            print(f"  warning: {violation}")
    return 0


# ----------------------------------------------------------------------
# Plugin commands
# ----------------------------------------------------------------------
def _cmd_plugin_install(manager: AICoreManager, args: argparse.Namespace) -> int:
    record = manager.plugins.install(
        args.source,
        name=args.name,
        version=args.plugin_version,
        permissions=args.permissions,
        entry_point=args.entry_point,
    )
    if args.json:
        return _emit_json({"name": record.name, **record.to_dict()})
    print(f"Plugin {record.name} ({record.version}) installed at {record.path}")
    return 0


def _cmd_plugin_uninstall(manager: AICoreManager, args: argparse.Namespace) -> int:
    manager.plugins.uninstall(args.name)
    if args.json:
        return _emit_json({"name": args.name, "status": "uninstalled"})
    print(f"Plugin {args.name} uninstalled")
    return 0


def _cmd_plugin_start(manager: AICoreManager, args: argparse.Namespace) -> int:
    status = manager.plugins.start(args.name)
    if args.json:
        return _emit_json(status.to_dict())
    if status.note is not None:
        print(f"Plugin {status.name} is already running (PID: {status.pid})")
    else:
        print(f"Plugin {status.name} started (PID: {status.pid})")
    return 0


def _cmd_plugin_stop(manager: AICoreManager, args: argparse.Namespace) -> int:
    status = manager.plugins.stop(args.name)
    if args.json:
        return _emit_json(status.to_dict())
    if status.note is not None:
        print(f"Plugin {status.name} is not running")
    else:
        print(f"Plugin {status.name} stopped")
    return 0


def _cmd_plugin_status(manager: AICoreManager, args: argparse.Namespace) -> int:
    status = manager.plugins.status(args.name)
    if args.json:
        return _emit_json(status.to_dict())
    print(_format_plugin(status.to_dict()))
    return 0


def _cmd_plugin_list(manager: AICoreManager, args: argparse.Namespace) -> int:
    records = manager.plugins.list_plugins()
    if args.json:
        return _emit_json([{"name": r.name, **r.to_dict()} for r in records])
    if not records:
        print("No plugins installed")
    for record in records:
        print(f"{record.name:<24} {record.version:<10} {record.status}")
    return 0


def _cmd_plugin_monitor(manager: AICoreManager, args: argparse.Namespace) -> int:
    statuses = manager.plugins.monitor()
    if args.json:
        return _emit_json([s.to_dict() for s in statuses])
    if not statuses:
        print("No plugins installed")
    for status in statuses:
        print(_format_plugin(status.to_dict()))
    return 0


# ----------------------------------------------------------------------
# Formatting
# ----------------------------------------------------------------------
def _emit_json(payload: Any) -> int:
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def _format_health(report: dict[str, Any]) -> str:
    line = f"{report['name']}: {report['status']}"
    if report["pid"] is not None:
        line += f" (PID: {report['pid']}, uptime: {_format_uptime(report['uptime'])})"
    if report["note"]:
        line += f" - {report['note']}"
    usage = report.get("usage")
    if usage:
        line += f" [cpu {usage['cpu_pct']:.1f}%, rss {usage['rss_mb']:.1f} MB]"
    return line


def _format_plugin(status: dict[str, Any]) -> str:
    line = f"{status['name']} ({status['version']}): {status['status']}"
    if status["pid"] is not None:
        line += f" (PID: {status['pid']}, uptime: {_format_uptime(status['uptime'])})"
    if status["note"]:
        line += f" - {status['note']}"
    return line


def _format_sample(sample: dict[str, Any]) -> str:
    gpu = "n/a" if sample["gpu_pct"] is None else f"{sample['gpu_pct']:.1f}%"
    stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(sample["timestamp"]))
    return f"{stamp} CPU: {sample['cpu_pct']:.1f}%  Memory: {sample['mem_pct']:.1f}%  GPU: {gpu}"


def _format_uptime(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:d}:{minutes:02d}:{secs:02d}"


if __name__ == "__main__":
    sys.exit(main())
