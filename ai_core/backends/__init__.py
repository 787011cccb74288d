# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""
Engine Backends - launch and health-check behaviour per engine type.

Supported engine types:
- tensorflow, pytorch, llm, vision: GPU-capable
- onnx, tflite, neural-net: CPU-only

Example:
    >>> from ai_core.backends import describe, get_backend
    >>> describe("onnx").resource_class
    <ResourceClass.CPU: 'cpu'>
    >>> backend = get_backend("tensorflow")
"""

from __future__ import annotations

__all__ = [
    "BackendDescriptor",
    "BackendRegistry",
    "EngineBackend",
    "ResourceClass",
    "WorkerBackend",
    "describe",
    "get_backend",
    "list_backends",
]


def get_backend(engine_type: str) -> EngineBackend:
    """Get the backend for ``engine_type``; raises UnknownEngineType."""
    return BackendRegistry.get(engine_type)


def describe(engine_type: str) -> BackendDescriptor:
    """Describe ``engine_type``; raises UnknownEngineType."""
    return BackendRegistry.describe(engine_type)


def list_backends() -> list[BackendDescriptor]:
    """Descriptions of every registered backend, sorted by engine type."""
    return BackendRegistry.list_descriptors()


# Import built-in backends to trigger registration
from .builtin import WorkerBackend  # noqa: E402
from .protocols import BackendDescriptor, EngineBackend, ResourceClass  # noqa: E402
from .registry import BackendRegistry  # noqa: E402
