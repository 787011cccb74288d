# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Engine backend registry.

Provides:
1. Backend registration by decorator
2. Lookup by engine type with a typed failure for unknown types
3. Read-only descriptions for listing
"""

import logging

from ..errors import UnknownEngineType
from .protocols import BackendDescriptor, EngineBackend

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Catalog mapping engine types to backend implementations."""

    _backends: dict[str, type[EngineBackend]] = {}
    _instances: dict[str, EngineBackend] = {}

    @classmethod
    def register(cls, backend_cls: type[EngineBackend]) -> type[EngineBackend]:
        """Decorator: register backend.

        Usage:
            @BackendRegistry.register
            class TensorFlowBackend(WorkerBackend):
                engine_type = "tensorflow"
        """
        engine_type = backend_cls.engine_type
        cls._backends[engine_type] = backend_cls
        cls._instances.pop(engine_type, None)
        logger.debug("Registered backend: %s", engine_type)
        return backend_cls

    @classmethod
    def get(cls, engine_type: str) -> EngineBackend:
        """Get backend instance.

        Raises:
            UnknownEngineType: If ``engine_type`` is not registered.
        """
        if engine_type in cls._instances:
            return cls._instances[engine_type]
        if engine_type not in cls._backends:
            raise UnknownEngineType(engine_type, list(cls._backends))
        instance = cls._backends[engine_type]()
        cls._instances[engine_type] = instance
        return instance

    @classmethod
    def describe(cls, engine_type: str) -> BackendDescriptor:
        return cls.get(engine_type).describe()

    @classmethod
    def contains(cls, engine_type: str) -> bool:
        return engine_type in cls._backends

    @classmethod
    def engine_types(cls) -> list[str]:
        return sorted(cls._backends)

    @classmethod
    def list_descriptors(cls) -> list[BackendDescriptor]:
        return [cls.describe(engine_type) for engine_type in cls.engine_types()]

    @classmethod
    def unregister(cls, engine_type: str) -> None:
        """Remove a backend (mainly for testing)."""
        cls._backends.pop(engine_type, None)
        cls._instances.pop(engine_type, None)
