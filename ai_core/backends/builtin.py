# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Built-in engine backends.

Each backend launches the placeholder serving process in
:mod:`ai_core.worker` unless its :class:`~ai_core.config.EngineOptions`
supply a native serving command (for example ``tensorflow_model_server``).
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from .protocols import EngineBackend, ResourceClass
from .registry import BackendRegistry

if TYPE_CHECKING:
    from ..config import EngineOptions

WORKER_MODULE = "ai_core.worker"


class WorkerBackend(EngineBackend):
    """Backend whose default serving process is the built-in worker."""

    def build_command(
        self,
        model_name: str | None,
        model_path: Path | None,
        options: EngineOptions,
    ) -> list[str]:
        if options.command:
            template = list(options.command)
        else:
            template = ["{python}", "-m", WORKER_MODULE, "--engine", "{engine}"]
            if model_path is not None:
                template.extend(["--model", "{model_path}"])
            if options.port is not None:
                template.extend(["--host", "{host}", "--port", "{port}"])
        command = self.render_command(
            template,
            engine_type=self.engine_type,
            model_name=model_name,
            model_path=model_path,
            options=options,
        )
        command.extend(options.args)
        return command


@BackendRegistry.register
class TensorFlowBackend(WorkerBackend):
    engine_type = "tensorflow"
    resource_class = ResourceClass.GPU
    description = "TensorFlow SavedModel serving"
    model_suffixes = (".pb", ".savedmodel")


@BackendRegistry.register
class PyTorchBackend(WorkerBackend):
    engine_type = "pytorch"
    resource_class = ResourceClass.GPU
    description = "PyTorch / TorchScript serving"
    model_suffixes = (".pt", ".pth")


@BackendRegistry.register
class OnnxBackend(WorkerBackend):
    engine_type = "onnx"
    resource_class = ResourceClass.CPU
    description = "ONNX Runtime serving"
    model_suffixes = (".onnx",)


@BackendRegistry.register
class TFLiteBackend(WorkerBackend):
    engine_type = "tflite"
    resource_class = ResourceClass.CPU
    description = "TensorFlow Lite on-device inference"
    model_suffixes = (".tflite",)


@BackendRegistry.register
class NeuralNetBackend(WorkerBackend):
    engine_type = "neural-net"
    resource_class = ResourceClass.CPU
    description = "Generic neural network engine"
    model_suffixes = (".model", ".bin")


@BackendRegistry.register
class LLMBackend(WorkerBackend):
    engine_type = "llm"
    resource_class = ResourceClass.GPU
    description = "Large language model engine"
    model_suffixes = (".gguf", ".safetensors", ".bin")


@BackendRegistry.register
class VisionBackend(WorkerBackend):
    engine_type = "vision"
    resource_class = ResourceClass.GPU
    description = "Computer vision engine"
    model_suffixes = (".onnx", ".pt", ".tflite")


__all__ = [
    "LLMBackend",
    "NeuralNetBackend",
    "OnnxBackend",
    "PyTorchBackend",
    "TFLiteBackend",
    "TensorFlowBackend",
    "VisionBackend",
    "WorkerBackend",
]
