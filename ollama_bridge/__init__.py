"""Adapter between grounded tenant bots and an Ollama inference backend."""

from importlib import import_module
from typing import Any

from .artifacts import LifecycleResult, ModelLifecycleManager
from .clients import InferenceClient
from .config import BackendConfig, BackendMode
from .translation import CompletionResult

__all__ = [
    "BackendConfig",
    "BackendMode",
    "CompletionResult",
    "InferenceClient",
    "LifecycleResult",
    "ModelLifecycleManager",
    "app",
]


def __getattr__(name: str) -> Any:
    if name == "app":
        module = import_module(".main", __name__)
        return module.app
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
