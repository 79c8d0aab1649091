"""Pydantic schemas exposed by the inference adapter."""
from .artifacts import ArtifactRequest, ArtifactResponse, CustomModelSpec, ModelSummary
from .chat import ChatMessage, ChatRequest, ChatResponse, GenerationOptions, Role

__all__ = [
    "ArtifactRequest",
    "ArtifactResponse",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "CustomModelSpec",
    "GenerationOptions",
    "ModelSummary",
    "Role",
]
