"""Pydantic models for custom model management and listings."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class CustomModelSpec(BaseModel):
    """Everything needed to materialise a custom model on the backend."""

    name: str = Field(..., min_length=1, description="Managed model name (bot_<tenant>_<slug>)")
    base_model: str = Field(..., min_length=1, description="Model the artifact derives from")
    instruction_document: str = Field(..., description="Rendered FROM/SYSTEM document")


class ModelSummary(BaseModel):
    """Single entry of a model listing."""

    name: str
    size: int = 0
    modified_at: str


class ArtifactRequest(BaseModel):
    """Request payload to create or refresh a bot's custom model."""

    tenant_id: int | str = Field(..., description="Identifier of the owning tenant")
    bot_name: str = Field(..., min_length=1, description="Human readable bot name")
    base_model: str = Field(..., min_length=1, description="Model the bot is built on")
    grounding_text: str = Field(default="", description="Text the bot must restrict itself to")
    topic: Optional[str] = Field(default=None, description="Optional subject label")


class ArtifactResponse(BaseModel):
    """Outcome of a lifecycle operation."""

    name: str
    success: bool
    error: Optional[str] = None
    document: Optional[str] = None
