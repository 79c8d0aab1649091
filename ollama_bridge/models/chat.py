"""Pydantic models representing chat conversations."""
from __future__ import annotations

import math
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["system", "user", "assistant"]


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _coerce_int(value: Any) -> Optional[int]:
    number = _coerce_float(value)
    if number is None:
        return None
    return int(number)


class ChatMessage(BaseModel):
    """Single message item in a chat conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role = Field(..., description="Role of the author (system, user, assistant)")
    content: str = Field(..., description="Text content of the message")


class GenerationOptions(BaseModel):
    """Sampling options; text values are coerced and malformed ones dropped."""

    temperature: Optional[float] = Field(
        default=None,
        description="Sampling temperature to apply to the completion",
    )
    max_output_tokens: Optional[int] = Field(
        default=None,
        description="Upper bound on generated tokens",
    )

    @field_validator("temperature", mode="before")
    @classmethod
    def _parse_temperature(cls, value: Any) -> Optional[float]:
        return _coerce_float(value)

    @field_validator("max_output_tokens", mode="before")
    @classmethod
    def _parse_max_tokens(cls, value: Any) -> Optional[int]:
        return _coerce_int(value)

    def with_defaults(
        self,
        *,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> "GenerationOptions":
        """Return a copy where absent values take the given defaults."""

        return GenerationOptions(
            temperature=self.temperature if self.temperature is not None else temperature,
            max_output_tokens=(
                self.max_output_tokens if self.max_output_tokens is not None else max_output_tokens
            ),
        )


class ChatRequest(BaseModel):
    """Request payload for chat completions."""

    model: str = Field(..., min_length=1, description="Base or custom model to query")
    messages: List[ChatMessage] = Field(..., min_length=1)
    temperature: Optional[Any] = Field(
        default=None,
        description="Sampling temperature, numeric or numeric text",
    )
    max_tokens: Optional[Any] = Field(
        default=None,
        description="Generated token limit, numeric or numeric text",
    )
    instructions_embedded: bool = Field(
        default=False,
        description="Whether the model already carries its grounding instructions",
    )

    def options(self) -> GenerationOptions:
        return GenerationOptions(
            temperature=self.temperature,
            max_output_tokens=self.max_tokens,
        )


class ChatResponse(BaseModel):
    """Response payload for chat completions."""

    content: str = Field(..., description="Assistant message produced by the model")
    model: str = Field(..., description="Model that generated the response")
    created_at: str = Field(..., description="ISO-8601 creation timestamp")
    finished: bool = Field(default=True, description="Whether generation completed")
