"""Helpers for callers that manage bots and conversations.

These encode the policy the persistence layer applies around the adapter:
how history is turned into a message list, when the embedded instruction
document is trusted, and how a bot's custom model follows edits.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .artifacts import ModelLifecycleManager
from .config import BackendConfig
from .instructions import DEFAULT_SYSTEM_PROMPT, build_custom_model_spec, generate_model_name
from .models import ChatMessage, GenerationOptions
from .translation import MessageLike, as_message_dicts

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
BOT_DEFAULT_OPTIONS = GenerationOptions(temperature=0.7, max_output_tokens=2000)


def should_use_embedded_instructions(config: BackendConfig, custom_model_name: Optional[str]) -> bool:
    """Only the direct engine is trusted to apply a custom model's SYSTEM block."""

    return bool(custom_model_name) and config.is_direct


def build_chat_messages(
    history: Iterable[MessageLike],
    system_prompt: Optional[str],
    *,
    use_embedded_instructions: bool,
    limit: int = HISTORY_LIMIT,
) -> List[ChatMessage]:
    """Turn stored history (oldest first) into the message list for a turn."""

    turns = [m for m in as_message_dicts(history) if m["role"] in ("user", "assistant")]
    recent = [ChatMessage(**m) for m in turns[-limit:]] if limit > 0 else []
    if use_embedded_instructions:
        return recent
    prompt = system_prompt if system_prompt and system_prompt.strip() else DEFAULT_SYSTEM_PROMPT
    return [ChatMessage(role="system", content=prompt), *recent]


def bot_options(temperature: object = None, max_tokens: object = None) -> GenerationOptions:
    """Coerce stored bot settings, falling back to the bot defaults."""

    return GenerationOptions(temperature=temperature, max_output_tokens=max_tokens).with_defaults(
        temperature=BOT_DEFAULT_OPTIONS.temperature,
        max_output_tokens=BOT_DEFAULT_OPTIONS.max_output_tokens,
    )


async def sync_bot_artifact(
    manager: ModelLifecycleManager,
    *,
    tenant_id: int | str,
    bot_name: str,
    base_model: str,
    grounding_text: Optional[str],
    previous_model_name: Optional[str] = None,
    topic: Optional[str] = None,
) -> str:
    """Bring a bot's custom model in line with its settings.

    Returns the model name the caller should store: the custom model name
    when it exists, otherwise the base model. A failed creation is logged
    and the bot falls back to its base model.
    """

    has_grounding = bool(grounding_text and grounding_text.strip())
    new_name = generate_model_name(tenant_id, bot_name)

    if previous_model_name and (previous_model_name != new_name or not has_grounding):
        stale = await manager.delete(previous_model_name)
        if not stale.success:
            logger.warning("Could not delete stale model %s: %s", previous_model_name, stale.error)

    if not has_grounding:
        return base_model

    spec = build_custom_model_spec(tenant_id, bot_name, base_model, grounding_text or "", topic=topic)
    created = await manager.create(spec)
    if not created.success:
        logger.error("Error creating custom model %s: %s", spec.name, created.error)
        return base_model

    check = await manager.verify(spec.name)
    if check.success:
        logger.debug("Custom model %s verified", spec.name, extra={"document": (check.document or "")[:200]})
    else:
        logger.warning("Could not verify custom model %s: %s", spec.name, check.error)
    return new_name
