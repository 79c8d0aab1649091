"""Translate canonical chat requests to each backend's wire shape and back."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import BackendMode
from .exceptions import TransportError
from .instructions import DEFAULT_SYSTEM_PROMPT, is_managed_model
from .models import ChatMessage, GenerationOptions, ModelSummary

MessageLike = Union[ChatMessage, Mapping[str, Any]]

DIRECT_CHAT_PATH = "/api/chat"
GATEWAY_CHAT_PATH = "/api/chat/completions"
DIRECT_MODELS_PATH = "/api/tags"
GATEWAY_MODELS_PATH = "/api/models"


@dataclass
class CompletionResult:
    """Container for a normalised chat completion."""

    model: str
    created_at: str
    content: str
    finished: bool = True
    role: str = "assistant"


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Render ``moment`` (default: now) as an ISO-8601 UTC string."""

    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _message_dict(message: MessageLike) -> Dict[str, str]:
    if isinstance(message, ChatMessage):
        return {"role": message.role, "content": message.content}
    return {"role": str(message.get("role", "")), "content": str(message.get("content", ""))}


def as_message_dicts(messages: Iterable[MessageLike]) -> List[Dict[str, str]]:
    return [_message_dict(message) for message in messages]


def has_system_message(messages: Sequence[Mapping[str, str]]) -> bool:
    return any(message.get("role") == "system" for message in messages)


def strip_system_messages(messages: Iterable[MessageLike]) -> List[Dict[str, str]]:
    """Drop system messages, keeping the remaining order intact."""

    return [message for message in as_message_dicts(messages) if message["role"] != "system"]


def ensure_system_message(
    messages: Iterable[MessageLike],
    default: str = DEFAULT_SYSTEM_PROMPT,
) -> List[Dict[str, str]]:
    """Prepend a generic system message to a non-empty list lacking one."""

    converted = as_message_dicts(messages)
    if converted and not has_system_message(converted):
        return [{"role": "system", "content": default}, *converted]
    return converted


def apply_instruction_policy(
    mode: BackendMode,
    model: str,
    messages: Iterable[MessageLike],
    instructions_embedded: bool,
) -> List[Dict[str, str]]:
    """Select the messages to send for ``model``.

    Only the direct engine honours the SYSTEM block of a managed model, so
    system messages are dropped only in that case; everywhere else they stay.
    """

    if instructions_embedded and mode is BackendMode.DIRECT and is_managed_model(model):
        return strip_system_messages(messages)
    return as_message_dicts(messages)


def chat_path(mode: BackendMode) -> str:
    return DIRECT_CHAT_PATH if mode is BackendMode.DIRECT else GATEWAY_CHAT_PATH


def models_path(mode: BackendMode) -> str:
    return DIRECT_MODELS_PATH if mode is BackendMode.DIRECT else GATEWAY_MODELS_PATH


def build_chat_payload(
    mode: BackendMode,
    model: str,
    messages: Iterable[MessageLike],
    options: Optional[GenerationOptions] = None,
    *,
    stream: bool = False,
) -> Dict[str, Any]:
    """Build the request body expected by the backend in ``mode``."""

    options = options or GenerationOptions()

    if mode is BackendMode.DIRECT:
        engine_options: Dict[str, Any] = {}
        if options.temperature is not None:
            engine_options["temperature"] = float(options.temperature)
        if options.max_output_tokens is not None:
            engine_options["num_predict"] = int(options.max_output_tokens)
        return {
            "model": model,
            "messages": as_message_dicts(messages),
            "stream": stream,
            "options": engine_options,
        }

    payload: Dict[str, Any] = {
        "model": model,
        "messages": ensure_system_message(messages),
        "stream": stream,
    }
    if options.temperature is not None:
        payload["temperature"] = float(options.temperature)
    if options.max_output_tokens is not None:
        payload["max_tokens"] = int(options.max_output_tokens)
    return payload


def _from_unix(value: Any) -> str:
    try:
        return utc_timestamp(datetime.fromtimestamp(float(value), tz=timezone.utc))
    except (TypeError, ValueError, OverflowError, OSError):
        return utc_timestamp()


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def normalize_completion(
    mode: BackendMode,
    data: Any,
    requested_model: str,
) -> CompletionResult:
    """Convert a backend reply into a :class:`CompletionResult`.

    Nested fields of the wrong type count as missing; a reply that is not a
    JSON object raises :class:`TransportError`.
    """

    if not isinstance(data, Mapping):
        raise TransportError(f"Unexpected completion reply of type {type(data).__name__}")

    if mode is BackendMode.DIRECT:
        message = _mapping(data.get("message"))
        content = message.get("content")
        if content is None:
            content = data.get("response", "")
        done = data.get("done")
        return CompletionResult(
            model=data.get("model") or requested_model,
            created_at=data.get("created_at") or utc_timestamp(),
            content=str(content or ""),
            finished=True if done is None else bool(done),
            role=message.get("role") or "assistant",
        )

    choices = data.get("choices")
    first = _mapping(choices[0]) if isinstance(choices, list) and choices else {}
    message = _mapping(first.get("message"))
    return CompletionResult(
        model=data.get("model") or requested_model,
        created_at=_from_unix(data.get("created")),
        content=str(message.get("content") or ""),
        finished=True,
        role=message.get("role") or "assistant",
    )


def _gateway_model_name(entry: Any) -> str:
    if isinstance(entry, Mapping):
        return str(entry.get("id") or entry.get("name") or "")
    return str(entry)


def normalize_model_listing(mode: BackendMode, data: Any) -> List[ModelSummary]:
    """Convert a model listing into :class:`ModelSummary` entries."""

    if mode is BackendMode.DIRECT:
        models = data.get("models", []) if isinstance(data, Mapping) else []
        return [
            ModelSummary(
                name=entry.get("name", ""),
                size=int(entry.get("size") or 0),
                modified_at=entry.get("modified_at") or utc_timestamp(),
            )
            for entry in models
            if isinstance(entry, Mapping)
        ]

    if isinstance(data, list):
        entries = data
    elif isinstance(data, Mapping) and isinstance(data.get("data"), list):
        entries = data["data"]
    else:
        return []

    now = utc_timestamp()
    return [ModelSummary(name=_gateway_model_name(entry), size=0, modified_at=now) for entry in entries]
