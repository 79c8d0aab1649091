"""Async HTTP client for the inference backend."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .config import BackendConfig, is_local_url
from .exceptions import InferenceError, TransportError
from .instructions import is_managed_model
from .models import GenerationOptions, ModelSummary
from .streaming import DeltaCallback, StreamDecoder
from .supervisor import RequestSupervisor
from .telemetry import correlation_headers, current_correlation_id
from .translation import (
    CompletionResult,
    MessageLike,
    apply_instruction_policy,
    build_chat_payload,
    chat_path,
    models_path,
    normalize_completion,
    normalize_model_listing,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_REQUEST_TIMEOUT = 120.0

# Sentinel distinguishing "no timeout" (None) from "use the client default".
_DEFAULT = object()


class InferenceClient:
    """Talks to the engine directly or through the gateway.

    The client is stateless apart from its immutable configuration; every
    call opens its own ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        config: BackendConfig,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._timeout = timeout
        self._transport = transport
        self._supervisor = RequestSupervisor(timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **correlation_headers()}
        if self.config.is_gateway and self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _client(self, timeout: Any = _DEFAULT) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self._headers(),
            timeout=self._timeout if timeout is _DEFAULT else timeout,
            transport=self._transport,
        )

    def _span_attributes(self, operation: str, model: Optional[str] = None) -> Dict[str, Any]:
        attributes: Dict[str, Any] = {
            "llm.system": "ollama",
            "llm.operation": operation,
            "llm.backend_mode": self.config.mode.value,
        }
        if model:
            attributes["llm.model"] = model
            attributes["llm.custom_model"] = is_managed_model(model)
        correlation_id = current_correlation_id()
        if correlation_id:
            attributes["correlation.id"] = correlation_id
        return attributes

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        timeout: Any = _DEFAULT,
    ) -> httpx.Response:
        """Send one request; only connection-level failures raise here."""

        url = f"{self.config.base_url}{path}"
        try:
            async with self._client(timeout) as client:
                return await client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            logger.exception("Backend request failed: %s %s", method, url)
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

    async def request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.request(method, path, **kwargs)
        if response.status_code >= 400:
            logger.error(
                "Backend returned error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text,
            )
            raise TransportError(
                f"Backend error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"Backend returned invalid JSON for {path}") from exc

    async def complete(
        self,
        model: str,
        messages: Iterable[MessageLike],
        options: Optional[GenerationOptions] = None,
        *,
        instructions_embedded: bool = False,
    ) -> CompletionResult:
        """Run one non-streaming completion within the time budget."""

        selected = apply_instruction_policy(self.config.mode, model, messages, instructions_embedded)
        effective = (options or GenerationOptions()).with_defaults(temperature=DEFAULT_TEMPERATURE)
        payload = build_chat_payload(self.config.mode, model, selected, effective)
        path = chat_path(self.config.mode)

        logger.debug(
            "Sending chat completion",
            extra={
                "model": model,
                "mode": self.config.mode.value,
                "messages_count": len(payload["messages"]),
                "has_system_prompt": any(m["role"] == "system" for m in payload["messages"]),
                "instructions_embedded": instructions_embedded,
            },
        )

        async def _call() -> CompletionResult:
            data = await self.request_json("POST", path, json=payload, timeout=None)
            return normalize_completion(self.config.mode, data, model)

        with tracer.start_as_current_span("Ollama.chatCompletion") as span:
            for key, value in self._span_attributes("chat.completion", model).items():
                span.set_attribute(key, value)
            try:
                result = await self._supervisor.run(_call)
            except InferenceError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            span.set_status(Status(StatusCode.OK))
            span.set_attribute("llm.finished", result.finished)
            return result

    async def stream_chat(
        self,
        model: str,
        messages: Iterable[MessageLike],
        on_delta: DeltaCallback,
        options: Optional[GenerationOptions] = None,
        *,
        instructions_embedded: bool = False,
    ) -> int:
        """Stream a completion, invoking ``on_delta`` for every text delta.

        Returns the number of deltas delivered.
        """

        selected = apply_instruction_policy(self.config.mode, model, messages, instructions_embedded)
        effective = (options or GenerationOptions()).with_defaults(temperature=DEFAULT_TEMPERATURE)
        payload = build_chat_payload(self.config.mode, model, selected, effective, stream=True)
        path = chat_path(self.config.mode)
        decoder = StreamDecoder(self.config.mode)

        with tracer.start_as_current_span("Ollama.chatStream") as span:
            for key, value in self._span_attributes("chat.stream", model).items():
                span.set_attribute(key, value)
            try:
                async with self._client() as client:
                    async with client.stream("POST", path, json=payload) as response:
                        if response.status_code >= 400:
                            body = (await response.aread()).decode("utf-8", errors="replace")
                            raise TransportError(
                                f"Backend error {response.status_code}: {body}",
                                status_code=response.status_code,
                            )
                        emitted = await decoder.run(response.aiter_lines(), on_delta)
            except httpx.HTTPError as exc:
                logger.exception("Streaming request failed: POST %s", path)
                error = TransportError(str(exc) or exc.__class__.__name__)
                span.record_exception(error)
                span.set_status(Status(StatusCode.ERROR, str(error)))
                raise error from exc
            except InferenceError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            span.set_status(Status(StatusCode.OK))
            span.set_attribute("llm.stream.deltas", emitted)
            return emitted

    async def list_models(self) -> List[ModelSummary]:
        data = await self.request_json("GET", models_path(self.config.mode))
        return normalize_model_listing(self.config.mode, data)

    def describe(self) -> Dict[str, Any]:
        """Configuration snapshot safe to expose in health checks."""

        return {
            "base_url": self.config.base_url,
            "mode": self.config.mode.value,
            "local": is_local_url(self.config.base_url),
            "has_api_key": bool(self.config.api_key),
            "api_key_length": len(self.config.api_key or ""),
        }
