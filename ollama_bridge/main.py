#!/usr/bin/env python3
"""HTTP surface exposing the inference adapter."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

import logging
import time
import uuid
from functools import lru_cache
from typing import Any, Dict, List

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from structlog.stdlib import ProcessorFormatter

from .artifacts import ModelLifecycleManager, build_artifact_store
from .clients import InferenceClient
from .config import BackendConfig, Settings, get_backend_config, get_settings
from .exceptions import CompletionTimeoutError, InferenceError
from .instructions import build_custom_model_spec
from .models import ArtifactRequest, ArtifactResponse, ChatRequest, ChatResponse, ModelSummary
from .telemetry import CORRELATION_HEADER, configure_tracing, correlation_scope, current_correlation_id
from .translation import utc_timestamp

SERVICE_NAME = "ollama-bridge"

logger = logging.getLogger("ollama_bridge")

FALLBACK_MODELS = ("deepseek-coder-v2:latest", 8_900_000_000), ("llama3.2:1b", 1_300_000_000)


class CorrelationIdFilter(logging.Filter):
    """Inject the correlation identifier into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging helper
        record.correlation_id = current_correlation_id() or "unknown"
        return True


def _add_correlation_id(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:  # pragma: no cover - logging helper
    event_dict.setdefault("correlation_id", current_correlation_id() or "unknown")
    return event_dict


def configure_logging(verbose: bool = False) -> None:
    """Render every log record as JSON; ``verbose`` switches to DEBUG."""

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        timestamper,
        structlog.processors.format_exc_info,
    ]

    formatter = ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    # httpx logs every request at INFO; keep that behind the verbose switch too.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings.verbose)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach correlation identifiers and latency to responses."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        start = time.perf_counter()
        with correlation_scope(correlation_id):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("Unhandled exception during request", extra={"path": request.url.path})
                raise
            finally:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.info(
                    "Request completed",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "duration_ms": round(duration_ms, 2),
                    },
                )

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Process-Time-ms"] = f"{duration_ms:.2f}"
        return response


app = FastAPI(title="Ollama Bridge", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)
configure_tracing(
    app,
    SERVICE_NAME,
    endpoint=settings.otlp_endpoint,
    disabled=settings.tracing_disabled,
)

backend_config = get_backend_config()
logger.info(
    "Inference backend resolved",
    extra={"mode": backend_config.mode.value, "base_url": backend_config.base_url},
)
if backend_config.is_gateway and not backend_config.api_key:
    logger.warning("Gateway mode without an API key; requests may be rejected")


# Dependency factories -----------------------------------------------------

def get_inference_client(
    settings: Settings = Depends(get_settings),
    config: BackendConfig = Depends(get_backend_config),
) -> InferenceClient:
    return InferenceClient(config, timeout=settings.request_timeout)


@lru_cache
def get_lifecycle_manager() -> ModelLifecycleManager:
    """Process-wide manager so per-name serialisation spans requests."""

    settings = get_settings()
    client = InferenceClient(get_backend_config(), timeout=settings.request_timeout)
    return ModelLifecycleManager(
        build_artifact_store(client, settings.artifact_store, settings.cli_binary)
    )


# Routes -------------------------------------------------------------------


@app.get("/")
async def root() -> Dict[str, str]:
    return {"message": "Ollama bridge running"}


@app.get("/healthz")
async def healthz(client: InferenceClient = Depends(get_inference_client)) -> Dict[str, Any]:
    """Readiness probe reporting the resolved backend and its reachability."""

    connection: Dict[str, Any] = {"status": "connected", "models_available": 0, "error": None}
    try:
        connection["models_available"] = len(await client.list_models())
    except InferenceError as exc:
        connection.update(status="error", error=str(exc))
    return {"status": "ok", "config": client.describe(), "connection": connection}


@app.get("/models", response_model=List[ModelSummary])
async def list_models(client: InferenceClient = Depends(get_inference_client)) -> List[ModelSummary]:
    try:
        return await client.list_models()
    except InferenceError:
        logger.exception("Model listing failed, serving fallback list")
        now = utc_timestamp()
        return [ModelSummary(name=name, size=size, modified_at=now) for name, size in FALLBACK_MODELS]


@app.post("/llm/chat", response_model=ChatResponse)
async def chat_completion(
    payload: ChatRequest,
    client: InferenceClient = Depends(get_inference_client),
) -> ChatResponse:
    try:
        result = await client.complete(
            payload.model,
            payload.messages,
            payload.options(),
            instructions_embedded=payload.instructions_embedded,
        )
    except CompletionTimeoutError as exc:
        logger.warning("Chat completion timed out", extra={"model": payload.model})
        raise HTTPException(status_code=504, detail=exc.user_message) from exc
    except InferenceError as exc:
        logger.exception("Chat completion failed")
        raise HTTPException(status_code=502, detail="Error processing chat request") from exc

    return ChatResponse(
        content=result.content,
        model=result.model,
        created_at=result.created_at,
        finished=result.finished,
    )


@app.post("/artifacts", response_model=ArtifactResponse)
async def create_artifact(
    payload: ArtifactRequest,
    manager: ModelLifecycleManager = Depends(get_lifecycle_manager),
) -> ArtifactResponse:
    spec = build_custom_model_spec(
        payload.tenant_id,
        payload.bot_name,
        payload.base_model,
        payload.grounding_text,
        topic=payload.topic,
    )
    created = await manager.create(spec)
    if not created.success:
        return ArtifactResponse(name=spec.name, success=False, error=created.error)
    check = await manager.verify(spec.name)
    return ArtifactResponse(name=spec.name, success=True, error=check.error, document=check.document)


@app.get("/artifacts/{name}", response_model=ArtifactResponse)
async def show_artifact(
    name: str,
    manager: ModelLifecycleManager = Depends(get_lifecycle_manager),
) -> ArtifactResponse:
    result = await manager.verify(name)
    return ArtifactResponse(name=name, success=result.success, error=result.error, document=result.document)


@app.delete("/artifacts/{name}", response_model=ArtifactResponse)
async def delete_artifact(
    name: str,
    manager: ModelLifecycleManager = Depends(get_lifecycle_manager),
) -> ArtifactResponse:
    result = await manager.delete(name)
    return ArtifactResponse(name=name, success=result.success, error=result.error)
