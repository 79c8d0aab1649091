"""Lifecycle management for per-bot custom models."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterator, Mapping, Optional, Protocol

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .clients import InferenceClient
from .config import BackendMode
from .exceptions import ArtifactNotFoundError, ConflictError, InferenceError, TransportError
from .models import CustomModelSpec

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_ALREADY_EXISTS = "already exists"
_NOT_FOUND = "not found"
GATEWAY_ENGINE_PREFIX = "/ollama"


@dataclass
class LifecycleResult:
    """Outcome of a lifecycle operation; failures never raise."""

    success: bool
    error: Optional[str] = None
    document: Optional[str] = None


class ArtifactStore(Protocol):
    """Backend capable of storing custom models."""

    async def create(self, spec: CustomModelSpec) -> None:
        """Create ``spec.name``; raise :class:`ConflictError` if it exists."""

    async def show(self, name: str) -> str:
        """Return the stored instruction document of ``name``."""

    async def delete(self, name: str) -> None:
        """Remove ``name``; raise :class:`ArtifactNotFoundError` if absent."""


def _modelfile_from(name: str, data: Any) -> str:
    if not isinstance(data, Mapping):
        raise TransportError(f"Unexpected show response for {name}: {type(data).__name__}")
    document = data.get("modelfile")
    return document if isinstance(document, str) else ""


class RestArtifactStore:
    """Manage custom models through the engine's HTTP API.

    In gateway mode the calls go through the gateway's engine passthrough.
    """

    def __init__(self, client: InferenceClient) -> None:
        self._client = client

    def _path(self, operation: str) -> str:
        prefix = GATEWAY_ENGINE_PREFIX if self._client.config.mode is BackendMode.GATEWAY else ""
        return f"{prefix}/api/{operation}"

    async def create(self, spec: CustomModelSpec) -> None:
        response = await self._client.request(
            "POST",
            self._path("create"),
            json={
                "name": spec.name,
                "from": spec.base_model,
                "modelfile": spec.instruction_document,
            },
            timeout=None,
        )
        if response.status_code == 409 or (
            response.status_code >= 400 and _ALREADY_EXISTS in response.text
        ):
            raise ConflictError(response.text, status_code=response.status_code)
        if response.status_code >= 400:
            raise TransportError(response.text, status_code=response.status_code)

    async def show(self, name: str) -> str:
        response = await self._client.request(
            "POST", self._path("show"), json={"name": name}, timeout=None
        )
        if response.status_code == 404:
            raise ArtifactNotFoundError(response.text, status_code=404)
        if response.status_code >= 400:
            raise TransportError(response.text, status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError(f"Invalid show response for {name}") from exc
        return _modelfile_from(name, data)

    async def delete(self, name: str) -> None:
        response = await self._client.request(
            "DELETE", self._path("delete"), json={"name": name}, timeout=None
        )
        if response.status_code == 404:
            raise ArtifactNotFoundError(response.text, status_code=404)
        if response.status_code >= 400:
            raise TransportError(response.text, status_code=response.status_code)


@contextlib.contextmanager
def temporary_modelfile(document: str) -> Iterator[str]:
    """Write ``document`` to a temporary file removed on every exit path."""

    fd, path = tempfile.mkstemp(prefix="modelfile-", suffix=".txt")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(document)
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)


class CliArtifactStore:
    """Manage custom models with the engine's command-line tool.

    Only usable when running on the same host as the engine.
    """

    def __init__(self, binary: str = "ollama") -> None:
        self.binary = binary

    async def _run(self, *args: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportError(f"Cannot run {self.binary}: {exc}") from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or (
                f"{self.binary} {args[0]} exited with status {process.returncode}"
            )
            lowered = message.lower()
            if _ALREADY_EXISTS in lowered:
                raise ConflictError(message)
            if _NOT_FOUND in lowered:
                raise ArtifactNotFoundError(message)
            raise TransportError(message)
        return stdout.decode("utf-8", errors="replace")

    async def create(self, spec: CustomModelSpec) -> None:
        with temporary_modelfile(spec.instruction_document) as path:
            await self._run("create", spec.name, "-f", path)

    async def show(self, name: str) -> str:
        return await self._run("show", name, "--modelfile")

    async def delete(self, name: str) -> None:
        await self._run("rm", name)


class ModelLifecycleManager:
    """Create, verify and delete custom models on the active store.

    Operations for the same name are serialised within the process.
    """

    def __init__(self, store: ArtifactStore) -> None:
        self.store = store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _lock(self, name: str) -> AsyncIterator[None]:
        """Hold the lock for ``name``; the entry is dropped by its last user."""

        lock = self._locks.setdefault(name, asyncio.Lock())
        self._holders[name] = self._holders.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[name] -= 1
            if not self._holders[name]:
                del self._holders[name]
                del self._locks[name]

    async def create(self, spec: CustomModelSpec) -> LifecycleResult:
        async with self._lock(spec.name):
            with tracer.start_as_current_span("Ollama.createModel") as span:
                span.set_attribute("llm.model", spec.name)
                span.set_attribute("llm.base_model", spec.base_model)
                result = await self._create(spec)
                span.set_attribute("llm.lifecycle.success", result.success)
                if not result.success:
                    span.set_status(Status(StatusCode.ERROR, result.error or ""))
                return result

    async def _create(self, spec: CustomModelSpec) -> LifecycleResult:
        logger.debug(
            "Creating custom model",
            extra={
                "model": spec.name,
                "base_model": spec.base_model,
                "document_length": len(spec.instruction_document),
            },
        )
        try:
            await self.store.create(spec)
        except ConflictError:
            logger.info("Custom model %s already exists, recreating it", spec.name)
            deleted = await self._delete(spec.name)
            if not deleted.success:
                logger.warning("Could not remove existing model %s: %s", spec.name, deleted.error)
            try:
                await self.store.create(spec)
            except InferenceError as exc:
                logger.error("Error creating model %s after retry: %s", spec.name, exc)
                return LifecycleResult(success=False, error=str(exc))
        except InferenceError as exc:
            logger.error("Error creating model %s: %s", spec.name, exc)
            return LifecycleResult(success=False, error=str(exc))

        logger.info("Custom model %s created", spec.name)
        return LifecycleResult(success=True)

    async def verify(self, name: str) -> LifecycleResult:
        """Fetch the stored document so callers can check the embedded text."""

        with tracer.start_as_current_span("Ollama.showModel") as span:
            span.set_attribute("llm.model", name)
            try:
                document = await self.store.show(name)
            except InferenceError as exc:
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.warning("Could not verify model %s: %s", name, exc)
                return LifecycleResult(success=False, error=str(exc))
            return LifecycleResult(success=True, document=document)

    async def delete(self, name: str) -> LifecycleResult:
        async with self._lock(name):
            with tracer.start_as_current_span("Ollama.deleteModel") as span:
                span.set_attribute("llm.model", name)
                result = await self._delete(name)
                if not result.success:
                    span.set_status(Status(StatusCode.ERROR, result.error or ""))
                return result

    async def _delete(self, name: str) -> LifecycleResult:
        try:
            await self.store.delete(name)
        except ArtifactNotFoundError:
            logger.debug("Custom model %s was already absent", name)
            return LifecycleResult(success=True)
        except InferenceError as exc:
            logger.error("Error deleting model %s: %s", name, exc)
            return LifecycleResult(success=False, error=str(exc))
        logger.info("Custom model %s deleted", name)
        return LifecycleResult(success=True)


def build_artifact_store(client: InferenceClient, kind: str = "rest", binary: str = "ollama") -> ArtifactStore:
    """Return the store selected by configuration."""

    if kind == "cli":
        return CliArtifactStore(binary)
    return RestArtifactStore(client)
