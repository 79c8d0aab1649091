from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

import httpx
import pytest

os.environ.setdefault("OTEL_SDK_DISABLED", "true")

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ollama_bridge.clients import InferenceClient
from ollama_bridge.config import BackendConfig, BackendMode


class RecordingBackend:
    """Route table for ``httpx.MockTransport`` that records every request."""

    def __init__(self) -> None:
        self.routes: Dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, response: Any) -> None:
        if callable(response):
            self.routes[(method, path)] = response
        else:
            self.routes[(method, path)] = lambda _request: response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, text="no route")
        return route(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(request.content or b"null") for request in self.requests]


@pytest.fixture()
def direct_config() -> BackendConfig:
    return BackendConfig(base_url="http://engine.test:11434", mode=BackendMode.DIRECT)


@pytest.fixture()
def gateway_config() -> BackendConfig:
    return BackendConfig(base_url="https://gateway.test", mode=BackendMode.GATEWAY, api_key="secret-key")


@pytest.fixture()
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture()
def direct_client(direct_config: BackendConfig, backend: RecordingBackend) -> InferenceClient:
    return InferenceClient(direct_config, timeout=5.0, transport=backend.transport())


@pytest.fixture()
def gateway_client(gateway_config: BackendConfig, backend: RecordingBackend) -> InferenceClient:
    return InferenceClient(gateway_config, timeout=5.0, transport=backend.transport())
