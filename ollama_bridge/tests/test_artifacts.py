from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

from ollama_bridge.artifacts import (
    CliArtifactStore,
    ModelLifecycleManager,
    RestArtifactStore,
    build_artifact_store,
    temporary_modelfile,
)
from ollama_bridge.clients import InferenceClient
from ollama_bridge.exceptions import ArtifactNotFoundError, ConflictError, TransportError
from ollama_bridge.instructions import build_custom_model_spec

SPEC = build_custom_model_spec(7, "Support", "llama3.2:1b", "Open 9am to 5pm.")


class FakeStore:
    """In-memory store with scripted failures."""

    def __init__(self, create_errors: Optional[List[Exception]] = None) -> None:
        self.models: Dict[str, str] = {}
        self.calls: List[str] = []
        self.create_errors = list(create_errors or [])
        self.delete_error: Optional[Exception] = None

    async def create(self, spec) -> None:
        self.calls.append(f"create:{spec.name}")
        if self.create_errors:
            raise self.create_errors.pop(0)
        if spec.name in self.models:
            raise ConflictError(f"model '{spec.name}' already exists", status_code=409)
        self.models[spec.name] = spec.instruction_document

    async def show(self, name: str) -> str:
        self.calls.append(f"show:{name}")
        if name not in self.models:
            raise ArtifactNotFoundError(f"model '{name}' not found", status_code=404)
        return self.models[name]

    async def delete(self, name: str) -> None:
        self.calls.append(f"delete:{name}")
        if self.delete_error is not None:
            raise self.delete_error
        if name not in self.models:
            raise ArtifactNotFoundError(f"model '{name}' not found", status_code=404)
        del self.models[name]


@pytest.mark.asyncio
async def test_create_then_verify() -> None:
    store = FakeStore()
    manager = ModelLifecycleManager(store)

    created = await manager.create(SPEC)
    verified = await manager.verify(SPEC.name)

    assert created.success is True
    assert verified.success is True
    assert "Open 9am to 5pm." in (verified.document or "")


@pytest.mark.asyncio
async def test_existing_model_is_recreated_once() -> None:
    store = FakeStore()
    store.models[SPEC.name] = "FROM llama3.2:1b\n"
    manager = ModelLifecycleManager(store)

    result = await manager.create(SPEC)

    assert result.success is True
    assert store.calls == [f"create:{SPEC.name}", f"delete:{SPEC.name}", f"create:{SPEC.name}"]
    assert store.models[SPEC.name] == SPEC.instruction_document


@pytest.mark.asyncio
async def test_second_conflict_is_reported_not_retried() -> None:
    store = FakeStore(
        create_errors=[
            ConflictError("already exists", status_code=409),
            ConflictError("already exists", status_code=409),
        ]
    )
    manager = ModelLifecycleManager(store)

    result = await manager.create(SPEC)

    assert result.success is False
    assert "already exists" in (result.error or "")
    assert [call for call in store.calls if call.startswith("create")] == [f"create:{SPEC.name}"] * 2


@pytest.mark.asyncio
async def test_transport_failure_on_create_is_not_retried() -> None:
    store = FakeStore(create_errors=[TransportError("base model missing", status_code=500)])
    manager = ModelLifecycleManager(store)

    result = await manager.create(SPEC)

    assert result.success is False
    assert result.error == "base model missing"
    assert store.calls == [f"create:{SPEC.name}"]


@pytest.mark.asyncio
async def test_delete_missing_model_succeeds() -> None:
    manager = ModelLifecycleManager(FakeStore())

    result = await manager.delete("bot_9_ghost")

    assert result.success is True
    assert result.error is None


@pytest.mark.asyncio
async def test_delete_transport_failure_is_reported() -> None:
    store = FakeStore()
    store.delete_error = TransportError("engine offline")
    manager = ModelLifecycleManager(store)

    result = await manager.delete(SPEC.name)

    assert result.success is False
    assert result.error == "engine offline"


@pytest.mark.asyncio
async def test_verify_missing_model_reports_error() -> None:
    result = await ModelLifecycleManager(FakeStore()).verify("bot_9_ghost")

    assert result.success is False
    assert "not found" in (result.error or "")


@pytest.mark.asyncio
async def test_concurrent_operations_on_one_name_are_serialised() -> None:
    order: List[str] = []

    class SlowStore(FakeStore):
        async def create(self, spec) -> None:
            order.append("create-start")
            await asyncio.sleep(0.01)
            await super().create(spec)
            order.append("create-end")

        async def delete(self, name: str) -> None:
            order.append("delete-start")
            await super().delete(name)
            order.append("delete-end")

    manager = ModelLifecycleManager(SlowStore())

    await asyncio.gather(manager.create(SPEC), manager.delete(SPEC.name))

    assert order == ["create-start", "create-end", "delete-start", "delete-end"]


@pytest.mark.asyncio
async def test_lock_entries_are_released_after_use() -> None:
    manager = ModelLifecycleManager(FakeStore())

    await asyncio.gather(manager.create(SPEC), manager.delete(SPEC.name), manager.delete("bot_7_other"))

    assert manager._locks == {}
    assert manager._holders == {}


@pytest.mark.asyncio
async def test_rest_store_direct_paths(direct_client: InferenceClient, backend) -> None:
    backend.on("POST", "/api/create", httpx.Response(200, json={"status": "success"}))
    backend.on("POST", "/api/show", httpx.Response(200, json={"modelfile": SPEC.instruction_document}))
    backend.on("DELETE", "/api/delete", httpx.Response(200))
    store = RestArtifactStore(direct_client)

    await store.create(SPEC)
    document = await store.show(SPEC.name)
    await store.delete(SPEC.name)

    assert document == SPEC.instruction_document
    create_body, show_body, delete_body = backend.bodies()
    assert create_body == {
        "name": SPEC.name,
        "from": "llama3.2:1b",
        "modelfile": SPEC.instruction_document,
    }
    assert show_body == {"name": SPEC.name}
    assert delete_body == {"name": SPEC.name}


@pytest.mark.asyncio
async def test_rest_store_gateway_uses_engine_passthrough(gateway_client: InferenceClient, backend) -> None:
    backend.on("POST", "/ollama/api/create", httpx.Response(200))
    manager = ModelLifecycleManager(RestArtifactStore(gateway_client))

    result = await manager.create(SPEC)

    assert result.success is True
    assert backend.requests[0].url.path == "/ollama/api/create"
    assert backend.requests[0].headers["Authorization"] == "Bearer secret-key"


@pytest.mark.asyncio
async def test_rest_store_conflict_triggers_recreate(direct_client: InferenceClient, backend) -> None:
    responses = [
        httpx.Response(500, text=f'{{"error":"model \\"{SPEC.name}\\" already exists"}}'),
        httpx.Response(200),
    ]
    backend.on("POST", "/api/create", lambda _request: responses.pop(0))
    backend.on("DELETE", "/api/delete", httpx.Response(404, text="not found"))
    manager = ModelLifecycleManager(RestArtifactStore(direct_client))

    result = await manager.create(SPEC)

    assert result.success is True
    assert [(r.method, r.url.path) for r in backend.requests] == [
        ("POST", "/api/create"),
        ("DELETE", "/api/delete"),
        ("POST", "/api/create"),
    ]


@pytest.mark.asyncio
async def test_rest_store_surfaces_raw_error_text(direct_client: InferenceClient, backend) -> None:
    backend.on("POST", "/api/create", httpx.Response(400, text="pull model manifest: file does not exist"))

    result = await ModelLifecycleManager(RestArtifactStore(direct_client)).create(SPEC)

    assert result.success is False
    assert result.error == "pull model manifest: file does not exist"


@pytest.mark.asyncio
async def test_rest_store_unexpected_show_reply_fails_verification(direct_client: InferenceClient, backend) -> None:
    backend.on("POST", "/api/show", httpx.Response(200, json=["unexpected"]))

    result = await ModelLifecycleManager(RestArtifactStore(direct_client)).verify(SPEC.name)

    assert result.success is False
    assert "Unexpected show response" in (result.error or "")


def test_temporary_modelfile_is_removed_on_error() -> None:
    with pytest.raises(RuntimeError):
        with temporary_modelfile("FROM llama3.2:1b\n") as path:
            assert Path(path).read_text(encoding="utf-8") == "FROM llama3.2:1b\n"
            raise RuntimeError("boom")

    assert not os.path.exists(path)


class _FakeProcess:
    def __init__(self, returncode: int, stdout: bytes = b"", stderr: bytes = b"") -> None:
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr

    async def communicate(self):
        return self._stdout, self._stderr


@pytest.mark.asyncio
async def test_cli_store_create_cleans_up_modelfile(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: Dict[str, object] = {}

    async def fake_exec(*args, **kwargs):
        seen["args"] = args
        path = args[args.index("-f") + 1]
        seen["path"] = path
        seen["document"] = Path(path).read_text(encoding="utf-8")
        return _FakeProcess(0, stdout=b"success\n")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)

    await CliArtifactStore("ollama").create(SPEC)

    assert seen["args"][:3] == ("ollama", "create", SPEC.name)
    assert seen["document"] == SPEC.instruction_document
    assert not os.path.exists(str(seen["path"]))


@pytest.mark.asyncio
async def test_cli_store_maps_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    outcomes = {
        "create": _FakeProcess(1, stderr=b"Error: model already exists"),
        "rm": _FakeProcess(1, stderr=b"Error: model 'bot_7_support' not found"),
        "show": _FakeProcess(1, stderr=b"Error: something broke"),
    }

    async def fake_exec(binary, command, *args, **kwargs):
        return outcomes[command]

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    store = CliArtifactStore()

    with pytest.raises(ConflictError):
        await store.create(SPEC)
    with pytest.raises(ArtifactNotFoundError):
        await store.delete(SPEC.name)
    with pytest.raises(TransportError):
        await store.show(SPEC.name)


@pytest.mark.asyncio
async def test_cli_store_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_exec(*args, **kwargs):
        raise FileNotFoundError("ollama")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)

    result = await ModelLifecycleManager(CliArtifactStore()).delete(SPEC.name)

    assert result.success is False
    assert "Cannot run ollama" in (result.error or "")


def test_build_artifact_store_selects_implementation(direct_client: InferenceClient) -> None:
    assert isinstance(build_artifact_store(direct_client), RestArtifactStore)
    assert isinstance(build_artifact_store(direct_client, "cli", "/usr/local/bin/ollama"), CliArtifactStore)
