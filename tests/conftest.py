"""Shared fixtures for the signer test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

# Config reads the environment at import time; pin a 3-vertex setup so tests
# don't depend on the local .env file.
os.environ["SODOT_NUM_PARTIES"] = "3"
os.environ["SODOT_THRESHOLD"] = "2"
for _i in range(3):
    os.environ[f"SODOT_VERTEX_URL_{_i}"] = f"https://vertex{_i}.test"
    os.environ[f"SODOT_VERTEX_API_KEY_{_i}"] = f"api-key-{_i}"
os.environ["SODOT_EXISTING_ECDSA_KEY_IDS"] = ""
os.environ["SODOT_EXISTING_ED25519_KEY_IDS"] = ""
os.environ.setdefault("CORS_ORIGINS", "http://localhost:3000")

import httpx
import pytest

from sodot_signer.core.api_logs import ApiLogBuffer
from sodot_signer.core.coordinator import SessionCoordinator
from sodot_signer.core.vertex import VertexClient, VertexEndpoint

ECDSA_SIGN_RESPONSE = {
    "r": "0x" + "AB" * 32,
    "s": "0x" + "cd" * 32,
    "v": 1,
    "der": "3044" + "ab" * 32 + "cd" * 32,
}
ED25519_SIGN_RESPONSE = {"signature": "5e" * 64}
ECDSA_PUBKEY_RESPONSE = {"compressed": "02abc123", "uncompressed": "04abc123def456"}
ED25519_PUBKEY_RESPONSE = {"pubkey": "ab12cd34"}


@dataclass
class VertexCall:
    index: int
    method: str
    path: str
    body: Any
    headers: dict[str, str]


@dataclass
class FakeVertices:
    """In-memory stand-in for N vertices behind one MockTransport.

    Requests are routed by host (``vertex{i}.test``). ``overrides`` maps
    ``(index, path)`` to a handler returning a response or raising.
    """

    n: int = 3
    calls: list[VertexCall] = field(default_factory=list)
    overrides: dict[tuple[int, str], Callable[[httpx.Request], httpx.Response]] = field(default_factory=dict)
    rooms_created: int = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        index = int(request.url.host.split(".")[0].removeprefix("vertex"))
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append(VertexCall(index, request.method, path, body, dict(request.headers)))

        override = self.overrides.get((index, path))
        if override is not None:
            return override(request)

        if path == "/create-room":
            self.rooms_created += 1
            return httpx.Response(200, json={"room_uuid": f"room-{self.rooms_created}"})
        curve, _, op = path.strip("/").partition("/")
        if op == "create":
            return httpx.Response(
                200, json={"key_id": f"{curve}-key-{index}", "keygen_id": f"{curve}-keygen-{index}"}
            )
        if op == "keygen":
            return httpx.Response(200, json={})
        if op == "sign":
            return httpx.Response(200, json=ECDSA_SIGN_RESPONSE if curve == "ecdsa" else ED25519_SIGN_RESPONSE)
        if op == "derive-pubkey":
            return httpx.Response(200, json=ECDSA_PUBKEY_RESPONSE if curve == "ecdsa" else ED25519_PUBKEY_RESPONSE)
        return httpx.Response(404, text="not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls_to(self, suffix: str) -> list[VertexCall]:
        return [c for c in self.calls if c.path.endswith(suffix)]


@pytest.fixture
def vertices() -> FakeVertices:
    return FakeVertices()


@pytest.fixture
def api_logs() -> ApiLogBuffer:
    return ApiLogBuffer()


@pytest.fixture
def make_coordinator(vertices: FakeVertices, api_logs: ApiLogBuffer) -> Callable[..., SessionCoordinator]:
    """Factory for a coordinator over the fake vertices (no retries by default)."""

    def _make(retries: int = 0, timeout: float = 5.0) -> SessionCoordinator:
        http = vertices.client()
        clients = [
            VertexClient(
                VertexEndpoint(base_url=f"https://vertex{i}.test", credential=f"api-key-{i}", index=i),
                http,
                timeout=timeout,
                retries=retries,
                retry_backoff=0.0,
                api_logs=api_logs,
            )
            for i in range(vertices.n)
        ]
        return SessionCoordinator(clients, http=http)

    return _make


@pytest.fixture
def coordinator(make_coordinator: Callable[..., SessionCoordinator]) -> SessionCoordinator:
    return make_coordinator()
