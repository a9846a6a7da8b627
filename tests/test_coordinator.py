"""Tests for room creation and vertex fan-out."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest

from conftest import FakeVertices
from sodot_signer.config import Config
from sodot_signer.core.coordinator import SessionCoordinator
from sodot_signer.core.curves import VertexCurve
from sodot_signer.core.errors import SignerConfigError, VertexRejected
from sodot_signer.core.vertex import VertexClient, VertexEndpoint


class TestConstruction:
    def test_requires_two_vertices(self, vertices: FakeVertices) -> None:
        only = VertexClient(VertexEndpoint("https://vertex0.test", "k", 0), vertices.client())
        with pytest.raises(SignerConfigError, match="at least 2"):
            SessionCoordinator([only])

    def test_requires_index_order(self, vertices: FakeVertices) -> None:
        http = vertices.client()
        swapped = [
            VertexClient(VertexEndpoint("https://vertex1.test", "k", 1), http),
            VertexClient(VertexEndpoint("https://vertex0.test", "k", 0), http),
        ]
        with pytest.raises(SignerConfigError, match="ordered by index"):
            SessionCoordinator(swapped)

    @pytest.mark.asyncio
    async def test_from_config_builds_one_client_per_vertex(self) -> None:
        coordinator = SessionCoordinator.from_config(Config())
        try:
            assert coordinator.n == 3
            assert [v.endpoint.base_url for v in coordinator.vertices] == [
                "https://vertex0.test",
                "https://vertex1.test",
                "https://vertex2.test",
            ]
        finally:
            await coordinator.close()

    @pytest.mark.asyncio
    async def test_from_config_client_uses_vertex_timeout(self) -> None:
        config = Config()
        object.__setattr__(config, "vertex_timeout", 45.0)
        coordinator = SessionCoordinator.from_config(config)
        try:
            # httpx defaults to 5s, which would cut every vertex call short
            assert coordinator._http.timeout == httpx.Timeout(45.0)
        finally:
            await coordinator.close()


class TestOpenRoom:
    @pytest.mark.asyncio
    async def test_only_vertex_zero_creates_rooms(
        self, vertices: FakeVertices, coordinator: SessionCoordinator
    ) -> None:
        room_id = await coordinator.open_room(3)
        assert room_id == "room-1"
        assert [(c.index, c.path) for c in vertices.calls] == [(0, "/create-room")]


class TestFanOut:
    @pytest.mark.asyncio
    async def test_results_are_positional(self, coordinator: SessionCoordinator) -> None:
        async def call(vertex: VertexClient) -> int:
            # Later vertices finish first
            await asyncio.sleep(0.01 * (coordinator.n - vertex.index))
            return vertex.index * 10

        assert await coordinator.fan_out(call) == [0, 10, 20]

    @pytest.mark.asyncio
    async def test_waits_for_all_before_raising(self, coordinator: SessionCoordinator) -> None:
        finished: list[int] = []

        async def call(vertex: VertexClient) -> int:
            if vertex.index == 0:
                raise RuntimeError("vertex 0 down")
            await asyncio.sleep(0.02)
            finished.append(vertex.index)
            return vertex.index

        with pytest.raises(RuntimeError, match="vertex 0 down"):
            await coordinator.fan_out(call)
        assert sorted(finished) == [1, 2]

    @pytest.mark.asyncio
    async def test_lowest_index_failure_wins(
        self, vertices: FakeVertices, make_coordinator: Callable[..., SessionCoordinator]
    ) -> None:
        vertices.overrides[(1, "/ecdsa/create")] = lambda r: httpx.Response(500, text="one")
        vertices.overrides[(2, "/ecdsa/create")] = lambda r: httpx.Response(500, text="two")
        coordinator = make_coordinator()
        with pytest.raises(VertexRejected) as exc_info:
            await coordinator.fan_out(lambda v: v.keygen_init(VertexCurve.ECDSA))
        assert exc_info.value.vertex_index == 1
        assert len(vertices.calls) == 3


class TestClose:
    @pytest.mark.asyncio
    async def test_closes_owned_client(self, vertices: FakeVertices) -> None:
        http = vertices.client()
        clients = [VertexClient(VertexEndpoint(f"https://vertex{i}.test", "k", i), http) for i in range(3)]
        coordinator = SessionCoordinator(clients, http=http)
        await coordinator.close()
        assert http.is_closed

    @pytest.mark.asyncio
    async def test_leaves_borrowed_client_open(self, vertices: FakeVertices) -> None:
        http = vertices.client()
        clients = [VertexClient(VertexEndpoint(f"https://vertex{i}.test", "k", i), http) for i in range(3)]
        coordinator = SessionCoordinator(clients)
        await coordinator.close()
        assert not http.is_closed
