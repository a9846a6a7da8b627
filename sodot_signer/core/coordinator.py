"""Room creation and concurrent fan-out across the N vertices.

Keygen and signing share one shape: open a room via vertex 0, issue the same
call to every vertex concurrently, and wait for all of them to settle. This
module owns that shape and the shared HTTP client the vertices talk over.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, TypeVar

import httpx
import structlog

from sodot_signer.core.api_logs import ApiLogSink
from sodot_signer.core.circuit import VertexCircuit
from sodot_signer.core.errors import SignerConfigError
from sodot_signer.core.vertex import VertexClient

if TYPE_CHECKING:
    from sodot_signer.config import Config

log = structlog.get_logger()

T = TypeVar("T")

# Index of the vertex that creates rooms (fixed role, no election)
ROOM_CREATOR = 0


class SessionCoordinator:
    """Runs room creation and fan-out over a fixed, ordered vertex set."""

    def __init__(
        self,
        vertices: Sequence[VertexClient],
        *,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        if len(vertices) < 2:
            raise SignerConfigError(f"at least 2 vertices are required, got {len(vertices)}")
        for position, vertex in enumerate(vertices):
            if vertex.index != position:
                raise SignerConfigError(
                    f"vertex at position {position} has index {vertex.index}; "
                    "vertices must be ordered by index"
                )
        self._vertices = list(vertices)
        self._http = http

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        http: httpx.AsyncClient | None = None,
        api_logs: ApiLogSink | None = None,
    ) -> SessionCoordinator:
        """Build a coordinator for the configured vertices.

        When ``http`` is omitted the coordinator creates its own client and
        closes it in :meth:`close`.
        """
        owned = http is None
        client = http or httpx.AsyncClient(timeout=config.vertex_timeout)
        vertices = [
            VertexClient(
                endpoint,
                client,
                timeout=config.vertex_timeout,
                retries=config.vertex_retries,
                retry_backoff=config.vertex_retry_backoff,
                api_logs=api_logs,
                circuit=VertexCircuit(endpoint.index),
            )
            for endpoint in config.vertex_endpoints()
        ]
        return cls(vertices, http=client if owned else None)

    @property
    def n(self) -> int:
        return len(self._vertices)

    @property
    def vertices(self) -> list[VertexClient]:
        return list(self._vertices)

    def vertex(self, index: int) -> VertexClient:
        return self._vertices[index]

    async def open_room(self, size: int) -> str:
        """Create a room via the room creator; the id is valid on every vertex."""
        room_id = await self._vertices[ROOM_CREATOR].create_room(size)
        log.info("room_opened", room_id=room_id, size=size)
        return room_id

    async def fan_out(self, call: Callable[[VertexClient], Awaitable[T]]) -> list[T]:
        """Run ``call`` against every vertex concurrently.

        Results are positional (``results[i]`` came from vertex i). Waits for
        all calls to settle; if any raised, the lowest-index exception is
        re-raised after every failure has been logged.
        """
        results = await asyncio.gather(
            *(call(vertex) for vertex in self._vertices),
            return_exceptions=True,
        )
        failures = [(i, r) for i, r in enumerate(results) if isinstance(r, BaseException)]
        if failures:
            for i, exc in failures:
                log.warning("vertex_call_failed", vertex=i, error=str(exc), error_type=type(exc).__name__)
            raise failures[0][1]
        return list(results)  # type: ignore[arg-type]

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
