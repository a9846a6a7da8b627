"""Distributed key generation across the vertices.

One run opens a room, asks every vertex for fresh keygen identifiers, then
starts the keygen round on every vertex with the other vertices' keygen ids.
Any vertex failure aborts the run; there is no resume, so a retry produces a
brand new KeySet.
"""

from __future__ import annotations

import time

import structlog

from sodot_signer.core.coordinator import SessionCoordinator
from sodot_signer.core.curves import VertexCurve
from sodot_signer.core.errors import KeygenFailed, SignerConfigError, VertexError
from sodot_signer.core.vertex import KeygenParticipant, VertexClient

log = structlog.get_logger()


def peer_keygen_ids(keygen_ids: list[str], own_index: int) -> list[str]:
    """Keygen ids of every vertex except ``own_index``, in index order."""
    return [kid for i, kid in enumerate(keygen_ids) if i != own_index]


class KeygenProtocol:
    def __init__(self, coordinator: SessionCoordinator, num_parties: int, threshold: int) -> None:
        if coordinator.n != num_parties:
            raise SignerConfigError(
                f"coordinator has {coordinator.n} vertices, expected {num_parties}"
            )
        if not (1 <= threshold <= num_parties):
            raise SignerConfigError(f"threshold must be 1-{num_parties}, got {threshold}")
        self._coordinator = coordinator
        self._n = num_parties
        self._t = threshold

    async def run(self, curve: VertexCurve) -> list[str]:
        """Generate a new key; returns the KeySet (key share id per vertex index)."""
        from sodot_signer.api.metrics import PROTOCOL_DURATION, PROTOCOL_RUNS

        start = time.monotonic()
        log.info("keygen_started", curve=curve.value, n=self._n, t=self._t)
        try:
            room_id = await self._coordinator.open_room(self._n)
            participants: list[KeygenParticipant] = await self._coordinator.fan_out(
                lambda vertex: vertex.keygen_init(curve)
            )
            keygen_ids = [p.keygen_id for p in participants]

            def keygen_round(vertex: VertexClient):
                return vertex.keygen(
                    curve,
                    room_id,
                    participants[vertex.index].key_id,
                    self._n,
                    self._t,
                    peer_keygen_ids(keygen_ids, vertex.index),
                )

            await self._coordinator.fan_out(keygen_round)
        except VertexError as e:
            PROTOCOL_RUNS.labels(protocol="keygen", curve=curve.value, result="failure").inc()
            log.error("keygen_failed", curve=curve.value, vertex=e.vertex_index, phase=e.phase, error=e.message)
            raise KeygenFailed.from_vertex_error("key generation aborted", e) from e
        finally:
            elapsed = time.monotonic() - start
            PROTOCOL_DURATION.labels(protocol="keygen").observe(elapsed)

        key_ids = [p.key_id for p in participants]
        PROTOCOL_RUNS.labels(protocol="keygen", curve=curve.value, result="success").inc()
        log.info(
            "keygen_complete",
            curve=curve.value,
            room_id=room_id,
            key_ids=key_ids,
            elapsed_s=round(elapsed, 3),
        )
        return key_ids
