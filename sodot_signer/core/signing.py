"""Threshold signing across the vertices.

Each run opens a fresh room (rooms are single-use), asks every vertex to sign
with its own key share, and reduces the N partial results to the index-0
signature. With quorum checking on, at least T vertices must have signed;
every returned signature must equal vertex 0's.
"""

from __future__ import annotations

import time

import structlog

from sodot_signer.core.coordinator import SessionCoordinator
from sodot_signer.core.curves import VertexCurve
from sodot_signer.core.errors import (
    PHASE_SIGN,
    SignatureMismatch,
    SignerConfigError,
    SigningFailed,
    VertexError,
)
from sodot_signer.core.signature import PartialSignature, signatures_match

log = structlog.get_logger()

AUTHORITATIVE_VERTEX = 0


class SigningProtocol:
    def __init__(
        self,
        coordinator: SessionCoordinator,
        num_parties: int,
        threshold: int,
        *,
        require_quorum: bool = True,
    ) -> None:
        if coordinator.n != num_parties:
            raise SignerConfigError(
                f"coordinator has {coordinator.n} vertices, expected {num_parties}"
            )
        self._coordinator = coordinator
        self._n = num_parties
        self._t = threshold
        self._require_quorum = require_quorum

    async def sign(
        self,
        key_ids: list[str],
        message: str,
        derivation_path: list[int],
        curve: VertexCurve,
        hash_algo: str | None = None,
    ) -> PartialSignature:
        if len(key_ids) != self._n:
            raise SignerConfigError(f"KeySet must hold {self._n} key ids, got {len(key_ids)}")
        if curve is VertexCurve.ED25519:
            hash_algo = None

        from sodot_signer.api.metrics import PROTOCOL_DURATION, PROTOCOL_RUNS

        start = time.monotonic()
        try:
            signature = await self._run(key_ids, message, derivation_path, curve, hash_algo)
        except SigningFailed:
            PROTOCOL_RUNS.labels(protocol="sign", curve=curve.value, result="failure").inc()
            raise
        finally:
            elapsed = time.monotonic() - start
            PROTOCOL_DURATION.labels(protocol="sign").observe(elapsed)
        PROTOCOL_RUNS.labels(protocol="sign", curve=curve.value, result="success").inc()
        log.info("signing_complete", curve=curve.value, elapsed_s=round(elapsed, 3))
        return signature

    async def _run(
        self,
        key_ids: list[str],
        message: str,
        derivation_path: list[int],
        curve: VertexCurve,
        hash_algo: str | None,
    ) -> PartialSignature:
        try:
            room_id = await self._coordinator.open_room(self._n)
            results: list[PartialSignature | None] = await self._coordinator.fan_out(
                lambda vertex: vertex.sign(
                    curve,
                    room_id,
                    key_ids[vertex.index],
                    message,
                    derivation_path,
                    hash_algo,
                )
            )
        except VertexError as e:
            log.error("signing_failed", curve=curve.value, vertex=e.vertex_index, phase=e.phase, error=e.message)
            raise SigningFailed.from_vertex_error("signing aborted", e) from e

        missing = [i for i, r in enumerate(results) if r is None]
        authoritative = results[AUTHORITATIVE_VERTEX]
        if authoritative is None:
            log.error("signing_failed", room_id=room_id, missing=missing)
            raise SigningFailed(
                "authoritative vertex returned no signature",
                phase=PHASE_SIGN,
                vertex_index=AUTHORITATIVE_VERTEX,
            )
        signed = self._n - len(missing)
        if self._require_quorum and signed < self._t:
            log.error("signing_below_threshold", room_id=room_id, signed=signed, threshold=self._t)
            raise SigningFailed(
                f"only {signed} of {self._n} vertices signed, threshold is {self._t}",
                phase=PHASE_SIGN,
            )
        if missing:
            log.warning("signing_partial_results", room_id=room_id, missing=missing)

        for i, partial in enumerate(results):
            if i == AUTHORITATIVE_VERTEX or partial is None:
                continue
            if not signatures_match(authoritative, partial):
                log.error("signature_mismatch", room_id=room_id, vertex=i)
                raise SignatureMismatch(
                    "partial signature differs from the authoritative vertex",
                    phase=PHASE_SIGN,
                    vertex_index=i,
                )
        return authoritative
