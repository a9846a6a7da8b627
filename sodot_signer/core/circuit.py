"""Per-vertex outage tracking.

Only errors that mean the vertex could not be reached at all count as
outages: transport failures and timeouts. A vertex that answers, even with a
rejection or a body we cannot parse, is up, and the answer clears its record.

After ``outage_limit`` consecutive outages the vertex is *tripped*: calls to
it fail fast with ``VertexUnreachable`` until ``cooldown`` seconds have
passed. The next call after that is a probe. If the probe reaches the vertex
it is restored; if not it trips again for another cooldown.
"""

from __future__ import annotations

import time
from enum import Enum

import structlog

from sodot_signer.core.errors import VertexError, VertexTimeout, VertexUnreachable

log = structlog.get_logger()

_OUTAGES = (VertexUnreachable, VertexTimeout)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    PROBING = "probing"


class VertexCircuit:
    """Outage record and fail-fast gate for one vertex."""

    def __init__(self, vertex_index: int, *, outage_limit: int = 5, cooldown: float = 30.0) -> None:
        self.vertex_index = vertex_index
        self._outage_limit = outage_limit
        self._cooldown = cooldown
        self._outages = 0
        self._tripped_at: float | None = None
        self._probing = False

    @property
    def state(self) -> CircuitState:
        if self._tripped_at is None:
            return CircuitState.CLOSED
        if time.monotonic() - self._tripped_at < self._cooldown:
            return CircuitState.OPEN
        return CircuitState.PROBING

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def retry_in(self) -> float:
        """Seconds until a tripped vertex accepts a probe."""
        if self._tripped_at is None:
            return 0.0
        return max(0.0, self._cooldown - (time.monotonic() - self._tripped_at))

    def admit(self, phase: str) -> None:
        """Raise ``VertexUnreachable`` unless a call may go out to the vertex now."""
        state = self.state
        if state is CircuitState.CLOSED:
            return
        if state is CircuitState.PROBING and not self._probing:
            self._probing = True
            log.info("vertex_probe", vertex=self.vertex_index, phase=phase)
            return
        raise VertexUnreachable(
            self.vertex_index,
            phase,
            f"circuit open, retry in {self.retry_in:.0f}s",
        )

    def record(self, error: VertexError | None = None) -> None:
        """Account for one finished call; ``None`` means the vertex answered."""
        self._probing = False
        if isinstance(error, _OUTAGES):
            self._outages += 1
            if self._tripped_at is not None or self._outages >= self._outage_limit:
                self._trip(error)
        else:
            if self._tripped_at is not None:
                log.info("vertex_restored", vertex=self.vertex_index)
            self._outages = 0
            self._tripped_at = None
        self._publish()

    def _trip(self, error: VertexError) -> None:
        probe_failed = self._tripped_at is not None
        self._tripped_at = time.monotonic()
        log.warning(
            "vertex_tripped",
            vertex=self.vertex_index,
            outages=self._outages,
            probe_failed=probe_failed,
            cooldown_s=self._cooldown,
            error=str(error),
        )

    def _publish(self) -> None:
        from sodot_signer.api.metrics import VERTEX_CIRCUIT_OPEN

        VERTEX_CIRCUIT_OPEN.labels(vertex=str(self.vertex_index)).set(0 if self._tripped_at is None else 1)
