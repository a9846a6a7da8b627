"""HTTP client for a single Sodot vertex.

A vertex is one independent signer node holding one key share. This module
issues exactly one protocol primitive per call (create-room, keygen init,
keygen, sign, derive-pubkey) and translates the HTTP outcome into a typed
result or a classified ``VertexError``.

Every call is:
- bounded by a per-call timeout (``VertexTimeout``, never retried)
- retried with exponential backoff on transport failures only
  (``VertexUnreachable``); non-2xx replies are never retried
- refused without a network call while the vertex is tripped after
  repeated outages (see ``core.circuit``)
- mirrored to the API log sink and to Prometheus after it completes
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from sodot_signer.core.api_logs import ApiLogEntry, ApiLogSink
from sodot_signer.core.circuit import CircuitState, VertexCircuit
from sodot_signer.core.curves import VertexCurve
from sodot_signer.core.errors import (
    PHASE_DERIVE,
    PHASE_INIT,
    PHASE_KEYGEN,
    PHASE_ROOM,
    PHASE_SIGN,
    UnexpectedResponseShape,
    VertexError,
    VertexRejected,
    VertexTimeout,
    VertexUnreachable,
)
from sodot_signer.core.signature import PartialSignature, parse_partial_signature

log = structlog.get_logger()

API_LOG_PROVIDER = "Sodot"


@dataclass(frozen=True)
class VertexEndpoint:
    """Where one vertex lives and how to authenticate to it."""

    base_url: str
    credential: str
    index: int

    def __repr__(self) -> str:
        return f"VertexEndpoint(index={self.index}, base_url={self.base_url!r})"


@dataclass(frozen=True)
class KeygenParticipant:
    """A vertex's identifiers for one keygen run."""

    vertex_index: int
    keygen_id: str
    key_id: str


def _reject_constant(value: str) -> Any:
    raise ValueError(f"not JSON: {value}")


def prepare_message(message: str) -> str:
    """Encode a message the way vertices expect it in ``msg``.

    JSON text is re-serialized as a JSON string (so it ends up escaped twice
    on the wire); anything else loses a leading ``0x``.
    """
    try:
        json.loads(message, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        return message[2:] if message.startswith("0x") else message
    return json.dumps(message, ensure_ascii=False)


class VertexClient:
    """Client for one vertex endpoint over a shared ``httpx.AsyncClient``."""

    DEFAULT_TIMEOUT = 30.0
    DEFAULT_RETRIES = 2
    DEFAULT_RETRY_BACKOFF = 0.3  # seconds, doubles each attempt

    def __init__(
        self,
        endpoint: VertexEndpoint,
        http: httpx.AsyncClient,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        api_logs: ApiLogSink | None = None,
        circuit: VertexCircuit | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._http = http
        self._timeout = timeout
        self._retries = retries
        self._retry_backoff = retry_backoff
        self._api_logs = api_logs
        self._circuit = circuit or VertexCircuit(endpoint.index)

    @property
    def index(self) -> int:
        return self.endpoint.index

    @property
    def circuit(self) -> VertexCircuit:
        return self._circuit

    # ------------------------------------------------------------------
    # Protocol primitives
    # ------------------------------------------------------------------

    async def create_room(self, room_size: int) -> str:
        """Open a room of ``room_size`` parties; returns its id."""
        resp = await self._request(
            "POST", "/create-room", phase=PHASE_ROOM, json_body={"room_size": room_size}
        )
        data = self._json_or_raise(resp, PHASE_ROOM)
        room_id = data.get("room_uuid") if isinstance(data, dict) else None
        if not isinstance(room_id, str) or not room_id:
            raise UnexpectedResponseShape(self.index, PHASE_ROOM, data)
        return room_id

    async def keygen_init(self, curve: VertexCurve) -> KeygenParticipant:
        """Reserve a key share id and a keygen session id on this vertex."""
        resp = await self._request("GET", f"/{curve.value}/create", phase=PHASE_INIT)
        data = self._json_or_raise(resp, PHASE_INIT)
        if not isinstance(data, dict):
            raise UnexpectedResponseShape(self.index, PHASE_INIT, data)
        key_id, keygen_id = data.get("key_id"), data.get("keygen_id")
        if not isinstance(key_id, str) or not isinstance(keygen_id, str):
            raise UnexpectedResponseShape(self.index, PHASE_INIT, data)
        return KeygenParticipant(vertex_index=self.index, keygen_id=keygen_id, key_id=key_id)

    async def keygen(
        self,
        curve: VertexCurve,
        room_id: str,
        key_id: str,
        num_parties: int,
        threshold: int,
        others_keygen_ids: list[str],
    ) -> None:
        """Take part in collective key generation; returns once the vertex acks."""
        resp = await self._request(
            "POST",
            f"/{curve.value}/keygen",
            phase=PHASE_KEYGEN,
            json_body={
                "room_uuid": room_id,
                "key_id": key_id,
                "num_parties": num_parties,
                "threshold": threshold,
                "others_keygen_ids": list(others_keygen_ids),
            },
        )
        self._raise_for_status(resp, PHASE_KEYGEN)

    async def sign(
        self,
        curve: VertexCurve,
        room_id: str,
        key_id: str,
        message: str,
        derivation_path: list[int],
        hash_algo: str | None = None,
    ) -> PartialSignature | None:
        """Produce this vertex's signature for ``message``.

        Returns None when the vertex rejects the request or replies with an
        unreadable body; transport failures and timeouts raise.
        """
        body: dict[str, Any] = {
            "room_uuid": room_id,
            "key_id": key_id,
            "msg": prepare_message(message),
            "derivation_path": list(derivation_path),
        }
        if curve is VertexCurve.ECDSA and hash_algo:
            body["hash_algo"] = hash_algo

        resp = await self._request("POST", f"/{curve.value}/sign", phase=PHASE_SIGN, json_body=body)
        if not resp.is_success:
            log.warning(
                "vertex_sign_rejected",
                vertex=self.index,
                room_id=room_id,
                status=resp.status_code,
                body=resp.text[:500],
            )
            return None
        try:
            return parse_partial_signature(resp.json(), self.index)
        except (ValueError, UnexpectedResponseShape) as e:
            log.warning("vertex_sign_unreadable", vertex=self.index, room_id=room_id, error=str(e))
            return None

    async def derive_pubkey(
        self,
        curve: VertexCurve,
        key_id: str,
        derivation_path: list[int],
    ) -> str:
        """Derive the public key for ``key_id`` at ``derivation_path``.

        ed25519 vertices reply ``{pubkey}``, ecdsa vertices
        ``{compressed, uncompressed}``; the compressed form is returned.
        """
        resp = await self._request(
            "POST",
            f"/{curve.value}/derive-pubkey",
            phase=PHASE_DERIVE,
            json_body={"key_id": key_id, "derivation_path": list(derivation_path)},
        )
        data = self._json_or_raise(resp, PHASE_DERIVE)
        if isinstance(data, dict):
            if isinstance(data.get("pubkey"), str):
                return data["pubkey"]
            if isinstance(data.get("compressed"), str):
                return data["compressed"]
        raise UnexpectedResponseShape(self.index, PHASE_DERIVE, data)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _raise_for_status(self, resp: httpx.Response, phase: str) -> None:
        if not resp.is_success:
            raise VertexRejected(self.index, phase, resp.status_code, resp.text)

    def _json_or_raise(self, resp: httpx.Response, phase: str) -> Any:
        self._raise_for_status(resp, phase)
        try:
            return resp.json()
        except ValueError:
            raise UnexpectedResponseShape(self.index, phase, resp.text) from None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        phase: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request with timeout, retry on transport errors and outage tracking."""
        self._circuit.admit(phase)

        url = f"{self.endpoint.base_url.rstrip('/')}{path}"
        headers = {"Authorization": self.endpoint.credential}
        ctx = structlog.contextvars.get_contextvars()
        if "request_id" in ctx:
            headers["X-Request-ID"] = str(ctx["request_id"])

        last_exc: VertexError | None = None
        for attempt in range(self._retries + 1):
            start = time.monotonic()
            try:
                resp = await asyncio.wait_for(
                    self._http.request(method, url, json=json_body, headers=headers, timeout=self._timeout),
                    timeout=self._timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                err = VertexTimeout(self.index, phase, f"no response within {self._timeout}s")
                self._circuit.record(err)
                self._observe(method, path, phase, json_body, start, status="timeout", error=str(err))
                raise err from e
            except httpx.TransportError as e:
                last_exc = VertexUnreachable(self.index, phase, f"{type(e).__name__}: {e}")
                self._circuit.record(last_exc)
                self._observe(method, path, phase, json_body, start, status="unreachable", error=str(last_exc))
                if attempt < self._retries and self._circuit.state is CircuitState.CLOSED:
                    self._count_retry(phase)
                    delay = self._retry_backoff * (2**attempt)
                    log.warning(
                        "vertex_retry",
                        vertex=self.index,
                        phase=phase,
                        attempt=attempt + 1,
                        delay_s=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    continue
                raise last_exc from e

            self._circuit.record()
            self._observe(method, path, phase, json_body, start, response=resp)
            return resp

        # Unreachable: the loop either returns or raises
        raise last_exc or VertexUnreachable(self.index, phase, "request failed")

    def _count_retry(self, phase: str) -> None:
        from sodot_signer.api.metrics import VERTEX_RETRIES

        VERTEX_RETRIES.labels(vertex=str(self.index), operation=phase).inc()

    def _observe(
        self,
        method: str,
        path: str,
        phase: str,
        json_body: dict[str, Any] | None,
        start: float,
        *,
        response: httpx.Response | None = None,
        status: str | None = None,
        error: str | None = None,
    ) -> None:
        """Record metrics and mirror the call to the API log sink."""
        from sodot_signer.api.metrics import VERTEX_LATENCY, VERTEX_REQUESTS

        duration = time.monotonic() - start
        status_label = str(response.status_code) if response is not None else (status or "error")
        VERTEX_REQUESTS.labels(vertex=str(self.index), operation=phase, status=status_label).inc()
        VERTEX_LATENCY.labels(operation=phase).observe(duration)
        log.debug(
            "vertex_call",
            vertex=self.index,
            method=method,
            path=path,
            status=status_label,
            duration_ms=round(duration * 1000, 1),
        )

        if self._api_logs is None:
            return
        payload: Any = None
        if response is not None:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
        entry = ApiLogEntry(
            provider=API_LOG_PROVIDER,
            vertex_index=self.index,
            method=method,
            path=path,
            request=json_body,
            status=response.status_code if response is not None else None,
            response=payload,
            error=error,
            duration_ms=round(duration * 1000, 1),
        )
        try:
            self._api_logs.record(entry)
        except Exception as e:
            log.warning("api_log_sink_failed", vertex=self.index, error=str(e))
