"""Failure taxonomy for vertex calls and the protocols built on them.

Vertex-level errors say which vertex failed and in which phase. Protocol-level
errors wrap them when a keygen or signing run as a whole has to be abandoned.
Unsupported-spec errors are raised before any network call.
"""

from __future__ import annotations

from typing import Any

# Protocol phases, as reported in errors, logs and metrics
PHASE_ROOM = "room"
PHASE_INIT = "init"
PHASE_KEYGEN = "keygen"
PHASE_SIGN = "sign"
PHASE_DERIVE = "derive"


class SodotError(Exception):
    """Base exception for all signer errors."""


class VertexError(SodotError):
    """A single call to one vertex failed."""

    def __init__(self, vertex_index: int, phase: str, message: str) -> None:
        super().__init__(message)
        self.vertex_index = vertex_index
        self.phase = phase
        self.message = message

    def __str__(self) -> str:
        return f"vertex {self.vertex_index} ({self.phase}): {self.message}"


class VertexUnreachable(VertexError):
    """Transport-level failure reaching a vertex."""


class VertexTimeout(VertexError):
    """The vertex did not answer within the per-call timeout."""


class VertexRejected(VertexError):
    """The vertex answered with a non-2xx status."""

    def __init__(self, vertex_index: int, phase: str, status_code: int, body: str) -> None:
        super().__init__(vertex_index, phase, f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class UnexpectedResponseShape(VertexError):
    """The vertex answered 2xx with a payload we cannot interpret."""

    def __init__(self, vertex_index: int, phase: str, payload: Any) -> None:
        super().__init__(vertex_index, phase, f"unexpected response shape: {payload!r}")
        self.payload = payload


class ProtocolError(SodotError):
    """A multi-vertex operation failed as a whole."""

    def __init__(
        self,
        message: str,
        *,
        phase: str,
        vertex_index: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.vertex_index = vertex_index
        self.cause = cause

    def __str__(self) -> str:
        where = f"vertex {self.vertex_index}, " if self.vertex_index is not None else ""
        text = f"{self.message} ({where}phase {self.phase})"
        if self.cause is not None:
            text += f": {self.cause}"
        return text

    @classmethod
    def from_vertex_error(cls, message: str, err: VertexError) -> ProtocolError:
        return cls(message, phase=err.phase, vertex_index=err.vertex_index, cause=err)


class KeygenFailed(ProtocolError):
    """Distributed key generation was aborted."""


class SigningFailed(ProtocolError):
    """A signing round did not yield a usable signature."""


class SignatureMismatch(SigningFailed):
    """Vertices returned different signatures for the same round."""


class UnsupportedCurve(SodotError, ValueError):
    """The requested curve has no vertex mapping."""


class UnsupportedHashFunction(SodotError, ValueError):
    """The requested hash function is not implemented."""


class UnsupportedSignatureFormat(SodotError, ValueError):
    """The requested signature encoding is not implemented."""


class SignerConfigError(SodotError, ValueError):
    """Signer constructed with missing or inconsistent vertex configuration."""
