"""Pydantic request/response models for the signer REST API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from sodot_signer.core.curves import Curve, HashFunction, SignatureFormat, SignerSpec


class SignerSpecModel(BaseModel):
    """How the chain wants its transactions signed."""

    curve: Curve
    hash_function: HashFunction
    signature_format: SignatureFormat
    coin_type: str = Field(max_length=16, description="SLIP-44 coin type, e.g. '60'")

    @field_validator("coin_type")
    @classmethod
    def validate_coin_type(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError(f"coin_type must be a non-negative integer string, got '{v}'")
        return v

    def to_spec(self) -> SignerSpec:
        return SignerSpec(
            curve=self.curve,
            hash_function=self.hash_function,
            signature_format=self.signature_format,
            coin_type=self.coin_type,
        )


class CreateSessionRequest(BaseModel):
    """POST /v1/sessions: Bind a signer to a chain and fetch its pubkey."""

    chain_id: str = Field(min_length=1, max_length=128)
    signer_spec: SignerSpecModel
    signer: str = Field(default="SODOT", max_length=32)


class SignRequest(BaseModel):
    """POST /v1/sessions/{session_id}/sign: Sign an encoded transaction."""

    encoded_message: str = Field(min_length=1, max_length=200_000, description="Hex-encoded transaction")

    @field_validator("encoded_message")
    @classmethod
    def validate_hex(cls, v: str) -> str:
        body = v[2:] if v[:2] in ("0x", "0X") else v
        if not body or len(body) % 2 or any(c not in "0123456789abcdefABCDEF" for c in body):
            raise ValueError("encoded_message must be an even-length hex string")
        return v


class SessionResponse(BaseModel):
    session_id: str
    chain_id: str
    signer: str
    signer_spec: SignerSpecModel
    pubkey: str | None = None
    encoded_message: str | None = None
    signature: str | None = None
    digest: str | None = None


class SignResponse(BaseModel):
    session_id: str
    signature: str
    digest: str | None = Field(default=None, description="Message digest (ECDSA specs only)")


class ApiLogEntryModel(BaseModel):
    provider: str
    vertex_index: int
    method: str
    path: str
    request: Any = None
    status: int | None = None
    response: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    timestamp: float


class ApiLogsResponse(BaseModel):
    entries: list[ApiLogEntryModel]


class HealthResponse(BaseModel):
    """GET /health: Signer health check."""

    status: str
    version: str = "0.1.0"
    num_parties: int
    threshold: int
    vertices_configured: bool = False
    key_sets: dict[str, bool] = Field(default_factory=dict, description="Whether a KeySet is held per curve")
    open_circuits: list[int] = Field(default_factory=list, description="Vertex indexes currently tripped after repeated outages")
    active_sessions: int = 0
