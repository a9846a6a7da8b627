"""Partial signatures returned by vertices and their canonical encodings."""

from __future__ import annotations

import hmac
import json
from dataclasses import asdict, dataclass
from typing import Any, Union

from sodot_signer.core.curves import SignatureFormat
from sodot_signer.core.errors import (
    PHASE_SIGN,
    UnexpectedResponseShape,
    UnsupportedSignatureFormat,
)


@dataclass(frozen=True)
class EcdsaSignature:
    """``{r, s, v, der}`` as returned by ``/ecdsa/sign``."""

    r: str
    s: str
    v: int | str | None = None
    der: str | None = None


@dataclass(frozen=True)
class EncodedSignature:
    """A vertex reply that is already the final signature (e.g. EdDSA)."""

    signature: str


PartialSignature = Union[EcdsaSignature, EncodedSignature]


def parse_partial_signature(payload: Any, vertex_index: int) -> PartialSignature:
    """Interpret a ``/sign`` response body."""
    if isinstance(payload, dict):
        if isinstance(payload.get("signature"), str):
            return EncodedSignature(signature=payload["signature"])
        r, s = payload.get("r"), payload.get("s")
        if isinstance(r, (str, int)) and isinstance(s, (str, int)):
            return EcdsaSignature(
                r=_hex_component(r),
                s=_hex_component(s),
                v=payload.get("v"),
                der=payload.get("der"),
            )
    raise UnexpectedResponseShape(vertex_index, PHASE_SIGN, payload)


def _hex_component(value: int | str) -> str:
    if isinstance(value, int):
        return format(value, "x")
    if value[:2] in ("0x", "0X"):
        return value[2:]
    return value


def extract_signature(
    signature_format: SignatureFormat,
    r: str,
    s: str,
    v: int | str | None = None,
) -> str:
    """Concatenate hex components as ``r‖s`` or ``r‖s‖v`` without ``0x``."""
    r_hex = _hex_component(r).lower()
    s_hex = _hex_component(s).lower()
    if signature_format is SignatureFormat.RS:
        return r_hex + s_hex
    if signature_format is SignatureFormat.RSV:
        if v is None:
            raise UnsupportedSignatureFormat("rsv format requires a recovery id (v)")
        return r_hex + s_hex + _hex_component(v).lower()
    raise UnsupportedSignatureFormat(f"Unsupported signature format: {signature_format}")


def normalize_signature(partial: PartialSignature, signature_format: SignatureFormat) -> str:
    """Map a vertex signature to the caller's requested encoding.

    Vertices that already return the final encoding (``{signature}``) are
    passed through unchanged.
    """
    if isinstance(partial, EncodedSignature):
        return partial.signature
    return extract_signature(signature_format, partial.r, partial.s, partial.v)


def _canonical_bytes(partial: PartialSignature) -> bytes:
    data = asdict(partial)
    data["kind"] = type(partial).__name__
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()


def signatures_match(a: PartialSignature, b: PartialSignature) -> bool:
    """Constant-time equality over the canonical encoding of two signatures."""
    return hmac.compare_digest(_canonical_bytes(a), _canonical_bytes(b))
