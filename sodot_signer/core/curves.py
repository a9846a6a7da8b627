"""Signer spec types and their mapping onto vertex wire parameters.

Chains describe how they sign with a (curve, hash function, signature
format, coin type) tuple. Vertices only know two key types ("ecdsa" and
"ed25519") and two ECDSA hash algorithms; the functions here translate
between the two and reject anything else up front.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from sodot_signer.core.errors import (
    UnsupportedCurve,
    UnsupportedHashFunction,
    UnsupportedSignatureFormat,
)


class Curve(Enum):
    SECP256K1 = "secp256k1"
    ED25519 = "ed25519"
    STARK = "stark"


class HashFunction(Enum):
    SHA256 = "sha256"
    KECCAK256 = "keccak256"
    PEDERSEN = "pedersen"
    SHA512_256 = "sha512_256"


class SignatureFormat(Enum):
    RS = "rs"
    RSV = "rsv"


class VertexCurve(Enum):
    """Key type as named in vertex URLs (``/{curve}/sign``)."""

    ECDSA = "ecdsa"
    ED25519 = "ed25519"


# BIP44 purpose; account, change and address index are pinned to 0
BIP44_PURPOSE = 44


@dataclass(frozen=True)
class SignerSpec:
    """How a chain expects its transactions to be signed."""

    curve: Curve
    hash_function: HashFunction
    signature_format: SignatureFormat
    coin_type: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SignerSpec:
        """Build a spec from its wire form (``{"curve": "secp256k1", ...}``)."""
        curve = data.get("curve")
        hash_function = data.get("hash_function", data.get("hashFunction"))
        signature_format = data.get("signature_format", data.get("signatureFormat"))
        coin_type = data.get("coin_type", data.get("coinType"))
        try:
            parsed_curve = Curve(curve)
        except ValueError:
            raise UnsupportedCurve(f"Unsupported curve: {curve}") from None
        try:
            parsed_hash = HashFunction(hash_function)
        except ValueError:
            raise UnsupportedHashFunction(f"Unsupported hash function: {hash_function}") from None
        try:
            parsed_format = SignatureFormat(signature_format)
        except ValueError:
            raise UnsupportedSignatureFormat(f"Unsupported signature format: {signature_format}") from None
        if coin_type is None:
            raise ValueError("coin_type is required")
        return cls(
            curve=parsed_curve,
            hash_function=parsed_hash,
            signature_format=parsed_format,
            coin_type=str(coin_type),
        )


def to_vertex_curve(curve: Curve) -> VertexCurve:
    """Map a chain curve to the vertex key type."""
    if curve is Curve.SECP256K1:
        return VertexCurve.ECDSA
    if curve is Curve.ED25519:
        return VertexCurve.ED25519
    raise UnsupportedCurve(f"Unsupported curve: {getattr(curve, 'value', curve)}")


def to_vertex_hash_algo(hash_function: HashFunction, curve: Curve) -> str | None:
    """Map a hash function to the vertex ``hash_algo`` parameter.

    Returns None for ed25519: EdDSA signing takes no hash parameter at the
    wire level, whatever the chain's nominal hash function is.
    """
    if curve is Curve.ED25519:
        return None
    to_vertex_curve(curve)
    if hash_function is HashFunction.SHA256:
        return "sha256"
    if hash_function is HashFunction.KECCAK256:
        return "keccak256"
    raise UnsupportedHashFunction(
        f"Unsupported hash algorithm: {getattr(hash_function, 'value', hash_function)}"
    )


def derivation_path(coin_type: str) -> list[int]:
    """BIP44-style path ``[44, coin_type, 0, 0, 0]``."""
    try:
        coin = int(coin_type)
    except (TypeError, ValueError):
        raise ValueError(f"coin_type must be an integer string, got {coin_type!r}") from None
    if coin < 0:
        raise ValueError(f"coin_type must be non-negative, got {coin}")
    return [BIP44_PURPOSE, coin, 0, 0, 0]
