"""Caller-side message hashing for each supported hash function."""

from __future__ import annotations

import hashlib

from sodot_signer.core.curves import HashFunction
from sodot_signer.core.errors import UnsupportedHashFunction


def message_bytes(encoded_message: str) -> bytes:
    """Decode a hex-encoded message, with or without a ``0x`` prefix."""
    hex_str = encoded_message[2:] if encoded_message[:2] in ("0x", "0X") else encoded_message
    try:
        return bytes.fromhex(hex_str)
    except ValueError:
        raise ValueError("encoded message must be a hex string") from None


def hash_message(hash_function: HashFunction, message: bytes) -> bytes:
    """Hash message bytes the way the chain's signer spec requires.

    Pedersen hashes the pair ``(message, 0)``: Starknet's scheme is defined
    over two field elements, so a single message is paired with zero.
    """
    if hash_function is HashFunction.SHA256:
        return hashlib.sha256(message).digest()
    if hash_function is HashFunction.KECCAK256:
        from web3 import Web3

        return bytes(Web3.keccak(primitive=message))
    if hash_function is HashFunction.PEDERSEN:
        from starknet_py.hash.utils import pedersen_hash

        digest = pedersen_hash(int.from_bytes(message, "big"), 0)
        return digest.to_bytes(32, "big")
    raise UnsupportedHashFunction(
        f"Unsupported hash function: {getattr(hash_function, 'value', hash_function)}"
    )
