"""Signer interface and the Sodot threshold backend.

A signer is bound to one chain and its signer spec. It exposes the public key
and signs encoded transactions; how the key is held is the backend's business.
The Sodot backend holds no key material: it drives N vertices, generating a
KeySet on first use when none was configured.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog

from sodot_signer.config import KEY_IDS_ENV, Config
from sodot_signer.core.coordinator import ROOM_CREATOR, SessionCoordinator
from sodot_signer.core.curves import (
    SignerSpec,
    VertexCurve,
    derivation_path,
    to_vertex_curve,
    to_vertex_hash_algo,
)
from sodot_signer.core.errors import SignerConfigError
from sodot_signer.core.keygen import KeygenProtocol
from sodot_signer.core.signature import normalize_signature
from sodot_signer.core.signing import SigningProtocol

log = structlog.get_logger()


class SignerKind(Enum):
    SODOT = "SODOT"


class BaseSigner(ABC):
    """A signer bound to one chain."""

    kind: SignerKind

    def __init__(self, chain_id: str, signer_spec: SignerSpec) -> None:
        self.chain_id = chain_id
        self.signer_spec = signer_spec

    @property
    def signer_name(self) -> str:
        return self.kind.value

    @abstractmethod
    async def get_pubkey(self) -> str:
        """Public key for this chain's derivation path."""

    @abstractmethod
    async def sign_transaction(self, encoded_message: str) -> str:
        """Sign a hex-encoded transaction; returns the signature in the spec's format."""


class KeyRegistry:
    """KeySets per vertex curve, shared by every signer in the process.

    Seeded from configuration; filled by keygen on first use. One lock per
    curve makes concurrent first-use callers share a single keygen run.
    """

    def __init__(self, key_sets: dict[VertexCurve, list[str]] | None = None) -> None:
        self._key_sets: dict[VertexCurve, list[str]] = {
            curve: list(ids) for curve, ids in (key_sets or {}).items() if ids
        }
        self._locks: dict[VertexCurve, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: Config) -> KeyRegistry:
        return cls({curve: config.existing_key_ids(curve) for curve in VertexCurve})

    def get(self, curve: VertexCurve) -> list[str] | None:
        ids = self._key_sets.get(curve)
        return list(ids) if ids else None

    def set(self, curve: VertexCurve, key_ids: list[str]) -> None:
        self._key_sets[curve] = list(key_ids)

    async def ensure(
        self,
        curve: VertexCurve,
        generate: Callable[[], Awaitable[list[str]]],
    ) -> list[str]:
        """Return the KeySet for ``curve``, running ``generate`` once if there is none."""
        existing = self.get(curve)
        if existing:
            return existing
        lock = self._locks.setdefault(curve, asyncio.Lock())
        async with lock:
            existing = self.get(curve)
            if existing:
                return existing
            key_ids = await generate()
            self.set(curve, key_ids)
            return list(key_ids)


class SodotSigner(BaseSigner):
    kind = SignerKind.SODOT

    def __init__(
        self,
        chain_id: str,
        signer_spec: SignerSpec,
        coordinator: SessionCoordinator,
        registry: KeyRegistry,
        *,
        threshold: int,
        require_quorum: bool = True,
    ) -> None:
        super().__init__(chain_id, signer_spec)
        # Reject unsupported specs before any vertex is contacted
        self._vertex_curve = to_vertex_curve(signer_spec.curve)
        self._hash_algo = to_vertex_hash_algo(signer_spec.hash_function, signer_spec.curve)
        self._path = derivation_path(signer_spec.coin_type)
        self._coordinator = coordinator
        self._registry = registry
        self._threshold = threshold
        self._require_quorum = require_quorum

    @property
    def vertex_curve(self) -> VertexCurve:
        return self._vertex_curve

    @staticmethod
    def is_config_valid(config: Config) -> bool:
        """True when every vertex has both a URL and an API key."""
        if len(config.vertex_urls) != config.num_parties:
            return False
        if len(config.vertex_api_keys) != config.num_parties:
            return False
        for i, (url, key) in enumerate(zip(config.vertex_urls, config.vertex_api_keys)):
            if not url or not key:
                log.warning("sodot_vertex_not_configured", vertex=i)
                return False
        return True

    async def _key_ids(self) -> list[str]:
        return await self._registry.ensure(self._vertex_curve, self._generate_key)

    async def _generate_key(self) -> list[str]:
        log.info("generating_keypair", chain_id=self.chain_id, curve=self._vertex_curve.value)
        protocol = KeygenProtocol(self._coordinator, self._coordinator.n, self._threshold)
        key_ids = await protocol.run(self._vertex_curve)
        env = KEY_IDS_ENV[self._vertex_curve]
        log.info(
            "keypair_generated",
            chain_id=self.chain_id,
            curve=self._vertex_curve.value,
            hint=f"export {env}={','.join(key_ids)}",
        )
        return key_ids

    async def get_pubkey(self) -> str:
        key_ids = await self._key_ids()
        pubkey = await self._coordinator.vertex(ROOM_CREATOR).derive_pubkey(
            self._vertex_curve, key_ids[ROOM_CREATOR], self._path
        )
        log.info("pubkey_derived", chain_id=self.chain_id, pubkey=pubkey)
        return pubkey

    async def sign_transaction(self, encoded_message: str) -> str:
        key_ids = await self._key_ids()
        protocol = SigningProtocol(
            self._coordinator,
            self._coordinator.n,
            self._threshold,
            require_quorum=self._require_quorum,
        )
        partial = await protocol.sign(
            key_ids, encoded_message, self._path, self._vertex_curve, self._hash_algo
        )
        signature = normalize_signature(partial, self.signer_spec.signature_format)
        log.info("transaction_signed", chain_id=self.chain_id, signer=self.signer_name)
        return signature


def select_signer(
    kind: SignerKind | str,
    chain_id: str,
    signer_spec: SignerSpec,
    *,
    config: Config,
    coordinator: SessionCoordinator,
    registry: KeyRegistry,
) -> BaseSigner:
    """Build the signer of the requested kind, checking its configuration first."""
    try:
        kind = SignerKind(kind)
    except ValueError:
        raise SignerConfigError(f"Unsupported signer: {kind}") from None
    if kind is SignerKind.SODOT:
        if not SodotSigner.is_config_valid(config):
            raise SignerConfigError("Sodot vertices are not fully configured")
        return SodotSigner(
            chain_id,
            signer_spec,
            coordinator,
            registry,
            threshold=config.threshold,
            require_quorum=config.signing_require_quorum,
        )
    raise SignerConfigError(f"Unsupported signer: {kind}")
