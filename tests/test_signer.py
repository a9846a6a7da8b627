"""Tests for the signer interface, key registry and Sodot backend."""

from __future__ import annotations

import asyncio
import dataclasses

import httpx
import pytest

from conftest import FakeVertices
from sodot_signer.config import Config
from sodot_signer.core.coordinator import SessionCoordinator
from sodot_signer.core.curves import Curve, HashFunction, SignatureFormat, SignerSpec, VertexCurve
from sodot_signer.core.errors import (
    KeygenFailed,
    SignerConfigError,
    UnsupportedCurve,
    UnsupportedHashFunction,
)
from sodot_signer.core.signer import (
    KeyRegistry,
    SignerKind,
    SodotSigner,
    select_signer,
)

ETH_SPEC = SignerSpec(Curve.SECP256K1, HashFunction.KECCAK256, SignatureFormat.RSV, "60")
SOL_SPEC = SignerSpec(Curve.ED25519, HashFunction.SHA256, SignatureFormat.RS, "501")


def _config(**overrides: object) -> Config:
    config = Config()
    for k, v in overrides.items():
        object.__setattr__(config, k, v)
    return config


def _signer(coordinator: SessionCoordinator, spec: SignerSpec = ETH_SPEC, registry: KeyRegistry | None = None) -> SodotSigner:
    return SodotSigner("ethereum", spec, coordinator, registry or KeyRegistry(), threshold=2)


class TestKeyRegistry:
    def test_seeded_from_config(self) -> None:
        registry = KeyRegistry.from_config(_config(existing_ecdsa_key_ids="a, b ,c"))
        assert registry.get(VertexCurve.ECDSA) == ["a", "b", "c"]
        assert registry.get(VertexCurve.ED25519) is None

    @pytest.mark.asyncio
    async def test_ensure_generates_once_under_concurrency(self) -> None:
        registry = KeyRegistry()
        runs = 0

        async def generate() -> list[str]:
            nonlocal runs
            runs += 1
            await asyncio.sleep(0.01)
            return ["k0", "k1", "k2"]

        results = await asyncio.gather(*(registry.ensure(VertexCurve.ECDSA, generate) for _ in range(5)))
        assert runs == 1
        assert all(r == ["k0", "k1", "k2"] for r in results)

    @pytest.mark.asyncio
    async def test_failed_generation_not_cached(self) -> None:
        registry = KeyRegistry()

        async def fail() -> list[str]:
            raise KeygenFailed("aborted", phase="keygen")

        with pytest.raises(KeygenFailed):
            await registry.ensure(VertexCurve.ECDSA, fail)
        assert registry.get(VertexCurve.ECDSA) is None


class TestSodotSigner:
    def test_signer_name(self, coordinator: SessionCoordinator) -> None:
        assert _signer(coordinator).signer_name == "SODOT"

    def test_unsupported_curve_rejected_up_front(self, coordinator: SessionCoordinator) -> None:
        stark = SignerSpec(Curve.STARK, HashFunction.PEDERSEN, SignatureFormat.RS, "9004")
        with pytest.raises(UnsupportedCurve):
            _signer(coordinator, stark)

    def test_unsupported_hash_rejected_up_front(self, coordinator: SessionCoordinator) -> None:
        spec = dataclasses.replace(ETH_SPEC, hash_function=HashFunction.SHA512_256)
        with pytest.raises(UnsupportedHashFunction):
            _signer(coordinator, spec)

    @pytest.mark.asyncio
    async def test_get_pubkey_runs_keygen_once(self, vertices: FakeVertices, coordinator: SessionCoordinator) -> None:
        signer = _signer(coordinator)
        assert await signer.get_pubkey() == "02abc123"
        assert await signer.get_pubkey() == "02abc123"
        assert len(vertices.calls_to("/ecdsa/keygen")) == 3
        derives = vertices.calls_to("/ecdsa/derive-pubkey")
        assert [c.index for c in derives] == [0, 0]
        assert derives[0].body == {"key_id": "ecdsa-key-0", "derivation_path": [44, 60, 0, 0, 0]}

    @pytest.mark.asyncio
    async def test_existing_key_set_skips_keygen(self, vertices: FakeVertices, coordinator: SessionCoordinator) -> None:
        registry = KeyRegistry({VertexCurve.ED25519: ["e0", "e1", "e2"]})
        signer = _signer(coordinator, SOL_SPEC, registry)
        assert await signer.get_pubkey() == "ab12cd34"
        assert vertices.calls_to("/ed25519/keygen") == []
        assert vertices.calls_to("/ed25519/derive-pubkey")[0].body["key_id"] == "e0"

    @pytest.mark.asyncio
    async def test_sign_transaction_rsv(self, vertices: FakeVertices, coordinator: SessionCoordinator) -> None:
        registry = KeyRegistry({VertexCurve.ECDSA: ["k0", "k1", "k2"]})
        signature = await _signer(coordinator, registry=registry).sign_transaction("0xdeadbeef")
        assert signature == "ab" * 32 + "cd" * 32 + "1"
        assert {c.body["hash_algo"] for c in vertices.calls_to("/ecdsa/sign")} == {"keccak256"}

    @pytest.mark.asyncio
    async def test_sign_transaction_ed25519_passthrough(self, coordinator: SessionCoordinator) -> None:
        registry = KeyRegistry({VertexCurve.ED25519: ["e0", "e1", "e2"]})
        signature = await _signer(coordinator, SOL_SPEC, registry).sign_transaction("abcd")
        assert signature == "5e" * 64

    @pytest.mark.asyncio
    async def test_curves_have_separate_key_sets(self, vertices: FakeVertices, coordinator: SessionCoordinator) -> None:
        registry = KeyRegistry()
        await _signer(coordinator, ETH_SPEC, registry).get_pubkey()
        await _signer(coordinator, SOL_SPEC, registry).get_pubkey()
        assert registry.get(VertexCurve.ECDSA) == ["ecdsa-key-0", "ecdsa-key-1", "ecdsa-key-2"]
        assert registry.get(VertexCurve.ED25519) == ["ed25519-key-0", "ed25519-key-1", "ed25519-key-2"]

    @pytest.mark.asyncio
    async def test_keygen_failure_propagates(self, vertices: FakeVertices, coordinator: SessionCoordinator) -> None:
        vertices.overrides[(1, "/ecdsa/create")] = lambda r: httpx.Response(503, text="busy")
        with pytest.raises(KeygenFailed):
            await _signer(coordinator).get_pubkey()
        assert vertices.calls_to("/ecdsa/derive-pubkey") == []


class TestIsConfigValid:
    def test_complete_config(self) -> None:
        assert SodotSigner.is_config_valid(_config())

    def test_missing_api_key(self) -> None:
        assert not SodotSigner.is_config_valid(_config(vertex_api_keys=("a", "", "c")))

    def test_missing_url(self) -> None:
        assert not SodotSigner.is_config_valid(_config(vertex_urls=("https://a", "https://b", "")))

    def test_wrong_count(self) -> None:
        assert not SodotSigner.is_config_valid(_config(vertex_urls=("https://a", "https://b")))


class TestSelectSigner:
    def test_sodot(self, coordinator: SessionCoordinator) -> None:
        signer = select_signer(
            "SODOT", "ethereum", ETH_SPEC, config=_config(), coordinator=coordinator, registry=KeyRegistry()
        )
        assert isinstance(signer, SodotSigner)
        assert signer.kind is SignerKind.SODOT

    def test_unknown_kind(self, coordinator: SessionCoordinator) -> None:
        with pytest.raises(SignerConfigError, match="Unsupported signer"):
            select_signer("TURNKEY", "eth", ETH_SPEC, config=_config(), coordinator=coordinator, registry=KeyRegistry())

    def test_incomplete_config(self, coordinator: SessionCoordinator) -> None:
        with pytest.raises(SignerConfigError, match="not fully configured"):
            select_signer(
                SignerKind.SODOT,
                "eth",
                ETH_SPEC,
                config=_config(vertex_api_keys=("", "", "")),
                coordinator=coordinator,
                registry=KeyRegistry(),
            )
