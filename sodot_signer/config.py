"""Signer configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from urllib.parse import urlparse

from dotenv import load_dotenv

from sodot_signer.core.curves import VertexCurve
from sodot_signer.core.vertex import VertexEndpoint

load_dotenv()


def _int_env(key: str, default: str) -> int:
    val = os.getenv(key, default)
    try:
        return int(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid integer for {key}: {val!r}")


def _float_env(key: str, default: str) -> float:
    val = os.getenv(key, default)
    try:
        return float(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid float for {key}: {val!r}")


def _bool_env(key: str, default: str) -> bool:
    return os.getenv(key, default).strip().lower() in ("1", "true", "yes", "on")


def _indexed_env(prefix: str, count: int) -> tuple[str, ...]:
    """Read ``{prefix}_0`` .. ``{prefix}_{count-1}``, empty string when unset."""
    return tuple(os.getenv(f"{prefix}_{i}", "") for i in range(count))


def _split_ids(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


_NUM_PARTIES = _int_env("SODOT_NUM_PARTIES", "3")

# Env variable holding a persisted KeySet, per vertex curve
KEY_IDS_ENV = {
    VertexCurve.ECDSA: "SODOT_EXISTING_ECDSA_KEY_IDS",
    VertexCurve.ED25519: "SODOT_EXISTING_ED25519_KEY_IDS",
}


@dataclass(frozen=True)
class Config:
    # Threshold parameters (fixed for the process lifetime)
    num_parties: int = _NUM_PARTIES
    threshold: int = _int_env("SODOT_THRESHOLD", "2")

    # Vertex endpoints, indexed by position
    vertex_urls: tuple[str, ...] = _indexed_env("SODOT_VERTEX_URL", _NUM_PARTIES)
    vertex_api_keys: tuple[str, ...] = _indexed_env("SODOT_VERTEX_API_KEY", _NUM_PARTIES)

    # Persisted KeySets (comma-separated key share ids, one per vertex)
    existing_ecdsa_key_ids: str = os.getenv(KEY_IDS_ENV[VertexCurve.ECDSA], "")
    existing_ed25519_key_ids: str = os.getenv(KEY_IDS_ENV[VertexCurve.ED25519], "")

    # Vertex call policy
    vertex_timeout: float = _float_env("VERTEX_TIMEOUT", "30.0")
    vertex_retries: int = _int_env("VERTEX_RETRIES", "2")
    vertex_retry_backoff: float = _float_env("VERTEX_RETRY_BACKOFF", "0.3")
    signing_require_quorum: bool = _bool_env("SIGNING_REQUIRE_QUORUM", "true")

    # Signer API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = _int_env("API_PORT", "8430")
    # MPC rounds admitted per session (signing) or per client (session creation)
    rate_limit_requests: int = _int_env("RATE_LIMIT_REQUESTS", "20")
    rate_limit_window: float = _float_env("RATE_LIMIT_WINDOW", "60.0")
    session_ttl: int = _int_env("SESSION_TTL", "3600")
    cors_origins: str = os.getenv("CORS_ORIGINS", "")

    def vertex_endpoints(self) -> list[VertexEndpoint]:
        """Build one endpoint per configured vertex, in position order."""
        return [
            VertexEndpoint(base_url=url, credential=key, index=i)
            for i, (url, key) in enumerate(zip(self.vertex_urls, self.vertex_api_keys))
        ]

    def existing_key_ids(self, curve: VertexCurve) -> list[str]:
        """Return the persisted KeySet for a vertex curve (empty if none)."""
        if curve is VertexCurve.ECDSA:
            return _split_ids(self.existing_ecdsa_key_ids)
        return _split_ids(self.existing_ed25519_key_ids)

    def validate(self) -> list[str]:
        """Validate config at startup. Raises ValueError on hard errors, returns warnings."""
        warnings: list[str] = []
        if self.num_parties < 2:
            raise ValueError(f"SODOT_NUM_PARTIES must be >= 2, got {self.num_parties}")
        if not (1 <= self.threshold <= self.num_parties):
            raise ValueError(
                f"SODOT_THRESHOLD must be 1-{self.num_parties}, got {self.threshold}"
            )
        if len(self.vertex_urls) != self.num_parties or len(self.vertex_api_keys) != self.num_parties:
            raise ValueError(
                f"Expected {self.num_parties} vertex URLs and API keys, "
                f"got {len(self.vertex_urls)} and {len(self.vertex_api_keys)}"
            )
        for i, (url, key) in enumerate(zip(self.vertex_urls, self.vertex_api_keys)):
            if not key:
                raise ValueError(f"SODOT_VERTEX_API_KEY_{i} is not set")
            if not url:
                raise ValueError(f"SODOT_VERTEX_URL_{i} is not set")
            if urlparse(url).scheme not in ("http", "https"):
                raise ValueError(f"SODOT_VERTEX_URL_{i} must start with http:// or https://, got {url!r}")
            if urlparse(url).scheme == "http":
                warnings.append(f"SODOT_VERTEX_URL_{i} uses plain http; credentials travel unencrypted")
        if self.vertex_timeout < 1.0 or self.vertex_timeout > 300.0:
            raise ValueError(f"VERTEX_TIMEOUT must be 1.0-300.0, got {self.vertex_timeout}")
        if self.vertex_retries < 0 or self.vertex_retries > 10:
            raise ValueError(f"VERTEX_RETRIES must be 0-10, got {self.vertex_retries}")
        if self.vertex_retry_backoff < 0:
            raise ValueError(f"VERTEX_RETRY_BACKOFF must be >= 0, got {self.vertex_retry_backoff}")
        for curve, env in KEY_IDS_ENV.items():
            ids = self.existing_key_ids(curve)
            if not ids:
                warnings.append(f"{env} not set; a new {curve.value} key will be generated on first use")
            elif len(ids) != self.num_parties:
                raise ValueError(f"{env} must list {self.num_parties} key ids, got {len(ids)}")
        if self.api_port < 1 or self.api_port > 65535:
            raise ValueError(f"API_PORT must be 1-65535, got {self.api_port}")
        if self.rate_limit_requests < 1:
            raise ValueError(f"RATE_LIMIT_REQUESTS must be >= 1, got {self.rate_limit_requests}")
        if self.rate_limit_window <= 0:
            raise ValueError(f"RATE_LIMIT_WINDOW must be > 0, got {self.rate_limit_window}")
        if self.session_ttl < 1:
            raise ValueError(f"SESSION_TTL must be >= 1, got {self.session_ttl}")
        if not self.signing_require_quorum:
            warnings.append("SIGNING_REQUIRE_QUORUM disabled; only vertex 0's signature is required")
        return warnings
