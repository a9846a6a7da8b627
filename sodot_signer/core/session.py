"""Per-chain signing sessions held in memory."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field

import structlog

from sodot_signer.core.curves import Curve, SignerSpec
from sodot_signer.core.hashing import hash_message, message_bytes
from sodot_signer.core.signer import BaseSigner

log = structlog.get_logger()


@dataclass
class ChainSession:
    """Chain context for a sequence of signing calls."""

    chain_id: str
    signer_spec: SignerSpec
    signer: BaseSigner
    pubkey: str | None = None
    encoded_message: str | None = None
    signature: str | None = None
    digest: str | None = None
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    async def load_pubkey(self) -> str:
        self.pubkey = await self.signer.get_pubkey()
        return self.pubkey

    async def sign(self, encoded_message: str) -> str:
        """Sign and record the message, signature and (ECDSA only) digest."""
        # Validate before any vertex call
        raw = message_bytes(encoded_message)
        signature = await self.signer.sign_transaction(encoded_message)
        self.encoded_message = encoded_message
        self.signature = signature
        if self.signer_spec.curve is Curve.SECP256K1:
            self.digest = hash_message(self.signer_spec.hash_function, raw).hex()
        else:
            self.digest = None
        return signature


class SessionStore:
    """Bounded in-memory session map with TTL expiry."""

    def __init__(self, ttl: float = 3600.0, max_sessions: int = 1000) -> None:
        self._ttl = ttl
        self._max_sessions = max_sessions
        self._sessions: dict[str, ChainSession] = {}
        self._lock = threading.Lock()

    def add(self, session: ChainSession) -> ChainSession:
        with self._lock:
            self._purge_expired()
            if len(self._sessions) >= self._max_sessions:
                oldest = min(self._sessions.values(), key=lambda s: s.created_at)
                del self._sessions[oldest.session_id]
                log.info("session_evicted", session_id=oldest.session_id)
            self._sessions[session.session_id] = session
            self._update_gauge()
        return session

    def get(self, session_id: str) -> ChainSession | None:
        with self._lock:
            self._purge_expired()
            self._update_gauge()
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
            self._update_gauge()
            return removed

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._sessions)

    def _purge_expired(self) -> None:
        cutoff = time.time() - self._ttl
        expired = [sid for sid, s in self._sessions.items() if s.created_at < cutoff]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            log.debug("sessions_expired", count=len(expired))

    def _update_gauge(self) -> None:
        from sodot_signer.api.metrics import ACTIVE_SESSIONS

        ACTIVE_SESSIONS.set(len(self._sessions))
