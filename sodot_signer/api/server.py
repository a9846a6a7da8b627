"""FastAPI server exposing chain signing sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.responses import JSONResponse

from sodot_signer.api.metrics import metrics_response
from sodot_signer.api.middleware import (
    RequestIdMiddleware,
    SigningRateLimitMiddleware,
    SlidingWindowLimiter,
    get_cors_origins,
)
from sodot_signer.api.models import (
    ApiLogEntryModel,
    ApiLogsResponse,
    CreateSessionRequest,
    HealthResponse,
    SessionResponse,
    SignerSpecModel,
    SignRequest,
    SignResponse,
)
from sodot_signer.core.curves import VertexCurve
from sodot_signer.core.errors import (
    ProtocolError,
    SignerConfigError,
    SodotError,
    UnsupportedCurve,
    UnsupportedHashFunction,
    UnsupportedSignatureFormat,
    VertexError,
    VertexTimeout,
)
from sodot_signer.core.session import ChainSession, SessionStore
from sodot_signer.core.signer import SodotSigner, select_signer

if TYPE_CHECKING:
    from sodot_signer.config import Config
    from sodot_signer.core.api_logs import ApiLogBuffer
    from sodot_signer.core.coordinator import SessionCoordinator
    from sodot_signer.core.signer import KeyRegistry

log = structlog.get_logger()

_BODY_LIMIT = 1_048_576  # 1 MB


def error_status(exc: SodotError) -> int:
    """HTTP status for a signer error."""
    if isinstance(exc, (UnsupportedCurve, UnsupportedHashFunction, UnsupportedSignatureFormat)):
        return 400
    if isinstance(exc, SignerConfigError):
        return 503
    if isinstance(exc, VertexTimeout):
        return 504
    if isinstance(exc, ProtocolError):
        return 504 if isinstance(exc.cause, VertexTimeout) else 502
    if isinstance(exc, VertexError):
        return 502
    return 500


def _session_response(session: ChainSession) -> SessionResponse:
    spec = session.signer_spec
    return SessionResponse(
        session_id=session.session_id,
        chain_id=session.chain_id,
        signer=session.signer.signer_name,
        signer_spec=SignerSpecModel(
            curve=spec.curve,
            hash_function=spec.hash_function,
            signature_format=spec.signature_format,
            coin_type=spec.coin_type,
        ),
        pubkey=session.pubkey,
        encoded_message=session.encoded_message,
        signature=session.signature,
        digest=session.digest,
    )


def create_app(
    config: Config,
    coordinator: SessionCoordinator,
    registry: KeyRegistry,
    sessions: SessionStore | None = None,
    api_logs: ApiLogBuffer | None = None,
) -> FastAPI:
    """Build the FastAPI application with all routes wired."""

    from sodot_signer import __version__

    app = FastAPI(title="Sodot Signer", version=__version__)
    store = sessions if sessions is not None else SessionStore(ttl=config.session_ttl)

    @app.exception_handler(SodotError)
    async def _signer_error(request: Request, exc: SodotError) -> JSONResponse:
        status = error_status(exc)
        log.warning(
            "signer_error",
            error=str(exc),
            error_type=type(exc).__name__,
            status=status,
            path=request.url.path,
        )
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})

    # Never leak stack traces to clients
    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    cors_origins = get_cors_origins(config.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):  # type: ignore[no-untyped-def]
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > _BODY_LIMIT:
                    return JSONResponse(status_code=413, content={"detail": "Request body too large (max 1MB)"})
            except (ValueError, OverflowError):
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})
        elif request.method in ("POST", "PUT", "PATCH"):
            body = await request.body()
            if len(body) > _BODY_LIMIT:
                return JSONResponse(status_code=413, content={"detail": "Request body too large (max 1MB)"})
        return await call_next(request)

    app.add_middleware(
        SigningRateLimitMiddleware,
        limiter=SlidingWindowLimiter(config.rate_limit_requests, config.rate_limit_window),
    )

    # Outermost, so it is added last
    app.add_middleware(RequestIdMiddleware)

    @app.post("/v1/sessions", response_model=SessionResponse)
    async def create_session(request: CreateSessionRequest) -> SessionResponse:
        """Bind a signer to a chain and derive its public key.

        The first session on a curve with no configured KeySet runs keygen.
        """
        spec = request.signer_spec.to_spec()
        signer = select_signer(
            request.signer,
            request.chain_id,
            spec,
            config=config,
            coordinator=coordinator,
            registry=registry,
        )
        session = ChainSession(chain_id=request.chain_id, signer_spec=spec, signer=signer)
        await session.load_pubkey()
        store.add(session)
        log.info("session_created", session_id=session.session_id, chain_id=request.chain_id)
        return _session_response(session)

    @app.get("/v1/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(session_id: str) -> SessionResponse:
        session = store.get(session_id)
        if session is None:
            return JSONResponse(status_code=404, content={"detail": "Unknown session"})
        return _session_response(session)

    @app.post("/v1/sessions/{session_id}/sign", response_model=SignResponse)
    async def sign(session_id: str, request: SignRequest) -> SignResponse:
        session = store.get(session_id)
        if session is None:
            return JSONResponse(status_code=404, content={"detail": "Unknown session"})
        signature = await session.sign(request.encoded_message)
        return SignResponse(session_id=session_id, signature=signature, digest=session.digest)

    @app.get("/v1/logs", response_model=ApiLogsResponse)
    async def api_logs_view(limit: int = Query(default=100, ge=1, le=1000)) -> ApiLogsResponse:
        """Most recent vertex calls, oldest first."""
        entries = api_logs.entries(limit) if api_logs is not None else []
        return ApiLogsResponse(entries=[ApiLogEntryModel(**e.to_dict()) for e in entries])

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        configured = SodotSigner.is_config_valid(config)
        open_circuits = [v.index for v in coordinator.vertices if v.circuit.is_open]
        return HealthResponse(
            status="ok" if configured and not open_circuits else "degraded",
            version=__version__,
            num_parties=config.num_parties,
            threshold=config.threshold,
            vertices_configured=configured,
            key_sets={curve.value: registry.get(curve) is not None for curve in VertexCurve},
            open_circuits=open_circuits,
            active_sessions=len(store),
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=metrics_response(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
