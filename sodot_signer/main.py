"""Entry point for the Sodot signer service.

Loads configuration, wires the vertex coordinator and key registry, and
serves the signing API until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import os
import signal

import structlog
import uvicorn

from sodot_signer.logging import configure_logging

configure_logging()

from sodot_signer import __version__
from sodot_signer.api.server import create_app
from sodot_signer.config import Config
from sodot_signer.core.api_logs import ApiLogBuffer
from sodot_signer.core.coordinator import SessionCoordinator
from sodot_signer.core.session import SessionStore
from sodot_signer.core.signer import KeyRegistry

log = structlog.get_logger()


async def run_server(app: object, host: str, port: int) -> None:
    """Run uvicorn as an async task."""
    config = uvicorn.Config(
        app, host=host, port=port, log_level="info",
        timeout_graceful_shutdown=10,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def async_main() -> None:
    config = Config()
    warnings = config.validate()
    for w in warnings:
        log.warning("config_warning", msg=w)

    api_logs = ApiLogBuffer()
    coordinator = SessionCoordinator.from_config(config, api_logs=api_logs)
    registry = KeyRegistry.from_config(config)
    sessions = SessionStore(ttl=config.session_ttl)

    app = create_app(
        config=config,
        coordinator=coordinator,
        registry=registry,
        sessions=sessions,
        api_logs=api_logs,
    )

    log.info(
        "signer_starting",
        version=__version__,
        host=config.api_host,
        port=config.api_port,
        num_parties=config.num_parties,
        threshold=config.threshold,
        require_quorum=config.signing_require_quorum,
        log_format=os.getenv("LOG_FORMAT", "console"),
    )

    server_task = asyncio.create_task(run_server(app, config.api_host, config.api_port))

    shutdown_event = asyncio.Event()

    def _shutdown(sig: signal.Signals) -> None:
        log.info("shutdown_signal", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    # Stop on a signal or when the server exits on its own (e.g. port in use)
    waiter = asyncio.create_task(shutdown_event.wait())
    await asyncio.wait({server_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    log.info("shutting_down")
    for t in (server_task, waiter):
        t.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(server_task, waiter, return_exceptions=True),
            timeout=15.0,
        )
    except asyncio.TimeoutError:
        log.warning("shutdown_timeout", msg="Server did not stop within 15s")
    try:
        await coordinator.close()
    except Exception as e:
        log.warning("http_client_close_error", error=str(e))
    log.info("shutdown_complete")


def main() -> None:
    """Start the Sodot signer."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
