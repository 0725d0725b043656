"""
Application entry point — wires the engine and serves mutual-TLS connections.

Composition root: the only place where concrete stores, adapters and the
coordinator are instantiated.

Responsibilities:
  1. Load and validate configuration from environment
  2. Configure structlog
  3. Load the credential and trust stores (fatal on failure)
  4. Start the reload scheduler when a cron expression is configured
  5. Serve TCP connections, upgrading each through the HandshakeCoordinator
     and handing established connections to the session handler
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass

import structlog

from peertrust import __version__
from peertrust.adapters.file_source import FileMaterialSource
from peertrust.config import EngineSettings
from peertrust.credential_store import CredentialStore
from peertrust.domain.ports import SessionHandler
from peertrust.failure import ErrorCode
from peertrust.handshake import HandshakeCoordinator, HandshakePolicy, PeerConnection
from peertrust.reloader import create_reload_job, create_reload_scheduler
from peertrust.result import Result
from peertrust.trust_store import TrustStore

log = structlog.get_logger()


def configure_structlog(log_level: str = "INFO", log_format: str = "console") -> None:
    """
    Configure structlog for structured logging.

    "json": one JSON object per line (machine-readable, for log shippers).
    "console": colored, human-readable output.
    Unknown levels fall back to INFO.
    """
    renderer: structlog.typing.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info if log_format == "json" else structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True, slots=True)
class Engine:
    """Everything the listener needs, loaded once at process start."""

    source: FileMaterialSource
    credentials: CredentialStore
    trust_store: TrustStore
    coordinator: HandshakeCoordinator


def load_settings() -> Result[EngineSettings]:
    """Read settings from the environment; validation errors become CONFIGURATION_ERROR."""
    return Result.from_computation(EngineSettings, ErrorCode.CONFIGURATION_ERROR, "Invalid configuration")


def build_engine(settings: EngineSettings) -> Result[Engine]:
    """
    Load both stores from the configured files and wire the coordinator.

    Any failure here is fatal: the engine never serves with a broken
    identity or a partially loaded trust store.
    """
    source = FileMaterialSource(settings.identity, settings.trust_anchors)
    policy = HandshakePolicy.from_settings(settings.handshake)

    credentials = source.read_identity().flat_map(CredentialStore.load)
    trust_store = source.read_anchors().flat_map(TrustStore.load)

    return credentials.flat_map(
        lambda creds: trust_store.map(
            lambda trust: Engine(
                source=source,
                credentials=creds,
                trust_store=trust,
                coordinator=HandshakeCoordinator(creds, trust, policy),
            )
        )
    )


async def log_session(connection: PeerConnection) -> None:
    """Default session handler: record who connected, then let the listener close."""
    session = connection.session
    log.info(
        "session.opened",
        peer=session.peer_address,
        subject=session.peer_subject,
        serial=hex(session.peer_serial) if session.peer_serial is not None else None,
        trust_mode=str(session.trust_mode),
        protocol=session.protocol_version,
        cipher=session.cipher_suite,
    )


async def start_listener(
    coordinator: HandshakeCoordinator,
    handler: SessionHandler,
    host: str,
    port: int,
) -> asyncio.Server:
    """
    Bind a TCP listener whose connections are upgraded by `coordinator`.

    A rejected handshake affects only its own connection; a failing
    handler is logged and its connection closed.
    """

    async def _on_client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        result = await coordinator.accept(reader, writer)
        if result.is_failure():
            return
        connection = result.value()
        try:
            await handler(connection)
        except Exception:
            log.exception("listener.session_handler_failed", peer=connection.session.peer_address)
        finally:
            await connection.close()

    server = await asyncio.start_server(_on_client, host, port)
    log.info("listener.started", addresses=[str(sock.getsockname()) for sock in server.sockets])
    return server


async def serve(engine: Engine, settings: EngineSettings, handler: SessionHandler = log_session) -> None:
    server = await start_listener(
        engine.coordinator, handler, settings.listener.host, settings.listener.port,
    )
    async with server:
        await server.serve_forever()


def main() -> None:
    """Load everything, then serve until interrupted."""
    settings_result = load_settings()
    if settings_result.is_failure():
        failure = settings_result.error()
        # structlog is not configured yet
        print(f"FATAL: {failure.code.value} — {failure.message}", file=sys.stderr)  # noqa: T201
        sys.exit(1)
    settings = settings_result.value()

    configure_structlog(settings.log_level, settings.log_format)

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        anchors=len(settings.trust_anchors),
        peer_certificate_required=settings.handshake.peer_certificate_required,
        reload_cron=settings.reload.cron,
    )

    engine_result = build_engine(settings)
    if engine_result.is_failure():
        failure = engine_result.error()
        log.error("app.load_failed", reason=failure.code.value, error=failure.message)
        sys.exit(1)
    engine = engine_result.value()

    if not engine.trust_store.anchors().anchors:
        log.warning("app.empty_trust_store", detail="every peer certificate will be rejected")

    scheduler = None
    if settings.reload.cron is not None:
        scheduler = create_reload_scheduler(
            create_reload_job(engine.source, engine.credentials, engine.trust_store),
            settings.reload.cron,
        )
        scheduler.start()
        log.info("app.reload_scheduled", cron=settings.reload.cron)

    try:
        asyncio.run(serve(engine, settings))
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="signal received")
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        engine.credentials.close()


if __name__ == "__main__":
    main()
