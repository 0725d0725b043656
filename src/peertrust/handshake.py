"""
Handshake Coordinator — drives one mutual-TLS handshake per connection.

State machine (strictly sequential per connection):

  START → VERSION_NEGOTIATED → LOCAL_CERT_SENT → PEER_CERT_REQUESTED
        → PEER_CERT_RECEIVED → TRUST_EVALUATED → ESTABLISHED
  any non-terminal state → ABORTED

Only ESTABLISHED produces a SessionContext. A missing peer certificate
while the policy requires one aborts with NO_PEER_CERTIFICATE; it is never
downgraded to an unauthenticated session. On the server side OpenSSL
refuses such a client with a certificate_required (TLS 1.3) or
handshake_failure (TLS 1.2) alert, so the peer sees a failed handshake
rather than a silent close.

The TLS protocol itself runs inside asyncio's StreamWriter.start_tls();
the coordinator captures the identity and anchor snapshots once, bounds
the handshake with asyncio.timeout(), then hands the presented chain to
the TrustPolicyEvaluator. TLS-layer failures are mapped onto the same
reason codes the evaluator uses.
"""

from __future__ import annotations

import asyncio
import ssl
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from peertrust.adapters.tls_context import TLS_VERSIONS, TlsContextCache
from peertrust.adapters.x509_codec import certificate_from_der
from peertrust.config import HandshakeSettings
from peertrust.credential_store import CredentialStore
from peertrust.domain.models import SessionContext
from peertrust.evaluator import DEFAULT_MAX_CHAIN_LENGTH, TrustPolicyEvaluator
from peertrust.failure import ErrorCode
from peertrust.result import Result
from peertrust.trust_store import TrustStore

log = structlog.get_logger()

# OpenSSL X509_V_ERR_* codes surfaced through SSLCertVerificationError.verify_code
_X509_V_ERR_CERT_NOT_YET_VALID = 9
_X509_V_ERR_CERT_HAS_EXPIRED = 10
_X509_V_ERR_HOSTNAME_MISMATCH = 62

_NO_CERTIFICATE_REASONS = frozenset({"PEER_DID_NOT_RETURN_A_CERTIFICATE", "TLSV13_ALERT_CERTIFICATE_REQUIRED"})

# asyncio's own handshake timer must never fire before ours
_SSL_TIMEOUT_SLACK = 1.0
_CLOSE_TIMEOUT = 1.0


class HandshakeState(StrEnum):
    START = "start"
    VERSION_NEGOTIATED = "version_negotiated"
    LOCAL_CERT_SENT = "local_cert_sent"
    PEER_CERT_REQUESTED = "peer_cert_requested"
    PEER_CERT_RECEIVED = "peer_cert_received"
    TRUST_EVALUATED = "trust_evaluated"
    ESTABLISHED = "established"
    ABORTED = "aborted"


_TRANSITIONS: dict[HandshakeState, frozenset[HandshakeState]] = {
    HandshakeState.START: frozenset({HandshakeState.VERSION_NEGOTIATED, HandshakeState.ABORTED}),
    HandshakeState.VERSION_NEGOTIATED: frozenset({HandshakeState.LOCAL_CERT_SENT, HandshakeState.ABORTED}),
    HandshakeState.LOCAL_CERT_SENT: frozenset({HandshakeState.PEER_CERT_REQUESTED, HandshakeState.ABORTED}),
    # ESTABLISHED directly from here only when the peer sent nothing and
    # the policy does not require a certificate
    HandshakeState.PEER_CERT_REQUESTED: frozenset({
        HandshakeState.PEER_CERT_RECEIVED, HandshakeState.ESTABLISHED, HandshakeState.ABORTED,
    }),
    HandshakeState.PEER_CERT_RECEIVED: frozenset({HandshakeState.TRUST_EVALUATED, HandshakeState.ABORTED}),
    HandshakeState.TRUST_EVALUATED: frozenset({HandshakeState.ESTABLISHED, HandshakeState.ABORTED}),
    HandshakeState.ESTABLISHED: frozenset(),
    HandshakeState.ABORTED: frozenset(),
}


class HandshakeTrace:
    """Per-connection state holder; rejects any transition not in the table."""

    def __init__(self) -> None:
        self._history: list[HandshakeState] = [HandshakeState.START]

    @property
    def state(self) -> HandshakeState:
        return self._history[-1]

    @property
    def history(self) -> tuple[HandshakeState, ...]:
        return tuple(self._history)

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, target: HandshakeState) -> HandshakeState:
        """Move to `target`, returning the state that was left."""
        current = self.state
        if target not in _TRANSITIONS[current]:
            raise RuntimeError(f"Illegal handshake transition {current.value} → {target.value}")
        self._history.append(target)
        return current

    def advance_through(self, *targets: HandshakeState) -> None:
        for target in targets:
            self.advance(target)


@dataclass(frozen=True, slots=True)
class HandshakePolicy:
    """Per-engine handshake settings, already validated."""

    peer_certificate_required: bool = True
    timeout_seconds: float = 10.0
    minimum_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    max_chain_length: int = DEFAULT_MAX_CHAIN_LENGTH

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    @staticmethod
    def from_settings(settings: HandshakeSettings) -> HandshakePolicy:
        return HandshakePolicy(
            peer_certificate_required=settings.peer_certificate_required,
            timeout_seconds=settings.timeout_seconds,
            minimum_version=TLS_VERSIONS[settings.minimum_tls_version],
            max_chain_length=settings.max_chain_length,
        )


@dataclass(frozen=True, slots=True)
class PeerConnection:
    """An established connection: the session context plus its upgraded streams."""

    session: SessionContext
    reader: asyncio.StreamReader = field(repr=False)
    writer: asyncio.StreamWriter = field(repr=False)

    async def close(self) -> None:
        await close_transport(self.writer)


# ─────────────────────── Helpers ───────────────────────


def classify_tls_failure(exc: BaseException) -> ErrorCode:
    """Map an exception raised by the TLS layer onto a reason code."""
    if isinstance(exc, ssl.SSLCertVerificationError):
        verify_code = getattr(exc, "verify_code", None)
        if verify_code in (_X509_V_ERR_CERT_NOT_YET_VALID, _X509_V_ERR_CERT_HAS_EXPIRED):
            return ErrorCode.EXPIRED
        if verify_code == _X509_V_ERR_HOSTNAME_MISMATCH:
            return ErrorCode.IDENTITY_MISMATCH
        return ErrorCode.UNTRUSTED_CHAIN
    if isinstance(exc, ssl.SSLError) and getattr(exc, "reason", None) in _NO_CERTIFICATE_REASONS:
        return ErrorCode.NO_PEER_CERTIFICATE
    return ErrorCode.HANDSHAKE_FAILED


def _peer_chain_der(ssl_object: Any) -> list[bytes]:
    """
    DER blocks of the certificates the peer presented, leaf first.

    OpenSSL omits the leaf from the server-side peer chain on some versions,
    so it is put back in front when missing.
    """
    leaf = ssl_object.getpeercert(binary_form=True)
    if not leaf:
        return []
    chain = [bytes(der) for der in ssl_object.get_unverified_chain() or ()]
    if not chain or chain[0] != leaf:
        chain.insert(0, leaf)
    return chain


def _format_address(peername: Any) -> str | None:
    if isinstance(peername, tuple) and len(peername) >= 2:
        host = peername[0]
        return f"[{host}]:{peername[1]}" if ":" in str(host) else f"{host}:{peername[1]}"
    return str(peername) if peername else None


async def close_transport(writer: asyncio.StreamWriter) -> None:
    """Close a stream, aborting the transport if the peer does not finish the close."""
    writer.close()
    try:
        async with asyncio.timeout(_CLOSE_TIMEOUT):
            await writer.wait_closed()
    except TimeoutError:
        writer.transport.abort()
    except OSError as e:
        log.debug("handshake.close_error", error=str(e))


# ─────────────────────── Coordinator ───────────────────────


class HandshakeCoordinator:
    """
    Run mutual-TLS handshakes against shared credential and trust stores.

    Stores are read once per handshake; rotation or reload while a
    handshake is in flight affects only later handshakes.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        trust_store: TrustStore,
        policy: HandshakePolicy | None = None,
        evaluator: TrustPolicyEvaluator | None = None,
        contexts: TlsContextCache | None = None,
    ) -> None:
        self._credentials = credentials
        self._trust_store = trust_store
        self._policy = policy or HandshakePolicy()
        self._evaluator = evaluator or TrustPolicyEvaluator(max_chain_length=self._policy.max_chain_length)
        self._contexts = contexts or TlsContextCache(
            self._policy.minimum_version, self._policy.peer_certificate_required,
        )

    @property
    def policy(self) -> HandshakePolicy:
        return self._policy

    async def accept(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> Result[PeerConnection]:
        """Server role: upgrade an accepted plain TCP stream and authenticate the client."""
        return await self._run(
            reader,
            writer,
            server_side=True,
            peer_address=_format_address(writer.get_extra_info("peername")),
            expected_name=None,
        )

    async def connect(self, host: str, port: int, server_name: str | None = None) -> Result[PeerConnection]:
        """
        Client role: open a TCP connection, upgrade it and authenticate the server.

        `server_name`, when given, must appear on the server certificate.
        """
        try:
            async with asyncio.timeout(self._policy.timeout_seconds):
                reader, writer = await asyncio.open_connection(host, port)
        except TimeoutError:
            log.warning("handshake.connect_timeout", peer=f"{host}:{port}")
            return Result.failure(ErrorCode.TIMEOUT, f"TCP connect to {host}:{port} timed out")
        except OSError as e:
            log.warning("handshake.connect_failed", peer=f"{host}:{port}", error=str(e))
            return Result.failure(ErrorCode.HANDSHAKE_FAILED, f"TCP connect to {host}:{port} failed: {e}", e)

        return await self._run(
            reader,
            writer,
            server_side=False,
            peer_address=f"{host}:{port}",
            expected_name=server_name,
        )

    async def _run(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        server_side: bool,
        peer_address: str | None,
        expected_name: str | None,
    ) -> Result[PeerConnection]:
        trace = HandshakeTrace()
        identity = self._credentials.current_identity()
        anchors = self._trust_store.anchors()
        bound = log.bind(
            peer=peer_address,
            role="server" if server_side else "client",
            anchor_generation=anchors.generation,
        )

        try:
            context = await self._contexts.context_for_async(identity, anchors, server_side=server_side)
            async with asyncio.timeout(self._policy.timeout_seconds):
                await writer.start_tls(
                    context,
                    server_hostname=None if server_side else expected_name,
                    ssl_handshake_timeout=self._policy.timeout_seconds + _SSL_TIMEOUT_SLACK,
                )
        except TimeoutError:
            return await self._abort(
                trace, writer, bound, ErrorCode.TIMEOUT,
                f"Handshake did not complete within {self._policy.timeout_seconds}s",
            )
        except asyncio.CancelledError:
            trace.advance(HandshakeState.ABORTED)
            bound.warning("handshake.aborted", reason=ErrorCode.CANCELLED.value, state=trace.history[-2].value)
            writer.transport.abort()
            raise
        except (ssl.SSLError, OSError, EOFError) as e:
            code = classify_tls_failure(e)
            if code in (ErrorCode.EXPIRED, ErrorCode.UNTRUSTED_CHAIN,
                        ErrorCode.IDENTITY_MISMATCH, ErrorCode.NO_PEER_CERTIFICATE):
                trace.advance_through(
                    HandshakeState.VERSION_NEGOTIATED,
                    HandshakeState.LOCAL_CERT_SENT,
                    HandshakeState.PEER_CERT_REQUESTED,
                )
            return await self._abort(trace, writer, bound, code, f"TLS handshake failed: {e}", e)

        ssl_object = writer.get_extra_info("ssl_object")
        protocol_version = ssl_object.version() or "unknown"
        cipher = ssl_object.cipher()
        cipher_suite = cipher[0] if cipher else "unknown"
        trace.advance_through(
            HandshakeState.VERSION_NEGOTIATED,
            HandshakeState.LOCAL_CERT_SENT,
            HandshakeState.PEER_CERT_REQUESTED,
        )

        chain_der = _peer_chain_der(ssl_object)
        if not chain_der:
            if server_side and not self._policy.peer_certificate_required:
                trace.advance(HandshakeState.ESTABLISHED)
                session = SessionContext(
                    protocol_version=protocol_version,
                    cipher_suite=cipher_suite,
                    local_fingerprint=identity.fingerprint,
                    decision=None,
                    peer_address=peer_address,
                )
                bound.info("handshake.established", authenticated=False, protocol=protocol_version)
                return Result.success(PeerConnection(session=session, reader=reader, writer=writer))
            return await self._abort(
                trace, writer, bound, ErrorCode.NO_PEER_CERTIFICATE, "Peer did not present a certificate",
            )

        trace.advance(HandshakeState.PEER_CERT_RECEIVED)
        decoded = Result.from_computation(
            lambda: [certificate_from_der(der) for der in chain_der],
            ErrorCode.UNTRUSTED_CHAIN,
            "Peer certificate chain could not be decoded",
        )
        if decoded.is_failure():
            return await self._abort(trace, writer, bound, decoded.error().code, decoded.error().message)

        decision = self._evaluator.evaluate(decoded.value(), anchors, expected_name)
        trace.advance(HandshakeState.TRUST_EVALUATED)
        if not decision.accepted:
            assert decision.reason is not None
            return await self._abort(trace, writer, bound, decision.reason, decision.detail)

        trace.advance(HandshakeState.ESTABLISHED)
        session = SessionContext(
            protocol_version=protocol_version,
            cipher_suite=cipher_suite,
            local_fingerprint=identity.fingerprint,
            decision=decision,
            peer_address=peer_address,
        )
        bound.info(
            "handshake.established",
            authenticated=True,
            subject=session.peer_subject,
            serial=decision.identity.serial_hex if decision.identity else None,
            trust_mode=str(session.trust_mode),
            protocol=protocol_version,
            cipher=cipher_suite,
        )
        return Result.success(PeerConnection(session=session, reader=reader, writer=writer))

    async def _abort(
        self,
        trace: HandshakeTrace,
        writer: asyncio.StreamWriter,
        bound: Any,
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[PeerConnection]:
        left = trace.advance(HandshakeState.ABORTED)
        bound.warning("handshake.aborted", reason=code.value, state=left.value, detail=message)
        await close_transport(writer)
        return Result.failure(code, message, exception)
