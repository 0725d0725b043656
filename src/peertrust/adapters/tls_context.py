"""
TLS context adapter — ssl.SSLContext construction from store snapshots.

Adapter layer — the standard-library ssl module runs the TLS record and
handshake protocol; this module only configures it:

  - local identity: chain + key are written to a private temporary
    directory (the key re-encrypted under a one-time passphrase) because
    SSLContext.load_cert_chain() only accepts file paths
  - verification roots: every anchor, pinned or authority, is loaded via
    cadata with VERIFY_X509_PARTIAL_CHAIN so OpenSSL lets pinned
    non-root certificates through to the trust policy evaluator
  - server side uses CERT_REQUIRED when the policy requires a peer
    certificate, so a client that sends none gets a TLS alert; CERT_OPTIONAL
    only for the optional policy
  - client side uses CERT_REQUIRED without OpenSSL host name checks; the
    evaluator matches the expected name itself

OpenSSL accepting a peer is necessary but never sufficient: the evaluator
re-checks every chain with the pin/authority distinction OpenSSL lacks.
"""

from __future__ import annotations

import asyncio
import secrets
import ssl
import tempfile
import threading
from pathlib import Path

import structlog
from cryptography.hazmat.primitives import serialization

from peertrust.adapters.x509_codec import to_pem
from peertrust.domain.models import AnchorSet, LocalIdentity

log = structlog.get_logger()

TLS_VERSIONS: dict[str, ssl.TLSVersion] = {
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


def _write_private(path: Path, data: bytes) -> None:
    path.touch(mode=0o600, exist_ok=False)
    path.write_bytes(data)


def _load_identity(context: ssl.SSLContext, identity: LocalIdentity) -> None:
    passphrase = secrets.token_hex(32).encode("ascii")
    key_pem = identity.private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase),
    )
    chain_pem = "".join(to_pem(cert) for cert in identity.chain).encode("ascii")

    with tempfile.TemporaryDirectory(prefix="peertrust-") as workdir:
        cert_path = Path(workdir) / "chain.pem"
        key_path = Path(workdir) / "key.pem"
        _write_private(cert_path, chain_pem)
        _write_private(key_path, key_pem)
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path), password=passphrase)


def build_context(
    identity: LocalIdentity,
    anchors: AnchorSet,
    *,
    server_side: bool,
    minimum_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2,
    peer_certificate_required: bool = True,
) -> ssl.SSLContext:
    """
    Create an SSLContext for one (identity, anchors) snapshot pair.

    Blocking: writes temporary files and re-encrypts the private key.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER if server_side else ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = minimum_version
    context.options |= ssl.OP_NO_COMPRESSION

    if server_side:
        context.verify_mode = ssl.CERT_REQUIRED if peer_certificate_required else ssl.CERT_OPTIONAL
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_REQUIRED
    context.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN

    _load_identity(context, identity)

    roots = anchors.certificates
    if roots:
        context.load_verify_locations(cadata="".join(to_pem(cert) for cert in roots))

    log.debug(
        "tls_context.built",
        server_side=server_side,
        verify_mode=context.verify_mode.name,
        local_fingerprint=identity.fingerprint,
        anchor_generation=anchors.generation,
        roots=len(roots),
        minimum_version=minimum_version.name,
    )
    return context


class TlsContextCache:
    """
    Reuse an SSLContext while neither snapshot has changed.

    Snapshots are compared by identity: a rotation or reload publishes a new
    object, which invalidates the cached context for that role. A miss
    builds the context synchronously; async callers go through
    `context_for_async`, which builds it on a worker thread.
    """

    def __init__(
        self,
        minimum_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2,
        peer_certificate_required: bool = True,
    ) -> None:
        self._minimum_version = minimum_version
        self._peer_certificate_required = peer_certificate_required
        self._entries: dict[bool, tuple[LocalIdentity, AnchorSet, ssl.SSLContext]] = {}
        self._lock = threading.Lock()

    def cached(self, identity: LocalIdentity, anchors: AnchorSet, *, server_side: bool) -> ssl.SSLContext | None:
        entry = self._entries.get(server_side)
        if entry is not None and entry[0] is identity and entry[1] is anchors:
            return entry[2]
        return None

    def context_for(self, identity: LocalIdentity, anchors: AnchorSet, *, server_side: bool) -> ssl.SSLContext:
        with self._lock:
            context = self.cached(identity, anchors, server_side=server_side)
            if context is not None:
                return context
            context = build_context(
                identity,
                anchors,
                server_side=server_side,
                minimum_version=self._minimum_version,
                peer_certificate_required=self._peer_certificate_required,
            )
            self._entries[server_side] = (identity, anchors, context)
            return context

    async def context_for_async(
        self, identity: LocalIdentity, anchors: AnchorSet, *, server_side: bool,
    ) -> ssl.SSLContext:
        """Cache hits return on the event loop; misses are built with asyncio.to_thread."""
        context = self.cached(identity, anchors, server_side=server_side)
        if context is not None:
            return context
        return await asyncio.to_thread(self.context_for, identity, anchors, server_side=server_side)
