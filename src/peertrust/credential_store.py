"""
Credential Store — holds this endpoint's own identity.

Validation on load and on every rotation:
  1. certificate data decodes to a non-empty chain (leaf first)
  2. the private key decodes and matches the leaf public key
  3. the chain is contiguous (issuer of i == subject of i+1)
  4. the leaf validity window includes now → otherwise EXPIRED

Reads are lock-free: `current_identity()` returns the snapshot reference.
Rotation validates first, then swaps the reference under a lock, so a
handshake that already captured the old identity keeps using it.
"""

from __future__ import annotations

import threading

import structlog

from peertrust.adapters.x509_codec import decode_certificates, decode_private_key, key_matches_certificate
from peertrust.domain.models import IdentityMaterial, LocalIdentity
from peertrust.domain.ports import Clock, utc_now
from peertrust.failure import ErrorCode
from peertrust.result import Result

log = structlog.get_logger()


def _chain_break(identity: LocalIdentity) -> str | None:
    """Describe the first non-contiguous link, or None for a contiguous chain."""
    for position, (child, parent) in enumerate(zip(identity.chain, identity.chain[1:])):
        if child.issuer_name_der != parent.subject_name_der:
            return (
                f"certificate {position} issuer {child.issuer!r} "
                f"does not match certificate {position + 1} subject {parent.subject!r}"
            )
    return None


def validate_identity(material: IdentityMaterial, clock: Clock = utc_now) -> Result[LocalIdentity]:
    """Decode and validate identity material without touching any store."""
    chain = Result.from_computation(
        lambda: tuple(decode_certificates(material.certificate_data)),
        ErrorCode.INVALID_CREDENTIAL,
        "Local certificate chain could not be decoded",
    )
    key = Result.from_computation(
        lambda: decode_private_key(material.key_data, material.password),
        ErrorCode.INVALID_CREDENTIAL,
        "Local private key could not be decoded",
    )
    return (
        chain.flat_map(lambda certs: key.map(lambda k: LocalIdentity(chain=certs, private_key=k)))
        .ensure(
            lambda identity: key_matches_certificate(identity.private_key, identity.leaf),
            ErrorCode.INVALID_CREDENTIAL,
            lambda identity: f"Private key does not match leaf certificate {identity.leaf.subject!r}",
        )
        .ensure(
            lambda identity: _chain_break(identity) is None,
            ErrorCode.INVALID_CREDENTIAL,
            lambda identity: f"Local chain is not contiguous: {_chain_break(identity)}",
        )
        .ensure(
            lambda identity: identity.leaf.is_valid_at(clock()),
            ErrorCode.EXPIRED,
            lambda identity: (
                f"Local certificate {identity.leaf.subject!r} is outside its validity window "
                f"({identity.leaf.not_before.isoformat()} .. {identity.leaf.not_after.isoformat()})"
            ),
        )
    )


class CredentialStore:
    """
    Process-wide holder of the local identity.

    Construct through `CredentialStore.load()`; a store never exists
    without a valid identity.
    """

    def __init__(self, identity: LocalIdentity, clock: Clock = utc_now) -> None:
        self._identity: LocalIdentity | None = identity
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def load(cls, material: IdentityMaterial, clock: Clock = utc_now) -> Result[CredentialStore]:
        return (
            validate_identity(material, clock)
            .map(lambda identity: cls(identity, clock))
            .peek(lambda store: log.info(
                "credential_store.loaded",
                subject=store.current_identity().leaf.subject,
                fingerprint=store.current_identity().fingerprint,
                chain_length=len(store.current_identity().chain),
            ))
            .peek_failure(lambda err: log.error(
                "credential_store.load_failed", reason=err.code.value, error=err.message,
            ))
        )

    def current_identity(self) -> LocalIdentity:
        identity = self._identity
        if identity is None:
            raise RuntimeError("Credential store has been closed")
        return identity

    def rotate(self, material: IdentityMaterial) -> Result[LocalIdentity]:
        """
        Validate `material` and make it the identity for subsequent handshakes.

        On failure the current identity stays in place.
        """
        return (
            validate_identity(material, self._clock)
            .peek(self._swap)
            .peek_failure(lambda err: log.error(
                "credential_store.rotation_rejected", reason=err.code.value, error=err.message,
            ))
        )

    def _swap(self, identity: LocalIdentity) -> None:
        with self._lock:
            if self._identity is None:
                raise RuntimeError("Credential store has been closed")
            previous = self._identity
            self._identity = identity
        log.info(
            "credential_store.rotated",
            previous_fingerprint=previous.fingerprint,
            fingerprint=identity.fingerprint,
            subject=identity.leaf.subject,
        )

    def close(self) -> None:
        """Drop the identity; the key becomes unreachable from this store."""
        with self._lock:
            self._identity = None
        log.info("credential_store.closed")

    @property
    def closed(self) -> bool:
        return self._identity is None
