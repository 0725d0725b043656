"""
Trust Store — the set of trust anchors peers are evaluated against.

Each anchor file is tagged `pinned` (this exact certificate is a trusted
peer) or `authority` (this certificate may vouch for others). A store may
hold both kinds at once; the evaluator resolves them pin-first.

Load and reload are all-or-nothing: a single malformed, expired or
self-inconsistent anchor rejects the whole batch with INVALID_TRUST_ANCHOR.
A successful reload swaps in a new AnchorSet snapshot; evaluations that
already captured a snapshot finish against it.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

import structlog

from peertrust.adapters.x509_codec import decode_certificates, is_properly_self_signed
from peertrust.domain.models import AnchorMaterial, AnchorSet, TrustAnchor
from peertrust.domain.ports import Clock, utc_now
from peertrust.failure import ErrorCode
from peertrust.result import Result

log = structlog.get_logger()


def _decode_material(material: AnchorMaterial) -> Result[list[TrustAnchor]]:
    return Result.from_computation(
        lambda: [TrustAnchor(certificate=cert, mode=material.mode) for cert in decode_certificates(material.data)],
        ErrorCode.INVALID_TRUST_ANCHOR,
        f"Trust anchor {material.label} could not be decoded",
    )


def _check_anchor(anchor: TrustAnchor, clock: Clock) -> Result[TrustAnchor]:
    cert = anchor.certificate
    now = clock()
    if not cert.is_valid_at(now):
        return Result.failure(
            ErrorCode.INVALID_TRUST_ANCHOR,
            f"Trust anchor {cert.subject!r} ({anchor.mode}) is outside its validity window "
            f"({cert.not_before.isoformat()} .. {cert.not_after.isoformat()})",
        )
    if cert.is_self_issued and not is_properly_self_signed(cert):
        return Result.failure(
            ErrorCode.INVALID_TRUST_ANCHOR,
            f"Trust anchor {cert.subject!r} claims to be self-signed but its signature "
            f"does not verify under its own public key",
        )
    return Result.success(anchor)


def build_anchor_set(
    materials: Iterable[AnchorMaterial],
    clock: Clock = utc_now,
    generation: int = 0,
) -> Result[AnchorSet]:
    """Decode and validate every anchor; the first problem rejects the whole set."""
    decoded = Result.all_of(_decode_material(material) for material in materials)
    return (
        decoded.map(lambda groups: [anchor for group in groups for anchor in group])
        .flat_map(lambda anchors: Result.all_of(_check_anchor(anchor, clock) for anchor in anchors))
        .map(lambda anchors: AnchorSet(anchors=_deduplicate(anchors), generation=generation))
    )


def _deduplicate(anchors: list[TrustAnchor]) -> tuple[TrustAnchor, ...]:
    """Drop repeated (certificate, mode) pairs, keeping first-seen order."""
    seen: set[tuple[bytes, str]] = set()
    unique: list[TrustAnchor] = []
    for anchor in anchors:
        key = (anchor.certificate.der, anchor.mode.value)
        if key not in seen:
            seen.add(key)
            unique.append(anchor)
    return tuple(unique)


class TrustStore:
    """Process-wide holder of the current AnchorSet snapshot."""

    def __init__(self, anchors: AnchorSet, clock: Clock = utc_now) -> None:
        self._anchors = anchors
        self._clock = clock
        self._lock = threading.Lock()

    @classmethod
    def load(cls, materials: Iterable[AnchorMaterial], clock: Clock = utc_now) -> Result[TrustStore]:
        return (
            build_anchor_set(materials, clock)
            .map(lambda anchors: cls(anchors, clock))
            .peek(lambda store: log.info(
                "trust_store.loaded",
                pinned=len(store.anchors().pinned),
                authorities=len(store.anchors().authorities),
            ))
            .peek_failure(lambda err: log.error(
                "trust_store.load_failed", reason=err.code.value, error=err.message,
            ))
        )

    def anchors(self) -> AnchorSet:
        """Current snapshot. Never mutated; replaced wholesale by reload()."""
        return self._anchors

    def reload(self, materials: Iterable[AnchorMaterial]) -> Result[AnchorSet]:
        """
        Validate `materials` and publish them for subsequent evaluations.

        The generation number is assigned under the lock so concurrent
        reloads still produce strictly increasing generations.
        """
        validated = build_anchor_set(materials, self._clock)
        return (
            validated.map(self._publish)
            .peek(lambda anchors: log.info(
                "trust_store.reloaded",
                generation=anchors.generation,
                pinned=len(anchors.pinned),
                authorities=len(anchors.authorities),
            ))
            .peek_failure(lambda err: log.error(
                "trust_store.reload_rejected", reason=err.code.value, error=err.message,
            ))
        )

    def _publish(self, candidate: AnchorSet) -> AnchorSet:
        with self._lock:
            published = AnchorSet(anchors=candidate.anchors, generation=self._anchors.generation + 1)
            self._anchors = published
        return published
