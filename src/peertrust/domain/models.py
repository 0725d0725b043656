"""
Domain models — immutable value objects for certificates, anchors and decisions.

Everything the engine hands between components is a frozen dataclass:
parsed certificates, trust anchors and their snapshots, trust decisions and
the per-connection session context. Parsing lives in the x509 codec adapter;
these classes only hold data and check their own invariants.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from peertrust.failure import ErrorCode

if TYPE_CHECKING:
    from cryptography import x509
    from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes


class AnchorMode(StrEnum):
    """How a trust anchor is trusted."""

    PINNED = "pinned"
    AUTHORITY = "authority"


class TrustMode(StrEnum):
    """How an accepted peer was trusted, for audit."""

    PINNED = "pinned"
    CA = "ca"


class Outcome(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class Certificate:
    """
    A parsed X.509 certificate.

    Equality and hashing use the canonical DER encoding only, which is what
    pinning compares. `subject_name_der` / `issuer_name_der` hold the encoded
    X.500 names used for issuer→subject chain linkage.
    """

    der: bytes = field(repr=False)
    subject: str = field(compare=False)
    issuer: str = field(compare=False)
    serial_number: int = field(compare=False)
    not_before: datetime = field(compare=False)
    not_after: datetime = field(compare=False)
    fingerprint: str = field(compare=False)
    subject_name_der: bytes = field(compare=False, repr=False)
    issuer_name_der: bytes = field(compare=False, repr=False)
    subject_alt_names: tuple[str, ...] = field(default=(), compare=False)
    is_ca: bool = field(default=False, compare=False)
    x509: x509.Certificate | None = field(default=None, compare=False, repr=False)

    @property
    def serial_hex(self) -> str:
        return hex(self.serial_number)

    @property
    def is_self_issued(self) -> bool:
        return self.subject_name_der == self.issuer_name_der

    def is_valid_at(self, moment: datetime) -> bool:
        """True when `moment` lies inside [not_before, not_after]."""
        return self.not_before <= moment <= self.not_after


@dataclass(frozen=True, slots=True)
class IdentityMaterial:
    """
    Raw local identity as supplied by an external collaborator.

    certificate_data: PEM or DER, leaf first, optionally followed by the chain.
    key_data: PEM or DER private key, optionally encrypted with `password`.
    """

    certificate_data: bytes = field(repr=False)
    key_data: bytes = field(repr=False)
    password: bytes | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class LocalIdentity:
    """Validated private key plus its certificate chain (leaf first)."""

    chain: tuple[Certificate, ...]
    private_key: PrivateKeyTypes = field(repr=False, compare=False)

    @property
    def leaf(self) -> Certificate:
        return self.chain[0]

    @property
    def fingerprint(self) -> str:
        return self.leaf.fingerprint


@dataclass(frozen=True, slots=True)
class AnchorMaterial:
    """
    Raw anchor file content tagged with its trust mode.

    `data` may hold a single certificate (PEM or DER), a PEM bundle, or a
    PKCS#7 certs-only bundle. `label` names the origin in log lines.
    """

    data: bytes = field(repr=False)
    mode: AnchorMode
    label: str = "<memory>"


@dataclass(frozen=True, slots=True)
class TrustAnchor:
    certificate: Certificate
    mode: AnchorMode


@dataclass(frozen=True, slots=True)
class AnchorSet:
    """
    Immutable snapshot of the trust anchors.

    The trust store swaps whole AnchorSet instances; a holder of a snapshot
    never observes a partially updated set. `generation` increases on every
    successful reload.
    """

    anchors: tuple[TrustAnchor, ...] = ()
    generation: int = 0

    @property
    def pinned(self) -> tuple[Certificate, ...]:
        return tuple(a.certificate for a in self.anchors if a.mode is AnchorMode.PINNED)

    @property
    def authorities(self) -> tuple[Certificate, ...]:
        return tuple(a.certificate for a in self.anchors if a.mode is AnchorMode.AUTHORITY)

    @property
    def certificates(self) -> tuple[Certificate, ...]:
        """Distinct anchor certificates regardless of mode, in load order."""
        seen: dict[bytes, Certificate] = {}
        for anchor in self.anchors:
            seen.setdefault(anchor.certificate.der, anchor.certificate)
        return tuple(seen.values())

    def __len__(self) -> int:
        return len(self.anchors)


@dataclass(frozen=True, slots=True)
class ResolvedIdentity:
    """Authenticated attributes of an accepted peer."""

    subject: str
    serial_number: int
    trust_mode: TrustMode
    fingerprint: str
    subject_alt_names: tuple[str, ...] = ()

    @property
    def serial_hex(self) -> str:
        return hex(self.serial_number)

    @staticmethod
    def of(certificate: Certificate, trust_mode: TrustMode) -> ResolvedIdentity:
        return ResolvedIdentity(
            subject=certificate.subject,
            serial_number=certificate.serial_number,
            trust_mode=trust_mode,
            fingerprint=certificate.fingerprint,
            subject_alt_names=certificate.subject_alt_names,
        )


@dataclass(frozen=True, slots=True)
class TrustDecision:
    """
    Outcome of one trust evaluation.

    accept ⇒ identity (non-empty subject DN + serial) present, reason absent.
    reject ⇒ reason present, identity absent.
    Anything else raises ValueError at construction.
    """

    outcome: Outcome
    reason: ErrorCode | None = None
    identity: ResolvedIdentity | None = None
    detail: str = ""

    def __post_init__(self) -> None:
        if self.outcome is Outcome.ACCEPT:
            if self.identity is None:
                raise ValueError("An accepting TrustDecision requires a resolved identity")
            if not self.identity.subject:
                raise ValueError("An accepting TrustDecision requires a non-empty subject DN")
            if self.reason is not None:
                raise ValueError("An accepting TrustDecision cannot carry a reason code")
        else:
            if self.reason is None:
                raise ValueError("A rejecting TrustDecision requires a reason code")
            if self.identity is not None:
                raise ValueError("A rejecting TrustDecision cannot carry an identity")

    @property
    def accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPT

    @staticmethod
    def accept(identity: ResolvedIdentity, detail: str = "") -> TrustDecision:
        return TrustDecision(outcome=Outcome.ACCEPT, identity=identity, detail=detail)

    @staticmethod
    def reject(reason: ErrorCode, detail: str = "") -> TrustDecision:
        return TrustDecision(outcome=Outcome.REJECT, reason=reason, detail=detail)


@dataclass(frozen=True, slots=True)
class SessionContext:
    """
    What an established connection hands to the application layer.

    `decision` is None only for a session where the policy does not require
    a peer certificate and the peer sent none.
    """

    protocol_version: str
    cipher_suite: str
    local_fingerprint: str
    decision: TrustDecision | None
    peer_address: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.decision is not None and self.decision.accepted

    @property
    def peer_identity(self) -> ResolvedIdentity | None:
        return self.decision.identity if self.decision is not None else None

    @property
    def peer_subject(self) -> str | None:
        identity = self.peer_identity
        return identity.subject if identity is not None else None

    @property
    def peer_serial(self) -> int | None:
        identity = self.peer_identity
        return identity.serial_number if identity is not None else None

    @property
    def trust_mode(self) -> TrustMode | None:
        identity = self.peer_identity
        return identity.trust_mode if identity is not None else None
