"""
Trust Policy Evaluator — decides whether a presented chain is trusted.

Pure decision logic: no I/O, no logging, no state between calls. Given the
same chain, the same anchor snapshot and the same clock reading it always
returns the same TrustDecision.

Algorithm:
  1. empty chain                               → reject EMPTY_CHAIN
  2. chain longer than max_chain_length        → reject UNTRUSTED_CHAIN
  3. leaf outside its validity window          → reject EXPIRED
  4. leaf with an empty subject DN             → reject UNTRUSTED_CHAIN
  5. leaf DER-equal to a pinned anchor         → accept (pinned)
  6. bounded walk leaf → intermediates → an authority anchor valid now
                                               → accept (ca)
  7. otherwise                                 → reject UNTRUSTED_CHAIN
  8. accepted but expected_name not on leaf    → reject IDENTITY_MISMATCH

Pinning wins over chain validation: step 6 never runs for a pinned leaf.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Sequence
from datetime import datetime

from peertrust.adapters.x509_codec import is_issued_by
from peertrust.domain.models import (
    AnchorSet,
    Certificate,
    ResolvedIdentity,
    TrustDecision,
    TrustMode,
)
from peertrust.domain.ports import Clock, utc_now
from peertrust.failure import ErrorCode
from peertrust.trust_store import TrustStore

DEFAULT_MAX_CHAIN_LENGTH = 8


# ─────────────────────── Host Name Matching ───────────────────────


def _dns_matches(pattern: str, host: str) -> bool:
    """Case-insensitive match allowing a single left-most wildcard label."""
    pattern = pattern.rstrip(".").lower()
    host = host.rstrip(".").lower()
    if not pattern.startswith("*."):
        return pattern == host
    head, dot, rest = host.partition(".")
    return bool(head) and bool(dot) and rest == pattern[2:]


def matches_name(certificate: Certificate, expected_name: str) -> bool:
    """
    True when the certificate carries `expected_name`.

    IP literals match IP SANs only. Host names match DNS SANs; the subject
    CN is consulted only when the certificate has no SAN extension at all.
    """
    try:
        expected_ip = ipaddress.ip_address(expected_name)
    except ValueError:
        expected_ip = None

    if expected_ip is not None:
        return any(
            name.startswith("IP:") and ipaddress.ip_address(name[3:]) == expected_ip
            for name in certificate.subject_alt_names
        )

    dns_names = [name[4:] for name in certificate.subject_alt_names if name.startswith("DNS:")]
    if dns_names:
        return any(_dns_matches(name, expected_name) for name in dns_names)
    if certificate.subject_alt_names:
        return False
    common_name = _common_name(certificate)
    return common_name is not None and _dns_matches(common_name, expected_name)


def _common_name(certificate: Certificate) -> str | None:
    for part in certificate.subject.split(","):
        key, _, value = part.partition("=")
        if key.strip().upper() == "CN":
            return value.strip()
    return None


# ─────────────────────── Evaluator ───────────────────────


class TrustPolicyEvaluator:
    """Stateless pin-first / chain-second trust evaluation."""

    def __init__(self, clock: Clock = utc_now, max_chain_length: int = DEFAULT_MAX_CHAIN_LENGTH) -> None:
        if max_chain_length < 1:
            raise ValueError("max_chain_length must be at least 1")
        self._clock = clock
        self._max_chain_length = max_chain_length

    @property
    def max_chain_length(self) -> int:
        return self._max_chain_length

    def evaluate(
        self,
        presented_chain: Sequence[Certificate],
        trust_store: TrustStore | AnchorSet,
        expected_name: str | None = None,
    ) -> TrustDecision:
        """
        Evaluate `presented_chain` (leaf first) against one anchor snapshot.

        When given a TrustStore, its snapshot is taken exactly once, so a
        concurrent reload cannot be observed half-way.
        """
        anchors = trust_store if isinstance(trust_store, AnchorSet) else trust_store.anchors()
        decision = self._decide(tuple(presented_chain), anchors)
        if decision.accepted and expected_name is not None:
            leaf = presented_chain[0]
            if not matches_name(leaf, expected_name):
                return TrustDecision.reject(
                    ErrorCode.IDENTITY_MISMATCH,
                    f"Peer certificate {leaf.subject!r} is not valid for {expected_name!r}",
                )
        return decision

    def _decide(self, chain: tuple[Certificate, ...], anchors: AnchorSet) -> TrustDecision:
        if not chain:
            return TrustDecision.reject(ErrorCode.EMPTY_CHAIN, "Peer presented no certificates")

        if len(chain) > self._max_chain_length:
            return TrustDecision.reject(
                ErrorCode.UNTRUSTED_CHAIN,
                f"Presented chain has {len(chain)} certificates, limit is {self._max_chain_length}",
            )

        leaf = chain[0]
        now = self._clock()
        if not leaf.is_valid_at(now):
            return TrustDecision.reject(
                ErrorCode.EXPIRED,
                f"Peer certificate {leaf.subject!r} is outside its validity window "
                f"({leaf.not_before.isoformat()} .. {leaf.not_after.isoformat()})",
            )

        if not leaf.subject:
            return TrustDecision.reject(
                ErrorCode.UNTRUSTED_CHAIN,
                f"Peer certificate {leaf.fingerprint} has an empty subject and names no identity",
            )

        if leaf in anchors.pinned:
            return TrustDecision.accept(
                ResolvedIdentity.of(leaf, TrustMode.PINNED),
                f"Leaf matches pinned anchor {leaf.fingerprint}",
            )

        anchor = self._find_authority_path(chain, anchors.authorities, now)
        if anchor is not None:
            return TrustDecision.accept(
                ResolvedIdentity.of(leaf, TrustMode.CA),
                f"Chain terminates at authority {anchor.subject!r}",
            )

        return TrustDecision.reject(
            ErrorCode.UNTRUSTED_CHAIN,
            f"No pinned match and no path to an authority anchor for {leaf.subject!r}",
        )

    def _find_authority_path(
        self,
        chain: tuple[Certificate, ...],
        authorities: tuple[Certificate, ...],
        now: datetime,
    ) -> Certificate | None:
        """
        Walk the presented chain one link at a time.

        Returns the authority anchor the path ends at, or None. The loop is
        bounded by the chain length, which is already capped. Authorities
        outside their validity window at `now` terminate no path, even though
        they were valid when the snapshot was loaded.
        """
        authorities = tuple(authority for authority in authorities if authority.is_valid_at(now))
        if not authorities:
            return None

        current = chain[0]
        for position in range(len(chain)):
            if current in authorities:
                return current
            for authority in authorities:
                if is_issued_by(current, authority):
                    return authority

            if position + 1 >= len(chain):
                return None
            parent = chain[position + 1]
            if not (parent.is_ca and parent.is_valid_at(now) and is_issued_by(current, parent)):
                return None
            current = parent
        return None
