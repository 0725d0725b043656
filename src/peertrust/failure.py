"""
Failure description — structured error information for the failure track.

ErrorCode is the single reason taxonomy of the engine: load-time failures of
the stores, per-connection rejection reasons produced by the trust policy
evaluator, and lifecycle aborts of the handshake coordinator all use it.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique


@unique
class ErrorCode(Enum):
    """
    Reason codes for the failure track.

    Load-time (fatal before serving):
      INVALID_CREDENTIAL, INVALID_TRUST_ANCHOR, CONFIGURATION_ERROR
    Per-connection (reject exactly one handshake):
      EXPIRED, EMPTY_CHAIN, NO_PEER_CERTIFICATE, UNTRUSTED_CHAIN,
      IDENTITY_MISMATCH, TIMEOUT, CANCELLED, HANDSHAKE_FAILED
    """

    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    """Local identity material malformed, or key/certificate mismatch."""

    INVALID_TRUST_ANCHOR = "INVALID_TRUST_ANCHOR"
    """Malformed, expired or self-inconsistent trust anchor."""

    EXPIRED = "EXPIRED"
    """Certificate outside its validity window."""

    EMPTY_CHAIN = "EMPTY_CHAIN"
    """Evaluator received a chain with no certificates."""

    NO_PEER_CERTIFICATE = "NO_PEER_CERTIFICATE"
    """Peer completed the handshake without presenting a certificate."""

    UNTRUSTED_CHAIN = "UNTRUSTED_CHAIN"
    """Neither a pinned match nor a valid path to an authority anchor."""

    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
    """Peer certificate does not carry the expected host name."""

    TIMEOUT = "TIMEOUT"
    """Handshake did not complete within the configured bound."""

    CANCELLED = "CANCELLED"
    """Handshake torn down before reaching a terminal state."""

    HANDSHAKE_FAILED = "HANDSHAKE_FAILED"
    """TLS protocol failure unrelated to peer identity (version, reset)."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Contradictory or unusable engine configuration."""

    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """Unexpected infrastructure failure."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.EXPIRED, "leaf expired")
    >>> desc.code
    <ErrorCode.EXPIRED: 'EXPIRED'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def full_stack_trace(self) -> str:
        """Message followed by the formatted exception chain, if any."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__)
        )
        return f"{self.message}\n{tb}"

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"
