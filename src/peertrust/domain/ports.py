"""
Ports — Protocol-based interfaces for the engine's collaborators.

  Domain ← Ports (protocols) ← Adapters (implementations)

The engine never reads files or the wall clock directly; both arrive through
these ports so tests can construct isolated stores and freeze time.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from peertrust.domain.models import AnchorMaterial, IdentityMaterial
from peertrust.result import Result

if TYPE_CHECKING:
    from peertrust.handshake import PeerConnection

type Clock = Callable[[], datetime]
"""Zero-argument callable returning an aware UTC datetime."""

type SessionHandler = Callable[[PeerConnection], Awaitable[None]]
"""Application-layer callback receiving each established connection."""


def utc_now() -> datetime:
    return datetime.now(UTC)


@runtime_checkable
class MaterialSource(Protocol):
    """
    Port: supply already-decoded bytes for the two stores.

    Implementations read from wherever the material lives (files, a secret
    manager) and report unreadable material as a Failure with
    INVALID_CREDENTIAL or INVALID_TRUST_ANCHOR.
    """

    def read_identity(self) -> Result[IdentityMaterial]: ...

    def read_anchors(self) -> Result[list[AnchorMaterial]]: ...
