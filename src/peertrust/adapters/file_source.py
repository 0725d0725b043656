"""
File material source — reads identity and anchor files named in settings.

Adapter layer — implements the MaterialSource port. It only reads bytes;
decoding and validation belong to the stores. Every read happens again on
each call so scheduled reloads pick up replaced files.
"""

from __future__ import annotations

from pathlib import Path

import structlog

from peertrust.config import AnchorSettings, IdentitySettings
from peertrust.domain.models import AnchorMaterial, IdentityMaterial
from peertrust.failure import ErrorCode
from peertrust.result import Result

log = structlog.get_logger()


class FileMaterialSource:
    """Implements the MaterialSource port over the local filesystem."""

    def __init__(self, identity: IdentitySettings, anchors: list[AnchorSettings]) -> None:
        self._identity = identity
        self._anchors = list(anchors)

    def read_identity(self) -> Result[IdentityMaterial]:
        return Result.from_computation(
            self._read_identity,
            ErrorCode.INVALID_CREDENTIAL,
            "Local identity files could not be read",
        )

    def read_anchors(self) -> Result[list[AnchorMaterial]]:
        return Result.all_of(self._read_anchor(anchor) for anchor in self._anchors)

    def _read_identity(self) -> IdentityMaterial:
        password = self._identity.key_password
        material = IdentityMaterial(
            certificate_data=Path(self._identity.certificate_path).read_bytes(),
            key_data=Path(self._identity.key_path).read_bytes(),
            password=password.get_secret_value().encode("utf-8") if password is not None else None,
        )
        log.debug("file_source.identity_read", certificate_path=str(self._identity.certificate_path))
        return material

    def _read_anchor(self, anchor: AnchorSettings) -> Result[AnchorMaterial]:
        return Result.from_computation(
            lambda: AnchorMaterial(data=anchor.path.read_bytes(), mode=anchor.mode, label=str(anchor.path)),
            ErrorCode.INVALID_TRUST_ANCHOR,
            f"Trust anchor file {anchor.path} could not be read",
        )
