"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (PEERTRUST_ prefix, 12-factor app)
  - Fall back to .env file
  - Validate types, ranges and cross-field contradictions at startup
  - Keep key passwords out of logs (SecretStr)

Only EngineSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated via env_nested_delimiter="__", so
PEERTRUST_IDENTITY__KEY_PATH maps to identity.key_path and
PEERTRUST_HANDSHAKE__TIMEOUT_SECONDS to handshake.timeout_seconds.
Trust anchors are a JSON list:
  PEERTRUST_TRUST_ANCHORS='[{"path": "ca.pem", "mode": "authority"}]'

Nested models forbid unknown keys, so a misspelled option fails at startup
instead of being silently ignored.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from peertrust.domain.models import AnchorMode

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class IdentitySettings(BaseModel):
    """Location of this endpoint's certificate chain and private key."""

    model_config = ConfigDict(extra="forbid")

    certificate_path: Path = Field(description="PEM/DER certificate, leaf first, optionally followed by its chain")
    key_path: Path = Field(description="PEM/DER private key matching the leaf certificate")
    key_password: SecretStr | None = Field(default=None, description="Decryption password for the private key")


class AnchorSettings(BaseModel):
    """One trust anchor file and the way its certificates are trusted."""

    model_config = ConfigDict(extra="forbid")

    path: Path = Field(description="PEM, DER or PKCS#7 bundle of anchor certificates")
    mode: AnchorMode = Field(description="pinned: trust exactly these peers; authority: trust what they sign")


class HandshakeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    peer_certificate_required: bool = Field(default=True)
    timeout_seconds: float = Field(default=10.0, gt=0, le=300)
    minimum_tls_version: Literal["TLSv1.2", "TLSv1.3"] = Field(default="TLSv1.2")
    max_chain_length: int = Field(default=8, ge=1, le=32)


class ListenerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8443, ge=1, le=65535)


class ReloadSettings(BaseModel):
    """
    Periodic re-read of identity and anchor files, as a 5-field cron expression.

    Disabled when `cron` is unset. Examples:
      "*/15 * * * *" — every 15 minutes
      "0 3 * * *"    — daily at 03:00
    """

    model_config = ConfigDict(extra="forbid")

    cron: str | None = Field(default=None, description="Cron expression (minute hour dom month dow)")

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str | None) -> str | None:
        """Reject expressions that don't have exactly 5 space-separated fields."""
        if value is None:
            return None
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class EngineSettings(BaseSettings):
    """
    Root settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Explicit keyword arguments (tests)
      2. Environment variables
      3. .env file
      4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="PEERTRUST_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    identity: IdentitySettings
    trust_anchors: list[AnchorSettings] = Field(default_factory=list)
    handshake: HandshakeSettings = Field(default_factory=lambda: HandshakeSettings())
    listener: ListenerSettings = Field(default_factory=lambda: ListenerSettings())
    reload: ReloadSettings = Field(default_factory=lambda: ReloadSettings())
    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")

    @model_validator(mode="after")
    def reject_contradictions(self) -> EngineSettings:
        """
        Refuse combinations that would weaken trust without saying so.

          - pinned anchors configured but peer certificates optional
          - the same anchor file tagged with two different modes
        """
        pinned = [a for a in self.trust_anchors if a.mode is AnchorMode.PINNED]
        if pinned and not self.handshake.peer_certificate_required:
            raise ValueError(
                "Pinned trust anchors require handshake.peer_certificate_required=true; "
                "an optional peer certificate would let unpinned peers connect"
            )

        modes: dict[Path, AnchorMode] = {}
        for anchor in self.trust_anchors:
            seen = modes.setdefault(anchor.path, anchor.mode)
            if seen is not anchor.mode:
                raise ValueError(
                    f"Trust anchor {anchor.path} is configured as both {seen} and {anchor.mode}"
                )
        return self
