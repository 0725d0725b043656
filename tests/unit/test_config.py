"""
Unit tests for configuration — EngineSettings and nested models.

Verifies defaults, environment loading with the nested delimiter,
range checks, unknown-key rejection and contradiction detection.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from peertrust.config import EngineSettings, HandshakeSettings, ReloadSettings
from peertrust.domain.models import AnchorMode

_IDENTITY = {"certificate_path": "/etc/peertrust/cert.pem", "key_path": "/etc/peertrust/key.pem"}


class TestDefaults:
    def test_minimal_settings(self) -> None:
        """
        GIVEN only the identity paths
        WHEN EngineSettings is built
        THEN every other section takes its default.
        """
        settings = EngineSettings(identity=_IDENTITY)
        assert settings.trust_anchors == []
        assert settings.handshake.peer_certificate_required is True
        assert settings.handshake.timeout_seconds == 10.0
        assert settings.handshake.minimum_tls_version == "TLSv1.2"
        assert settings.handshake.max_chain_length == 8
        assert settings.listener.port == 8443
        assert settings.reload.cron is None
        assert settings.log_level == "INFO"
        assert settings.log_format == "console"

    def test_identity_is_required(self) -> None:
        with pytest.raises(ValidationError):
            EngineSettings()

    def test_key_password_is_secret(self) -> None:
        settings = EngineSettings(identity={**_IDENTITY, "key_password": "hunter2"})
        assert "hunter2" not in repr(settings)
        assert settings.identity.key_password is not None
        assert settings.identity.key_password.get_secret_value() == "hunter2"


class TestEnvironment:
    def test_nested_values_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """
        GIVEN PEERTRUST_ variables using the __ delimiter
        WHEN EngineSettings is built
        THEN nested fields are populated from them.
        """
        monkeypatch.setenv("PEERTRUST_IDENTITY__CERTIFICATE_PATH", "/tmp/cert.pem")
        monkeypatch.setenv("PEERTRUST_IDENTITY__KEY_PATH", "/tmp/key.pem")
        monkeypatch.setenv("PEERTRUST_HANDSHAKE__TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("PEERTRUST_TRUST_ANCHORS", '[{"path": "/tmp/ca.pem", "mode": "authority"}]')
        monkeypatch.setenv("PEERTRUST_LOG_LEVEL", "DEBUG")

        settings = EngineSettings()

        assert settings.identity.certificate_path == Path("/tmp/cert.pem")
        assert settings.handshake.timeout_seconds == 2.5
        assert settings.trust_anchors[0].mode is AnchorMode.AUTHORITY
        assert settings.log_level == "DEBUG"


class TestValidation:
    @pytest.mark.parametrize("timeout", [0, -1, 301])
    def test_timeout_range(self, timeout: float) -> None:
        with pytest.raises(ValidationError):
            HandshakeSettings(timeout_seconds=timeout)

    @pytest.mark.parametrize("length", [0, 33])
    def test_chain_length_range(self, length: int) -> None:
        with pytest.raises(ValidationError):
            HandshakeSettings(max_chain_length=length)

    def test_unknown_tls_version(self) -> None:
        with pytest.raises(ValidationError):
            HandshakeSettings(minimum_tls_version="SSLv3")

    def test_unknown_nested_key_rejected(self) -> None:
        """
        GIVEN a misspelled handshake option
        WHEN EngineSettings is built
        THEN validation fails instead of silently ignoring it.
        """
        with pytest.raises(ValidationError):
            EngineSettings(identity=_IDENTITY, handshake={"peer_cert_required": False})

    def test_unknown_anchor_mode(self) -> None:
        with pytest.raises(ValidationError):
            EngineSettings(identity=_IDENTITY, trust_anchors=[{"path": "a.pem", "mode": "maybe"}])

    def test_pinned_anchors_with_optional_peer_certificate(self) -> None:
        """
        GIVEN pinned anchors and peer_certificate_required=false
        WHEN EngineSettings is built
        THEN the contradiction is rejected.
        """
        with pytest.raises(ValidationError, match="peer_certificate_required"):
            EngineSettings(
                identity=_IDENTITY,
                trust_anchors=[{"path": "peer.pem", "mode": "pinned"}],
                handshake={"peer_certificate_required": False},
            )

    def test_authority_anchors_with_optional_peer_certificate(self) -> None:
        settings = EngineSettings(
            identity=_IDENTITY,
            trust_anchors=[{"path": "ca.pem", "mode": "authority"}],
            handshake={"peer_certificate_required": False},
        )
        assert settings.handshake.peer_certificate_required is False

    def test_same_file_in_two_modes(self) -> None:
        with pytest.raises(ValidationError, match="both"):
            EngineSettings(
                identity=_IDENTITY,
                trust_anchors=[
                    {"path": "shared.pem", "mode": "pinned"},
                    {"path": "shared.pem", "mode": "authority"},
                ],
            )

    def test_same_file_twice_same_mode_allowed(self) -> None:
        settings = EngineSettings(
            identity=_IDENTITY,
            trust_anchors=[{"path": "ca.pem", "mode": "authority"}, {"path": "ca.pem", "mode": "authority"}],
        )
        assert len(settings.trust_anchors) == 2


class TestReloadSettings:
    def test_valid_cron(self) -> None:
        assert ReloadSettings(cron=" */15 * * * * ").cron == "*/15 * * * *"

    def test_invalid_cron_field_count(self) -> None:
        with pytest.raises(ValidationError, match="exactly 5 fields"):
            ReloadSettings(cron="* * *")

    def test_disabled_by_default(self) -> None:
        assert ReloadSettings().cron is None
