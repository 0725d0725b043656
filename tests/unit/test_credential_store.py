"""
Unit tests for the CredentialStore.

Covers load-time validation (decoding, key match, chain contiguity,
validity window), rotation with rollback on failure, and close().
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import serialization

from peertrust.assertions import ResultAssertions
from peertrust.credential_store import CredentialStore, validate_identity
from peertrust.domain.models import IdentityMaterial
from peertrust.domain.ports import Clock
from peertrust.failure import ErrorCode
from tests.certs import NOW, Issued, expired, identity_material, issue


class TestValidateIdentity:
    """Validation rules applied on load and on every rotation."""

    def test_valid_leaf_only(self, leaf: Issued, clock: Clock) -> None:
        identity = ResultAssertions.assert_success(validate_identity(identity_material(leaf), clock))
        assert identity.leaf == leaf.domain
        assert len(identity.chain) == 1

    def test_valid_leaf_with_chain(self, deep_leaf: Issued, intermediate_ca: Issued, root_ca: Issued,
                                   clock: Clock) -> None:
        """
        GIVEN a leaf followed by its intermediate and root
        WHEN validated
        THEN the chain is kept in order, leaf first.
        """
        material = identity_material(deep_leaf, intermediate_ca, root_ca)
        identity = ResultAssertions.assert_success(validate_identity(material, clock))
        assert [c.subject for c in identity.chain] == [
            "CN=service-b", "CN=Test Intermediate CA", "CN=Test Root CA",
        ]

    def test_key_mismatch_is_invalid_credential(self, leaf: Issued, root_ca: Issued, clock: Clock) -> None:
        """
        GIVEN a private key that does not belong to the leaf
        WHEN validated
        THEN it fails with INVALID_CREDENTIAL.
        """
        material = IdentityMaterial(certificate_data=leaf.pem, key_data=root_ca.key_pem)
        result = validate_identity(material, clock)
        ResultAssertions.assert_failure(result, ErrorCode.INVALID_CREDENTIAL)
        ResultAssertions.assert_failure_message_contains(result, "does not match")

    def test_malformed_certificate(self, leaf: Issued, clock: Clock) -> None:
        material = IdentityMaterial(certificate_data=b"garbage", key_data=leaf.key_pem)
        ResultAssertions.assert_failure(validate_identity(material, clock), ErrorCode.INVALID_CREDENTIAL)

    def test_malformed_key(self, leaf: Issued, clock: Clock) -> None:
        material = IdentityMaterial(certificate_data=leaf.pem, key_data=b"garbage")
        ResultAssertions.assert_failure(validate_identity(material, clock), ErrorCode.INVALID_CREDENTIAL)

    def test_empty_certificate_data(self, leaf: Issued, clock: Clock) -> None:
        material = IdentityMaterial(certificate_data=b"", key_data=leaf.key_pem)
        ResultAssertions.assert_failure(validate_identity(material, clock), ErrorCode.INVALID_CREDENTIAL)

    def test_non_contiguous_chain(self, deep_leaf: Issued, root_ca: Issued, clock: Clock) -> None:
        """
        GIVEN a leaf followed by the root, skipping its intermediate
        WHEN validated
        THEN it fails with INVALID_CREDENTIAL naming the broken link.
        """
        result = validate_identity(identity_material(deep_leaf, root_ca), clock)
        ResultAssertions.assert_failure(result, ErrorCode.INVALID_CREDENTIAL)
        ResultAssertions.assert_failure_message_contains(result, "not contiguous")

    def test_expired_leaf(self, root_ca: Issued, clock: Clock) -> None:
        result = validate_identity(identity_material(expired("old-service", issuer=root_ca)), clock)
        ResultAssertions.assert_failure(result, ErrorCode.EXPIRED)

    def test_not_yet_valid_leaf(self, root_ca: Issued, clock: Clock) -> None:
        future = issue("future-service", issuer=root_ca, not_before=NOW + timedelta(days=1))
        ResultAssertions.assert_failure(validate_identity(identity_material(future), clock), ErrorCode.EXPIRED)

    def test_encrypted_key_with_password(self, leaf: Issued, clock: Clock) -> None:
        encrypted = leaf.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.BestAvailableEncryption(b"hunter2"),
        )
        material = IdentityMaterial(certificate_data=leaf.pem, key_data=encrypted, password=b"hunter2")
        ResultAssertions.assert_success(validate_identity(material, clock))


class TestCredentialStore:
    """Store lifecycle: load, read, rotate, close."""

    def test_load_success(self, leaf: Issued, clock: Clock) -> None:
        store = ResultAssertions.assert_success(CredentialStore.load(identity_material(leaf), clock))
        assert store.current_identity().leaf == leaf.domain
        assert not store.closed

    def test_load_failure_produces_no_store(self, leaf: Issued, root_ca: Issued, clock: Clock) -> None:
        material = IdentityMaterial(certificate_data=leaf.pem, key_data=root_ca.key_pem)
        ResultAssertions.assert_failure(CredentialStore.load(material, clock), ErrorCode.INVALID_CREDENTIAL)

    def test_rotate_swaps_identity(self, leaf: Issued, root_ca: Issued, clock: Clock) -> None:
        """
        GIVEN a loaded store
        WHEN rotated to a new valid identity
        THEN subsequent reads return the new identity.
        """
        store = CredentialStore.load(identity_material(leaf), clock).value()
        before = store.current_identity()
        replacement = issue("service-a-next", issuer=root_ca)

        rotated = ResultAssertions.assert_success(store.rotate(identity_material(replacement)))

        assert store.current_identity() is rotated
        assert rotated.leaf == replacement.domain
        assert before.leaf == leaf.domain

    def test_failed_rotation_keeps_current_identity(self, leaf: Issued, root_ca: Issued, clock: Clock) -> None:
        """
        GIVEN a loaded store
        WHEN rotation material is invalid
        THEN the failure is returned and the old identity stays active.
        """
        store = CredentialStore.load(identity_material(leaf), clock).value()
        before = store.current_identity()

        result = store.rotate(IdentityMaterial(certificate_data=leaf.pem, key_data=root_ca.key_pem))

        ResultAssertions.assert_failure(result, ErrorCode.INVALID_CREDENTIAL)
        assert store.current_identity() is before

    def test_close_releases_identity(self, leaf: Issued, clock: Clock) -> None:
        store = CredentialStore.load(identity_material(leaf), clock).value()
        store.close()
        assert store.closed
        with pytest.raises(RuntimeError, match="closed"):
            store.current_identity()

    def test_rotate_after_close_raises(self, leaf: Issued, clock: Clock) -> None:
        store = CredentialStore.load(identity_material(leaf), clock).value()
        store.close()
        with pytest.raises(RuntimeError, match="closed"):
            store.rotate(identity_material(leaf))

    def test_concurrent_reads_during_rotation(self, leaf: Issued, root_ca: Issued, clock: Clock) -> None:
        """
        GIVEN readers polling the store while it is rotated repeatedly
        WHEN they read current_identity()
        THEN every read is one of the complete identities.
        """
        store = CredentialStore.load(identity_material(leaf), clock).value()
        alternate = issue("service-a-alt", issuer=root_ca)
        materials = [identity_material(alternate), identity_material(leaf)]
        valid = {leaf.domain, alternate.domain}
        seen_invalid: list[object] = []
        stop = threading.Event()

        def _reader() -> None:
            while not stop.is_set():
                current = store.current_identity().leaf
                if current not in valid:
                    seen_invalid.append(current)

        readers = [threading.Thread(target=_reader) for _ in range(4)]
        for t in readers:
            t.start()
        for i in range(20):
            store.rotate(materials[i % 2])
        stop.set()
        for t in readers:
            t.join()

        assert seen_invalid == []
