"""
Unit tests for the TLS context adapter.
"""

from __future__ import annotations

import asyncio
import ssl
import threading
from typing import Any
from unittest.mock import patch

import pytest

from peertrust.adapters.tls_context import TlsContextCache, build_context
from peertrust.credential_store import validate_identity
from peertrust.domain.models import AnchorSet, LocalIdentity
from peertrust.domain.ports import Clock
from peertrust.trust_store import build_anchor_set
from tests.certs import Issued, authority, identity_material, pinned


@pytest.fixture()
def identity(leaf: Issued, clock: Clock) -> LocalIdentity:
    return validate_identity(identity_material(leaf), clock).value()


@pytest.fixture()
def anchors(root_ca: Issued, self_signed_peer: Issued, clock: Clock) -> AnchorSet:
    return build_anchor_set([authority(root_ca), pinned(self_signed_peer)], clock).value()


class TestBuildContext:
    def test_server_requires_client_certificate_by_default(self, identity: LocalIdentity,
                                                           anchors: AnchorSet) -> None:
        """
        GIVEN a server-side context for a policy that requires a peer certificate
        WHEN built
        THEN OpenSSL itself refuses clients that send no certificate.
        """
        context = build_context(identity, anchors, server_side=True)
        assert context.verify_mode is ssl.CERT_REQUIRED
        assert context.minimum_version is ssl.TLSVersion.TLSv1_2
        assert context.verify_flags & ssl.VERIFY_X509_PARTIAL_CHAIN

    def test_server_with_optional_client_certificate(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        context = build_context(identity, anchors, server_side=True, peer_certificate_required=False)
        assert context.verify_mode is ssl.CERT_OPTIONAL

    def test_optional_flag_does_not_affect_client_side(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        context = build_context(identity, anchors, server_side=False, peer_certificate_required=False)
        assert context.verify_mode is ssl.CERT_REQUIRED

    def test_client_requires_server_certificate(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        context = build_context(identity, anchors, server_side=False)
        assert context.verify_mode is ssl.CERT_REQUIRED
        assert context.check_hostname is False

    def test_every_anchor_becomes_a_verification_root(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        context = build_context(identity, anchors, server_side=True)
        assert context.cert_store_stats()["x509"] == 2

    def test_empty_anchor_set(self, identity: LocalIdentity) -> None:
        context = build_context(identity, AnchorSet(), server_side=True)
        assert context.cert_store_stats()["x509"] == 0

    def test_minimum_version(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        context = build_context(identity, anchors, server_side=True, minimum_version=ssl.TLSVersion.TLSv1_3)
        assert context.minimum_version is ssl.TLSVersion.TLSv1_3


class TestTlsContextCache:
    def test_reuses_context_for_same_snapshots(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        cache = TlsContextCache()
        first = cache.context_for(identity, anchors, server_side=True)
        assert cache.context_for(identity, anchors, server_side=True) is first

    def test_new_snapshot_builds_new_context(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        """
        GIVEN a cached context
        WHEN the anchor snapshot is replaced
        THEN a fresh context is built.
        """
        cache = TlsContextCache()
        first = cache.context_for(identity, anchors, server_side=True)
        replaced = AnchorSet(anchors=anchors.anchors, generation=anchors.generation + 1)
        assert cache.context_for(identity, replaced, server_side=True) is not first

    def test_roles_cached_separately(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        cache = TlsContextCache()
        server = cache.context_for(identity, anchors, server_side=True)
        client = cache.context_for(identity, anchors, server_side=False)
        assert server is not client
        assert client.verify_mode is ssl.CERT_REQUIRED

    def test_policy_flag_reaches_server_context(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        cache = TlsContextCache(peer_certificate_required=False)
        assert cache.context_for(identity, anchors, server_side=True).verify_mode is ssl.CERT_OPTIONAL


class TestAsyncContextBuild:
    def test_miss_is_built_off_the_event_loop_thread(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        """
        GIVEN an empty cache
        WHEN context_for_async is awaited
        THEN the blocking build runs on a worker thread, not the event loop thread.
        """
        cache = TlsContextCache()
        threads: list[int] = []
        original = cache.context_for

        def _recording(*args: Any, **kwargs: Any) -> ssl.SSLContext:
            threads.append(threading.get_ident())
            return original(*args, **kwargs)

        async def _scenario() -> tuple[ssl.SSLContext, int]:
            with patch.object(cache, "context_for", side_effect=_recording):
                context = await cache.context_for_async(identity, anchors, server_side=True)
            return context, threading.get_ident()

        context, loop_thread = asyncio.run(_scenario())

        assert context.verify_mode is ssl.CERT_REQUIRED
        assert len(threads) == 1
        assert threads[0] != loop_thread

    def test_hit_skips_the_worker_thread(self, identity: LocalIdentity, anchors: AnchorSet) -> None:
        cache = TlsContextCache()
        first = cache.context_for(identity, anchors, server_side=True)

        async def _scenario() -> ssl.SSLContext:
            with patch("peertrust.adapters.tls_context.asyncio.to_thread") as to_thread:
                context = await cache.context_for_async(identity, anchors, server_side=True)
            to_thread.assert_not_called()
            return context

        assert asyncio.run(_scenario()) is first
