"""
Shared test fixtures for the peertrust test suite.

Certificates are generated per test session by tests.certs; the fixtures
here only assemble them into the hierarchies most tests need.
"""

from __future__ import annotations

import pytest

from peertrust.domain.ports import Clock
from tests.certs import NOW, Issued, issue


@pytest.fixture()
def clock() -> Clock:
    """A frozen clock at the instant every test certificate is dated from."""
    return lambda: NOW


@pytest.fixture(scope="session")
def root_ca() -> Issued:
    return issue("Test Root CA", is_ca=True)


@pytest.fixture(scope="session")
def intermediate_ca(root_ca: Issued) -> Issued:
    return issue("Test Intermediate CA", issuer=root_ca, is_ca=True)


@pytest.fixture(scope="session")
def leaf(root_ca: Issued) -> Issued:
    """End-entity certificate signed directly by the root."""
    return issue("service-a", issuer=root_ca, dns_names=("service-a.internal", "localhost"), ip_addresses=("127.0.0.1",))


@pytest.fixture(scope="session")
def deep_leaf(intermediate_ca: Issued) -> Issued:
    """End-entity certificate signed by the intermediate."""
    return issue("service-b", issuer=intermediate_ca, dns_names=("service-b.internal",))


@pytest.fixture(scope="session")
def self_signed_peer() -> Issued:
    """Stand-alone peer certificate meant to be pinned."""
    return issue("pinned-peer", dns_names=("pinned-peer.internal", "localhost"), ip_addresses=("127.0.0.1",))
