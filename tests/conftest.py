"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from vaultpilot.config.schema import VaultPilotConfig
from vaultpilot.crypto.keys import generate_rsa_identity, load_identity
from vaultpilot.crypto.tls import CA_CERT_FILE, CA_DIR, create_ca, issue_node_certificate
from vaultpilot.engine.memory import InMemoryCluster
from vaultpilot.models import ClusterNode, RecipientIdentity


@pytest.fixture
def default_config() -> VaultPilotConfig:
    """Provide a default configuration for tests."""
    return VaultPilotConfig()


@pytest.fixture(scope="session")
def operator_keys(tmp_path_factory) -> list[tuple[Path, Path]]:
    """Three RSA operator keypairs as (public, private) paths.

    Generated once per session; key generation is the slow part.
    """
    directory = tmp_path_factory.mktemp("operators")
    return [generate_rsa_identity(directory, name) for name in ("alice", "bob", "carol")]


@pytest.fixture(scope="session")
def operator_pool(operator_keys, tmp_path_factory) -> list[tuple[Path, Path]]:
    """Five operator keypairs: alice, bob and carol followed by dave and erin."""
    directory = tmp_path_factory.mktemp("more-operators")
    return operator_keys + [generate_rsa_identity(directory, name) for name in ("dave", "erin")]


@pytest.fixture
def identities(operator_keys) -> list[RecipientIdentity]:
    """Recipient identities for alice, bob and carol, in that order."""
    return [load_identity(public) for public, _ in operator_keys]


@pytest.fixture
def private_keys(operator_keys) -> dict[str, Path]:
    """Private key path by identity name."""
    return {public.name: private for public, private in operator_keys}


@pytest.fixture
def nodes() -> list[ClusterNode]:
    """Three cluster nodes."""
    return VaultPilotConfig().cluster.cluster_nodes()


@pytest.fixture
def memory_cluster() -> InMemoryCluster:
    """Fresh in-memory three-node cluster."""
    return InMemoryCluster(size=3)


@pytest.fixture
def memory_engines(memory_cluster):
    """Engine view per node index."""
    return {index: memory_cluster.node(index) for index in range(1, 4)}


@pytest.fixture(scope="session")
def pki(tmp_path_factory) -> dict[str, Path]:
    """A demo CA and the node certificate it issued."""
    secrets = tmp_path_factory.mktemp("secrets")
    create_ca(secrets)
    cert, key = issue_node_certificate(secrets, ["localhost", "127.0.0.1"])
    return {"cert": cert, "key": key, "ca": secrets / CA_DIR / CA_CERT_FILE, "dir": secrets}
