"""Orchestration core: split, distribute, unseal, secure, bootstrap."""

from vaultpilot.core.bootstrap import (
    BootstrapReport,
    BootstrapStep,
    ClusterBootstrapSequencer,
    SecureMaterial,
    initialize_cluster,
    wait_for_quorum,
)
from vaultpilot.core.distribution import (
    DistributionReport,
    KeyDistributionManager,
    ShareStore,
    artifact_name,
    read_root_credential,
    write_root_credential,
)
from vaultpilot.core.rollout import ReconciliationReport, RolloutReport, SecureRolloutManager
from vaultpilot.core.splitter import ThresholdShareSplitter, bind_shares, resolve_threshold
from vaultpilot.core.unseal import UnsealCoordinator, UnsealReport, UnsealSession

__all__ = [
    "BootstrapReport",
    "BootstrapStep",
    "ClusterBootstrapSequencer",
    "DistributionReport",
    "KeyDistributionManager",
    "ReconciliationReport",
    "RolloutReport",
    "SecureMaterial",
    "SecureRolloutManager",
    "ShareStore",
    "ThresholdShareSplitter",
    "UnsealCoordinator",
    "UnsealReport",
    "UnsealSession",
    "artifact_name",
    "bind_shares",
    "initialize_cluster",
    "read_root_credential",
    "resolve_threshold",
    "wait_for_quorum",
    "write_root_credential",
]
