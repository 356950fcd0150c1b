"""Delivery of artifacts to cluster nodes and node restarts."""

from vaultpilot.transport.base import ClusterLauncher, NodeTransport
from vaultpilot.transport.docker import ComposeLauncher, DockerTransport, run_command
from vaultpilot.transport.local import LocalLauncher, LocalTransport

__all__ = [
    "ClusterLauncher",
    "ComposeLauncher",
    "DockerTransport",
    "LocalLauncher",
    "LocalTransport",
    "NodeTransport",
    "run_command",
]
