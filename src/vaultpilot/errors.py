"""Error taxonomy for the orchestration protocol.

Every error carries the node and step at which it occurred (when there is
one) and, for multi-node operations, the partial report describing which
nodes or recipients were already handled.  Nothing in vaultpilot retries or
rolls back on these errors; each operation is safe to re-run from the top.
"""

from typing import Any


class VaultPilotError(Exception):
    """Base class for all vaultpilot errors.

    Attributes:
        node: Index of the node the failure happened on, if any.
        step: Name of the step that failed, if any.
        partial: Report of work completed before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        node: int | None = None,
        step: str | None = None,
        partial: Any | None = None,
    ):
        super().__init__(message)
        self.node = node
        self.step = step
        self.partial = partial

    def __str__(self) -> str:
        message = super().__str__()
        where = []
        if self.step:
            where.append(f"step={self.step}")
        if self.node is not None:
            where.append(f"node={self.node}")
        if where:
            return f"{message} ({', '.join(where)})"
        return message


class InvalidThreshold(VaultPilotError):
    """Threshold violates the k-of-n policy. Raised before any side effect."""


class ShareCountMismatch(VaultPilotError):
    """Returned shares do not line up one-to-one with the recipients."""


class AlreadyInitialized(VaultPilotError):
    """The cluster has already been initialized. Never retried."""


class DecryptionFailed(VaultPilotError):
    """The operator's key or passphrase could not decrypt the share."""


class MissingMaterial(VaultPilotError):
    """TLS certificate or key is absent or invalid."""


class TransportError(VaultPilotError):
    """A command on a node failed or could not be run."""


class DeliveryFailed(TransportError):
    """Copying an artifact onto a node failed. Re-running is safe."""


class RestartFailed(TransportError):
    """Restarting a node failed. Re-running is safe."""


class QuorumTimeout(VaultPilotError):
    """The consensus backend did not report a full quorum in time."""


class EngineError(VaultPilotError):
    """The secret-storage engine returned an unexpected response."""


class UnsealFailed(VaultPilotError):
    """Submitting a share to a node failed."""


class DistributionFailed(VaultPilotError):
    """Writing a recipient artifact failed part way through."""


class BootstrapFailed(VaultPilotError):
    """A bootstrap step failed; completed steps are left in place."""


class ConsensusError(VaultPilotError):
    """The consensus backend could not be reached or refused a request."""


class LockUnavailable(ConsensusError):
    """Another operator holds the named lock."""
