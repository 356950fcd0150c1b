"""Secret-storage engine contract.

The engine itself (encryption at rest, the secret read/write API, the
one-time initialize) is a black box.  vaultpilot only drives the handful of
operations the orchestration protocol needs.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from vaultpilot.models import RecipientIdentity, SealStatus


class InitResult(BaseModel):
    """Raw output of the engine's one-time initialize.

    Attributes:
        keys: Encrypted shares (hex), positionally ordered to match the
            identities passed to :meth:`SecretEngine.initialize`.
        root_token: Bootstrap root credential.
    """

    keys: list[str]
    root_token: str


class SecretEngine(ABC):
    """Per-node client of the secret-storage engine."""

    @abstractmethod
    async def is_initialized(self) -> bool:
        """Whether the shared storage has already been initialized."""

    @abstractmethod
    async def initialize(self, identities: list[RecipientIdentity], threshold: int) -> InitResult:
        """Run the engine's one-time initialize.

        Args:
            identities: Recipients, one share each, in order
            threshold: Shares needed to unseal

        Returns:
            Raw init output

        Raises:
            AlreadyInitialized: If initialization has happened before
        """

    @abstractmethod
    async def seal_status(self) -> SealStatus:
        """Seal status of this node."""

    @abstractmethod
    async def unseal(self, share: str) -> SealStatus:
        """Submit one decrypted share to this node.

        Args:
            share: Decrypted share value

        Returns:
            Seal status after the submission
        """

    @abstractmethod
    async def write_policy(self, name: str, document: str) -> None:
        """Create or replace an access-control policy.

        Args:
            name: Policy name
            document: Policy document (HCL or JSON)
        """

    async def close(self) -> None:
        """Release client resources."""
