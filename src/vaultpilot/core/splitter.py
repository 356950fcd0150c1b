"""Threshold share splitter.

Wraps the engine's one-time initialize: a fresh master secret is split into
one share per recipient, each share encrypted under that recipient's public
key by the engine itself, plus a single root credential.  The splitter never
sees share plaintext.

Threshold policy:

- one identity: threshold defaults to (and must be) 1
- several identities: threshold defaults to 2 and may never be below 2,
  so no single holder can unseal a multi-operator cluster
- threshold can never exceed the number of identities
"""

import logging

from vaultpilot.engine.base import SecretEngine
from vaultpilot.errors import InvalidThreshold, ShareCountMismatch
from vaultpilot.models import EncryptedShare, RecipientIdentity, ThresholdSecret

logger = logging.getLogger(__name__)


def resolve_threshold(identity_count: int, threshold: int | None = None) -> int:
    """Apply the default and check the k-of-n policy.

    Args:
        identity_count: Number of recipients (n)
        threshold: Requested threshold (k), or ``None`` for the default

    Returns:
        The effective threshold

    Raises:
        InvalidThreshold: If the policy is violated
    """
    if identity_count < 1:
        raise InvalidThreshold("At least one recipient public key is required", step="init")

    if threshold is None:
        threshold = 1 if identity_count == 1 else 2
        logger.info(
            "No threshold provided; %d key%s will be required to unseal",
            threshold,
            "" if threshold == 1 else "s",
        )

    if threshold < 1:
        raise InvalidThreshold("Threshold must be at least 1", step="init")
    if threshold > identity_count:
        raise InvalidThreshold(
            f"Threshold {threshold} is greater than the number of keys ({identity_count})",
            step="init",
        )
    if identity_count > 1 and threshold < 2:
        raise InvalidThreshold(
            "Threshold must be greater than 1 if you have multiple keys", step="init"
        )
    return threshold


def bind_shares(identities: list[RecipientIdentity], keys: list[str]) -> list[EncryptedShare]:
    """Tag each raw share with the identity it was encrypted for.

    The engine returns shares in the order the identities were supplied;
    this is the one place that positional contract is consumed.

    Raises:
        ShareCountMismatch: If there is not exactly one share per identity
    """
    if len(keys) != len(identities):
        raise ShareCountMismatch(
            f"Engine returned {len(keys)} shares for {len(identities)} recipients",
            step="init",
        )
    return [
        EncryptedShare(index=position, recipient=identity, ciphertext=key)
        for position, (identity, key) in enumerate(zip(identities, keys), start=1)
    ]


class ThresholdShareSplitter:
    """Initializes the cluster through one node's engine."""

    def __init__(self, engine: SecretEngine):
        self.engine = engine

    async def initialize(
        self,
        identities: list[RecipientIdentity],
        threshold: int | None = None,
    ) -> ThresholdSecret:
        """Split a new master secret among *identities*.

        All validation happens before the engine is touched.

        Args:
            identities: Recipients, in the order shares should be numbered
            threshold: Shares needed to unseal; defaulted by policy

        Returns:
            The tagged shares and the root credential

        Raises:
            InvalidThreshold: Bad threshold or no identities
            AlreadyInitialized: The cluster was initialized before
            ShareCountMismatch: The engine returned the wrong number of shares
        """
        threshold = resolve_threshold(len(identities), threshold)
        fingerprints = [identity.fingerprint for identity in identities]
        if len(set(fingerprints)) != len(fingerprints):
            raise InvalidThreshold("Each recipient key may only be given once", step="init")

        result = await self.engine.initialize(identities, threshold)
        shares = bind_shares(identities, result.keys)

        logger.info(
            "Vault initialized: %d shares, %d required to unseal",
            len(shares),
            threshold,
        )
        return ThresholdSecret(
            share_count=len(identities),
            threshold=threshold,
            shares=shares,
            root_credential=result.root_token,
        )
