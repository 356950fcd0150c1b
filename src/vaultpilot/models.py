"""Domain models shared by the orchestration components."""

import hashlib
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class SealState(StrEnum):
    """Seal state of a single Vault node.

    Attributes:
        SEALED: Master key not reconstructed; the node serves nothing.
        UNSEALED: Master key reconstructed in memory.
        UNKNOWN: The node could not be queried.
    """

    SEALED = "sealed"
    UNSEALED = "unsealed"
    UNKNOWN = "unknown"


class IdentityKind(StrEnum):
    """Kind of public key a recipient identity carries."""

    PGP = "pgp"  # base64 of a binary OpenPGP export, as Vault expects
    RSA = "rsa"  # base64 of a PEM SubjectPublicKeyInfo


class ClusterNode(BaseModel):
    """A node of the fixed-size cluster.

    Attributes:
        index: 1-based ordinal of the node.
        name: Container or host name used by the transport.
        address: Vault API address.
        consul_address: Consul HTTP API address.
        seal_state: Last observed seal state.
        config_version: Installed secure-config version (0 = never secured).
    """

    index: int = Field(ge=1)
    name: str
    address: str
    consul_address: str
    seal_state: SealState = SealState.UNKNOWN
    config_version: int = 0


class RecipientIdentity(BaseModel):
    """An operator's public-key identity, supplied out of band.

    Attributes:
        name: Stable name (the keyfile name); artifacts are named after it.
        fingerprint: Hex SHA-256 digest of the decoded key material.
        public_key: Base64 key material in the form the engine consumes.
        kind: Key kind.
    """

    name: str
    fingerprint: str
    public_key: str
    kind: IdentityKind = IdentityKind.PGP


class EncryptedShare(BaseModel):
    """One share of the master secret, bound to its recipient.

    The binding is explicit: the share carries the identity it was
    encrypted for rather than relying on list position.
    """

    index: int = Field(ge=1)
    recipient: RecipientIdentity
    ciphertext: str  # hex


class ThresholdSecret(BaseModel):
    """Operational view of a freshly split master secret."""

    share_count: int = Field(ge=1)
    threshold: int = Field(ge=1)
    shares: list[EncryptedShare]
    root_credential: str

    @model_validator(mode="after")
    def _check_policy(self) -> "ThresholdSecret":
        if self.threshold > self.share_count:
            raise ValueError("threshold cannot exceed share_count")
        if self.share_count > 1 and self.threshold < 2:
            raise ValueError("threshold must be at least 2 when there are several shares")
        if len(self.shares) != self.share_count:
            raise ValueError(f"expected {self.share_count} shares, got {len(self.shares)}")
        return self


class RootCredential(BaseModel):
    """Root credential record, written exactly once at initialization."""

    token: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    share_count: int
    threshold: int
    recipients: list[str] = Field(default_factory=list)  # fingerprints, in share order


class SealStatus(BaseModel):
    """Seal status as reported by one node."""

    sealed: bool
    threshold: int = 0
    share_count: int = 0
    progress: int = 0
    initialized: bool = True

    @property
    def state(self) -> SealState:
        return SealState.SEALED if self.sealed else SealState.UNSEALED


class SecureConfig(BaseModel):
    """Transport security bundle rolled out to every node.

    Attributes:
        gossip_key: Base64 symmetric key for Consul gossip encryption.
        tls_cert: PEM certificate presented by every node.
        tls_key: PEM private key for ``tls_cert``.
        ca_cert: PEM CA certificate, if the chain is not already trusted.
        version: Monotonically increasing rollout version.
    """

    gossip_key: str
    tls_cert: str
    tls_key: str
    ca_cert: str | None = None
    version: int = 0

    @property
    def fingerprint(self) -> str:
        """SHA-256 over the material, independent of ``version``."""
        digest = hashlib.sha256()
        for part in (self.gossip_key, self.tls_cert, self.tls_key, self.ca_cert or ""):
            digest.update(part.encode("utf-8"))
            digest.update(b"\x00")
        return digest.hexdigest()
