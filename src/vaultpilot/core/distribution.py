"""Key distribution.

Turns the splitter's tagged shares into one artifact per recipient, named
deterministically after the recipient's keyfile (``mykey.asc`` receives
``mykey.asc.key``), and writes the root credential record once.

Distribution is idempotent: re-running with the same shares skips
artifacts that already hold identical content, so an interrupted run is
completed by simply running it again.
"""

import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field

from vaultpilot.errors import DistributionFailed, ShareCountMismatch
from vaultpilot.models import EncryptedShare, RecipientIdentity, RootCredential

logger = logging.getLogger(__name__)

ROOT_CREDENTIAL_FILE = "root-token.json"


def artifact_name(identity: RecipientIdentity) -> str:
    """Artifact file name for *identity*."""
    return f"{identity.name}.key"


class ShareStore:
    """Directory holding recipient artifacts."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path(self, name: str) -> Path:
        return self.directory / name

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def read(self, name: str) -> str:
        return self.path(name).read_text()

    def write(self, name: str, content: str) -> Path:
        """Atomically write *content* with owner-only permissions."""
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.path(name)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.chmod(tmp, 0o600)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return target


class DeliveredArtifact(BaseModel):
    """One recipient's artifact."""

    index: int
    recipient: str
    fingerprint: str
    path: str
    skipped: bool = False


class DistributionReport(BaseModel):
    """What a distribution run wrote, in order."""

    delivered: list[DeliveredArtifact] = Field(default_factory=list)

    @property
    def written(self) -> int:
        return sum(1 for a in self.delivered if not a.skipped)


def _check_binding(shares: list[EncryptedShare]) -> None:
    positions = sorted(share.index for share in shares)
    if positions != list(range(1, len(shares) + 1)):
        raise ShareCountMismatch(
            f"Share positions must be 1..{len(shares)}, got {positions}", step="distribute"
        )
    fingerprints = [share.recipient.fingerprint for share in shares]
    if len(set(fingerprints)) != len(fingerprints):
        raise ShareCountMismatch("A recipient was bound to more than one share", step="distribute")
    names = [artifact_name(share.recipient) for share in shares]
    if len(set(names)) != len(names):
        raise ShareCountMismatch("Two recipients map to the same artifact name", step="distribute")


class KeyDistributionManager:
    """Writes each share to its recipient's artifact."""

    def __init__(self, store: ShareStore):
        self.store = store

    def distribute(self, shares: list[EncryptedShare]) -> DistributionReport:
        """Deliver every share to its recipient's artifact, in share order.

        Args:
            shares: Tagged shares from the splitter

        Returns:
            Report of written and skipped artifacts

        Raises:
            ShareCountMismatch: Positions or recipients do not line up (nothing written)
            DistributionFailed: A write failed; ``partial`` holds the report so far
        """
        _check_binding(shares)
        report = DistributionReport()

        for share in sorted(shares, key=lambda s: s.index):
            name = artifact_name(share.recipient)
            content = share.ciphertext + "\n"
            artifact = DeliveredArtifact(
                index=share.index,
                recipient=share.recipient.name,
                fingerprint=share.recipient.fingerprint,
                path=str(self.store.path(name)),
            )

            try:
                if self.store.exists(name) and self.store.read(name) == content:
                    artifact.skipped = True
                else:
                    self.store.write(name, content)
            except OSError as e:
                raise DistributionFailed(
                    f"Could not write artifact for {share.recipient.name}: {e}",
                    step="distribute",
                    partial=report,
                ) from e

            report.delivered.append(artifact)
            logger.info(
                "%s encrypted key file for %s: %s",
                "Kept" if artifact.skipped else "Created",
                share.recipient.name,
                artifact.path,
            )

        return report


def write_root_credential(store: ShareStore, record: RootCredential) -> Path | None:
    """Persist the root credential record unless one already exists.

    Returns:
        The path written, or ``None`` if a record was already present
    """
    if store.exists(ROOT_CREDENTIAL_FILE):
        logger.warning("Root credential record already exists; not overwriting")
        return None
    return store.write(ROOT_CREDENTIAL_FILE, record.model_dump_json(indent=2) + "\n")


def read_root_credential(store: ShareStore) -> RootCredential | None:
    if not store.exists(ROOT_CREDENTIAL_FILE):
        return None
    return RootCredential.model_validate_json(store.read(ROOT_CREDENTIAL_FILE))
