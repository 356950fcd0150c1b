"""Recipient identities.

Two kinds of public-key identity are accepted:

- PGP: ``gpg --export "<user>" | base64 > mykey.asc``.  The base64 text is
  handed to Vault unchanged; decryption happens in the operator's keyring.
- RSA: a PEM ``PUBLIC KEY``.  Used by the in-memory engine; shares are
  encrypted with RSA-OAEP (SHA-256) and decrypted with the matching PEM
  private key.
"""

import base64
import binascii
import hashlib
import logging
from pathlib import Path

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from vaultpilot.models import IdentityKind, RecipientIdentity

logger = logging.getLogger(__name__)

_PEM_PUBLIC_MARKER = b"-----BEGIN PUBLIC KEY-----"

OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def load_identity(path: str | Path) -> RecipientIdentity:
    """Load a recipient identity from a public keyfile.

    Args:
        path: PEM public key or base64-encoded PGP export

    Returns:
        The identity, named after the file

    Raises:
        ValueError: If the file holds neither kind of key
    """
    path = Path(path)
    raw = path.read_bytes()

    if _PEM_PUBLIC_MARKER in raw:
        public_key = serialization.load_pem_public_key(raw)
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError(f"{path}: only RSA public keys are supported")
        der = public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return RecipientIdentity(
            name=path.name,
            fingerprint=hashlib.sha256(der).hexdigest(),
            public_key=base64.b64encode(raw).decode("ascii"),
            kind=IdentityKind.RSA,
        )

    text = b"".join(raw.split())
    try:
        decoded = base64.b64decode(text, validate=True)
    except binascii.Error as e:
        raise ValueError(f"{path}: not a base64 PGP export or PEM public key") from e
    if not decoded:
        raise ValueError(f"{path}: empty keyfile")

    return RecipientIdentity(
        name=path.name,
        fingerprint=hashlib.sha256(decoded).hexdigest(),
        public_key=text.decode("ascii"),
        kind=IdentityKind.PGP,
    )


def load_identities(paths: list[str | Path]) -> list[RecipientIdentity]:
    """Load identities in the order given; duplicates are rejected."""
    identities = [load_identity(p) for p in paths]
    seen: set[str] = set()
    for identity in identities:
        if identity.fingerprint in seen:
            raise ValueError(f"Duplicate recipient key: {identity.name}")
        seen.add(identity.fingerprint)
    return identities


def encrypt_for(identity: RecipientIdentity, plaintext: bytes) -> bytes:
    """Encrypt *plaintext* so only *identity*'s private key can read it.

    Raises:
        ValueError: If the identity is not an RSA identity
    """
    if identity.kind != IdentityKind.RSA:
        raise ValueError(f"Cannot encrypt locally for {identity.kind} identity {identity.name}")
    public_key = serialization.load_pem_public_key(base64.b64decode(identity.public_key))
    return public_key.encrypt(plaintext, OAEP)


def generate_rsa_identity(
    directory: str | Path,
    name: str,
    passphrase: bytes | None = None,
    key_size: int = 2048,
) -> tuple[Path, Path]:
    """Create an RSA keypair for a simulated operator.

    The private key never leaves *directory*; only the public key is meant
    to be handed to ``init``.

    Args:
        directory: Output directory
        name: Base file name (``<name>.pem`` public, ``<name>.private.pem``)
        passphrase: Optional passphrase protecting the private key
        key_size: RSA modulus size

    Returns:
        Tuple of (public key path, private key path)
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    encryption: serialization.KeySerializationEncryption
    if passphrase:
        encryption = serialization.BestAvailableEncryption(passphrase)
    else:
        encryption = serialization.NoEncryption()

    private_path = directory / f"{name}.private.pem"
    public_path = directory / f"{name}.pem"

    private_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
    )
    private_path.chmod(0o600)
    public_path.write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )

    logger.info("Generated RSA identity %s in %s", name, directory)
    return public_path, private_path
