"""Operator-side decryption of share artifacts.

Decryption always happens locally with the operator's own private key;
the key and the decrypted share are never written anywhere.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from vaultpilot.crypto.keys import OAEP
from vaultpilot.errors import DecryptionFailed

logger = logging.getLogger(__name__)


def _from_hex(ciphertext_hex: str) -> bytes:
    try:
        return bytes.fromhex("".join(ciphertext_hex.split()))
    except ValueError as e:
        raise DecryptionFailed("Share artifact is not hex-encoded", step="decrypt") from e


class ShareDecryptor(ABC):
    """Turns a hex-encoded encrypted share into the share value."""

    @abstractmethod
    async def decrypt(self, ciphertext_hex: str) -> str:
        """Decrypt a share.

        Args:
            ciphertext_hex: Artifact contents

        Returns:
            Decrypted share value

        Raises:
            DecryptionFailed: Wrong key or passphrase, or malformed artifact
        """


class GpgDecryptor(ShareDecryptor):
    """Decrypts with the ``gpg`` binary and the operator's keyring.

    gpg may prompt for the key passphrase through pinentry, so the call is
    interactive and bounded by *timeout*.
    """

    def __init__(
        self,
        gpg_binary: str = "gpg",
        homedir: str | None = None,
        timeout: float = 300.0,
    ):
        self.gpg_binary = gpg_binary
        self.homedir = homedir
        self.timeout = timeout

    async def decrypt(self, ciphertext_hex: str) -> str:
        ciphertext = _from_hex(ciphertext_hex)

        argv = [self.gpg_binary, "--quiet", "--decrypt"]
        if self.homedir:
            argv[1:1] = ["--homedir", self.homedir]

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise DecryptionFailed(
                f"{self.gpg_binary} binary not found. Install GnuPG to decrypt shares",
                step="decrypt",
            ) from None

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(ciphertext),
                timeout=self.timeout,
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            raise DecryptionFailed(
                f"Decryption timed out after {self.timeout} seconds", step="decrypt"
            ) from None

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise DecryptionFailed(f"gpg could not decrypt the share: {message}", step="decrypt")

        return stdout.decode("utf-8").strip()


class RsaKeyDecryptor(ShareDecryptor):
    """Decrypts RSA-OAEP shares with a PEM private key."""

    def __init__(self, private_key_path: str | Path, passphrase: bytes | None = None):
        self.private_key_path = Path(private_key_path)
        self.passphrase = passphrase

    def _load_key(self) -> rsa.RSAPrivateKey:
        try:
            key = serialization.load_pem_private_key(
                self.private_key_path.read_bytes(),
                password=self.passphrase,
            )
        except (ValueError, TypeError) as e:
            raise DecryptionFailed(
                f"Cannot load private key {self.private_key_path}: wrong passphrase?",
                step="decrypt",
            ) from e
        except FileNotFoundError as e:
            raise DecryptionFailed(
                f"Private key not found: {self.private_key_path}", step="decrypt"
            ) from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise DecryptionFailed("Private key is not an RSA key", step="decrypt")
        return key

    async def decrypt(self, ciphertext_hex: str) -> str:
        ciphertext = _from_hex(ciphertext_hex)
        key = self._load_key()
        try:
            plaintext = key.decrypt(ciphertext, OAEP)
        except ValueError as e:
            raise DecryptionFailed(
                "Share was not encrypted for this private key", step="decrypt"
            ) from e
        return plaintext.decode("utf-8")
