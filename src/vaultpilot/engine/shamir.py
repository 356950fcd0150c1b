"""Shamir's Secret Sharing over a prime field.

Splits a master key into *n* shares such that any *k* (threshold) shares
reconstruct it and fewer reveal nothing.  Used by the in-memory engine to
behave like a real storage barrier: a node only unseals once it has seen
*threshold* distinct shares.

Polynomial arithmetic is performed over GF(p) with ``p = 2**521 - 1``
(a Mersenne prime), which keeps an encoded share small enough to be
encrypted for a recipient with RSA-OAEP directly.

Example:
    >>> from vaultpilot.engine.shamir import ShamirConfig, ShamirSecretSharing
    >>>
    >>> sss = ShamirSecretSharing(ShamirConfig(threshold=2, total_shares=3))
    >>> shares = sss.split(b"master-key")
    >>> sss.combine(shares[1:])
    b'master-key'
"""

import logging
import secrets

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MERSENNE_521: int = 2**521 - 1


class Share(BaseModel):
    """A single share.

    Attributes:
        share_id: 1-indexed share number (evaluation point).
        value: Polynomial evaluated at *share_id* mod *prime*.
    """

    share_id: int
    value: int

    def encode(self) -> str:
        """Text form handed to recipients: ``<id>-<hex value>``."""
        return f"{self.share_id}-{self.value:x}"

    @classmethod
    def decode(cls, text: str) -> "Share":
        """Parse the form produced by :meth:`encode`.

        Raises:
            ValueError: If *text* is not a share.
        """
        share_id, sep, value = text.strip().partition("-")
        if not sep:
            raise ValueError("Malformed share")
        return cls(share_id=int(share_id), value=int(value, 16))


class ShamirConfig(BaseModel):
    """Configuration for Shamir's Secret Sharing.

    Attributes:
        threshold: Minimum number of shares to reconstruct (k).
        total_shares: Total number of shares to create (n).
        prime: Prime field modulus.
    """

    threshold: int = 2
    total_shares: int = 3
    prime: int = MERSENNE_521


class ShamirSecretSharing:
    """Split and reconstruct secrets with a k-of-n threshold."""

    def __init__(self, config: ShamirConfig | None = None) -> None:
        """Initialise with the given configuration.

        Args:
            config: Shamir configuration.  Defaults to 2-of-3.

        Raises:
            ValueError: If threshold < 1 or total_shares < threshold.
        """
        self.config = config or ShamirConfig()
        self.prime = self.config.prime

        if self.config.threshold < 1:
            raise ValueError("Threshold must be at least 1")
        if self.config.total_shares < self.config.threshold:
            raise ValueError("total_shares must be >= threshold")

    def split(self, secret: bytes) -> list[Share]:
        """Split *secret* into ``total_shares`` shares.

        A ``0x01`` sentinel byte is prepended internally so that leading
        zero bytes survive the integer round-trip.

        Raises:
            ValueError: If the secret is too large for the prime field.
        """
        secret_int = int.from_bytes(b"\x01" + secret, byteorder="big")
        if secret_int >= self.prime:
            raise ValueError("Secret is too large for the configured prime field")

        coefficients = [secret_int]
        for _ in range(self.config.threshold - 1):
            coefficients.append(secrets.randbelow(self.prime - 1) + 1)

        shares = [
            Share(share_id=x, value=self._evaluate(coefficients, x))
            for x in range(1, self.config.total_shares + 1)
        ]
        logger.debug(
            "Split secret into %d shares (threshold=%d)",
            self.config.total_shares,
            self.config.threshold,
        )
        return shares

    def combine(self, shares: list[Share]) -> bytes:
        """Reconstruct the secret from at least *threshold* shares.

        Raises:
            ValueError: If too few or duplicate shares are provided.
        """
        if len(shares) < self.config.threshold:
            raise ValueError(f"Need at least {self.config.threshold} shares, got {len(shares)}")
        if len({s.share_id for s in shares}) != len(shares):
            raise ValueError("Duplicate share ids")

        secret_int = self._lagrange_at_zero([(s.share_id, s.value) for s in shares])
        if secret_int == 0:
            return b""
        raw = secret_int.to_bytes((secret_int.bit_length() + 7) // 8, byteorder="big")
        # Strip the 0x01 sentinel
        return raw[1:] if raw[:1] == b"\x01" else raw

    def _evaluate(self, coefficients: list[int], x: int) -> int:
        """Horner's method, mod prime."""
        result = 0
        for coeff in reversed(coefficients):
            result = (result * x + coeff) % self.prime
        return result

    def _lagrange_at_zero(self, points: list[tuple[int, int]]) -> int:
        p = self.prime
        secret = 0
        for i, (x_i, y_i) in enumerate(points):
            numerator = 1
            denominator = 1
            for j, (x_j, _) in enumerate(points):
                if i == j:
                    continue
                numerator = (numerator * (-x_j)) % p
                denominator = (denominator * (x_i - x_j)) % p
            secret = (secret + y_i * numerator * pow(denominator, -1, p)) % p
        return secret
