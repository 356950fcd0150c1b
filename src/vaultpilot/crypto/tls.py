"""TLS material for the secure rollout.

Validates the certificate/key pair before anything is pushed to a node, and
can mint a throwaway CA plus a node certificate for demo clusters.
"""

import ipaddress
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from pydantic import BaseModel

from vaultpilot.errors import MissingMaterial

logger = logging.getLogger(__name__)

CA_DIR = "CA"
CA_KEY_FILE = "ca_key.pem"
CA_CERT_FILE = "ca_cert.pem"
NODE_KEY_FILE = "consul-vault.key.pem"
NODE_CERT_FILE = "consul-vault.cert.pem"


class TLSMaterial(BaseModel):
    """Validated PEM material."""

    cert: str
    key: str
    ca: str | None = None


def _spki(public_key: Any) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def validate_tls_material(cert_pem: str, key_pem: str, ca_pem: str | None = None) -> TLSMaterial:
    """Check that the key matches the certificate and the CA issued it.

    Raises:
        MissingMaterial: If any part does not parse or does not match
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    except ValueError as e:
        raise MissingMaterial(f"TLS certificate does not parse: {e}", step="secure") from e

    try:
        key = serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None)
    except (ValueError, TypeError) as e:
        raise MissingMaterial(
            f"TLS key does not parse (nodes need an unencrypted key): {e}", step="secure"
        ) from e

    if _spki(cert.public_key()) != _spki(key.public_key()):
        raise MissingMaterial("TLS key does not match the certificate", step="secure")

    if ca_pem:
        try:
            ca = x509.load_pem_x509_certificate(ca_pem.encode("utf-8"))
        except ValueError as e:
            raise MissingMaterial(f"CA certificate does not parse: {e}", step="secure") from e
        try:
            cert.verify_directly_issued_by(ca)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise MissingMaterial(
                "TLS certificate was not issued by the given CA", step="secure"
            ) from e

    return TLSMaterial(cert=cert_pem, key=key_pem, ca=ca_pem)


def load_tls_material(
    cert_path: str | Path | None,
    key_path: str | Path | None,
    ca_path: str | Path | None = None,
) -> TLSMaterial:
    """Read and validate TLS material from files.

    The CA may be omitted only when the chain is already trusted by the nodes.

    Raises:
        MissingMaterial: If cert or key is absent, unreadable or invalid
    """
    if not cert_path or not key_path:
        raise MissingMaterial("Both a TLS certificate and a TLS key are required", step="secure")

    def _read(path: str | Path, what: str) -> str:
        try:
            return Path(path).read_text()
        except OSError as e:
            raise MissingMaterial(f"Cannot read {what} {path}: {e}", step="secure") from e

    return validate_tls_material(
        _read(cert_path, "TLS certificate"),
        _read(key_path, "TLS key"),
        _read(ca_path, "CA certificate") if ca_path else None,
    )


def certificate_info(cert_pem: str) -> dict[str, Any]:
    """Subject, issuer and validity window of a PEM certificate."""
    cert = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "not_before": cert.not_valid_before_utc.isoformat(),
        "not_after": cert.not_valid_after_utc.isoformat(),
        "serial_number": hex(cert.serial_number),
    }


def _write_key(path: Path, key: rsa.RSAPrivateKey) -> None:
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    path.chmod(0o600)


def create_ca(secrets_dir: str | Path, common_name: str = "vaultpilot demo CA") -> Path:
    """Create a certificate authority under ``<secrets_dir>/CA``.

    An existing CA is left untouched.

    Returns:
        Path of the CA directory
    """
    ca_dir = Path(secrets_dir) / CA_DIR
    if (ca_dir / CA_KEY_FILE).exists() or (ca_dir / CA_CERT_FILE).exists():
        logger.info("CA exists in %s", ca_dir)
        return ca_dir

    ca_dir.mkdir(parents=True, exist_ok=True)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.utcnow()

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    _write_key(ca_dir / CA_KEY_FILE, key)
    (ca_dir / CA_CERT_FILE).write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    logger.info("Created certificate authority in %s", ca_dir)
    return ca_dir


def issue_node_certificate(
    secrets_dir: str | Path,
    hostnames: list[str] | None = None,
    days: int = 365,
) -> tuple[Path, Path]:
    """Issue the certificate shared by every Consul and Vault node.

    The CA must already exist (see :func:`create_ca`).  An existing node
    certificate is left untouched.

    Args:
        secrets_dir: Directory holding ``CA/`` and receiving the node files
        hostnames: DNS names or IPs for the subjectAltName
        days: Validity in days

    Returns:
        Tuple of (certificate path, key path)
    """
    secrets_dir = Path(secrets_dir)
    cert_path = secrets_dir / NODE_CERT_FILE
    key_path = secrets_dir / NODE_KEY_FILE
    if cert_path.exists() or key_path.exists():
        logger.info("TLS certificate exists in %s", secrets_dir)
        return cert_path, key_path

    ca_dir = secrets_dir / CA_DIR
    ca_key = serialization.load_pem_private_key((ca_dir / CA_KEY_FILE).read_bytes(), password=None)
    ca_cert = x509.load_pem_x509_certificate((ca_dir / CA_CERT_FILE).read_bytes())

    hostnames = hostnames or ["localhost", "127.0.0.1", "server.dc1.consul"]
    alt_names: list[x509.GeneralName] = []
    for host in hostnames:
        try:
            alt_names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            alt_names.append(x509.DNSName(host))

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.utcnow()
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0])]))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    secrets_dir.mkdir(parents=True, exist_ok=True)
    _write_key(key_path, key)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    logger.info("Issued node certificate %s", cert_path)
    return cert_path, key_path
