"""Recipient identities, share decryption and TLS material."""

from vaultpilot.crypto.decrypt import GpgDecryptor, RsaKeyDecryptor, ShareDecryptor
from vaultpilot.crypto.keys import (
    encrypt_for,
    generate_rsa_identity,
    load_identities,
    load_identity,
)
from vaultpilot.crypto.tls import (
    TLSMaterial,
    certificate_info,
    create_ca,
    issue_node_certificate,
    load_tls_material,
    validate_tls_material,
)

__all__ = [
    "GpgDecryptor",
    "RsaKeyDecryptor",
    "ShareDecryptor",
    "TLSMaterial",
    "certificate_info",
    "create_ca",
    "encrypt_for",
    "generate_rsa_identity",
    "issue_node_certificate",
    "load_identities",
    "load_identity",
    "load_tls_material",
    "validate_tls_material",
]
