"""
Cryptographic helpers for the control plane.

- AES-256-GCM encryption of secrets at rest (key = SHA-256 of a token)
- RSA key + CSR generation for origin certificates
- RSA SSH key pair generation and content fingerprints
"""

import base64
import hashlib
import os
from typing import Tuple

from cryptography import x509
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.x509.oid import NameOID

from xanthus.errors import EncryptionError

NONCE_SIZE = 12
RSA_KEY_SIZE = 2048

CSR_ORGANIZATION = "Xanthus K3s Deployment"
CSR_ORG_UNIT = "IT"
CSR_COUNTRY = "US"


# ── Secrets at rest ──────────────────────────────────────────────

def _derive_key(token: str) -> bytes:
    return hashlib.sha256(token.encode("utf-8")).digest()


def encrypt(secret: str, token: str) -> str:
    """Encrypt ``secret`` under ``token``. Returns base64(nonce || ciphertext)."""
    if not token:
        raise EncryptionError("Encryption token is empty")
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(_derive_key(token)).encrypt(nonce, secret.encode("utf-8"), None)
    return base64.b64encode(nonce + ct).decode("ascii")


def decrypt(ciphertext: str, token: str) -> str:
    """Reverse of encrypt(). Raises EncryptionError on a wrong token or bad input."""
    if not token:
        raise EncryptionError("Encryption token is empty")
    try:
        raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as e:
        raise EncryptionError("Ciphertext is not valid base64", detail=str(e)) from e
    if len(raw) <= NONCE_SIZE:
        raise EncryptionError("Ciphertext too short")

    nonce, ct = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        plain = AESGCM(_derive_key(token)).decrypt(nonce, ct, None)
    except InvalidTag as e:
        raise EncryptionError("Failed to decrypt: wrong key or corrupted data") from e
    return plain.decode("utf-8")


# ── Certificate signing requests ─────────────────────────────────

def generate_private_key_and_csr(domain: str) -> Tuple[str, str]:
    """
    Generate an RSA-2048 key and a CSR for ``domain`` and ``*.domain``.

    Returns (private_key_pem, csr_pem); the key is PKCS8 "PRIVATE KEY".
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)

    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, CSR_COUNTRY),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, CSR_ORGANIZATION),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, CSR_ORG_UNIT),
        x509.NameAttribute(NameOID.COMMON_NAME, domain),
    ])
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName(domain),
                x509.DNSName(f"*.{domain}"),
            ]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode("ascii")
    return key_pem, csr_pem


# ── SSH keys ─────────────────────────────────────────────────────

def generate_ssh_keypair(comment: str = "xanthus") -> Tuple[str, str]:
    """Generate an RSA SSH key pair. Returns (private_pem, public_openssh)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    if comment:
        public = f"{public} {comment}"
    return private_pem, public


def normalize_public_key(public_key: str) -> str:
    """Strip the comment: ``ssh-rsa AAAA... user@host`` -> ``ssh-rsa AAAA...``."""
    parts = public_key.strip().split()
    if len(parts) < 2:
        raise ValueError("Malformed OpenSSH public key")
    return f"{parts[0]} {parts[1]}"


def public_key_fingerprint(public_key: str) -> str:
    """Content address of a public key: SHA-256 hex of its type and body."""
    return hashlib.sha256(normalize_public_key(public_key).encode("ascii")).hexdigest()
