"""
Xanthus Certificates — secrets encryption, key/CSR generation, Cloudflare

The domain SSL pipeline lives in ``certs.pipeline``.
"""

from .crypto import decrypt, encrypt, generate_private_key_and_csr, generate_ssh_keypair
from .cloudflare import CloudflareClient

__all__ = [
    'encrypt', 'decrypt', 'generate_private_key_and_csr', 'generate_ssh_keypair',
    'CloudflareClient',
]
