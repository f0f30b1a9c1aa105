"""
SSH key material, content-addressed by the SHA-256 of the public key.

One RSA key pair is shared by reference across all instances. The
private half is stored encrypted; the record key is the fingerprint, so
the same public key can never be stored twice.
"""

import logging
import threading
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from certs import crypto
from xanthus.errors import NotFoundError

from .state import NS_SSH_KEYS, StateStore

logger = logging.getLogger(__name__)

ACTIVE_POINTER = "active"


@dataclass
class SSHKeyMaterial:
    fingerprint: str
    public_key: str
    private_key: str
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("private_key", None)
        return d


class SSHKeyStore:
    """Generates, encrypts and looks up the control plane's SSH keys."""

    def __init__(self, store: StateStore, encryption_token: str):
        self.store = store
        self._token = encryption_token
        self._lock = threading.Lock()

    def active(self) -> SSHKeyMaterial:
        """The key new instances are created with, generated on first use."""
        with self._lock:
            pointer = self.store.get(NS_SSH_KEYS, ACTIVE_POINTER)
            if pointer:
                return self.get(pointer["fingerprint"])

            private_pem, public = crypto.generate_ssh_keypair()
            material = self.put(public, private_pem)
            self.store.put(NS_SSH_KEYS, ACTIVE_POINTER, {"fingerprint": material.fingerprint})
            logger.info(f"Generated SSH key {material.fingerprint[:12]}")
            return material

    def put(self, public_key: str, private_key: str) -> SSHKeyMaterial:
        """Store a key pair; storing the same public key again is a no-op."""
        fingerprint = crypto.public_key_fingerprint(public_key)
        existing = self.store.get(NS_SSH_KEYS, fingerprint)
        if existing:
            return self.get(fingerprint)

        material = SSHKeyMaterial(
            fingerprint=fingerprint,
            public_key=crypto.normalize_public_key(public_key),
            private_key=private_key,
            created_at=time.time(),
        )
        self.store.put(NS_SSH_KEYS, fingerprint, {
            "fingerprint": fingerprint,
            "public_key": material.public_key,
            "private_key": crypto.encrypt(private_key, self._token),
            "created_at": material.created_at,
        })
        return material

    def get(self, fingerprint: str) -> SSHKeyMaterial:
        data = self.store.get(NS_SSH_KEYS, fingerprint)
        if not data:
            raise NotFoundError(f"SSH key {fingerprint[:12]} not found")
        return SSHKeyMaterial(
            fingerprint=data["fingerprint"],
            public_key=data["public_key"],
            private_key=crypto.decrypt(data["private_key"], self._token),
            created_at=data["created_at"],
        )

    def find(self, fingerprint: str) -> Optional[SSHKeyMaterial]:
        try:
            return self.get(fingerprint)
        except NotFoundError:
            return None
