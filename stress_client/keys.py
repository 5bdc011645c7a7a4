"""Per-device key material.

Keys live as PEM files named after the device MAC in a key directory, so a
restarted run authenticates as the same devices.  Generation is CPU-bound;
callers on the event loop should run :meth:`KeyStore.acquire` in an executor.
"""

from __future__ import annotations

import base64
import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .identity import DeviceIdentity

logger = logging.getLogger(__name__)

SHARED_KEY_NAME = "shared"

_MAC_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")


class KeyStoreError(Exception):
    """Raised when key material cannot be loaded, generated or persisted."""


@dataclass(frozen=True)
class KeyMaterial:
    """An RSA keypair; ``private_pem`` is exactly what is stored on disk."""

    private_pem: bytes
    private_key: rsa.RSAPrivateKey

    @classmethod
    def from_pem(cls, data: bytes) -> KeyMaterial:
        try:
            key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyStoreError(f"Invalid private key: {exc}") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise KeyStoreError(f"Expected an RSA key, got {type(key).__name__}")
        return cls(private_pem=data, private_key=key)

    @classmethod
    def generate(cls, bits: int = 3072) -> KeyMaterial:
        key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cls(private_pem=pem, private_key=key)

    @property
    def public_pem(self) -> str:
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def sign(self, payload: bytes) -> str:
        """Return the base64 PKCS#1 v1.5 signature of SHA-256(*payload*)."""
        signature = self.private_key.sign(payload, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")


class KeyStore:
    """Directory-backed key store keyed by device MAC address."""

    def __init__(self, directory: str | Path, key_bits: int = 3072, single_key: bool = False) -> None:
        self.directory = Path(directory)
        self.key_bits = key_bits
        self.single_key = single_key
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def acquire(self, identity: DeviceIdentity) -> KeyMaterial:
        """Load the persisted key for *identity*, generating and saving one if absent."""
        name = SHARED_KEY_NAME if self.single_key else identity.mac
        with self._lock_for(name):
            path = self.directory / name
            try:
                if path.exists():
                    return KeyMaterial.from_pem(path.read_bytes())
                material = KeyMaterial.generate(self.key_bits)
                self._write(path, material.private_pem)
            except OSError as exc:
                raise KeyStoreError(f"Key storage failed for {name}: {exc}") from exc
            logger.debug("Generated %d-bit key for %s", self.key_bits, name)
            return material

    def known_addresses(self) -> list[str]:
        """Return the device MACs that already have a persisted key."""
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.iterdir() if _MAC_RE.match(p.name))

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _write(self, path: Path, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp = path.with_name(f".{path.name}.tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
