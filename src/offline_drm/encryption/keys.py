"""
Symmetric key material for resources at rest.

Each resource gets its own AES-256 key and a random 8-byte nonce prefix, both
drawn from the operating system CSPRNG. Keys are never derived from a
passphrase and never shared between resources.

Encoded form (as stored in the registry and accepted by the `decrypt` command):

    <key hex>:<nonce prefix hex>
"""

from __future__ import annotations

import os
from dataclasses import dataclass

KEY_SIZE_BITS = 256
NONCE_PREFIX_SIZE = 8
ALGORITHM = "AES-256-GCM-CHUNKED"


def generate_symmetric_key(key_size: int = KEY_SIZE_BITS) -> bytes:
    """Generate a random symmetric key.

    Args:
        key_size: Key size in bits (128, 192, or 256). Default 256.

    Returns:
        Random bytes of requested length
    """
    if key_size not in (128, 192, 256):
        raise ValueError(f"Unsupported key size: {key_size}")
    return os.urandom(key_size // 8)


@dataclass(frozen=True)
class KeyMaterial:
    """AES key plus the nonce prefix used to derive per-chunk GCM nonces."""

    key: bytes
    nonce_prefix: bytes

    def __post_init__(self):
        if len(self.key) != KEY_SIZE_BITS // 8:
            raise ValueError("Key must be 32 bytes")
        if len(self.nonce_prefix) != NONCE_PREFIX_SIZE:
            raise ValueError(f"Nonce prefix must be {NONCE_PREFIX_SIZE} bytes")

    def __repr__(self) -> str:
        return "KeyMaterial(<redacted>)"

    def encode(self) -> str:
        return f"{self.key.hex()}:{self.nonce_prefix.hex()}"

    @classmethod
    def decode(cls, encoded: str) -> "KeyMaterial":
        """Parse the `<key hex>:<nonce prefix hex>` form.

        Raises:
            ValueError: If the string is malformed
        """
        try:
            key_hex, nonce_hex = encoded.strip().split(":")
            return cls(bytes.fromhex(key_hex), bytes.fromhex(nonce_hex))
        except ValueError as e:
            raise ValueError("Malformed key material") from e


def generate_key_material() -> KeyMaterial:
    return KeyMaterial(generate_symmetric_key(), os.urandom(NONCE_PREFIX_SIZE))
