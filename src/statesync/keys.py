from __future__ import annotations

import os
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes

from common.codec import CodecError, decode, encode

from .errors import ConfigurationError


SECRET_SIZE = 32  # bytes, AES-256


@dataclass(frozen=True)
class DerivedMaterial:
    key: bytes  # 32-byte AES-GCM key
    storage_key: str  # public name of the storage slot

    def __repr__(self) -> str:
        return f"DerivedMaterial(key=<redacted>, storage_key={self.storage_key!r})"


def generate_key() -> str:
    """Return a fresh random secret, encoded the way `LocalStateSync` expects it."""
    return encode(os.urandom(SECRET_SIZE))


def decode_secret(encoded: str) -> bytes:
    """Decode the caller-supplied secret and check it is exactly 32 bytes."""
    try:
        secret = decode(encoded)
    except CodecError as ex:
        raise ConfigurationError("encryption key is not valid base64url") from ex
    if len(secret) != SECRET_SIZE:
        raise ConfigurationError(
            f"encryption key must be {SECRET_SIZE} bytes (43 base64url characters)"
        )
    return secret


def truncated_sha512(data: bytes) -> bytes:
    """SHA-512 truncated to the first 256 bits of output.

    Not the same function as SHA-512/256, which uses different initial values.
    """
    digest = hashes.Hash(hashes.SHA512())
    digest.update(data)
    return digest.finalize()[:32]


def derive_key(secret: bytes, namespace: str) -> bytes:
    # Plain concatenation, no delimiter: keeps existing storage slots readable.
    return truncated_sha512(bytes(secret) + namespace.encode("utf-8"))


def storage_identifier(derived_key: bytes) -> str:
    return encode(truncated_sha512(derived_key))


def derive(secret: bytes, namespace: str) -> DerivedMaterial:
    if len(secret) != SECRET_SIZE:
        raise ConfigurationError(f"encryption key must be {SECRET_SIZE} bytes")
    key = derive_key(secret, namespace)
    return DerivedMaterial(key=key, storage_key=storage_identifier(key))


__all__ = [
    "SECRET_SIZE",
    "DerivedMaterial",
    "generate_key",
    "decode_secret",
    "truncated_sha512",
    "derive_key",
    "storage_identifier",
    "derive",
]
