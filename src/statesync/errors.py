from __future__ import annotations


class StateSyncError(RuntimeError):
    """Base error for encrypted state sync."""


class ConfigurationError(StateSyncError, ValueError):
    """Key material or environment configuration is invalid."""


class NotReadyError(StateSyncError):
    """A write or clear was attempted before key material was derived."""


class AuthenticationFailure(StateSyncError):
    """AEAD verification failed (wrong key, tampered ciphertext or associated data)."""


class MalformedRecordError(AuthenticationFailure):
    """Stored text could not be split into IV, ciphertext and expiration fields."""


class ExpiredStateError(StateSyncError):
    """Record authenticated correctly but its expiration is in the past."""

    def __init__(self, expiration_ms: int, now_ms: int) -> None:
        super().__init__(f"Persisted state expired at {expiration_ms} (now {now_ms})")
        self.expiration_ms = expiration_ms
        self.now_ms = now_ms


class ParseError(StateSyncError):
    """Decrypted bytes were rejected by the state parser."""


class StorageError(StateSyncError):
    """The storage backend failed to read, write or remove a record."""


__all__ = [
    "StateSyncError",
    "ConfigurationError",
    "NotReadyError",
    "AuthenticationFailure",
    "MalformedRecordError",
    "ExpiredStateError",
    "ParseError",
    "StorageError",
]
