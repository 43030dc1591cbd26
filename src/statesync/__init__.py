"""
Encrypted state sync over a shared key/value storage substrate.

State is serialized, encrypted with AES-GCM under a key derived from a
caller secret and a namespace, and stored under a storage id derived from
that key. Other contexts sharing the storage decrypt and receive changes.
"""

from .errors import (
    AuthenticationFailure,
    ConfigurationError,
    ExpiredStateError,
    MalformedRecordError,
    NotReadyError,
    ParseError,
    StateSyncError,
    StorageError,
)
from .keys import generate_key
from .models import DEFAULT_NAMESPACE, LifecycleStatus, StorageEvent, SyncSettings
from .substrate import MemoryOrigin, MemoryStorage, StorageBackend, Subscription
from .sync import LocalStateSync

__all__ = [
    "LocalStateSync",
    "SyncSettings",
    "DEFAULT_NAMESPACE",
    "LifecycleStatus",
    "StorageEvent",
    "StorageBackend",
    "Subscription",
    "MemoryOrigin",
    "MemoryStorage",
    "generate_key",
    "StateSyncError",
    "ConfigurationError",
    "NotReadyError",
    "AuthenticationFailure",
    "MalformedRecordError",
    "ExpiredStateError",
    "ParseError",
    "StorageError",
]
