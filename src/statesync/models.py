from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from pydantic import BaseModel, Field, SecretStr, ValidationError

from .errors import ConfigurationError

if TYPE_CHECKING:  # pragma: no cover
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    from .substrate import Subscription


DEFAULT_NAMESPACE = "default"

# Environment variable names for convenience configuration
ENV_ENCRYPTION_KEY = "STATESYNC_ENCRYPTION_KEY"
ENV_NAMESPACE = "STATESYNC_NAMESPACE"
ENV_DEFAULT_TTL = "STATESYNC_DEFAULT_TTL"


class SyncSettings(BaseModel):
    """
    Serializable configuration for a `LocalStateSync` instance.

    Fields
    - encryption_key: base64url encoding of 32 random bytes (43 characters).
      Kept as a SecretStr so it never shows up in reprs or logs.
    - namespace: scopes independent state channels sharing one key.
    - default_ttl: milliseconds a written state stays valid; 0 means forever.

    Notes
    - Callables (parser, serializer, callback) are not part of the settings;
      they are passed to `LocalStateSync` directly.
    """

    encryption_key: SecretStr = Field(description="base64url-encoded 32-byte secret")
    namespace: str = Field(
        default=DEFAULT_NAMESPACE,
        description="Channel name mixed into key derivation",
    )
    default_ttl: int = Field(
        default=0,
        description="Default time-to-live in milliseconds (<= 0 disables expiration)",
    )

    @classmethod
    def from_env(cls) -> "SyncSettings":
        key = os.environ.get(ENV_ENCRYPTION_KEY)
        if not key:
            raise ConfigurationError(
                f"Missing required environment variables for state sync: {ENV_ENCRYPTION_KEY}"
            )
        data = {"encryption_key": key}
        namespace = os.environ.get(ENV_NAMESPACE)
        if namespace:
            data["namespace"] = namespace
        ttl = os.environ.get(ENV_DEFAULT_TTL)
        if ttl:
            data["default_ttl"] = ttl
        try:
            return cls.model_validate(data)
        except ValidationError as ex:
            raise ConfigurationError(f"Invalid state sync configuration: {ex}") from ex


@dataclass(frozen=True)
class StorageEvent:
    """A change made to the storage substrate by another context.

    `key` is None when the whole storage was cleared; `new_value` is None
    when the key was removed.
    """

    key: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]


class LifecycleStatus(str, enum.Enum):
    IDLE = "idle"
    LOADED = "loaded"


@dataclass(frozen=True)
class Idle:
    """No key material derived yet. `disabled` marks an unsupported environment."""

    disabled: bool = False

    @property
    def status(self) -> LifecycleStatus:
        return LifecycleStatus.IDLE


@dataclass(frozen=True)
class Loaded:
    """Key derived, storage identifier computed and change feed subscribed."""

    storage_key: str
    cipher: "AESGCM"
    subscription: "Subscription"

    @property
    def status(self) -> LifecycleStatus:
        return LifecycleStatus.LOADED


Lifecycle = Union[Idle, Loaded]


__all__ = [
    "DEFAULT_NAMESPACE",
    "SyncSettings",
    "StorageEvent",
    "LifecycleStatus",
    "Idle",
    "Loaded",
    "Lifecycle",
]
