from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import SecretStr

from .errors import (
    ConfigurationError,
    ExpiredStateError,
    NotReadyError,
    ParseError,
    StateSyncError,
    StorageError,
)
from .framing import open_record, seal
from .keys import decode_secret, derive
from .models import DEFAULT_NAMESPACE, Idle, Lifecycle, LifecycleStatus, Loaded, StorageEvent, SyncSettings
from .substrate import StorageBackend


logger = logging.getLogger("statesync.sync")

StateT = TypeVar("StateT")

Parser = Callable[[str], Any]
Serializer = Callable[[Any], str]

_NOTHING = object()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _environment_supported(storage: Optional[StorageBackend]) -> bool:
    return storage is not None and bool(getattr(storage, "available", True))


class LocalStateSync(Generic[StateT]):
    """
    Keeps one piece of application state encrypted in a shared storage
    substrate and reports changes written by other contexts.

    - The storage slot and AES-GCM key are derived from the secret and the
      namespace; the slot name reveals nothing about the key.
    - `set_state()` encrypts and writes; other contexts sharing the storage
      receive the new state through their `on_state_updated` callback. The
      writer is not notified of its own write.
    - Existing state is loaded once when the instance starts.
    - Anything unreadable on the way in (wrong key, tampering, expired
      records, parser failures) is dropped: the callback is simply not called.
      Exceptions raised by the callback itself are logged, never re-raised.

    Lifecycle: idle -> loaded, one way. Writes while idle raise
    NotReadyError. Without a usable storage backend the instance is disabled:
    it stays idle and writes log a warning and return False.
    """

    def __init__(
        self,
        *,
        encryption_key: Union[str, SecretStr],
        on_state_updated: Callable[[StateT], Any],
        storage: Optional[StorageBackend],
        namespace: str = DEFAULT_NAMESPACE,
        state_parser: Optional[Parser] = None,
        state_serializer: Optional[Serializer] = None,
        default_ttl: int = 0,
        clock: Optional[Callable[[], int]] = None,
        autostart: bool = True,
    ) -> None:
        if not callable(on_state_updated):
            raise ConfigurationError("on_state_updated must be callable")
        self._lifecycle: Lifecycle = Idle()
        self._storage = storage
        self._namespace = namespace
        self._default_ttl = default_ttl
        self._on_state_updated = on_state_updated
        self._parser: Parser = state_parser or json.loads
        self._serializer: Serializer = state_serializer or json.dumps
        self._clock = clock or _now_ms
        self._lock = threading.RLock()
        self._secret: Optional[bytes] = None

        if not _environment_supported(storage):
            logger.warning("LocalStateSync is disabled: no usable storage backend")
            self._lifecycle = Idle(disabled=True)
            return

        if isinstance(encryption_key, SecretStr):
            encryption_key = encryption_key.get_secret_value()
        self._secret = decode_secret(encryption_key)
        if autostart:
            self.start()

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        storage: Optional[StorageBackend],
        on_state_updated: Callable[[StateT], Any],
        **kwargs: Any,
    ) -> "LocalStateSync[StateT]":
        return cls(
            encryption_key=settings.encryption_key,
            namespace=settings.namespace,
            default_ttl=settings.default_ttl,
            storage=storage,
            on_state_updated=on_state_updated,
            **kwargs,
        )

    # -------- Introspection --------
    @property
    def status(self) -> LifecycleStatus:
        return self._lifecycle.status

    @property
    def disabled(self) -> bool:
        return isinstance(self._lifecycle, Idle) and self._lifecycle.disabled

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def storage_key(self) -> Optional[str]:
        lifecycle = self._lifecycle
        return lifecycle.storage_key if isinstance(lifecycle, Loaded) else None

    # -------- Lifecycle --------
    def start(self) -> None:
        """Derive key material, subscribe to changes and load existing state."""
        with self._lock:
            if self.disabled or isinstance(self._lifecycle, Loaded):
                return
            if self._secret is None:
                raise NotReadyError("LocalStateSync has no key material")
            material = derive(self._secret, self._namespace)
            subscription = self._storage.subscribe(self._handle_storage_event)
            self._lifecycle = Loaded(
                storage_key=material.storage_key,
                cipher=AESGCM(material.key),
                subscription=subscription,
            )
            self._secret = None
            logger.debug("LocalStateSync loaded (storage key %s)", material.storage_key)
            self._load_from_storage()

    def close(self) -> None:
        """Release the change subscription. Safe to call more than once."""
        with self._lock:
            if isinstance(self._lifecycle, Loaded):
                self._lifecycle.subscription.close()

    def __enter__(self) -> "LocalStateSync[StateT]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------- Public API --------
    def set_state(self, state: StateT, *, ttl: Optional[int] = None) -> bool:
        """
        Encrypt and persist `state`.

        `ttl` (milliseconds) overrides the default TTL for this write only;
        0 or a negative value stores the state without expiration.
        Returns False when the instance is disabled.
        """
        if self.disabled:
            logger.warning("LocalStateSync is disabled; set_state ignored")
            return False
        with self._lock:
            loaded = self._require_loaded()
            payload = self._serializer(state).encode("utf-8")
            record = seal(
                loaded.cipher,
                payload,
                self._default_ttl if ttl is None else ttl,
                now_ms=self._clock(),
            )
        # Written outside the lock: the substrate may notify other instances synchronously
        self._storage.set(loaded.storage_key, record)
        return True

    def clear_state(self) -> bool:
        """Remove the stored state. Clearing an empty slot is fine."""
        if self.disabled:
            logger.warning("LocalStateSync is disabled; clear_state ignored")
            return False
        loaded = self._require_loaded()
        self._storage.remove(loaded.storage_key)
        return True

    def get_state(self) -> Optional[StateT]:
        """Read the stored state now. None if absent or unusable."""
        if self.disabled:
            return None
        with self._lock:
            loaded = self._require_loaded()
            state = self._read_stored(loaded)
        return None if state is _NOTHING else state

    # -------- Internal --------
    def _require_loaded(self) -> Loaded:
        lifecycle = self._lifecycle
        if not isinstance(lifecycle, Loaded):
            raise NotReadyError("LocalStateSync is not ready")
        return lifecycle

    def _load_from_storage(self) -> None:
        loaded = self._require_loaded()
        state = self._read_stored(loaded)
        if state is not _NOTHING:
            self._deliver(state)

    def _read_stored(self, loaded: Loaded) -> Any:
        try:
            value = self._storage.get(loaded.storage_key)
            if not value:
                return _NOTHING
            return self._decrypt_state(loaded, value)
        except StateSyncError as ex:
            logger.debug("Ignoring stored state: %s", type(ex).__name__)
            return _NOTHING

    def _handle_storage_event(self, event: StorageEvent) -> None:
        lifecycle = self._lifecycle
        if not isinstance(lifecycle, Loaded):
            return
        # Deletes are not propagated
        if event.key != lifecycle.storage_key or not event.new_value:
            return
        with self._lock:
            try:
                state = self._decrypt_state(lifecycle, event.new_value)
            except StateSyncError as ex:
                logger.debug("Ignoring state update: %s", type(ex).__name__)
                return
            self._deliver(state)

    def _deliver(self, state: Any) -> None:
        try:
            self._on_state_updated(state)
        except Exception:
            # Read paths never raise into the substrate or the constructor
            logger.exception("on_state_updated raised; update dropped")

    def _decrypt_state(self, loaded: Loaded, value: str) -> Any:
        try:
            plaintext = open_record(loaded.cipher, value, now_ms=self._clock())
        except ExpiredStateError:
            self._discard(loaded)
            raise
        try:
            return self._parser(plaintext.decode("utf-8"))
        except Exception as ex:
            raise ParseError("state parser rejected decrypted payload") from ex

    def _discard(self, loaded: Loaded) -> None:
        try:
            self._storage.remove(loaded.storage_key)
        except StorageError as ex:
            logger.warning("Failed to remove expired state: %s", ex)


__all__ = ["LocalStateSync"]
