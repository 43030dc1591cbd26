from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from .errors import ConfigurationError, StorageError
from .models import StorageEvent
from .substrate import Listener, ListenerRegistry, Subscription


logger = logging.getLogger("statesync.s3_store")

# Environment variable names for convenience configuration
ENV_BUCKET = "STATESYNC_BUCKET"
ENV_PREFIX = "STATESYNC_PREFIX"
ENV_REGION = "AWS_REGION"

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


def _error_code(e: ClientError) -> Optional[str]:
    return e.response.get("Error", {}).get("Code")


@dataclass
class _Entry:
    # Both None: the object is known to be absent
    etag: Optional[str] = None
    value: Optional[str] = None


class S3Storage:
    """
    S3-backed storage substrate shared by every process pointing at the same
    bucket/prefix.

    Usage
    - `get`/`set`/`remove` map to GetObject/PutObject/DeleteObject on
      `{prefix}{key}`. Values are stored as UTF-8 text.
    - S3 has no change feed, so changes made by other processes are detected
      by `poll()`, which lists the prefix and compares ETags against what this
      instance last saw. Listeners get a `StorageEvent` per changed key.
    - Writes made through this instance are recorded as seen, so they are
      never announced back to its own listeners.
    - `start_watching(interval)` runs `poll()` on a daemon thread.

    Environment variables (optional)
    - `STATESYNC_BUCKET`: S3 bucket holding the records
    - `STATESYNC_PREFIX`: key prefix (e.g. "app/state/")
    - `AWS_REGION`:       region for the boto3 client
    """

    available = True

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        prefix: str = "",
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ConfigurationError("bucket is required")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix
        self._listeners = ListenerRegistry()
        self._seen: Dict[str, _Entry] = {}
        self._primed = False
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls) -> "S3Storage":
        bucket = os.environ.get(ENV_BUCKET)
        if not bucket:
            raise ConfigurationError(
                f"Missing required environment variables for S3 storage: {ENV_BUCKET}"
            )
        return cls(
            bucket=bucket,
            prefix=os.environ.get(ENV_PREFIX, ""),
            region_name=os.environ.get(ENV_REGION) or None,
        )

    # -------- Storage substrate --------
    def get(self, key: str) -> Optional[str]:
        found = self._fetch(key)
        # The caller now holds this version; later polls report changes relative to it
        with self._lock:
            self._seen[key] = _Entry(etag=found[0], value=found[1]) if found else _Entry()
        return found[1] if found else None

    def set(self, key: str, value: str) -> None:
        try:
            resp = self._s3.put_object(
                Bucket=self._bucket,
                Key=self._object_key(key),
                Body=value.encode("utf-8"),
                ContentType="text/plain; charset=utf-8",
            )
        except ClientError as e:
            raise StorageError(f"PutObject failed for {key!r}: {_error_code(e)}") from e
        with self._lock:
            self._seen[key] = _Entry(etag=str(resp.get("ETag")), value=value)

    def remove(self, key: str) -> None:
        # DeleteObject succeeds for keys that don't exist
        try:
            self._s3.delete_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as e:
            raise StorageError(f"DeleteObject failed for {key!r}: {_error_code(e)}") from e
        with self._lock:
            self._seen[key] = _Entry()

    def subscribe(self, listener: Listener) -> Subscription:
        return self._listeners.add(listener)

    # -------- Change detection --------
    def poll(self) -> int:
        """
        Detect changes made by other writers since the previous poll.

        Keys this instance has never read or written are recorded silently on
        the first call; keys it already knows (through `get`, `set` or
        `remove`) are reported from the first call on. Nothing is recorded
        unless the whole poll succeeds, so a failed poll is retried in full
        next time. Returns the number of events dispatched.
        """
        with self._lock:
            primed = self._primed
            previous = dict(self._seen)

        current = dict(self._list_etags())
        updates: Dict[str, _Entry] = {}
        for key, etag in current.items():
            before = previous.get(key)
            if before is not None and before.etag == etag:
                continue
            found = self._fetch(key)
            updates[key] = _Entry(etag=found[0], value=found[1]) if found else _Entry()
        for key, before in previous.items():
            if key not in current and before.etag is not None:
                updates[key] = _Entry()

        events = []
        with self._lock:
            for key, entry in updates.items():
                before = previous.get(key)
                # Touched by this instance since the snapshot: its own write wins
                if self._seen.get(key) is not before:
                    continue
                old_etag = before.etag if before is not None else None
                if old_etag == entry.etag:
                    continue
                self._seen[key] = entry
                if primed or before is not None:
                    events.append(
                        StorageEvent(
                            key=key,
                            old_value=before.value if before is not None else None,
                            new_value=entry.value,
                        )
                    )
            self._primed = True

        for event in events:
            self._listeners.dispatch(event)
        return len(events)

    def start_watching(self, interval: float = 2.0) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if self._watcher is not None and self._watcher.is_alive():
            return
        self._stop.clear()
        self.poll()
        self._watcher = threading.Thread(
            target=self._watch_loop,
            args=(interval,),
            name=f"statesync-s3-watch:{self._bucket}",
            daemon=True,
        )
        self._watcher.start()

    def stop_watching(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.join(timeout)

    def close(self) -> None:
        self.stop_watching()

    def __enter__(self) -> "S3Storage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------- Internal --------
    def _object_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _fetch(self, key: str) -> Optional[Tuple[str, str]]:
        """Return (etag, value) or None when the object doesn't exist."""
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as e:
            if _error_code(e) in _MISSING_CODES:
                return None
            raise StorageError(f"GetObject failed for {key!r}: {_error_code(e)}") from e
        body = resp["Body"].read()
        try:
            value = body.decode("utf-8")
        except UnicodeDecodeError as ex:
            raise StorageError(f"Object {key!r} is not UTF-8 text") from ex
        return (str(resp.get("ETag")), value)

    def _list_etags(self) -> Iterator[Tuple[str, str]]:
        kwargs = {"Bucket": self._bucket, "Prefix": self._prefix}
        while True:
            try:
                resp = self._s3.list_objects_v2(**kwargs)
            except ClientError as e:
                raise StorageError(f"ListObjectsV2 failed: {_error_code(e)}") from e
            for obj in resp.get("Contents", []):
                yield (obj["Key"][len(self._prefix):], str(obj.get("ETag")))
            token = resp.get("NextContinuationToken")
            if not resp.get("IsTruncated") or not token:
                return
            kwargs["ContinuationToken"] = token

    def _watch_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.poll()
            except StorageError as e:
                logger.warning("S3 change poll failed: %s", e)
            except Exception:
                # Keep watching; a failing listener must not stop change detection
                logger.exception("S3 change listener raised")


__all__ = ["S3Storage"]
