from __future__ import annotations

import itertools
import logging
import threading
import time

import pytest
from botocore.exceptions import ClientError

from common.codec import encode
from statesync.errors import ConfigurationError, StorageError
from statesync.models import StorageEvent
from statesync.s3_store import S3Storage
from statesync.sync import LocalStateSync


KEY = encode(bytes(range(32)))


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self, page_size: int = 1000) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}
        self._etags = itertools.count(1)
        self._page_size = page_size
        self._lock = threading.RLock()  # shared with watcher threads
        self.fail_with = None
        self.fail_get_once = set()  # object keys whose next GetObject fails
        self.after_list = None  # called once, right after the next listing

    def _maybe_fail(self, op: str) -> None:
        if self.fail_with:
            raise ClientError({"Error": {"Code": self.fail_with}}, op)

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        with self._lock:
            self._maybe_fail("PutObject")
            etag = f'"fake-{next(self._etags)}"'
            self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
            return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        with self._lock:
            self._maybe_fail("GetObject")
            if Key in self.fail_get_once:
                self.fail_get_once.discard(Key)
                raise ClientError({"Error": {"Code": "InternalError"}}, "GetObject")
            item = self._store.get((Bucket, Key))
            if not item:
                raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
            return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def delete_object(self, *, Bucket: str, Key: str):
        with self._lock:
            self._maybe_fail("DeleteObject")
            self._store.pop((Bucket, Key), None)
            return {}

    def list_objects_v2(self, *, Bucket: str, Prefix: str = "", ContinuationToken: str | None = None):
        with self._lock:
            self._maybe_fail("ListObjectsV2")
            keys = sorted(k for (b, k) in self._store if b == Bucket and k.startswith(Prefix))
            start = int(ContinuationToken or 0)
            page = keys[start : start + self._page_size]
            resp = {
                "Contents": [{"Key": k, "ETag": self._store[(Bucket, k)]["ETag"]} for k in page],
                "IsTruncated": start + self._page_size < len(keys),
            }
            if resp["IsTruncated"]:
                resp["NextContinuationToken"] = str(start + self._page_size)
        if self.after_list is not None:
            hook, self.after_list = self.after_list, None
            hook()
        return resp


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _pair(s3=None, prefix="app/"):
    s3 = s3 or _FakeS3()
    return s3, S3Storage(s3=s3, bucket="b", prefix=prefix), S3Storage(s3=s3, bucket="b", prefix=prefix)


def test_get_missing_returns_none():
    _, a, _ = _pair()
    assert a.get("k") is None


def test_set_get_remove_under_prefix():
    s3, a, b = _pair()
    a.set("k", "value")
    assert ("b", "app/k") in s3._store
    assert b.get("k") == "value"
    b.remove("k")
    b.remove("k")
    assert a.get("k") is None


def test_first_poll_records_baseline_silently():
    s3, a, b = _pair()
    a.set("k", "v")
    events = []
    b.subscribe(events.append)
    assert b.poll() == 0
    assert events == []


def test_poll_reports_foreign_changes_only():
    s3, a, b = _pair()
    seen_a, seen_b = [], []
    a.subscribe(seen_a.append)
    b.subscribe(seen_b.append)
    a.poll()
    b.poll()

    a.set("k", "v1")
    assert a.poll() == 0
    assert b.poll() == 1
    assert seen_b == [StorageEvent(key="k", old_value=None, new_value="v1")]

    a.set("k", "v2")
    b.poll()
    assert seen_b[-1] == StorageEvent(key="k", old_value="v1", new_value="v2")

    a.remove("k")
    b.poll()
    assert seen_b[-1] == StorageEvent(key="k", old_value="v2", new_value=None)
    assert seen_a == []


def test_poll_paginates():
    s3 = _FakeS3(page_size=2)
    _, a, b = _pair(s3)
    b.poll()
    for i in range(5):
        a.set(f"k{i}", str(i))
    events = []
    b.subscribe(events.append)
    assert b.poll() == 5
    assert sorted(e.key for e in events) == [f"k{i}" for i in range(5)]


def test_client_errors_become_storage_errors():
    s3, a, _ = _pair()
    s3.fail_with = "AccessDenied"
    with pytest.raises(StorageError):
        a.get("k")
    with pytest.raises(StorageError):
        a.set("k", "v")
    with pytest.raises(StorageError):
        a.remove("k")
    with pytest.raises(StorageError):
        a.poll()


def test_from_env_missing_bucket_raises(monkeypatch):
    monkeypatch.delenv("STATESYNC_BUCKET", raising=False)
    with pytest.raises(ConfigurationError):
        S3Storage.from_env()


def test_start_watching_rejects_bad_interval():
    _, a, _ = _pair()
    with pytest.raises(ValueError):
        a.start_watching(0)


def test_state_sync_across_processes_via_polling():
    s3, storage_a, storage_b = _pair()
    got_a, got_b = [], []
    tab_a = LocalStateSync(encryption_key=KEY, on_state_updated=got_a.append, storage=storage_a)
    tab_b = LocalStateSync(encryption_key=KEY, on_state_updated=got_b.append, storage=storage_b)
    storage_a.poll()
    storage_b.poll()

    tab_a.set_state({"cart": ["apple"]})
    storage_a.poll()
    storage_b.poll()

    assert got_b == [{"cart": ["apple"]}]
    assert got_a == []
    assert tab_b.get_state() == {"cart": ["apple"]}


def test_failed_poll_keeps_changes_for_the_next_poll():
    s3, a, b = _pair()
    events = []
    b.subscribe(events.append)
    b.poll()
    a.set("k1", "v1")
    a.set("k2", "v2")

    s3.fail_get_once.add("app/k2")
    with pytest.raises(StorageError):
        b.poll()
    assert events == []

    assert b.poll() == 2
    assert sorted((e.key, e.new_value) for e in events) == [("k1", "v1"), ("k2", "v2")]


def test_own_write_during_poll_is_not_echoed():
    s3, a, b = _pair()
    seen_a = []
    a.subscribe(seen_a.append)
    a.poll()
    b.set("k", "theirs")

    # a writes after the listing was taken but before the object is fetched
    s3.after_list = lambda: a.set("k", "mine")
    a.poll()
    assert seen_a == []

    assert a.poll() == 0
    assert seen_a == []
    assert b.get("k") == "mine"


def test_known_keys_are_reported_on_first_poll():
    s3, a, b = _pair()
    events = []
    b.subscribe(events.append)
    assert b.get("k") is None  # b now knows "k" is absent
    a.set("k", "v1")
    a.set("other", "x")
    assert b.poll() == 1
    assert events == [StorageEvent(key="k", old_value=None, new_value="v1")]


def test_write_between_initial_load_and_watch_start_is_delivered():
    s3, storage_a, storage_b = _pair()
    got_b = []
    LocalStateSync(encryption_key=KEY, on_state_updated=got_b.append, storage=storage_b)
    tab_a = LocalStateSync(encryption_key=KEY, on_state_updated=lambda s: None, storage=storage_a)

    tab_a.set_state({"step": 1})
    storage_b.start_watching(interval=60)
    try:
        assert got_b == [{"step": 1}]
    finally:
        storage_b.stop_watching(timeout=5)


def test_watcher_delivers_changes_and_survives_failures(caplog):
    s3, a, b = _pair()
    received = []
    calls = []

    def listener(event):
        calls.append(event)
        if len(calls) == 1:
            raise RuntimeError("listener bug")
        received.append(event.new_value)

    b.subscribe(listener)
    with caplog.at_level(logging.WARNING, logger="statesync"):
        b.start_watching(interval=0.01)
        watcher = b._watcher
        try:
            a.set("k", "v1")
            assert _wait_for(lambda: len(calls) >= 1)

            a.set("k", "v2")
            assert _wait_for(lambda: "v2" in received)

            s3.fail_with = "SlowDown"
            assert _wait_for(lambda: "S3 change poll failed" in caplog.text)
            s3.fail_with = None

            a.set("k", "v3")
            assert _wait_for(lambda: "v3" in received)
        finally:
            s3.fail_with = None
            b.stop_watching(timeout=5)

    assert watcher is not None
    assert not watcher.is_alive()
    assert "Storage listener raised" in caplog.text


def test_stop_watching_without_start_is_noop():
    _, a, _ = _pair()
    a.stop_watching()
    a.close()
