from __future__ import annotations

import hashlib

import pytest

from common.codec import decode, encode
from statesync.errors import ConfigurationError
from statesync.keys import (
    decode_secret,
    derive,
    derive_key,
    generate_key,
    storage_identifier,
    truncated_sha512,
)


SECRET = bytes(range(32))


def test_truncated_sha512_is_prefix_of_sha512():
    assert truncated_sha512(b"abc") == hashlib.sha512(b"abc").digest()[:32]


def test_derive_key_concatenates_secret_and_namespace():
    expected = hashlib.sha512(SECRET + "ns".encode("utf-8")).digest()[:32]
    assert derive_key(SECRET, "ns") == expected


def test_storage_identifier_hashes_derived_key():
    key = derive_key(SECRET, "default")
    expected = encode(hashlib.sha512(key).digest()[:32])
    assert storage_identifier(key) == expected
    assert len(storage_identifier(key)) == 43


def test_derivation_is_deterministic():
    a = derive(SECRET, "default")
    b = derive(SECRET, "default")
    assert a == b
    assert a.storage_key != encode(a.key)


def test_namespace_changes_key_and_storage_id():
    a = derive(SECRET, "default")
    b = derive(SECRET, "other")
    assert a.key != b.key
    assert a.storage_key != b.storage_key


def test_unicode_namespace_is_utf8_encoded():
    expected = hashlib.sha512(SECRET + "état".encode("utf-8")).digest()[:32]
    assert derive_key(SECRET, "état") == expected


def test_repr_hides_key():
    assert SECRET.hex() not in repr(derive(SECRET, "default"))
    assert "redacted" in repr(derive(SECRET, "default"))


def test_generate_key_is_valid_secret():
    key = generate_key()
    assert len(key) == 43
    assert len(decode_secret(key)) == 32
    assert generate_key() != key


@pytest.mark.parametrize("bad", [encode(b"x" * 31), encode(b"x" * 33), "", "not/base64=="])
def test_decode_secret_rejects_wrong_length_or_encoding(bad):
    with pytest.raises(ConfigurationError):
        decode_secret(bad)


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        decode_secret(encode(b"short"))


def test_decode_secret_accepts_32_bytes():
    assert decode_secret(encode(SECRET)) == SECRET
    assert decode(encode(SECRET)) == SECRET
