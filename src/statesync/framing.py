"""
AES-GCM framing for persisted state.

Record layout (each field base64url, no padding):

    <iv>.<ciphertext+tag>[.<expiration>]

The optional expiration is a decimal millisecond timestamp. It is not
encrypted but is passed to AES-GCM as associated data, so it cannot be
stripped, extended or forged without the key.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from common.codec import CodecError, decode, encode

from .errors import AuthenticationFailure, ExpiredStateError, MalformedRecordError


IV_SIZE = 12
FIELD_SEPARATOR = "."


@dataclass(frozen=True)
class SealedRecord:
    iv: bytes
    ciphertext: bytes
    expiration: Optional[bytes] = None  # associated data, as stored

    @property
    def claimed_expiration(self) -> Optional[int]:
        """Expiration the record claims, readable without the key (unverified)."""
        if self.expiration is None:
            return None
        try:
            return int(self.expiration.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None

    def to_text(self) -> str:
        fields = [encode(self.iv), encode(self.ciphertext)]
        if self.expiration:
            fields.append(encode(self.expiration))
        return FIELD_SEPARATOR.join(fields)


def parse_record(text: str) -> SealedRecord:
    """Split stored text into its fields. Raises MalformedRecordError."""
    parts = text.split(FIELD_SEPARATOR)
    if len(parts) not in (2, 3):
        raise MalformedRecordError(f"expected 2 or 3 fields, got {len(parts)}")
    try:
        decoded = [decode(p) for p in parts]
    except CodecError as ex:
        raise MalformedRecordError("record field is not base64url") from ex
    if len(decoded[0]) != IV_SIZE:
        raise MalformedRecordError(f"IV must be {IV_SIZE} bytes")
    expiration = decoded[2] if len(decoded) == 3 else None
    return SealedRecord(iv=decoded[0], ciphertext=decoded[1], expiration=expiration)


def seal(cipher: AESGCM, plaintext: bytes, ttl: Optional[int], *, now_ms: int) -> str:
    """Encrypt `plaintext` under a fresh IV, binding `now_ms + ttl` when ttl > 0."""
    expiration: Optional[bytes] = None
    if ttl is not None and ttl > 0:
        expiration = str(int(now_ms + ttl)).encode("utf-8")
    iv = os.urandom(IV_SIZE)
    ciphertext = cipher.encrypt(iv, plaintext, expiration)
    return SealedRecord(iv=iv, ciphertext=ciphertext, expiration=expiration).to_text()


def open_record(cipher: AESGCM, text: str, *, now_ms: int) -> bytes:
    """
    Authenticate and decrypt a stored record.

    Raises
    - MalformedRecordError if the text is not a well-formed record.
    - AuthenticationFailure if the key, ciphertext or expiration don't verify.
    - ExpiredStateError if the record verified but its expiration has passed.
    """
    record = parse_record(text)
    try:
        plaintext = cipher.decrypt(record.iv, record.ciphertext, record.expiration)
    except InvalidTag as ex:
        raise AuthenticationFailure("record failed authentication") from ex

    if record.expiration is not None:
        expiration_ms = record.claimed_expiration
        if expiration_ms is None:
            raise MalformedRecordError("expiration is not an integer timestamp")
        if expiration_ms < now_ms:
            raise ExpiredStateError(expiration_ms, now_ms)
    return plaintext


__all__ = [
    "IV_SIZE",
    "SealedRecord",
    "parse_record",
    "seal",
    "open_record",
]
