from __future__ import annotations

import base64
import binascii
import re


# URL-safe base64 alphabet, no padding
_ALPHABET_RE = re.compile(r"[A-Za-z0-9_-]*")


class CodecError(ValueError):
    """Raised when text is not an unpadded base64url string."""


def encode(data: bytes) -> str:
    """Encode raw bytes as unpadded base64url text (RFC 4648 §5)."""
    return base64.urlsafe_b64encode(bytes(data)).rstrip(b"=").decode("ascii")


def decode(text: str) -> bytes:
    """
    Decode text produced by `encode` back into raw bytes.

    Only the characters `encode` can emit are accepted: padding, `+`, `/`
    and whitespace are rejected rather than silently skipped.
    """
    if not isinstance(text, str) or _ALPHABET_RE.fullmatch(text) is None:
        raise CodecError("input is not base64url text")
    if len(text) % 4 == 1:
        raise CodecError("invalid base64url length")
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except binascii.Error as ex:
        raise CodecError("invalid base64url payload") from ex


__all__ = ["CodecError", "decode", "encode"]
