"""
Common utilities for statesync.

Modules:
- codec: unpadded base64url encoding used for keys, storage ids and records
"""

__all__ = [
    "codec",
]
