"""Content digests used for upload integrity and SSE-C key checks."""

import base64
import hashlib
from typing import Callable

# A digest provider maps content bytes to the string the service expects
DigestProvider = Callable[[bytes], str]


def sha1_hex(data: bytes) -> str:
    """Return the lowercase hex SHA-1 of ``data`` (40 characters)."""
    return hashlib.sha1(data).hexdigest()


def md5_base64(data: bytes) -> str:
    """Return the base64 encoded MD5 of ``data``.

    Used for the ``X-Bz-Server-Side-Encryption-Customer-Key-Md5`` header.
    """
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def is_sha1_hex(value: str) -> bool:
    """Check whether ``value`` looks like a hex SHA-1 digest."""
    if len(value) != 40:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return True
