"""
Client session management for the Backblaze B2 native API.

Provides a single-flight authorization cache, a bounded upload URL pool,
retry and circuit breaking around every call, and multi-part large-file
sessions.
"""

from .core.config import Settings
from .core.exceptions import (
    AuthInvalidError,
    B2SessionError,
    CapabilityInvalidError,
    CircuitOpenError,
    PermanentError,
    ProtocolViolationError,
    TransientError,
)
from .session.large_file import LargeFileSession, SessionStatus
from .session.manager import B2Session

__all__ = [
    "AuthInvalidError",
    "B2Session",
    "B2SessionError",
    "CapabilityInvalidError",
    "CircuitOpenError",
    "LargeFileSession",
    "PermanentError",
    "ProtocolViolationError",
    "SessionStatus",
    "Settings",
    "TransientError",
]
