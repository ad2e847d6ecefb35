"""Session layer: authorization cache, upload URL pool, resilience and large files."""

from .auth_cache import AuthorizationCache
from .large_file import LargeFileSession, PartDescriptor, SessionStatus
from .manager import B2Session
from .resilience import CircuitBreaker, CircuitState, ResiliencePolicy
from .upload_pool import UploadUrlPool

__all__ = [
    "AuthorizationCache",
    "B2Session",
    "CircuitBreaker",
    "CircuitState",
    "LargeFileSession",
    "PartDescriptor",
    "ResiliencePolicy",
    "SessionStatus",
    "UploadUrlPool",
]
