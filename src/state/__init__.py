"""
Encrypted, lock-protected remote state storage.

This package stores one shared state document per resource key in S3,
encrypted with per-version data keys (envelope encryption via KMS), and
coordinates writers through lease locks with fencing tokens.
"""

from .backend import Session, SessionState, StateBackend
from .config import BackendConfig
from .errors import (
    AcquireTimeout,
    ConcurrentModification,
    DecryptionFailure,
    EncryptionFailure,
    IntegrityMismatch,
    KeyUnavailable,
    LockHeld,
    LockLost,
    NotFound,
    StateBackendError,
    StorageError,
    StoreUnavailable,
    VersionConflict,
)
from .models import EncryptedBlob, LockRecord, StateDocument, VersionInfo

__all__ = [
    "AcquireTimeout",
    "BackendConfig",
    "ConcurrentModification",
    "DecryptionFailure",
    "EncryptedBlob",
    "EncryptionFailure",
    "IntegrityMismatch",
    "KeyUnavailable",
    "LockHeld",
    "LockLost",
    "LockRecord",
    "NotFound",
    "Session",
    "SessionState",
    "StateBackend",
    "StateBackendError",
    "StateDocument",
    "StorageError",
    "StoreUnavailable",
    "VersionConflict",
    "VersionInfo",
]
