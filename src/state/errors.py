"""Error taxonomy for the state backend."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class StateBackendError(RuntimeError):
    """Base error for all state backend errors."""


# -------- Locking --------
class LockError(StateBackendError):
    """Base for lock-related failures."""


class LockHeld(LockError):
    """Raised when an active lock belongs to another holder."""

    def __init__(
        self,
        resource_key: str,
        holder_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        message: Optional[str] = None,
    ) -> None:
        self.resource_key = resource_key
        self.holder_id = holder_id
        self.expires_at = expires_at
        if message is None:
            who = holder_id or "another holder"
            message = f"Lock on '{resource_key}' is held by {who}"
            if expires_at is not None:
                message += f" until {expires_at.isoformat()}"
        super().__init__(message)


class AcquireTimeout(LockHeld):
    """Raised when contention does not clear within the acquisition timeout."""

    def __init__(
        self,
        resource_key: str,
        timeout_s: float,
        holder_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        self.timeout_s = timeout_s
        super().__init__(
            resource_key,
            holder_id,
            expires_at,
            message=f"Could not acquire lock on '{resource_key}' within {timeout_s:g}s",
        )


class LockLost(LockError):
    """Raised when the caller's fencing token no longer owns the lock."""

    def __init__(
        self,
        resource_key: str,
        fencing_token: int,
        holder_id: Optional[str] = None,
        detail: str = "",
    ) -> None:
        self.resource_key = resource_key
        self.holder_id = holder_id
        self.fencing_token = fencing_token
        who = holder_id or "this caller"
        message = f"Lock on '{resource_key}' (token {fencing_token}) is no longer held by {who}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


# -------- Versioning --------
class VersionConflict(StateBackendError):
    """Raised when a conditional write finds a different current version."""

    def __init__(self, resource_key: str, expected_version: int, actual_version: Optional[int] = None) -> None:
        self.resource_key = resource_key
        self.expected_version = expected_version
        self.actual_version = actual_version
        actual = "unknown" if actual_version is None else str(actual_version)
        super().__init__(
            f"Version conflict on '{resource_key}': expected {expected_version}, found {actual}"
        )


class ConcurrentModification(VersionConflict):
    """Surfaced by a session commit when the state moved on since it was read."""


class NotFound(StateBackendError):
    """Raised when a resource (or a specific version of it) was never written."""

    def __init__(self, resource_key: str, version: Optional[int] = None) -> None:
        self.resource_key = resource_key
        self.version = version
        what = f"'{resource_key}'" if version is None else f"version {version} of '{resource_key}'"
        super().__init__(f"No state stored for {what}")


# -------- Crypto --------
class CryptoError(StateBackendError):
    """Base for encryption-gate failures. Always fatal to the session."""


class KeyUnavailable(CryptoError):
    def __init__(self, key_ref: str, detail: str = "") -> None:
        self.key_ref = key_ref
        self.detail = detail
        message = f"Key '{key_ref}' is unavailable"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class EncryptionFailure(CryptoError):
    pass


class DecryptionFailure(CryptoError):
    pass


class IntegrityMismatch(CryptoError):
    def __init__(self, expected_hash: str, actual_hash: str) -> None:
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Content hash mismatch: expected {expected_hash[:12]}..., got {actual_hash[:12]}..."
        )


# -------- Collaborators --------
class StoreUnavailable(StateBackendError):
    """Transient infrastructure fault that persisted past the retry budget."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Store unavailable during {operation}: {detail}")


class StorageError(StateBackendError):
    """Non-transient collaborator failure (permissions, bad request, ...)."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage error during {operation}: {detail}")


class InvalidSessionState(StateBackendError):
    def __init__(self, operation: str, state: str) -> None:
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} a session in state {state}")


__all__ = [
    "AcquireTimeout",
    "ConcurrentModification",
    "CryptoError",
    "DecryptionFailure",
    "EncryptionFailure",
    "IntegrityMismatch",
    "InvalidSessionState",
    "KeyUnavailable",
    "LockError",
    "LockHeld",
    "LockLost",
    "NotFound",
    "StateBackendError",
    "StorageError",
    "StoreUnavailable",
    "VersionConflict",
]
