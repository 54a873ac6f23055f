"""
State backend coordinator.

Ties the lock manager, the versioned store and the encryption gate into
one protocol per caller::

    session = backend.begin_session("prod")      # acquire + read
    doc, version = session.read()
    session.commit(new_payload)                  # seal + conditional put + release

Two independent guards protect every commit: the caller must still own
the lease (checked by renewing it), and the store only accepts the write
if no other version landed since the read.
"""

from __future__ import annotations

import logging
from enum import Enum
from itertools import islice
from typing import Any, List, Optional, Tuple, Union

from common.aws import make_client
from common.retry import RetryPolicy

from .config import LOCAL_KEY_REF, BackendConfig
from .crypto import EncryptionGate
from .errors import ConcurrentModification, DecryptionFailure, InvalidSessionState, NotFound, VersionConflict
from .kms import AwsKmsKeyService, KeyService, LocalKeyring
from .lock import DynamoLockTable, LockManager, LockTable, S3LockTable, default_holder_id
from .models import LockRecord, StateDocument, VersionInfo, validate_resource_key
from .s3_store import S3VersionedStore


logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    LOCKED_READING = "locked-reading"
    LOCKED_WRITING = "locked-writing"
    RELEASING = "releasing"
    FAILED = "failed"


class Session:
    """
    Handle for one acquire -> read -> commit/abort cycle.

    Single use: after commit or abort the session is IDLE and holds no
    lock. Use as a context manager to abort automatically when the block
    exits without committing.
    """

    def __init__(self, backend: "StateBackend", resource_key: str, holder_id: str) -> None:
        self._backend = backend
        self.resource_key = resource_key
        self.holder_id = holder_id
        self.state = SessionState.IDLE
        self.fencing_token: Optional[int] = None
        self.document: Optional[StateDocument] = None
        self.version = 0
        self.committed_version: Optional[int] = None

    @property
    def holds_lock(self) -> bool:
        return self.state in (SessionState.LOCKED_READING, SessionState.LOCKED_WRITING)

    def read(self) -> Tuple[StateDocument, int]:
        return self._backend.read(self)

    def commit(self, document: Union[StateDocument, bytes]) -> int:
        return self._backend.commit(self, document)

    def abort(self) -> None:
        self._backend.abort(self)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.holds_lock:
            self.abort()

    def __repr__(self) -> str:
        return (
            f"Session(resource_key={self.resource_key!r}, holder_id={self.holder_id!r}, "
            f"state={self.state.value}, version={self.version}, token={self.fencing_token})"
        )


class StateBackend:
    def __init__(
        self,
        *,
        store: S3VersionedStore,
        locks: LockManager,
        gate: EncryptionGate,
        key_ref: str,
    ) -> None:
        self._store = store
        self._locks = locks
        self._gate = gate
        self._key_ref = key_ref

    # -------- Construction helpers --------
    @classmethod
    def from_config(cls, config: BackendConfig) -> "StateBackend":
        retry = RetryPolicy(max_attempts=config.max_attempts)
        client_kwargs = {
            "region_name": config.region_name,
            "endpoint_url": config.endpoint_url,
            "timeout": config.request_timeout_s,
        }
        s3 = make_client("s3", **client_kwargs)
        store = S3VersionedStore(
            s3=s3,
            bucket=config.bucket,
            prefix=config.prefix,
            sse_kms_key_id=config.sse_kms_key_id,
            retry=retry,
        )

        table: LockTable
        if config.lock_table:
            table = DynamoLockTable(
                dynamodb=make_client("dynamodb", **client_kwargs),
                table_name=config.lock_table,
                retry=retry,
            )
        else:
            table = S3LockTable(s3=s3, bucket=config.bucket, prefix=config.prefix, retry=retry)

        keys: KeyService
        if config.kms_key_id:
            keys = AwsKmsKeyService(
                region_name=config.region_name,
                endpoint_url=config.endpoint_url,
                timeout=config.request_timeout_s,
                retry=retry,
            )
        elif config.local_master_key:
            keys = LocalKeyring({LOCAL_KEY_REF: config.local_master_key})
        else:
            raise ValueError("Either kms_key_id or local_master_key must be configured")

        return cls(
            store=store,
            locks=LockManager(
                table,
                default_lease_ms=config.lease_ms,
                acquire_timeout_s=config.acquire_timeout_s,
            ),
            gate=EncryptionGate(keys, algorithm=config.algorithm),
            key_ref=config.key_ref,
        )

    @property
    def locks(self) -> LockManager:
        return self._locks

    @property
    def store(self) -> S3VersionedStore:
        return self._store

    @property
    def gate(self) -> EncryptionGate:
        return self._gate

    @property
    def key_ref(self) -> str:
        return self._key_ref

    # -------- Session protocol --------
    def begin_session(
        self,
        resource_key: str,
        holder_id: Optional[str] = None,
        *,
        lease_ms: Optional[int] = None,
        timeout_s: Optional[float] = None,
        info: str = "",
    ) -> Session:
        """Acquire the lock on `resource_key` and load its latest state.

        Raises LockHeld / AcquireTimeout / StoreUnavailable when the lock
        cannot be obtained, and crypto errors if the stored state cannot be
        decrypted (the lock is released first).
        """
        validate_resource_key(resource_key)
        session = Session(self, resource_key, holder_id or default_holder_id())
        session.state = SessionState.ACQUIRING
        try:
            session.fencing_token = self._locks.acquire_blocking(
                resource_key, session.holder_id, lease_ms, timeout_s=timeout_s, info=info
            )
        except Exception:
            session.state = SessionState.FAILED
            raise

        try:
            document = self._load_latest(resource_key)
        except Exception:
            self._fail(session)
            raise

        session.document = document
        session.version = document.version
        session.state = SessionState.LOCKED_READING
        return session

    def read(self, session: Session) -> Tuple[StateDocument, int]:
        self._require(session, "read", SessionState.LOCKED_READING)
        if session.document is None:
            raise InvalidSessionState("read", session.state.value)
        return session.document, session.version

    def commit(self, session: Session, document: Union[StateDocument, bytes]) -> int:
        """
        Persist `document` as the next version and release the lock.

        Raises:
        - LockLost if another holder took the lock since acquisition.
        - ConcurrentModification if a different version landed since the
          read; the caller must start a new session and redo its change.
        - KeyUnavailable / EncryptionFailure if sealing fails.
        In every failure case the session ends FAILED and the lock is
        released on a best-effort basis.
        """
        self._require(session, "commit", SessionState.LOCKED_READING)
        payload = document.payload if isinstance(document, StateDocument) else bytes(document)
        if session.fencing_token is None:
            raise InvalidSessionState("commit", session.state.value)
        session.state = SessionState.LOCKED_WRITING
        try:
            self._locks.renew(session.resource_key, session.holder_id, session.fencing_token)
            new_document = StateDocument.create(payload, session.version + 1)
            blob = self._gate.seal(new_document, self._key_ref)
            new_version = self._store.put_if_version(
                session.resource_key,
                blob,
                session.version,
                fencing_token=session.fencing_token,
            )
        except VersionConflict as ex:
            self._fail(session)
            raise ConcurrentModification(session.resource_key, ex.expected_version, ex.actual_version) from ex
        except Exception:
            self._fail(session)
            raise

        session.document = new_document
        session.version = new_version
        session.committed_version = new_version
        session.state = SessionState.RELEASING
        self._release_quietly(session)
        session.state = SessionState.IDLE
        return new_version

    def abort(self, session: Session) -> None:
        """End the session without writing. Never raises for release failures."""
        if not session.holds_lock:
            return
        session.state = SessionState.RELEASING
        self._release_quietly(session)
        session.state = SessionState.IDLE

    # -------- Read-only and operator helpers --------
    def peek(self, resource_key: str) -> StateDocument:
        """Latest state without taking the lock."""
        return self._load_latest(resource_key)

    def read_version(self, resource_key: str, version: int) -> StateDocument:
        blob = self._store.get_version(resource_key, version)
        return self._checked_unseal(blob, version)

    def history(self, resource_key: str, limit: Optional[int] = None) -> List[VersionInfo]:
        return list(islice(self._store.list_versions(resource_key), limit))

    def lock_info(self, resource_key: str) -> Optional[LockRecord]:
        return self._locks.describe(resource_key)

    def force_unlock(self, resource_key: str) -> Optional[LockRecord]:
        return self._locks.force_unlock(resource_key)

    def restore(self, resource_key: str, version: int, holder_id: Optional[str] = None, **session_kwargs: Any) -> int:
        """Commit a copy of `version` as the newest version. History is kept."""
        with self.begin_session(resource_key, holder_id, **session_kwargs) as session:
            old = self.read_version(resource_key, version)
            new_version = session.commit(old)
        logger.info(f"Restored '{resource_key}' v{version} as v{new_version}")
        return new_version

    # -------- Internal --------
    def _load_latest(self, resource_key: str) -> StateDocument:
        try:
            blob, version = self._store.get_latest(resource_key)
        except NotFound:
            return StateDocument.empty()
        return self._checked_unseal(blob, version)

    def _checked_unseal(self, blob: Any, version: int) -> StateDocument:
        document = self._gate.unseal(blob)
        if document.version != version:
            raise DecryptionFailure(f"Blob sealed for v{document.version} found at v{version}")
        return document

    @staticmethod
    def _require(session: Session, operation: str, expected: SessionState) -> None:
        if session.state is not expected:
            raise InvalidSessionState(operation, session.state.value)

    def _fail(self, session: Session) -> None:
        self._release_quietly(session)
        session.state = SessionState.FAILED

    def _release_quietly(self, session: Session) -> None:
        if session.fencing_token is None:
            return
        try:
            self._locks.release(session.resource_key, session.holder_id, session.fencing_token)
        except Exception as ex:
            # The lease expires on its own; do not mask the caller's outcome.
            logger.warning(f"Best-effort release of '{session.resource_key}' failed: {ex}")


__all__ = ["Session", "SessionState", "StateBackend"]
