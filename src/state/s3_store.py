from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from botocore.exceptions import ClientError

from common.aws import NOT_FOUND_CODES, PRECONDITION_CODES, is_not_found, is_precondition_failed
from common.retry import RetryPolicy

from .aws_calls import guarded_call
from .errors import LockLost, NotFound, StateBackendError, StorageError, VersionConflict
from .models import EncryptedBlob, VersionInfo, validate_resource_key


logger = logging.getLogger(__name__)

BLOB_CONTENT_TYPE = "application/octet-stream"
HEAD_CONTENT_TYPE = "application/json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3VersionedStore:
    """
    S3-backed, append-only version history of encrypted state blobs.

    Layout per resource key (under the optional prefix)
    - `<key>/versions/<000000000001>.rsb`: one immutable object per version,
      created with `IfNoneMatch="*"` so each version number is won by
      exactly one writer. `VersionInfo` travels as user metadata.
    - `<key>/head.json`: `{"version": N}` pointer advanced by `IfMatch`
      compare-and-swap. Readers treat it as a hint and roll forward past
      it, so a writer that dies between the two puts loses nothing.

    Versions start at 1 and are gap-free: a version object is only created
    after its predecessor exists, and version objects are never deleted.
    """

    def __init__(
        self,
        *,
        s3: Any,
        bucket: str,
        prefix: str = "",
        sse_kms_key_id: Optional[str] = None,
        retry: RetryPolicy = RetryPolicy(),
        clock: Callable[[], datetime] = _utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._s3 = s3
        self._bucket = bucket
        clean = prefix.strip("/")
        self._prefix = f"{clean}/" if clean else ""
        self._sse_kms_key_id = sse_kms_key_id
        self._retry = retry
        self._clock = clock
        self._sleep = sleep

    # -------- Key helpers --------
    def _root(self, resource_key: str) -> str:
        return f"{self._prefix}{validate_resource_key(resource_key)}/"

    def head_ref(self, resource_key: str) -> S3ObjectRef:
        return S3ObjectRef(bucket=self._bucket, key=f"{self._root(resource_key)}head.json")

    def version_ref(self, resource_key: str, version: int) -> S3ObjectRef:
        return S3ObjectRef(bucket=self._bucket, key=f"{self._root(resource_key)}versions/{version:012d}.rsb")

    def _sse_kwargs(self) -> Dict[str, str]:
        if not self._sse_kms_key_id:
            return {}
        return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._sse_kms_key_id}

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        # Not-found and precondition failures are interpreted by the caller.
        return guarded_call(
            f"s3.{operation}",
            fn,
            retry=self._retry,
            passthrough=NOT_FOUND_CODES | PRECONDITION_CODES,
            sleep=self._sleep,
        )

    # -------- Head pointer --------
    def _read_head(self, resource_key: str) -> Tuple[int, Optional[str]]:
        ref = self.head_ref(resource_key)
        try:
            resp = self._call("get_head", lambda: self._s3.get_object(Bucket=ref.bucket, Key=ref.key))
        except ClientError as e:
            if is_not_found(e):
                return 0, None
            raise
        try:
            version = int(json.loads(resp["Body"].read().decode("utf-8"))["version"])
        except (ValueError, KeyError, TypeError) as ex:
            raise StorageError("get_head", f"Corrupt head pointer at {ref.key}") from ex
        etag = resp.get("ETag")
        return version, etag if isinstance(etag, str) else None

    def _advance_head(self, resource_key: str, version: int) -> None:
        ref = self.head_ref(resource_key)
        body = json.dumps(
            {"version": version, "updated_at": self._clock().isoformat()},
            separators=(",", ":"),
            sort_keys=True,
        ).encode("utf-8")
        for _ in range(self._retry.max_attempts):
            current, etag = self._read_head(resource_key)
            if current >= version:
                return
            cond = {"IfMatch": etag} if etag else {"IfNoneMatch": "*"}
            try:
                self._call(
                    "put_head",
                    lambda: self._s3.put_object(
                        Bucket=ref.bucket,
                        Key=ref.key,
                        Body=body,
                        ContentType=HEAD_CONTENT_TYPE,
                        **cond,
                        **self._sse_kwargs(),
                    ),
                )
                return
            except ClientError as e:
                if not is_precondition_failed(e):
                    raise
        logger.warning(f"Head pointer for '{resource_key}' still behind v{version}; readers will roll forward")

    def _version_exists(self, resource_key: str, version: int) -> bool:
        ref = self.version_ref(resource_key, version)
        try:
            self._call("head_version", lambda: self._s3.head_object(Bucket=ref.bucket, Key=ref.key))
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise

    def latest_version(self, resource_key: str) -> int:
        """Latest committed version, 0 if the resource was never written."""
        version, _ = self._read_head(resource_key)
        while self._version_exists(resource_key, version + 1):
            version += 1
        return version

    # -------- Core operations --------
    def get_latest(self, resource_key: str) -> Tuple[EncryptedBlob, int]:
        """Return `(blob, version)` of the newest commit.

        Raises:
        - NotFound if the resource has never been written.
        - StoreUnavailable after exhausting transient retries.
        """
        version = self.latest_version(resource_key)
        if version == 0:
            raise NotFound(resource_key)
        return self.get_version(resource_key, version), version

    def get_version(self, resource_key: str, version: int) -> EncryptedBlob:
        ref = self.version_ref(resource_key, version)
        try:
            resp = self._call("get_version", lambda: self._s3.get_object(Bucket=ref.bucket, Key=ref.key))
        except ClientError as e:
            if is_not_found(e):
                raise NotFound(resource_key, version) from e
            raise
        return EncryptedBlob.from_bytes(resp["Body"].read())

    def describe_version(self, resource_key: str, version: int) -> VersionInfo:
        ref = self.version_ref(resource_key, version)
        try:
            resp = self._call("head_version", lambda: self._s3.head_object(Bucket=ref.bucket, Key=ref.key))
        except ClientError as e:
            if is_not_found(e):
                raise NotFound(resource_key, version) from e
            raise
        try:
            return VersionInfo.from_metadata(resp.get("Metadata") or {}, size=int(resp.get("ContentLength") or 0))
        except (ValueError, KeyError) as ex:
            raise StorageError("describe_version", f"Missing version metadata at {ref.key}") from ex

    def put_if_version(
        self,
        resource_key: str,
        blob: EncryptedBlob,
        expected_version: int,
        *,
        fencing_token: Optional[int] = None,
    ) -> int:
        """
        Commit `blob` as version `expected_version + 1`.

        - Succeeds only if the latest version equals `expected_version`;
          otherwise raises `VersionConflict` (re-read and redo the change).
        - With `fencing_token`, also raises `LockLost` if the latest entry
          was written under a newer token than the caller's.
        """
        if expected_version < 0:
            raise ValueError("expected_version must be >= 0")
        latest = self.latest_version(resource_key)
        if latest != expected_version:
            raise VersionConflict(resource_key, expected_version, latest)

        if fencing_token is not None and latest > 0:
            previous = self.describe_version(resource_key, latest)
            if previous.fencing_token is not None and previous.fencing_token > fencing_token:
                raise LockLost(
                    resource_key,
                    fencing_token,
                    detail=f"v{latest} was written under newer token {previous.fencing_token}",
                )

        new_version = expected_version + 1
        body = blob.to_bytes()
        info = VersionInfo(
            version=new_version,
            written_at=self._clock(),
            size=len(body),
            content_hash=blob.content_hash,
            key_ref=blob.key_ref,
            algorithm=blob.algorithm,
            fencing_token=fencing_token,
        )
        ref = self.version_ref(resource_key, new_version)
        try:
            self._call(
                "put_version",
                lambda: self._s3.put_object(
                    Bucket=ref.bucket,
                    Key=ref.key,
                    Body=body,
                    ContentType=BLOB_CONTENT_TYPE,
                    Metadata=info.to_metadata(),
                    IfNoneMatch="*",
                    **self._sse_kwargs(),
                ),
            )
        except ClientError as e:
            if not is_precondition_failed(e):
                raise
            # A retried put whose first attempt landed looks like a lost race.
            if not self._is_own_write(resource_key, info):
                raise VersionConflict(resource_key, expected_version) from e

        try:
            self._advance_head(resource_key, new_version)
        except StateBackendError as ex:
            logger.warning(f"Committed v{new_version} of '{resource_key}' but head update failed: {ex}")

        logger.info(f"Committed '{resource_key}' v{new_version} ({len(body)} bytes, token={fencing_token})")
        return new_version

    def _is_own_write(self, resource_key: str, info: VersionInfo) -> bool:
        try:
            stored = self.describe_version(resource_key, info.version)
        except (NotFound, StorageError):
            return False
        return stored.to_metadata() == info.to_metadata()

    def list_versions(self, resource_key: str) -> "VersionListing":
        validate_resource_key(resource_key)
        return VersionListing(self, resource_key)


class VersionListing:
    """
    Lazy, restartable view of a resource's history, newest first.

    Each iteration re-reads the latest version and then fetches one
    entry's metadata per step, so abandoning an iteration early costs
    nothing and a fresh `iter()` reflects commits made in between.
    """

    def __init__(self, store: S3VersionedStore, resource_key: str) -> None:
        self._store = store
        self.resource_key = resource_key

    def __iter__(self) -> Iterator[VersionInfo]:
        latest = self._store.latest_version(self.resource_key)
        for version in range(latest, 0, -1):
            yield self._store.describe_version(self.resource_key, version)


__all__ = ["S3ObjectRef", "S3VersionedStore", "VersionListing"]
