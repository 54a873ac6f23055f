"""
Lease locks with fencing tokens.

A `LockTable` owns one lock record per resource key and mutates it only
through conditional writes at the storage service, which is the sole
arbiter of who holds the lock. `LockManager` layers lease defaults,
blocking acquisition with backoff, and heartbeat renewal on top.

Tables
- S3LockTable: JSON object per key, compare-and-swap via IfMatch/IfNoneMatch.
- DynamoLockTable: one item per key, single conditional UpdateItem.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, Optional, Protocol, Tuple
from uuid import uuid4

from botocore.exceptions import ClientError
from pydantic import ValidationError

from common.aws import NOT_FOUND_CODES, PRECONDITION_CODES, error_code, is_not_found, is_precondition_failed, server_time
from common.retry import RetryPolicy

from .aws_calls import guarded_call
from .errors import AcquireTimeout, LockHeld, LockLost, StorageError
from .models import LockRecord, validate_resource_key


logger = logging.getLogger(__name__)

DEFAULT_LEASE_MS = 30_000
LOCK_CONTENT_TYPE = "application/json"
CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def default_holder_id() -> str:
    """Identity for this process: `host:pid:random`."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class LockTable(Protocol):
    def try_acquire(self, resource_key: str, holder_id: str, lease_ms: int, info: str = "") -> LockRecord: ...

    def extend(self, resource_key: str, holder_id: str, fencing_token: int, lease_ms: int) -> LockRecord: ...

    def clear(self, resource_key: str, holder_id: str, fencing_token: int) -> bool: ...

    def describe(self, resource_key: str) -> Optional[LockRecord]: ...

    def force_clear(self, resource_key: str) -> Optional[LockRecord]: ...


class S3LockTable:
    """
    Lock records stored as `<prefix><resource_key>/lock.json`.

    Expiry is judged against the S3 server clock (the `Date` header of the
    read that observed the record), and every mutation is conditional on
    the observed ETag, so a reclaim only lands if the record the caller
    saw expire is still the current one.
    """

    def __init__(
        self,
        *,
        s3: Any,
        bucket: str,
        prefix: str = "",
        retry: RetryPolicy = RetryPolicy(),
        clock: Callable[[], datetime] = _utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._s3 = s3
        self._bucket = bucket
        clean = prefix.strip("/")
        self._prefix = f"{clean}/" if clean else ""
        self._retry = retry
        self._clock = clock
        self._sleep = sleep

    def lock_key(self, resource_key: str) -> str:
        return f"{self._prefix}{validate_resource_key(resource_key)}/lock.json"

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        return guarded_call(
            f"s3.{operation}",
            fn,
            retry=self._retry,
            passthrough=NOT_FOUND_CODES | PRECONDITION_CODES,
            sleep=self._sleep,
        )

    def _read(self, resource_key: str) -> Tuple[Optional[LockRecord], Optional[str], datetime]:
        key = self.lock_key(resource_key)
        try:
            resp = self._call("get_lock", lambda: self._s3.get_object(Bucket=self._bucket, Key=key))
        except ClientError as e:
            if is_not_found(e):
                return None, None, server_time(e.response) or self._clock()
            raise
        now = server_time(resp) or self._clock()
        try:
            record = LockRecord.model_validate_json(resp["Body"].read())
        except ValidationError as ex:
            raise StorageError("get_lock", f"Corrupt lock record at {key}") from ex
        etag = resp.get("ETag")
        return record, etag if isinstance(etag, str) else None, now

    def _write(self, resource_key: str, record: LockRecord, etag: Optional[str]) -> None:
        key = self.lock_key(resource_key)
        body = record.model_dump_json().encode("utf-8")
        cond = {"IfMatch": etag} if etag else {"IfNoneMatch": "*"}
        self._call(
            "put_lock",
            lambda: self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=LOCK_CONTENT_TYPE,
                **cond,
            ),
        )

    def try_acquire(self, resource_key: str, holder_id: str, lease_ms: int, info: str = "") -> LockRecord:
        current, etag, now = self._read(resource_key)
        if current is not None and current.is_active(now) and current.holder_id != holder_id:
            raise LockHeld(resource_key, current.holder_id, current.expires_at)

        record = LockRecord(
            resource_key=resource_key,
            holder_id=holder_id,
            acquired_at=now,
            lease_ms=lease_ms,
            fencing_token=(current.fencing_token if current else 0) + 1,
            info=info,
        )
        try:
            self._write(resource_key, record, etag)
        except ClientError as e:
            if is_precondition_failed(e):
                raise LockHeld(
                    resource_key, message=f"Lock on '{resource_key}' changed while acquiring"
                ) from e
            raise
        return record

    def extend(self, resource_key: str, holder_id: str, fencing_token: int, lease_ms: int) -> LockRecord:
        current, etag, now = self._read(resource_key)
        if current is None or current.holder_id != holder_id or current.fencing_token != fencing_token:
            raise LockLost(resource_key, fencing_token, holder_id)
        if current.acquired_at is None:
            raise StorageError("renew_lock", f"Lock record for '{resource_key}' has no acquisition time")
        # Keep acquired_at; stretch the lease to end `lease_ms` from now.
        elapsed_ms = max(0, int((now - current.acquired_at) / timedelta(milliseconds=1)))
        record = current.model_copy(update={"lease_ms": elapsed_ms + lease_ms})
        try:
            self._write(resource_key, record, etag)
        except ClientError as e:
            if is_precondition_failed(e):
                raise LockLost(resource_key, fencing_token, holder_id, "record changed during renewal") from e
            raise
        return record

    def clear(self, resource_key: str, holder_id: str, fencing_token: int) -> bool:
        current, etag, _now = self._read(resource_key)
        if current is None or current.holder_id != holder_id or current.fencing_token != fencing_token:
            return False
        try:
            self._write(resource_key, current.released(), etag)
        except ClientError as e:
            if is_precondition_failed(e):
                return False
            raise
        return True

    def describe(self, resource_key: str) -> Optional[LockRecord]:
        record, _etag, _now = self._read(resource_key)
        return record

    def force_clear(self, resource_key: str) -> Optional[LockRecord]:
        for _ in range(self._retry.max_attempts):
            current, etag, _now = self._read(resource_key)
            if current is None or current.holder_id is None:
                return None
            try:
                self._write(resource_key, current.released(), etag)
                return current
            except ClientError as e:
                if not is_precondition_failed(e):
                    raise
        raise StorageError("force_unlock", f"Lock on '{resource_key}' kept changing")


class DynamoLockTable:
    """
    Lock records as DynamoDB items keyed by `LockID` (string).

    Attributes: holder_id (S), acquired_at (S, ISO-8601), expires_at_ms (N),
    fencing_token (N), lock_info (S). Release removes the holder
    attributes and keeps fencing_token, so tokens keep increasing.

    Lease times come from the DynamoDB server clock (the `Date` header of a
    consistent read issued just before each write); the local clock is
    used only when the header is absent.
    """

    def __init__(
        self,
        *,
        dynamodb: Any,
        table_name: str,
        retry: RetryPolicy = RetryPolicy(),
        clock: Callable[[], datetime] = _utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._ddb = dynamodb
        self._table = table_name
        self._retry = retry
        self._clock = clock
        self._sleep = sleep

    @staticmethod
    def _key(resource_key: str) -> Dict[str, Any]:
        return {"LockID": {"S": validate_resource_key(resource_key)}}

    def _call(self, operation: str, fn: Callable[[], Any]) -> Any:
        return guarded_call(
            f"dynamodb.{operation}",
            fn,
            retry=self._retry,
            passthrough=(CONDITIONAL_CHECK_FAILED,),
            sleep=self._sleep,
        )

    def _server_now(self, resource_key: str) -> datetime:
        resp = self._call(
            "server_time",
            lambda: self._ddb.get_item(
                TableName=self._table,
                Key=self._key(resource_key),
                ConsistentRead=True,
                ProjectionExpression="LockID",
            ),
        )
        return server_time(resp) or self._clock()

    @staticmethod
    def _record(resource_key: str, item: Dict[str, Any]) -> LockRecord:
        holder = item.get("holder_id", {}).get("S")
        acquired_raw = item.get("acquired_at", {}).get("S")
        acquired_at = datetime.fromisoformat(acquired_raw) if acquired_raw else None
        expires_raw = item.get("expires_at_ms", {}).get("N")
        lease_ms = 0
        if acquired_at is not None and expires_raw is not None:
            lease_ms = max(0, int(expires_raw) - _to_ms(acquired_at))
        return LockRecord(
            resource_key=resource_key,
            holder_id=holder,
            acquired_at=acquired_at,
            lease_ms=lease_ms,
            fencing_token=int(item.get("fencing_token", {}).get("N", "0")),
            info=item.get("lock_info", {}).get("S", ""),
        )

    def try_acquire(self, resource_key: str, holder_id: str, lease_ms: int, info: str = "") -> LockRecord:
        now = self._server_now(resource_key)
        now_ms = _to_ms(now)
        try:
            resp = self._call(
                "acquire",
                lambda: self._ddb.update_item(
                    TableName=self._table,
                    Key=self._key(resource_key),
                    UpdateExpression=(
                        "SET holder_id = :holder, acquired_at = :acquired, "
                        "expires_at_ms = :expires, lock_info = :info "
                        "ADD fencing_token :one"
                    ),
                    ConditionExpression=(
                        "attribute_not_exists(holder_id) OR expires_at_ms <= :now OR holder_id = :holder"
                    ),
                    ExpressionAttributeValues={
                        ":holder": {"S": holder_id},
                        ":acquired": {"S": now.isoformat()},
                        ":expires": {"N": str(now_ms + lease_ms)},
                        ":info": {"S": info},
                        ":one": {"N": "1"},
                        ":now": {"N": str(now_ms)},
                    },
                    ReturnValues="ALL_NEW",
                    ReturnValuesOnConditionCheckFailure="ALL_OLD",
                ),
            )
        except ClientError as e:
            if error_code(e) != CONDITIONAL_CHECK_FAILED:
                raise
            old = e.response.get("Item")
            if old:
                held = self._record(resource_key, old)
                raise LockHeld(resource_key, held.holder_id, held.expires_at) from e
            raise LockHeld(resource_key) from e
        return self._record(resource_key, resp["Attributes"])

    def extend(self, resource_key: str, holder_id: str, fencing_token: int, lease_ms: int) -> LockRecord:
        expires_ms = _to_ms(self._server_now(resource_key)) + lease_ms
        try:
            resp = self._call(
                "renew",
                lambda: self._ddb.update_item(
                    TableName=self._table,
                    Key=self._key(resource_key),
                    UpdateExpression="SET expires_at_ms = :expires",
                    ConditionExpression="holder_id = :holder AND fencing_token = :token",
                    ExpressionAttributeValues={
                        ":expires": {"N": str(expires_ms)},
                        ":holder": {"S": holder_id},
                        ":token": {"N": str(fencing_token)},
                    },
                    ReturnValues="ALL_NEW",
                ),
            )
        except ClientError as e:
            if error_code(e) == CONDITIONAL_CHECK_FAILED:
                raise LockLost(resource_key, fencing_token, holder_id) from e
            raise
        return self._record(resource_key, resp["Attributes"])

    def clear(self, resource_key: str, holder_id: str, fencing_token: int) -> bool:
        try:
            self._call(
                "release",
                lambda: self._ddb.update_item(
                    TableName=self._table,
                    Key=self._key(resource_key),
                    UpdateExpression="REMOVE holder_id, acquired_at, expires_at_ms, lock_info",
                    ConditionExpression="holder_id = :holder AND fencing_token = :token",
                    ExpressionAttributeValues={
                        ":holder": {"S": holder_id},
                        ":token": {"N": str(fencing_token)},
                    },
                ),
            )
        except ClientError as e:
            if error_code(e) == CONDITIONAL_CHECK_FAILED:
                return False
            raise
        return True

    def describe(self, resource_key: str) -> Optional[LockRecord]:
        resp = self._call(
            "describe",
            lambda: self._ddb.get_item(TableName=self._table, Key=self._key(resource_key), ConsistentRead=True),
        )
        item = resp.get("Item")
        return self._record(resource_key, item) if item else None

    def force_clear(self, resource_key: str) -> Optional[LockRecord]:
        try:
            resp = self._call(
                "force_unlock",
                lambda: self._ddb.update_item(
                    TableName=self._table,
                    Key=self._key(resource_key),
                    UpdateExpression="REMOVE holder_id, acquired_at, expires_at_ms, lock_info",
                    ConditionExpression="attribute_exists(holder_id)",
                    ReturnValues="ALL_OLD",
                ),
            )
        except ClientError as e:
            if error_code(e) == CONDITIONAL_CHECK_FAILED:
                return None
            raise
        return self._record(resource_key, resp["Attributes"])


class LockManager:
    """
    Lease lock operations over a `LockTable`.

    - `acquire` is one atomic conditional write; `LockHeld` on contention.
    - `acquire_blocking` retries with exponential backoff and jitter until
      `timeout_s`, then raises `AcquireTimeout`.
    - `release` never raises on a stale token: the lock already moved on.
    """

    def __init__(
        self,
        table: LockTable,
        *,
        default_lease_ms: int = DEFAULT_LEASE_MS,
        acquire_timeout_s: float = 30.0,
        backoff: RetryPolicy = RetryPolicy(base_delay=0.05, max_delay=2.0, jitter=0.5),
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if default_lease_ms <= 0:
            raise ValueError("default_lease_ms must be > 0")
        self._table = table
        self._default_lease_ms = default_lease_ms
        self._acquire_timeout_s = acquire_timeout_s
        self._backoff = backoff
        self._monotonic = monotonic
        self._sleep = sleep

    @property
    def table(self) -> LockTable:
        return self._table

    @property
    def default_lease_ms(self) -> int:
        return self._default_lease_ms

    def _lease(self, lease_ms: Optional[int]) -> int:
        lease = self._default_lease_ms if lease_ms is None else lease_ms
        if lease <= 0:
            raise ValueError("lease_ms must be > 0")
        return lease

    def acquire(self, resource_key: str, holder_id: str, lease_ms: Optional[int] = None, *, info: str = "") -> int:
        """Single acquisition attempt; returns the new fencing token."""
        validate_resource_key(resource_key)
        record = self._table.try_acquire(resource_key, holder_id, self._lease(lease_ms), info)
        logger.info(
            f"Acquired lock on '{resource_key}' for {holder_id} "
            f"(token={record.fencing_token}, lease={record.lease_ms}ms)"
        )
        return record.fencing_token

    def acquire_blocking(
        self,
        resource_key: str,
        holder_id: str,
        lease_ms: Optional[int] = None,
        *,
        timeout_s: Optional[float] = None,
        info: str = "",
    ) -> int:
        timeout = self._acquire_timeout_s if timeout_s is None else timeout_s
        deadline = self._monotonic() + timeout
        attempt = 0
        while True:
            try:
                return self.acquire(resource_key, holder_id, lease_ms, info=info)
            except LockHeld as held:
                remaining = deadline - self._monotonic()
                if remaining <= 0:
                    raise AcquireTimeout(resource_key, timeout, held.holder_id, held.expires_at) from held
                delay = min(self._backoff.delay(attempt), remaining)
                logger.debug(f"Lock on '{resource_key}' busy ({held}); retrying in {delay:.2f}s")
                self._sleep(delay)
                attempt += 1

    def renew(
        self,
        resource_key: str,
        holder_id: str,
        fencing_token: int,
        lease_ms: Optional[int] = None,
    ) -> LockRecord:
        """Extend the lease; `LockLost` if the token no longer owns the lock."""
        return self._table.extend(resource_key, holder_id, fencing_token, self._lease(lease_ms))

    def release(self, resource_key: str, holder_id: str, fencing_token: int) -> None:
        if self._table.clear(resource_key, holder_id, fencing_token):
            logger.info(f"Released lock on '{resource_key}' (token={fencing_token})")
        else:
            logger.debug(f"Release of '{resource_key}' token={fencing_token} was a no-op")

    def describe(self, resource_key: str) -> Optional[LockRecord]:
        return self._table.describe(resource_key)

    def force_unlock(self, resource_key: str) -> Optional[LockRecord]:
        """Break the lock regardless of holder. Returns the record that was cleared."""
        previous = self._table.force_clear(resource_key)
        if previous is not None:
            logger.warning(
                f"Force-unlocked '{resource_key}' held by {previous.holder_id} (token={previous.fencing_token})"
            )
        return previous

    @contextmanager
    def keepalive(
        self,
        resource_key: str,
        holder_id: str,
        fencing_token: int,
        lease_ms: Optional[int] = None,
    ) -> Iterator[threading.Event]:
        """Renew the lease every lease/3 while the block runs.

        Yields an event that is set once a renewal fails; on exit raises
        `LockLost` if that happened.
        """
        lease = self._lease(lease_ms)
        interval_s = max(0.1, lease / 3000.0)
        stop_event = threading.Event()
        lost_event = threading.Event()

        def _heartbeat() -> None:
            while not stop_event.wait(interval_s):
                try:
                    self.renew(resource_key, holder_id, fencing_token, lease)
                except Exception as ex:
                    logger.warning(f"Lease renewal for '{resource_key}' failed: {ex}")
                    lost_event.set()
                    return

        thread = threading.Thread(target=_heartbeat, name=f"lease-{resource_key}", daemon=True)
        thread.start()
        try:
            yield lost_event
            if lost_event.is_set():
                raise LockLost(resource_key, fencing_token, holder_id, "lease renewal failed")
        finally:
            stop_event.set()
            thread.join(timeout=interval_s + 0.2)


__all__ = [
    "DEFAULT_LEASE_MS",
    "DynamoLockTable",
    "LockManager",
    "LockTable",
    "S3LockTable",
    "default_holder_id",
]
