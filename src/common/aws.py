from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


# Error codes AWS services use for throttling and server-side faults.
TRANSIENT_ERROR_CODES = frozenset(
    {
        "SlowDown",
        "InternalError",
        "ServiceUnavailable",
        "RequestTimeout",
        "RequestTimeoutException",
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "ProvisionedThroughputExceededException",
        "TransactionInProgressException",
        "InternalServerError",
        "KMSInternalException",
        "DependencyTimeoutException",
        "503",
        "500",
    }
)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})
# S3 answers racing conditional writes with 412 or 409 ConditionalRequestConflict.
PRECONDITION_CODES = frozenset({"PreconditionFailed", "412", "ConditionalRequestConflict", "409"})

_TRANSPORT_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def make_client(
    service: str,
    *,
    region_name: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    timeout: float = 10.0,
) -> Any:
    """Create a boto3 client with explicit timeouts.

    botocore's own retries are disabled; callers wrap calls with
    `common.retry.call_with_retries` so there is one retry budget per call.
    """
    session = boto3.Session(region_name=region_name)
    return session.client(
        service,
        region_name=region_name,
        endpoint_url=endpoint_url,
        config=BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        ),
    )


def error_code(err: BaseException) -> str:
    if isinstance(err, ClientError):
        return str(err.response.get("Error", {}).get("Code", ""))
    return ""


def http_status(err: BaseException) -> Optional[int]:
    if isinstance(err, ClientError):
        status = err.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return int(status) if isinstance(status, int) else None
    return None


def is_not_found(err: BaseException) -> bool:
    return error_code(err) in NOT_FOUND_CODES


def is_precondition_failed(err: BaseException) -> bool:
    return error_code(err) in PRECONDITION_CODES


def is_transient(err: BaseException) -> bool:
    """True for throttling, 5xx and connection-level failures."""
    if isinstance(err, _TRANSPORT_ERRORS):
        return True
    if isinstance(err, ClientError):
        if error_code(err) in TRANSIENT_ERROR_CODES:
            return True
        status = http_status(err)
        return status is not None and status >= 500
    return False


def server_time(resp: Dict[str, Any]) -> Optional[datetime]:
    """Timestamp from the HTTP `Date` header of a botocore response, if any."""
    headers = resp.get("ResponseMetadata", {}).get("HTTPHeaders", {}) or {}
    raw = headers.get("date")
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__ = [
    "NOT_FOUND_CODES",
    "PRECONDITION_CODES",
    "TRANSIENT_ERROR_CODES",
    "error_code",
    "http_status",
    "is_not_found",
    "is_precondition_failed",
    "is_transient",
    "make_client",
    "server_time",
]
