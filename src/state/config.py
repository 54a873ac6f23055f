from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .crypto import AES256_GCM, ALGORITHMS


# Environment variable names
ENV_BUCKET = "STATE_BUCKET"
ENV_PREFIX = "STATE_PREFIX"
ENV_KMS_KEY_ID = "STATE_KMS_KEY_ID"
ENV_LOCAL_KEY = "STATE_LOCAL_KEY"
ENV_LOCK_TABLE = "STATE_LOCK_TABLE"
ENV_REGION = "STATE_REGION"
ENV_ENDPOINT_URL = "STATE_ENDPOINT_URL"
ENV_LEASE_MS = "STATE_LEASE_MS"
ENV_ACQUIRE_TIMEOUT_S = "STATE_ACQUIRE_TIMEOUT_S"
ENV_REQUEST_TIMEOUT_S = "STATE_REQUEST_TIMEOUT_S"
ENV_MAX_ATTEMPTS = "STATE_MAX_ATTEMPTS"
ENV_ALGORITHM = "STATE_ALGORITHM"
ENV_SSE_KMS_KEY_ID = "STATE_SSE_KMS_KEY_ID"

# Key reference used for the in-process Fernet master key.
LOCAL_KEY_REF = "local"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


class BackendConfig(BaseModel):
    """
    Settings for a `StateBackend`.

    Fields
    - bucket / prefix: where version history and (without a lock table)
      lock records live.
    - kms_key_id: KMS key used for envelope encryption. When absent,
      `local_master_key` (a Fernet key) must be given instead.
    - lock_table: DynamoDB table for lock records; None uses S3 lock objects.
    - sse_kms_key_id: optional S3 server-side encryption key, applied on
      top of client-side encryption.
    """

    bucket: str
    prefix: str = ""
    kms_key_id: Optional[str] = None
    local_master_key: Optional[str] = Field(default=None, repr=False)
    lock_table: Optional[str] = None
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None
    lease_ms: int = Field(default=30_000, gt=0)
    acquire_timeout_s: float = Field(default=30.0, ge=0)
    request_timeout_s: float = Field(default=10.0, gt=0)
    max_attempts: int = Field(default=4, ge=1)
    algorithm: str = AES256_GCM
    sse_kms_key_id: Optional[str] = None

    @field_validator("algorithm")
    @classmethod
    def _known_algorithm(cls, value: str) -> str:
        if value not in ALGORITHMS:
            raise ValueError(f"algorithm must be one of {', '.join(ALGORITHMS)}")
        return value

    @property
    def key_ref(self) -> str:
        return self.kms_key_id or LOCAL_KEY_REF

    @classmethod
    def from_env(cls, *, local_master_key: Optional[str] = None) -> "BackendConfig":
        """Build from `STATE_*` environment variables.

        `local_master_key` is used when neither `STATE_KMS_KEY_ID` nor
        `STATE_LOCAL_KEY` is set (e.g., a key fetched from SSM).
        """
        bucket = _require(_getenv(ENV_BUCKET), ENV_BUCKET)
        kms_key_id = _getenv(ENV_KMS_KEY_ID)
        local_key = _getenv(ENV_LOCAL_KEY) or local_master_key
        if not kms_key_id and not local_key:
            raise RuntimeError(
                f"Missing required configuration: {ENV_KMS_KEY_ID} or {ENV_LOCAL_KEY}"
            )

        values = {
            "bucket": bucket,
            "prefix": _getenv(ENV_PREFIX, ""),
            "kms_key_id": kms_key_id,
            "local_master_key": local_key if not kms_key_id else None,
            "lock_table": _getenv(ENV_LOCK_TABLE),
            "region_name": _getenv(ENV_REGION) or _getenv("AWS_REGION"),
            "endpoint_url": _getenv(ENV_ENDPOINT_URL),
            "lease_ms": _getenv(ENV_LEASE_MS),
            "acquire_timeout_s": _getenv(ENV_ACQUIRE_TIMEOUT_S),
            "request_timeout_s": _getenv(ENV_REQUEST_TIMEOUT_S),
            "max_attempts": _getenv(ENV_MAX_ATTEMPTS),
            "algorithm": _getenv(ENV_ALGORITHM),
            "sse_kms_key_id": _getenv(ENV_SSE_KMS_KEY_ID),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})


__all__ = ["BackendConfig", "LOCAL_KEY_REF"]
