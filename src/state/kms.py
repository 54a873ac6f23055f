"""
Key-management collaborators for envelope encryption.

A key service hands out a fresh data key per seal (`generate_data_key`)
and unwraps it again on unseal (`decrypt_data_key`). The plaintext data
key never leaves the process; only its wrapped form is stored.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from common.aws import error_code, is_transient, make_client
from common.retry import RetryExhaustedError, RetryPolicy, call_with_retries

from .errors import DecryptionFailure, KeyUnavailable


DATA_KEY_BYTES = 32

_KEY_UNAVAILABLE_CODES = frozenset(
    {
        "NotFoundException",
        "DisabledException",
        "AccessDeniedException",
        "KMSInvalidStateException",
        "InvalidKeyUsageException",
        "KeyUnavailableException",
        "UnrecognizedClientException",
    }
)
_BAD_CIPHERTEXT_CODES = frozenset({"InvalidCiphertextException", "IncorrectKeyException"})


@dataclass(frozen=True)
class DataKey:
    key_ref: str
    plaintext: bytes
    wrapped: bytes


class KeyService(Protocol):
    def generate_data_key(self, key_ref: str) -> DataKey: ...

    def decrypt_data_key(self, key_ref: str, wrapped: bytes) -> bytes: ...


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


class LocalKeyring:
    """
    Key service backed by named Fernet master keys held in memory.

    Suitable for local development and tests, or when the master key is
    delivered out of band (e.g., an SSM SecureString).
    """

    def __init__(self, keys: Mapping[str, str | bytes]) -> None:
        self._keys: Dict[str, Fernet] = {}
        for name, key in keys.items():
            try:
                self._keys[name] = _to_fernet(key)
            except (ValueError, TypeError) as ex:
                raise ValueError(f"Invalid Fernet master key for '{name}'") from ex

    def _master(self, key_ref: str) -> Fernet:
        master = self._keys.get(key_ref)
        if master is None:
            raise KeyUnavailable(key_ref, "no such key in local keyring")
        return master

    def generate_data_key(self, key_ref: str) -> DataKey:
        master = self._master(key_ref)
        plaintext = os.urandom(DATA_KEY_BYTES)
        return DataKey(key_ref=key_ref, plaintext=plaintext, wrapped=master.encrypt(plaintext))

    def decrypt_data_key(self, key_ref: str, wrapped: bytes) -> bytes:
        master = self._master(key_ref)
        try:
            return master.decrypt(wrapped)
        except InvalidToken as ex:
            raise DecryptionFailure(f"Failed to unwrap data key with '{key_ref}'") from ex


class AwsKmsKeyService:
    """
    AWS KMS key service.

    - `generate_data_key` issues an AES-256 data key under `key_ref`
      (key id, ARN, or alias).
    - Throttling and KMS-internal errors are retried; missing, disabled or
      unauthorized keys surface as `KeyUnavailable`.
    """

    def __init__(
        self,
        *,
        kms: Optional[Any] = None,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        timeout: float = 10.0,
        retry: RetryPolicy = RetryPolicy(),
    ) -> None:
        self._kms = kms or make_client(
            "kms", region_name=region_name, endpoint_url=endpoint_url, timeout=timeout
        )
        self._retry = retry

    def _call(self, operation: str, key_ref: str, **kwargs: Any) -> Dict[str, Any]:
        fn = getattr(self._kms, operation)
        try:
            return call_with_retries(
                lambda: fn(**kwargs),
                operation=f"kms.{operation}",
                is_transient=is_transient,
                policy=self._retry,
            )
        except RetryExhaustedError as ex:
            raise KeyUnavailable(key_ref, f"KMS unavailable: {ex.last_exc}") from ex
        except ClientError as ex:
            code = error_code(ex)
            if code in _BAD_CIPHERTEXT_CODES:
                raise DecryptionFailure(f"KMS rejected wrapped key for '{key_ref}' ({code})") from ex
            if code in _KEY_UNAVAILABLE_CODES:
                raise KeyUnavailable(key_ref, code) from ex
            raise KeyUnavailable(key_ref, f"unexpected KMS error {code or ex}") from ex

    def generate_data_key(self, key_ref: str) -> DataKey:
        resp = self._call("generate_data_key", key_ref, KeyId=key_ref, KeySpec="AES_256")
        return DataKey(key_ref=key_ref, plaintext=resp["Plaintext"], wrapped=resp["CiphertextBlob"])

    def decrypt_data_key(self, key_ref: str, wrapped: bytes) -> bytes:
        resp = self._call("decrypt", key_ref, KeyId=key_ref, CiphertextBlob=wrapped)
        return resp["Plaintext"]


__all__ = [
    "AwsKmsKeyService",
    "DataKey",
    "KeyService",
    "LocalKeyring",
]
