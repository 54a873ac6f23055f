from __future__ import annotations

import base64
import hashlib
import json
import re
import struct
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import DecryptionFailure


BLOB_MAGIC = b"RSB1"
_HEADER_LEN = struct.Struct(">I")
_MAX_HEADER_BYTES = 64 * 1024

_RESOURCE_KEY_RE = re.compile(r"^[A-Za-z0-9._/\-]{1,512}$")


def validate_resource_key(resource_key: str) -> str:
    """Return `resource_key` if it is usable as a storage path segment.

    Allowed: 1-512 chars of `[A-Za-z0-9._/-]`, no leading `/`, no `..` or
    empty path segments.
    """
    if not isinstance(resource_key, str) or not _RESOURCE_KEY_RE.match(resource_key):
        raise ValueError(f"Invalid resource key: {resource_key!r}")
    if resource_key.startswith("/") or resource_key.endswith("/"):
        raise ValueError(f"Resource key must not start or end with '/': {resource_key!r}")
    if any(part in ("", "..") for part in resource_key.split("/")):
        raise ValueError(f"Resource key has an empty or '..' segment: {resource_key!r}")
    return resource_key


def content_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class StateDocument(BaseModel):
    """
    A full snapshot of the protected state.

    Fields
    - payload: opaque plaintext bytes (the serialized infrastructure state).
    - version: the store version this document was read at, or will be
      committed as. 0 means "never written".
    - content_hash: hex SHA-256 of `payload`. Computed when omitted;
      a supplied hash that does not match is rejected, and the model is
      frozen so the hash can never go stale.
    """

    model_config = ConfigDict(frozen=True)

    payload: bytes = Field(default=b"", description="Plaintext state bytes")
    version: int = Field(default=0, ge=0, description="Store version")
    content_hash: str = Field(default="", description="Hex SHA-256 of payload")

    @model_validator(mode="before")
    @classmethod
    def _fill_hash(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("content_hash"):
            payload = data.get("payload", b"")
            if isinstance(payload, str):
                payload = payload.encode("utf-8")
            if isinstance(payload, (bytes, bytearray, memoryview)):
                data = dict(data)
                data["content_hash"] = content_hash(bytes(payload))
        return data

    @model_validator(mode="after")
    def _check_hash(self) -> "StateDocument":
        actual = content_hash(self.payload)
        if self.content_hash != actual:
            raise ValueError("content_hash does not match payload")
        return self

    @classmethod
    def create(cls, payload: bytes, version: int = 0) -> "StateDocument":
        return cls(payload=payload, version=version)

    @classmethod
    def empty(cls) -> "StateDocument":
        """Convenience constructor for a never-written resource."""
        return cls()

    def with_version(self, version: int) -> "StateDocument":
        return StateDocument(payload=self.payload, version=version, content_hash=self.content_hash)

    def text(self, encoding: str = "utf-8") -> str:
        return self.payload.decode(encoding)


def _b64(data: Optional[bytes]) -> Optional[str]:
    return None if data is None else base64.b64encode(data).decode("ascii")


def _unb64(data: Optional[str]) -> Optional[bytes]:
    return None if data is None else base64.b64decode(data.encode("ascii"), validate=True)


class EncryptedBlob(BaseModel):
    """
    Ciphertext plus everything needed to decrypt it later.

    Wire format (`to_bytes`)::

        b"RSB1" | uint32 big-endian header length | JSON header | ciphertext

    The JSON header holds every field except `ciphertext`; its canonical
    encoding doubles as associated data for AEAD algorithms, so editing
    any header field invalidates the ciphertext.
    """

    model_config = ConfigDict(frozen=True)

    ciphertext: bytes
    key_ref: str
    algorithm: str
    wrapped_key: bytes
    nonce: Optional[bytes] = None
    content_hash: str
    version: int = Field(default=0, ge=0)

    def header(self) -> Dict[str, Any]:
        return {
            "alg": self.algorithm,
            "key_ref": self.key_ref,
            "wrapped_key": _b64(self.wrapped_key),
            "nonce": _b64(self.nonce),
            "content_hash": self.content_hash,
            "version": self.version,
        }

    def associated_data(self) -> bytes:
        return json.dumps(self.header(), separators=(",", ":"), sort_keys=True).encode("utf-8")

    def to_bytes(self) -> bytes:
        header = self.associated_data()
        return BLOB_MAGIC + _HEADER_LEN.pack(len(header)) + header + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedBlob":
        """Parse a framed blob; malformed input raises `DecryptionFailure`."""
        prefix = len(BLOB_MAGIC) + _HEADER_LEN.size
        if len(data) < prefix or not data.startswith(BLOB_MAGIC):
            raise DecryptionFailure("Malformed blob: missing or unknown magic")
        (hlen,) = _HEADER_LEN.unpack_from(data, len(BLOB_MAGIC))
        if hlen > _MAX_HEADER_BYTES or prefix + hlen > len(data):
            raise DecryptionFailure("Malformed blob: header length out of range")
        try:
            header = json.loads(data[prefix : prefix + hlen].decode("utf-8"))
            return cls(
                ciphertext=data[prefix + hlen :],
                key_ref=header["key_ref"],
                algorithm=header["alg"],
                wrapped_key=_unb64(header["wrapped_key"]),
                nonce=_unb64(header.get("nonce")),
                content_hash=header["content_hash"],
                version=int(header.get("version", 0)),
            )
        except (ValueError, KeyError, TypeError, ValidationError) as ex:
            raise DecryptionFailure(f"Malformed blob header: {ex}") from ex


class LockRecord(BaseModel):
    """
    Lease-based lock record for one resource key.

    `holder_id is None` means the record is released; the fencing token
    is kept so the next acquisition still issues a larger one.
    """

    resource_key: str
    holder_id: Optional[str] = None
    acquired_at: Optional[datetime] = None
    lease_ms: int = Field(default=0, ge=0)
    fencing_token: int = Field(default=0, ge=0)
    info: str = ""

    @property
    def expires_at(self) -> Optional[datetime]:
        if self.acquired_at is None:
            return None
        return self.acquired_at + timedelta(milliseconds=self.lease_ms)

    def is_active(self, now: datetime) -> bool:
        expires = self.expires_at
        return self.holder_id is not None and expires is not None and now < expires

    def released(self) -> "LockRecord":
        return LockRecord(resource_key=self.resource_key, fencing_token=self.fencing_token)


class VersionInfo(BaseModel):
    """Metadata of one entry in a resource's version history."""

    version: int = Field(..., ge=1)
    written_at: datetime
    size: int = 0
    content_hash: str
    key_ref: str
    algorithm: str
    fencing_token: Optional[int] = None

    def to_metadata(self) -> Dict[str, str]:
        # S3 user metadata: string values only, lowercased keys on read.
        meta = {
            "version": str(self.version),
            "written-at": self.written_at.isoformat(),
            "content-hash": self.content_hash,
            "key-ref": self.key_ref,
            "algorithm": self.algorithm,
        }
        if self.fencing_token is not None:
            meta["fencing-token"] = str(self.fencing_token)
        return meta

    @classmethod
    def from_metadata(cls, meta: Dict[str, str], *, size: int = 0) -> "VersionInfo":
        token = meta.get("fencing-token")
        return cls(
            version=int(meta["version"]),
            written_at=datetime.fromisoformat(meta["written-at"]),
            size=size,
            content_hash=meta["content-hash"],
            key_ref=meta["key-ref"],
            algorithm=meta["algorithm"],
            fencing_token=int(token) if token not in (None, "") else None,
        )


__all__ = [
    "BLOB_MAGIC",
    "EncryptedBlob",
    "LockRecord",
    "StateDocument",
    "VersionInfo",
    "content_hash",
    "validate_resource_key",
]
