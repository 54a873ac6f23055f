from __future__ import annotations

import base64
import hmac
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoError, DecryptionFailure, EncryptionFailure, IntegrityMismatch, KeyUnavailable
from .kms import KeyService
from .models import EncryptedBlob, StateDocument, content_hash


logger = logging.getLogger(__name__)

AES256_GCM = "AES256_GCM"
FERNET = "FERNET"
ALGORITHMS = (AES256_GCM, FERNET)

_GCM_NONCE_BYTES = 12


class EncryptionGate:
    """
    Envelope encryption for state documents.

    Usage
    - `seal(doc, key_ref)` asks the key service for a fresh data key,
      encrypts the payload with it, and returns a self-describing blob
      carrying the wrapped data key.
    - `unseal(blob)` unwraps the data key via the key service, decrypts,
      and verifies the recovered payload against the recorded hash.

    Algorithms
    - AES256_GCM (default): the blob header is authenticated as
      associated data.
    - FERNET: AES-128-CBC + HMAC-SHA256 using the 32-byte data key as a
      Fernet key; header integrity rests on the content hash check.
    """

    def __init__(self, keys: KeyService, *, algorithm: str = AES256_GCM) -> None:
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unsupported algorithm: {algorithm}")
        self._keys = keys
        self._algorithm = algorithm

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def keys(self) -> KeyService:
        return self._keys

    def seal(self, document: StateDocument, key_ref: str) -> EncryptedBlob:
        data_key = self._keys.generate_data_key(key_ref)
        nonce = os.urandom(_GCM_NONCE_BYTES) if self._algorithm == AES256_GCM else None
        draft = EncryptedBlob(
            ciphertext=b"",
            key_ref=key_ref,
            algorithm=self._algorithm,
            wrapped_key=data_key.wrapped,
            nonce=nonce,
            content_hash=document.content_hash,
            version=document.version,
        )
        try:
            if self._algorithm == AES256_GCM:
                ciphertext = AESGCM(data_key.plaintext).encrypt(
                    nonce, document.payload, draft.associated_data()
                )
            else:
                ciphertext = _fernet_for(data_key.plaintext).encrypt(document.payload)
        except (ValueError, TypeError, OverflowError) as ex:
            raise EncryptionFailure(f"Failed to encrypt state with {self._algorithm}: {ex}") from ex

        blob = draft.model_copy(update={"ciphertext": ciphertext})
        logger.debug(
            f"Sealed {len(document.payload)} bytes (v{document.version}) with {key_ref} / {self._algorithm}"
        )
        return blob

    def unseal(self, blob: EncryptedBlob, *, expected_hash: Optional[str] = None) -> StateDocument:
        """Decrypt `blob`; see class docs for failure modes.

        Raises:
        - DecryptionFailure for an inaccessible key, malformed ciphertext,
          unknown algorithm or failed authentication.
        - IntegrityMismatch if the plaintext hash differs from the blob's
          recorded hash or from `expected_hash`.
        """
        try:
            data_key = self._keys.decrypt_data_key(blob.key_ref, blob.wrapped_key)
        except KeyUnavailable as ex:
            raise DecryptionFailure(f"Cannot unwrap data key: {ex}") from ex
        try:
            if blob.algorithm == AES256_GCM:
                if blob.nonce is None or len(blob.nonce) != _GCM_NONCE_BYTES:
                    raise DecryptionFailure("Missing or invalid AES-GCM nonce")
                plaintext = AESGCM(data_key).decrypt(blob.nonce, blob.ciphertext, blob.associated_data())
            elif blob.algorithm == FERNET:
                plaintext = _fernet_for(data_key).decrypt(blob.ciphertext)
            else:
                raise DecryptionFailure(f"Unknown algorithm: {blob.algorithm}")
        except CryptoError:
            raise
        except (InvalidTag, InvalidToken) as ex:
            raise DecryptionFailure("Ciphertext failed authentication") from ex
        except (ValueError, TypeError) as ex:
            raise DecryptionFailure(f"Failed to decrypt state: {ex}") from ex

        actual = content_hash(plaintext)
        for expected in (blob.content_hash, expected_hash):
            if expected is not None and not hmac.compare_digest(expected.encode("utf-8"), actual.encode("utf-8")):
                raise IntegrityMismatch(expected, actual)
        return StateDocument(payload=plaintext, version=blob.version, content_hash=actual)


def _fernet_for(data_key: bytes) -> Fernet:
    if len(data_key) != 32:
        raise ValueError("Fernet data key must be 32 bytes")
    return Fernet(base64.urlsafe_b64encode(data_key))


__all__ = [
    "AES256_GCM",
    "ALGORITHMS",
    "EncryptionGate",
    "FERNET",
]
