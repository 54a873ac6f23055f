from __future__ import annotations

import os
import random

import pytest
from cryptography.fernet import Fernet

from state.crypto import AES256_GCM, FERNET, EncryptionGate
from state.errors import DecryptionFailure, IntegrityMismatch, KeyUnavailable
from state.kms import LocalKeyring
from state.models import EncryptedBlob, StateDocument


@pytest.mark.parametrize("algorithm", [AES256_GCM, FERNET])
def test_seal_unseal_roundtrip(keyring, algorithm):
    gate = EncryptionGate(keyring, algorithm=algorithm)
    doc = StateDocument.create(b'{"serial": 12, "resources": ["vpc"]}', version=4)

    blob = gate.seal(doc, "k1")
    assert blob.algorithm == algorithm
    assert blob.key_ref == "k1"
    assert blob.content_hash == doc.content_hash
    assert b"resources" not in blob.ciphertext

    assert gate.unseal(blob) == doc


def test_ten_mebibytes_of_random_bytes_roundtrip(keyring):
    gate = EncryptionGate(keyring)
    payload = random.Random(1234).randbytes(10 * 1024 * 1024)
    doc = StateDocument.create(payload, version=1)

    blob = EncryptedBlob.from_bytes(gate.seal(doc, "k1").to_bytes())
    assert gate.unseal(blob).payload == payload


def test_each_seal_uses_a_fresh_data_key(gate):
    doc = StateDocument.create(b"same", version=1)
    a = gate.seal(doc, "k1")
    b = gate.seal(doc, "k1")
    assert a.wrapped_key != b.wrapped_key
    assert a.ciphertext != b.ciphertext


@pytest.mark.parametrize("algorithm", [AES256_GCM, FERNET])
def test_tampered_ciphertext_fails(keyring, algorithm):
    gate = EncryptionGate(keyring, algorithm=algorithm)
    blob = gate.seal(StateDocument.create(b"payload", version=1), "k1")
    flipped = bytearray(blob.ciphertext)
    flipped[len(flipped) // 2] ^= 0x01
    tampered = blob.model_copy(update={"ciphertext": bytes(flipped)})

    with pytest.raises(DecryptionFailure):
        gate.unseal(tampered)


def test_gcm_header_tampering_fails_authentication(gate):
    blob = gate.seal(StateDocument.create(b"payload", version=1), "k1")
    with pytest.raises(DecryptionFailure):
        gate.unseal(blob.model_copy(update={"version": 2}))


def test_fernet_hash_tampering_is_detected(keyring):
    gate = EncryptionGate(keyring, algorithm=FERNET)
    blob = gate.seal(StateDocument.create(b"payload", version=1), "k1")
    forged = blob.model_copy(update={"content_hash": "0" * 64})
    with pytest.raises(IntegrityMismatch):
        gate.unseal(forged)


def test_expected_hash_mismatch(gate):
    blob = gate.seal(StateDocument.create(b"payload", version=1), "k1")
    with pytest.raises(IntegrityMismatch):
        gate.unseal(blob, expected_hash=StateDocument.create(b"other").content_hash)


def test_unknown_key_ref_is_unavailable(gate):
    with pytest.raises(KeyUnavailable):
        gate.seal(StateDocument.create(b"x"), "missing")


def test_unseal_with_foreign_keyring(gate):
    blob = gate.seal(StateDocument.create(b"x", version=1), "k1")
    stranger = EncryptionGate(LocalKeyring({"k1": Fernet.generate_key()}))
    with pytest.raises(DecryptionFailure):
        stranger.unseal(blob)


def test_swapped_wrapped_key_fails(gate):
    a = gate.seal(StateDocument.create(b"a", version=1), "k1")
    b = gate.seal(StateDocument.create(b"b", version=1), "k2")
    with pytest.raises(DecryptionFailure):
        gate.unseal(a.model_copy(update={"wrapped_key": b.wrapped_key}))


def test_unknown_algorithm_rejected(gate, keyring):
    with pytest.raises(ValueError):
        EncryptionGate(keyring, algorithm="ROT13")
    blob = gate.seal(StateDocument.create(b"x", version=1), "k1")
    with pytest.raises(DecryptionFailure):
        gate.unseal(blob.model_copy(update={"algorithm": "ROT13"}))


def test_bad_nonce_rejected(gate):
    blob = gate.seal(StateDocument.create(b"x", version=1), "k1")
    with pytest.raises(DecryptionFailure):
        gate.unseal(blob.model_copy(update={"nonce": os.urandom(4)}))


def test_unseal_with_missing_key_ref_is_decryption_failure(gate):
    blob = gate.seal(StateDocument.create(b"x", version=1), "k1")
    other = EncryptionGate(LocalKeyring({"k2": Fernet.generate_key()}))
    with pytest.raises(DecryptionFailure) as info:
        other.unseal(blob)
    assert isinstance(info.value.__cause__, KeyUnavailable)
