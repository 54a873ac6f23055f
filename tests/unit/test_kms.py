from __future__ import annotations

import boto3
import pytest
from botocore.stub import Stubber
from cryptography.fernet import Fernet

from common.retry import RetryPolicy
from state.crypto import EncryptionGate
from state.errors import DecryptionFailure, KeyUnavailable
from state.kms import AwsKmsKeyService, LocalKeyring
from state.models import StateDocument


KEY_REF = "alias/terraform-state"


@pytest.fixture
def kms_client():
    client = boto3.client(
        "kms",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


def _service(client) -> AwsKmsKeyService:
    return AwsKmsKeyService(kms=client, retry=RetryPolicy(max_attempts=2, base_delay=0.0, jitter=0.0))


def test_generate_data_key(kms_client):
    client, stubber = kms_client
    stubber.add_response(
        "generate_data_key",
        {"Plaintext": b"p" * 32, "CiphertextBlob": b"wrapped-by-kms", "KeyId": "arn:aws:kms:us-east-1:1:key/x"},
        {"KeyId": KEY_REF, "KeySpec": "AES_256"},
    )
    key = _service(client).generate_data_key(KEY_REF)
    assert key.plaintext == b"p" * 32
    assert key.wrapped == b"wrapped-by-kms"
    assert key.key_ref == KEY_REF


def test_decrypt_data_key(kms_client):
    client, stubber = kms_client
    stubber.add_response(
        "decrypt",
        {"Plaintext": b"p" * 32, "KeyId": "arn:aws:kms:us-east-1:1:key/x"},
        {"KeyId": KEY_REF, "CiphertextBlob": b"wrapped-by-kms"},
    )
    assert _service(client).decrypt_data_key(KEY_REF, b"wrapped-by-kms") == b"p" * 32


@pytest.mark.parametrize("code", ["NotFoundException", "DisabledException", "AccessDeniedException"])
def test_missing_or_forbidden_key_is_unavailable(kms_client, code):
    client, stubber = kms_client
    stubber.add_client_error("generate_data_key", service_error_code=code, http_status_code=400)
    with pytest.raises(KeyUnavailable) as info:
        _service(client).generate_data_key(KEY_REF)
    assert info.value.key_ref == KEY_REF


def test_bad_ciphertext_is_decryption_failure(kms_client):
    client, stubber = kms_client
    stubber.add_client_error("decrypt", service_error_code="InvalidCiphertextException", http_status_code=400)
    with pytest.raises(DecryptionFailure):
        _service(client).decrypt_data_key(KEY_REF, b"junk")


def test_throttling_is_retried(kms_client):
    client, stubber = kms_client
    stubber.add_client_error("generate_data_key", service_error_code="ThrottlingException", http_status_code=400)
    stubber.add_response(
        "generate_data_key",
        {"Plaintext": b"p" * 32, "CiphertextBlob": b"w", "KeyId": "k"},
        {"KeyId": KEY_REF, "KeySpec": "AES_256"},
    )
    assert _service(client).generate_data_key(KEY_REF).wrapped == b"w"


def test_persistent_kms_outage_is_key_unavailable(kms_client):
    client, stubber = kms_client
    for _ in range(2):
        stubber.add_client_error("decrypt", service_error_code="KMSInternalException", http_status_code=500)
    with pytest.raises(KeyUnavailable):
        _service(client).decrypt_data_key(KEY_REF, b"w")


def test_local_keyring_rejects_invalid_master_key():
    with pytest.raises(ValueError):
        LocalKeyring({"k1": "not-a-fernet-key"})


def test_gate_over_kms_roundtrip(kms_client):
    client, stubber = kms_client
    data_key = Fernet.generate_key()[:32]
    stubber.add_response(
        "generate_data_key",
        {"Plaintext": data_key, "CiphertextBlob": b"wrapped", "KeyId": "k"},
        {"KeyId": KEY_REF, "KeySpec": "AES_256"},
    )
    stubber.add_response(
        "decrypt",
        {"Plaintext": data_key, "KeyId": "k"},
        {"KeyId": KEY_REF, "CiphertextBlob": b"wrapped"},
    )
    gate = EncryptionGate(_service(client))
    doc = StateDocument.create(b"terraform state", version=1)
    assert gate.unseal(gate.seal(doc, KEY_REF)) == doc
