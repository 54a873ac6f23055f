import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` / `state.*` imports,
    # and `tests/` for the shared fakes.
    tests_dir = os.path.abspath(os.path.dirname(__file__))
    root = os.path.dirname(tests_dir)
    for path in (os.path.join(root, "src"), tests_dir):
        if path not in sys.path:
            sys.path.insert(0, path)


BUCKET = "state-bucket"


@pytest.fixture
def clock():
    from fakes import FakeClock

    return FakeClock()


@pytest.fixture
def monotonic(clock):
    from fakes import FakeMonotonic

    return FakeMonotonic(wall=clock)


@pytest.fixture
def fake_s3(clock):
    from fakes import FakeS3

    return FakeS3(clock=clock)


@pytest.fixture
def keyring():
    from cryptography.fernet import Fernet

    from state.kms import LocalKeyring

    return LocalKeyring({"k1": Fernet.generate_key(), "k2": Fernet.generate_key()})


@pytest.fixture
def fast_retry():
    from common.retry import RetryPolicy

    return RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0)


@pytest.fixture
def store(fake_s3, clock, fast_retry):
    from state.s3_store import S3VersionedStore

    return S3VersionedStore(s3=fake_s3, bucket=BUCKET, prefix="env", retry=fast_retry, clock=clock)


@pytest.fixture
def lock_table(fake_s3, clock, fast_retry):
    from state.lock import S3LockTable

    return S3LockTable(s3=fake_s3, bucket=BUCKET, prefix="env", retry=fast_retry, clock=clock)


@pytest.fixture
def locks(lock_table, monotonic):
    from state.lock import LockManager

    return LockManager(
        lock_table,
        default_lease_ms=30_000,
        acquire_timeout_s=0.0,
        monotonic=monotonic,
        sleep=monotonic.sleep,
    )


@pytest.fixture
def gate(keyring):
    from state.crypto import EncryptionGate

    return EncryptionGate(keyring)


@pytest.fixture
def backend(store, locks, gate):
    from state.backend import StateBackend

    return StateBackend(store=store, locks=locks, gate=gate, key_ref="k1")
