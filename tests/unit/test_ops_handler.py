from __future__ import annotations

from typing import Dict, List, Optional

import pytest


def _patch_params(monkeypatch: pytest.MonkeyPatch, calls: List[str], key: Optional[str]) -> None:
    from ops import handler as ops

    def fake_load_ssm_params(prefix: str, names: list[str]) -> Dict[str, Optional[str]]:
        calls.append(prefix)
        return {name: key for name in names}

    monkeypatch.setenv("STATE_BUCKET", "test-bucket")
    monkeypatch.setenv("PARAM_PREFIX", "/tfstate/dev/")
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.delenv("STATE_KMS_KEY_ID", raising=False)
    monkeypatch.delenv("STATE_LOCAL_KEY", raising=False)
    monkeypatch.setattr(ops, "_load_ssm_params", fake_load_ssm_params)


def _commit(backend, key: str, payload: bytes) -> int:
    return backend.begin_session(key, "seeder").commit(payload)


def test_show_latest_and_specific_version(backend):
    from ops.handler import run_once

    _commit(backend, "prod", b'{"serial": 1}')
    _commit(backend, "prod", b'{"serial": 2}')

    out = run_once({"action": "show", "resource_key": "prod"}, backend)
    assert out["ok"] is True
    assert out["version"] == 2
    assert out["state"] == '{"serial": 2}'

    out = run_once({"action": "show", "resource_key": "prod", "version": "1"}, backend)
    assert out["version"] == 1
    assert out["state"] == '{"serial": 1}'


def test_history_is_newest_first(backend):
    from ops.handler import run_once

    for i in range(3):
        _commit(backend, "prod", f"v{i + 1}".encode())
    out = run_once({"action": "history", "resource_key": "prod", "limit": 2}, backend)
    assert [v["version"] for v in out["versions"]] == [3, 2]
    assert out["versions"][0]["key_ref"] == "k1"


def test_lock_info_and_force_unlock(backend):
    from ops.handler import run_once

    session = backend.begin_session("prod", "ci-runner-7", info="apply")
    out = run_once({"action": "lock_info", "resource_key": "prod"}, backend)
    assert out["lock"]["holder_id"] == "ci-runner-7"
    assert out["lock"]["fencing_token"] == session.fencing_token

    out = run_once({"action": "force_unlock", "resource_key": "prod"}, backend)
    assert out["released"]["holder_id"] == "ci-runner-7"
    assert run_once({"action": "lock_info", "resource_key": "prod"}, backend)["lock"]["holder_id"] is None

    out = run_once({"action": "force_unlock", "resource_key": "prod"}, backend)
    assert out["released"] is None


def test_restore(backend):
    from ops.handler import run_once

    _commit(backend, "prod", b"good")
    _commit(backend, "prod", b"bad")
    out = run_once({"action": "restore", "resource_key": "prod", "version": 1, "holder_id": "oncall"}, backend)
    assert out == {"ok": True, "resource_key": "prod", "version": 3}
    assert backend.peek("prod").payload == b"good"


def test_errors_are_reported_not_raised(backend):
    from ops.handler import run_once

    out = run_once({"action": "show", "resource_key": "prod", "version": 5}, backend)
    assert out["ok"] is False
    assert out["error_type"] == "NotFound"

    out = run_once({"action": "restore", "resource_key": "prod"}, backend)
    assert out["ok"] is False
    assert out["error_type"] == "ValueError"

    out = run_once({"action": "history"}, backend)
    assert out["error"] == "resource_key is required"


def test_unknown_action(backend):
    from ops.handler import run_once

    out = run_once({"action": "drop_table"}, backend)
    assert out["ok"] is False
    assert "history" in out["actions"]


def test_build_backend_uses_master_key_from_ssm(monkeypatch: pytest.MonkeyPatch):
    from cryptography.fernet import Fernet

    from ops import handler as ops
    from state.kms import LocalKeyring

    calls: List[str] = []
    _patch_params(monkeypatch, calls, Fernet.generate_key().decode())
    backend = ops._build_backend()
    assert calls == ["/tfstate/dev/"]
    assert isinstance(backend.gate.keys, LocalKeyring)


def test_build_backend_skips_ssm_when_kms_configured(monkeypatch: pytest.MonkeyPatch):
    from ops import handler as ops

    calls: List[str] = []
    _patch_params(monkeypatch, calls, None)
    monkeypatch.setenv("STATE_KMS_KEY_ID", "alias/tfstate")
    backend = ops._build_backend()
    assert calls == []
    assert backend.key_ref == "alias/tfstate"


def test_lambda_handler_builds_backend(monkeypatch: pytest.MonkeyPatch, backend):
    from ops import handler as ops

    monkeypatch.setattr(ops, "_build_backend", lambda: backend)
    monkeypatch.setenv("LOG_LEVEL", "debug")
    out = ops.lambda_handler({"action": "lock_info", "resource_key": "prod"}, None)
    assert out == {"ok": True, "resource_key": "prod", "lock": None}
