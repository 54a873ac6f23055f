from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, Iterable, Optional

import boto3
from botocore.exceptions import ClientError

from state.backend import StateBackend
from state.config import BackendConfig
from state.errors import StateBackendError


logger = logging.getLogger(__name__)

ENV_PARAM_PREFIX = "PARAM_PREFIX"
ENV_LOG_LEVEL = "LOG_LEVEL"

DEFAULT_HISTORY_LIMIT = 20


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _load_ssm_params(prefix: str, names: Iterable[str]) -> Dict[str, Optional[str]]:
    ssm = boto3.client("ssm")
    out: Dict[str, Optional[str]] = {k: None for k in names}
    for name in names:
        full = f"{prefix}{name}"
        try:
            resp = ssm.get_parameter(Name=full, WithDecryption=True)
        except ClientError as e:
            # Leave as None if parameter missing or access denied
            code = e.response.get("Error", {}).get("Code")
            if code in ("ParameterNotFound", "AccessDeniedException"):
                out[name] = None
                continue
            raise
        val = resp.get("Parameter", {}).get("Value")
        out[name] = val if isinstance(val, str) and val != "" else None
    return out


def _build_backend() -> StateBackend:
    master_key: Optional[str] = None
    prefix = _getenv(ENV_PARAM_PREFIX)
    if prefix and not _getenv("STATE_KMS_KEY_ID") and not _getenv("STATE_LOCAL_KEY"):
        master_key = _load_ssm_params(prefix, ["state_master_key"]).get("state_master_key")
    return StateBackend.from_config(BackendConfig.from_env(local_master_key=master_key))


def _resource_key(event: Dict[str, Any]) -> str:
    key = event.get("resource_key")
    if not isinstance(key, str) or not key:
        raise ValueError("resource_key is required")
    return key


def _show(backend: StateBackend, event: Dict[str, Any]) -> Dict[str, Any]:
    key = _resource_key(event)
    version = event.get("version")
    doc = backend.read_version(key, int(version)) if version is not None else backend.peek(key)
    return {
        "ok": True,
        "resource_key": key,
        "version": doc.version,
        "content_hash": doc.content_hash,
        "size": len(doc.payload),
        "state": doc.payload.decode("utf-8", errors="replace"),
    }


def _history(backend: StateBackend, event: Dict[str, Any]) -> Dict[str, Any]:
    key = _resource_key(event)
    limit = int(event.get("limit") or DEFAULT_HISTORY_LIMIT)
    versions = backend.history(key, limit=limit)
    return {
        "ok": True,
        "resource_key": key,
        "versions": [v.model_dump(mode="json") for v in versions],
    }


def _lock_info(backend: StateBackend, event: Dict[str, Any]) -> Dict[str, Any]:
    key = _resource_key(event)
    record = backend.lock_info(key)
    return {
        "ok": True,
        "resource_key": key,
        "lock": record.model_dump(mode="json") if record is not None else None,
    }


def _force_unlock(backend: StateBackend, event: Dict[str, Any]) -> Dict[str, Any]:
    key = _resource_key(event)
    previous = backend.force_unlock(key)
    return {
        "ok": True,
        "resource_key": key,
        "released": previous.model_dump(mode="json") if previous is not None else None,
    }


def _restore(backend: StateBackend, event: Dict[str, Any]) -> Dict[str, Any]:
    key = _resource_key(event)
    if event.get("version") is None:
        raise ValueError("version is required")
    new_version = backend.restore(key, int(event["version"]), holder_id=event.get("holder_id"))
    return {"ok": True, "resource_key": key, "version": new_version}


ACTIONS: Dict[str, Callable[[StateBackend, Dict[str, Any]], Dict[str, Any]]] = {
    "show": _show,
    "history": _history,
    "lock_info": _lock_info,
    "force_unlock": _force_unlock,
    "restore": _restore,
}


def run_once(event: Dict[str, Any], backend: Optional[StateBackend] = None) -> Dict[str, Any]:
    action = event.get("action")
    fn = ACTIONS.get(action) if isinstance(action, str) else None
    if fn is None:
        return {"ok": False, "error": f"unknown action: {action!r}", "actions": sorted(ACTIONS)}

    try:
        return fn(backend or _build_backend(), event)
    except (StateBackendError, ValueError) as ex:
        logger.warning(f"{action} failed: {ex}")
        return {"ok": False, "error": str(ex), "error_type": type(ex).__name__}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    logging.getLogger().setLevel(_getenv(ENV_LOG_LEVEL, "INFO").upper())
    return run_once(event or {})
