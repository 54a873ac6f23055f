from __future__ import annotations

from typing import Any, Callable, Collection, Optional

from botocore.exceptions import ClientError, ParamValidationError

from common.aws import error_code, is_transient
from common.retry import RetryExhaustedError, RetryPolicy, call_with_retries

from .errors import StorageError, StoreUnavailable


def guarded_call(
    operation: str,
    fn: Callable[[], Any],
    *,
    retry: RetryPolicy,
    passthrough: Collection[str] = (),
    sleep: Optional[Callable[[float], None]] = None,
) -> Any:
    """
    Run one collaborator call with transient retries.

    - Transient failures that outlast `retry` become `StoreUnavailable`.
    - `ClientError`s whose code is in `passthrough` propagate untouched so
      the caller can interpret them (not found, precondition failed, ...).
    - Everything else becomes `StorageError`.
    """
    kwargs = {} if sleep is None else {"sleep": sleep}
    try:
        return call_with_retries(fn, operation=operation, is_transient=is_transient, policy=retry, **kwargs)
    except RetryExhaustedError as ex:
        raise StoreUnavailable(operation, str(ex.last_exc)) from ex
    except ParamValidationError as ex:
        raise StorageError(operation, f"Endpoint rejected request parameters: {ex}") from ex
    except ClientError as ex:
        code = error_code(ex)
        if code in passthrough:
            raise
        raise StorageError(operation, f"{code or 'ClientError'}: {ex}") from ex


__all__ = ["guarded_call"]
