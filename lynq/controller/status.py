"""Status subresource writes with bounded retry on version conflicts."""

from __future__ import annotations

import copy
from typing import Any

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from lynq.cluster.client import KubeClient, object_ref
from lynq.errors import ConcurrentModificationError
from lynq.observability.logging import get_logger

_logger = get_logger("status")

_BASE_DELAY = 0.05
_MAX_DELAY = 1.0


async def write_status(
    client: KubeClient,
    obj: dict[str, Any],
    status: dict[str, Any],
    max_attempts: int = 5,
) -> bool:
    """Write *status* onto *obj*'s status subresource.

    Skips the write when the stored status already equals *status*.  On a
    stale ``resourceVersion`` the object is re-read and the write retried up
    to *max_attempts* times in total.  Returns True when a write happened.

    Raises:
        ConcurrentModificationError: every attempt conflicted.
        TransientAPIError: any other API failure.
    """
    if (obj.get("status") or {}) == status:
        return False
    api_version, kind, namespace, name = object_ref(obj)
    current = obj
    attempt = 0
    try:
        async for attempt_state in AsyncRetrying(
            stop=stop_after_attempt(max(1, max_attempts)),
            wait=wait_exponential_jitter(initial=_BASE_DELAY, max=_MAX_DELAY),
            retry=retry_if_exception_type(ConcurrentModificationError),
            reraise=False,
        ):
            with attempt_state:
                attempt = attempt_state.retry_state.attempt_number
                if attempt > 1:
                    _logger.debug("status_update_conflict", kind=kind, namespace=namespace, name=name, attempt=attempt)
                    refreshed = await client.get(api_version, kind, namespace, name)
                    if refreshed is None:
                        return False
                    current = refreshed
                    if (current.get("status") or {}) == status:
                        return False
                body = copy.deepcopy(current)
                body["status"] = copy.deepcopy(status)
                await client.update_status(body)
    except RetryError as exc:
        _logger.error("status_update_failed", kind=kind, namespace=namespace, name=name, attempts=attempt)
        raise ConcurrentModificationError(f"update status {kind} {namespace}/{name}: conflict") from exc
    return True
