"""Bounded execution of opaque callables.

External commands carry their own timeout (``subprocess.run(timeout=...)``).
Arbitrary Python actions do not, so they are run on a short-lived worker
thread.  A thread cannot be interrupted: on expiry the caller stops
waiting and gets a :class:`StepTimeoutError` whose ``abandoned`` future
tracks the worker, so it can wait for the action to finish before it
touches the same resources again (see :func:`wait_for_abandoned`).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import TypeVar

from provision_engine.errors import StepTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(
    fn: Callable[[], T],
    timeout_seconds: float | None,
    *,
    what: str = "action",
) -> T:
    """Invoke *fn*, raising :class:`StepTimeoutError` if it outlives *timeout_seconds*.

    With ``timeout_seconds=None`` the call happens inline on the current
    thread.  Exceptions raised by *fn* propagate unchanged.
    """
    if timeout_seconds is None:
        return fn()

    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="provision-action")
    future = pool.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        if future.done():
            # fn itself raised a TimeoutError; not ours to reinterpret.
            raise
        logger.warning("%s still running after %.1fs", what, timeout_seconds)
        raise StepTimeoutError(timeout_seconds, what, abandoned=future) from exc
    finally:
        pool.shutdown(wait=False)


def wait_for_abandoned(future: Future[object] | None, grace_seconds: float | None, *, what: str = "action") -> bool:
    """Wait up to *grace_seconds* for an abandoned worker to finish.

    ``grace_seconds=None`` waits indefinitely.  Returns ``True`` once the
    worker has finished (or there was none), ``False`` if it is still
    running.  The worker's own result or exception is discarded.
    """
    if future is None or future.done():
        return True
    logger.info("Waiting for abandoned %s to finish (grace %s)", what, _describe(grace_seconds))
    done, _ = wait([future], timeout=grace_seconds)
    if not done:
        logger.error("Abandoned %s still running after %gs", what, grace_seconds)
        return False
    if future.exception() is not None:
        logger.info("Abandoned %s finished with: %s", what, future.exception())
    return True


def _describe(grace_seconds: float | None) -> str:
    return "unbounded" if grace_seconds is None else f"{grace_seconds:g}s"
