"""
BUILDCREW Parallel Helpers

Thread-based building blocks shared by the router, the tool
registry and the orchestrator:

  - run_with_timeout: race a call against a deadline.
  - map_in_groups: run a batch in fixed-size concurrent groups.

A timed-out call is abandoned, not killed. Its thread keeps running
in the background and any side effects it has still happen.
"""

from __future__ import annotations

import concurrent.futures
import threading
from typing import Any, Callable, Iterator, Sequence, TypeVar

from loguru import logger

from buildcrew.errors import AttemptTimeoutError

T = TypeVar("T")
R = TypeVar("R")


def run_with_timeout(
    fn: Callable[..., R],
    timeout: float | None,
    *args: Any,
    label: str = "call",
    **kwargs: Any,
) -> R:
    """Run `fn` on a daemon thread and wait at most `timeout` seconds for it."""
    if timeout is None:
        return fn(*args, **kwargs)

    future: concurrent.futures.Future = concurrent.futures.Future()

    def _target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)

    worker = threading.Thread(target=_target, name=f"buildcrew-{label}", daemon=True)
    worker.start()

    done, _ = concurrent.futures.wait([future], timeout=timeout)
    if not done:
        logger.debug(f"[PARALLEL] {label} abandoned after {timeout}s")
        raise AttemptTimeoutError(f"{label} timed out after {timeout}s")
    return future.result()


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def map_in_groups(
    fn: Callable[[T], R],
    items: Sequence[T],
    group_size: int,
    on_error: Callable[[T, Exception], R],
) -> list[R]:
    """
    Apply `fn` to every item, `group_size` at a time.
    A failing item is replaced by `on_error(item, exc)` instead of
    aborting the batch. Output order matches input order.
    """
    results: list[R] = []
    for group in chunked(items, group_size):
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(group)) as executor:
            futures = [executor.submit(fn, item) for item in group]
            for item, future in zip(group, futures):
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.warning(f"[PARALLEL] Batch member failed: {e}")
                    results.append(on_error(item, e))
    return results
