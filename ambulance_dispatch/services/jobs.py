from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from functools import lru_cache
from typing import Any, Callable

from loguru import logger

from ambulance_dispatch.core.config import get_settings


class JobScheduler:
    """Thread-pool backed background jobs whose failures always reach the log."""

    def __init__(self, max_workers: int = 8) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        logger.debug("Scheduling job {name}", name=name)
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(lambda done: _report(name, done))
        return future

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


def _report(name: str, future: Future) -> None:
    if future.cancelled():
        logger.warning("Job {name} was cancelled", name=name)
        return
    exc = future.exception()
    if exc is not None:
        logger.opt(exception=exc).error("Job {name} failed", name=name)
    else:
        logger.debug("Job {name} finished: {result}", name=name, result=future.result())


@lru_cache
def get_scheduler() -> JobScheduler:
    return JobScheduler(max_workers=get_settings().dispatch_workers)
